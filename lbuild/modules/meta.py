#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
modules/meta.py — Metadados de pacotes do lbuild

- PackageSpec: requisito (nome, restrição, fonte explícita opcional)
- SourceLocation: índice / ref de VCS / caminho local
- BuildSpec: união fechada Default | NativeModule | ParserGrammar | ExternalCompat | CustomScript
- IndexEntry + RepoIndex: consulta ao índice de pacotes (YAML/JSON em disco)
- Manifest: leitura do lbuild.yaml do projeto (e edição mínima para add/remove)
"""

from __future__ import annotations

import glob
import hashlib
import os
from dataclasses import dataclass, field, fields
from typing import ClassVar, Dict, List, Optional, Tuple

import yaml

from lbuild.modules import config, log, utils
from lbuild.modules.version import (
    ANY, Constraint, Version, VersionError, parse_constraint, parse_version,
)

logger = log.get_logger("meta")

SCOPE_KINDS = ("regular", "build", "test")

_MANIFEST_SECTIONS = {
    "regular": "dependencies",
    "build": "build_dependencies",
    "test": "test_dependencies",
}


class ManifestError(Exception):
    """Erro ao carregar ou validar manifest/índice"""
    pass


# ---------------------------
# Fontes
# ---------------------------
@dataclass(frozen=True)
class SourceLocation:
    kind: str = "index"  # index | vcs | local
    url: Optional[str] = None
    ref: Optional[str] = None
    path: Optional[str] = None

    @property
    def is_index(self) -> bool:
        return self.kind == "index"

    def key(self) -> str:
        """Chave estável usada na identidade do pacote."""
        if self.kind == "vcs":
            return f"vcs:{self.url}#{self.ref or 'HEAD'}"
        if self.kind == "local":
            return f"local:{self.path}"
        return "index"

    def to_dict(self) -> dict:
        if self.kind == "vcs":
            d = {"git": self.url}
            if self.ref:
                d["ref"] = self.ref
            return d
        if self.kind == "local":
            return {"path": self.path}
        return {"url": self.url} if self.url else {}

    @classmethod
    def from_dict(cls, data, base_dir: Optional[str] = None) -> "SourceLocation":
        if data is None:
            return cls()
        if isinstance(data, str):
            return cls(kind="index", url=data)
        if not isinstance(data, dict):
            raise ManifestError(f"Fonte inválida: {data!r}")
        if data.get("git"):
            return cls(kind="vcs", url=data["git"], ref=data.get("ref") or data.get("tag") or data.get("branch"))
        if data.get("path"):
            path = data["path"]
            if base_dir and not os.path.isabs(path):
                path = os.path.join(base_dir, path)
            return cls(kind="local", path=os.path.normpath(path))
        return cls(kind="index", url=data.get("url"))

    def __str__(self) -> str:
        return self.key() if not self.is_index else (self.url or "index")


def node_id(name: str, version, source: Optional[SourceLocation] = None) -> str:
    """Identidade (nome, versão, fonte) em forma textual."""
    nid = f"{name}@{version}"
    if source is not None and not source.is_index:
        digest = hashlib.sha256(source.key().encode("utf-8")).hexdigest()[:8]
        nid += f"~{digest}"
    return nid


# ---------------------------
# Requisitos
# ---------------------------
@dataclass(frozen=True)
class PackageSpec:
    name: str
    constraint: Constraint = ANY
    source: Optional[SourceLocation] = None
    optional: bool = False
    pinned: bool = False

    @property
    def constraint_text(self) -> str:
        return str(self.constraint)

    @classmethod
    def from_string(cls, s: str) -> "PackageSpec":
        """
        Aceita 'pkg', 'pkg >= 1.0, < 2.0', 'pkg@1.2.3' ou 'pkg ~> 1.2'
        """
        s = s.strip()
        if not s:
            raise ManifestError("Requisito vazio")
        if "@" in s and " " not in s:
            name, ver = s.split("@", 1)
            return cls(name=name, constraint=_constraint(f"=={ver}", name))
        parts = s.split(None, 1)
        name = parts[0]
        text = parts[1] if len(parts) > 1 else "*"
        return cls(name=name, constraint=_constraint(text, name))

    @classmethod
    def from_manifest(cls, name: str, value, base_dir: Optional[str] = None) -> "PackageSpec":
        """Entrada do manifest: string de restrição ou dict {version, git, ref, path, opt, pin}."""
        if value is None or isinstance(value, (str, int, float)):
            text = "*" if value is None else str(value)
            return cls(name=name, constraint=_constraint(text, name))
        if not isinstance(value, dict):
            raise ManifestError(f"Dependência inválida para {name}: {value!r}")
        source = None
        if any(k in value for k in ("git", "path", "url")):
            source = SourceLocation.from_dict(value, base_dir)
        return cls(
            name=name,
            constraint=_constraint(value.get("version", "*"), name),
            source=source,
            optional=bool(value.get("opt", False)),
            pinned=bool(value.get("pin", False)),
        )

    def to_manifest_value(self):
        if self.source is None and not self.optional and not self.pinned:
            return self.constraint_text
        d = {"version": self.constraint_text}
        if self.source is not None:
            d.update(self.source.to_dict())
        if self.optional:
            d["opt"] = True
        if self.pinned:
            d["pin"] = True
        return d

    def __str__(self) -> str:
        text = self.name if self.constraint_text == "*" else f"{self.name} {self.constraint_text}"
        if self.source is not None and not self.source.is_index:
            text += f" ({self.source.key()})"
        return text


def _constraint(text, name: str) -> Constraint:
    try:
        return parse_constraint(text)
    except VersionError as e:
        raise ManifestError(f"Restrição inválida para {name}: {e}") from e


# ---------------------------
# Build specs (união fechada)
# ---------------------------
@dataclass(frozen=True)
class DefaultBuild:
    kind: ClassVar[str] = "default"
    modules: Dict[str, str] = field(default_factory=dict)
    bin: Dict[str, str] = field(default_factory=dict)
    conf: Dict[str, str] = field(default_factory=dict)
    copy_directories: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class NativeModuleBuild:
    kind: ClassVar[str] = "native"
    modules: Dict[str, List[str]] = field(default_factory=dict)
    external_dependencies: Dict[str, Dict[str, str]] = field(default_factory=dict)
    defines: List[str] = field(default_factory=list)
    incdirs: List[str] = field(default_factory=list)
    libdirs: List[str] = field(default_factory=list)
    libraries: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class ParserGrammarBuild:
    kind: ClassVar[str] = "parser"
    lang: str = ""
    location: Optional[str] = None
    generate: bool = False
    parser: bool = True
    queries: Dict[str, str] = field(default_factory=dict)
    external_dependencies: Dict[str, Dict[str, str]] = field(default_factory=dict)


@dataclass(frozen=True)
class ExternalCompatBuild:
    kind: ClassVar[str] = "external"
    command: List[str] = field(default_factory=list)
    spec_file: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class CustomScriptBuild:
    kind: ClassVar[str] = "script"
    steps: List[str] = field(default_factory=list)
    install: Dict[str, Dict[str, str]] = field(default_factory=dict)
    env: Dict[str, str] = field(default_factory=dict)


BUILD_SPEC_TYPES = {
    cls.kind: cls
    for cls in (DefaultBuild, NativeModuleBuild, ParserGrammarBuild, ExternalCompatBuild, CustomScriptBuild)
}

_BUILD_TYPE_ALIASES = {
    "builtin": "default",
    "none": "default",
    "treesitter-parser": "parser",
    "tree-sitter": "parser",
    "command": "script",
    "luarocks": "external",
    "make": "external",
    "cmake": "external",
}


def build_spec_from_dict(data: Optional[dict]):
    """Converte a seção build: de um pacote no BuildSpec correspondente."""
    if not data:
        return DefaultBuild()
    if not isinstance(data, dict):
        raise ManifestError(f"Seção build inválida: {data!r}")
    data = dict(data)
    kind = str(data.pop("type", "default"))
    kind = _BUILD_TYPE_ALIASES.get(kind, kind)
    cls = BUILD_SPEC_TYPES.get(kind)
    if cls is None:
        raise ManifestError(f"Tipo de build desconhecido: {kind}")
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ManifestError(f"Campos desconhecidos para build '{kind}': {', '.join(unknown)}")
    return cls(**data)


def build_spec_to_dict(spec) -> dict:
    """Resumo do build spec (usado no lockfile)."""
    d = {"type": spec.kind}
    for name in (f.name for f in fields(spec)):
        value = getattr(spec, name)
        if value in (None, {}, [], ""):
            continue
        d[name] = value
    return d


# ---------------------------
# Índice de pacotes
# ---------------------------
@dataclass(frozen=True)
class IndexEntry:
    name: str
    version: Version
    dependencies: Tuple[PackageSpec, ...] = ()
    build_dependencies: Tuple[PackageSpec, ...] = ()
    build: object = field(default_factory=DefaultBuild)
    source: SourceLocation = field(default_factory=SourceLocation)
    integrity: Optional[str] = None
    patches: Tuple[str, ...] = ()

    @property
    def node_id(self) -> str:
        return node_id(self.name, self.version, self.source)


def _specs_from(section, base_dir: Optional[str]) -> Tuple[PackageSpec, ...]:
    if not section:
        return ()
    if isinstance(section, dict):
        return tuple(PackageSpec.from_manifest(n, v, base_dir) for n, v in section.items())
    if isinstance(section, list):
        return tuple(PackageSpec.from_string(str(s)) for s in section)
    raise ManifestError(f"Lista de dependências inválida: {section!r}")


def entry_from_dict(name: str, data: dict, base_dir: Optional[str] = None) -> IndexEntry:
    if not isinstance(data, dict) or "version" not in data:
        raise ManifestError(f"Entrada de índice inválida para {name}: {data!r}")
    try:
        version = parse_version(data["version"])
    except VersionError as e:
        raise ManifestError(f"{name}: {e}") from e
    patches = []
    for p in data.get("patches") or []:
        if base_dir and not os.path.isabs(p):
            p = os.path.normpath(os.path.join(base_dir, p))
        patches.append(p)
    return IndexEntry(
        name=name,
        version=version,
        dependencies=_specs_from(data.get("dependencies"), base_dir),
        build_dependencies=_specs_from(data.get("build_dependencies"), base_dir),
        build=build_spec_from_dict(data.get("build")),
        source=SourceLocation.from_dict(data.get("source"), base_dir),
        integrity=data.get("integrity"),
        patches=tuple(patches),
    )


def find_patches(pkg_dir: str) -> list[str]:
    patch_dir = os.path.join(pkg_dir, "patches")
    if not os.path.isdir(patch_dir):
        return []
    return sorted(glob.glob(os.path.join(patch_dir, "*.patch")))


def local_entry(path: str, manifest_name: Optional[str] = None) -> IndexEntry:
    """
    Entrada sintética para um pacote local (dependência declarada com path:),
    lida do manifest do próprio pacote, incluindo a seção build:.
    """
    pkg_dir = os.path.normpath(os.path.abspath(path))
    mpath = os.path.join(pkg_dir, manifest_name or config.get("manifest_name") or "lbuild.yaml")
    if not os.path.isfile(mpath):
        raise ManifestError(f"Pacote local sem manifest: {mpath}")
    try:
        data = utils.load_yaml(mpath)
    except yaml.YAMLError as e:
        raise ManifestError(f"YAML inválido em {mpath}: {e}") from e
    if not isinstance(data, dict):
        raise ManifestError(f"Manifest deve ser um mapa: {mpath}")
    name = str(data.get("package") or data.get("name") or os.path.basename(pkg_dir))
    item = {k: data[k] for k in ("dependencies", "build_dependencies", "build") if k in data}
    item["version"] = str(data.get("version", "0.0.0"))
    item["source"] = {"path": pkg_dir}
    entry = entry_from_dict(name, item, pkg_dir)
    return IndexEntry(
        name=entry.name, version=entry.version, dependencies=entry.dependencies,
        build_dependencies=entry.build_dependencies, build=entry.build, source=entry.source,
        patches=tuple(find_patches(pkg_dir)),
    )


class RepoIndex:
    """
    Índice local de pacotes. Aceita:
      - um arquivo YAML/JSON com {packages: {nome: [entradas]}}
      - um diretório com um arquivo por pacote ({name: x, versions: [...]})
        onde <dir>/<nome>/patches/*.patch é anexado a todas as versões
    query(name) devolve as entradas na ordem em que aparecem.
    """

    def __init__(self, path: Optional[str] = None, data: Optional[dict] = None):
        self.path = path
        self._entries: Dict[str, List[IndexEntry]] = {}
        if data is not None:
            self._add_packages(data.get("packages", data), base_dir=path)
        elif path:
            self._load(path)

    @classmethod
    def from_dict(cls, data: dict, base_dir: Optional[str] = None) -> "RepoIndex":
        return cls(path=base_dir, data=data)

    def _load(self, path: str) -> None:
        if os.path.isdir(path):
            for root, dirs, files in os.walk(path):
                dirs.sort()
                for fn in sorted(files):
                    if fn.endswith((".yaml", ".yml", ".json")):
                        self._load_file(os.path.join(root, fn))
        elif os.path.isfile(path):
            self._load_file(path)
        else:
            raise ManifestError(f"Índice não encontrado: {path}")

    def _load_file(self, path: str) -> None:
        try:
            if path.endswith(".json"):
                data = utils.load_json(path)
            else:
                data = utils.load_yaml(path)
        except (OSError, ValueError, yaml.YAMLError) as e:
            raise ManifestError(f"Falha ao ler índice {path}: {e}") from e
        base_dir = os.path.dirname(os.path.abspath(path))
        if "packages" in data:
            self._add_packages(data["packages"], base_dir)
        elif "name" in data:
            patches = find_patches(base_dir)
            for item in data.get("versions") or []:
                item = dict(item)
                item["patches"] = list(item.get("patches") or []) + patches
                self._add(data["name"], item, base_dir)
        logger.debug("Índice carregado: %s", path)

    def _add_packages(self, packages: dict, base_dir: Optional[str]) -> None:
        if not isinstance(packages, dict):
            raise ManifestError("Seção packages do índice deve ser um mapa")
        for name, items in packages.items():
            for item in items or []:
                self._add(name, item, base_dir)

    def _add(self, name: str, item: dict, base_dir: Optional[str]) -> None:
        self._entries.setdefault(name, []).append(entry_from_dict(name, item, base_dir))

    def add_entry(self, entry: IndexEntry) -> None:
        self._entries.setdefault(entry.name, []).append(entry)

    def query(self, name: str) -> Tuple[IndexEntry, ...]:
        return tuple(self._entries.get(name, ()))

    def names(self) -> List[str]:
        return sorted(self._entries)


def load_index(path: Optional[str] = None) -> RepoIndex:
    path = path or config.get("index")
    if not path:
        raise ManifestError("Nenhum índice configurado (config 'index' ou --index)")
    return RepoIndex(os.path.expanduser(path))


# ---------------------------
# Manifest do projeto
# ---------------------------
@dataclass(frozen=True)
class Manifest:
    name: str = "project"
    version: str = "0.0.0"
    dependencies: Tuple[PackageSpec, ...] = ()
    build_dependencies: Tuple[PackageSpec, ...] = ()
    test_dependencies: Tuple[PackageSpec, ...] = ()
    index: Optional[str] = None
    path: Optional[str] = None

    def scopes(self) -> Dict[str, Tuple[PackageSpec, ...]]:
        return {
            "regular": self.dependencies,
            "build": self.build_dependencies,
            "test": self.test_dependencies,
        }

    @classmethod
    def from_specs(cls, specs) -> "Manifest":
        return cls(dependencies=tuple(specs))


def load_manifest(path: str) -> Manifest:
    if not os.path.isfile(path):
        raise ManifestError(f"Manifest não encontrado: {path}")
    try:
        data = utils.load_yaml(path)
    except yaml.YAMLError as e:
        raise ManifestError(f"YAML inválido em {path}: {e}") from e
    if not isinstance(data, dict):
        raise ManifestError(f"Manifest deve ser um mapa: {path}")
    base_dir = os.path.dirname(os.path.abspath(path))
    index = data.get("index")
    if index and not os.path.isabs(index):
        index = os.path.normpath(os.path.join(base_dir, index))
    return Manifest(
        name=str(data.get("package") or data.get("name") or os.path.basename(base_dir)),
        version=str(data.get("version", "0.0.0")),
        dependencies=_specs_from(data.get("dependencies"), base_dir),
        build_dependencies=_specs_from(data.get("build_dependencies"), base_dir),
        test_dependencies=_specs_from(data.get("test_dependencies"), base_dir),
        index=index,
        path=path,
    )


def add_dependency(path: str, spec: PackageSpec, kind: str = "regular") -> None:
    """Adiciona (ou substitui) uma dependência direta no manifest."""
    section = _MANIFEST_SECTIONS[kind]
    data = utils.load_yaml(path) if os.path.isfile(path) else {}
    deps = data.get(section) or {}
    if not isinstance(deps, dict):
        raise ManifestError(f"Seção {section} deve ser um mapa para edição")
    deps[spec.name] = spec.to_manifest_value()
    data[section] = deps
    utils.dump_yaml(path, data)
    logger.info("Dependência %s adicionada em %s", spec, section)


def remove_dependency(path: str, name: str, kind: str = "regular") -> bool:
    section = _MANIFEST_SECTIONS[kind]
    data = utils.load_yaml(path)
    deps = data.get(section) or {}
    if not isinstance(deps, dict) or name not in deps:
        return False
    del deps[name]
    data[section] = deps
    utils.dump_yaml(path, data)
    logger.info("Dependência %s removida de %s", name, section)
    return True


__all__ = [
    "ManifestError", "SCOPE_KINDS",
    "SourceLocation", "node_id", "PackageSpec",
    "DefaultBuild", "NativeModuleBuild", "ParserGrammarBuild",
    "ExternalCompatBuild", "CustomScriptBuild", "BUILD_SPEC_TYPES",
    "build_spec_from_dict", "build_spec_to_dict",
    "IndexEntry", "entry_from_dict", "local_entry", "RepoIndex", "load_index", "find_patches",
    "Manifest", "load_manifest", "add_dependency", "remove_dependency",
]
