#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
modules/lockfile.py — Lockfile do lbuild (lbuild.lock)

- write(graph) -> LockfileDocument (JSON determinístico, schema_version explícito)
- read(doc) -> DependencyGraph (LockfileCorrupt / SchemaVersionMismatch, sem migração)
- reconcile(doc, manifest) -> Unchanged | NeedsPartialResolve(nomes) | NeedsFullResolve
- Integridade: hash sha256 do artefato; divergência é IntegrityMismatch (fail-closed)
- pin/unpin de pacotes travados
"""

from __future__ import annotations

import hashlib
import json
import os
from dataclasses import dataclass, replace
from typing import Dict, Iterable, List, Optional, Tuple, Union

from lbuild.modules import log, utils
from lbuild.modules.graph import DependencyGraph, ResolvedPackage, RootRequirement
from lbuild.modules.meta import (
    SCOPE_KINDS, Manifest, ManifestError, SourceLocation,
    build_spec_from_dict, build_spec_to_dict,
)
from lbuild.modules.version import VersionError, parse_version

logger = log.get_logger("lockfile")

LOCK_SCHEMA_VERSION = 1


# ---------------------------------------------------------------------
# Erros
# ---------------------------------------------------------------------
class LockfileError(Exception):
    pass


class LockfileCorrupt(LockfileError):
    pass


class SchemaVersionMismatch(LockfileError):
    def __init__(self, found, expected: int = LOCK_SCHEMA_VERSION):
        self.found = found
        self.expected = expected
        super().__init__(
            f"Versão de schema {found!r} do lockfile não suportada (esperado {expected}); "
            "apague o lockfile e rode install para regenerá-lo"
        )


class IntegrityMismatch(LockfileError):
    def __init__(self, node: str, expected: str, actual: str):
        self.node = node
        self.expected = expected
        self.actual = actual
        super().__init__(f"Integridade divergente para {node}: esperado {expected}, obtido {actual}")


# ---------------------------------------------------------------------
# Documento
# ---------------------------------------------------------------------
@dataclass
class LockfileDocument:
    data: dict
    path: Optional[str] = None

    @property
    def schema_version(self):
        return self.data.get("schema_version")

    def to_json(self) -> str:
        return json.dumps(self.data, indent=2, sort_keys=True, ensure_ascii=False) + "\n"

    def save(self, path: Optional[str] = None) -> str:
        path = path or self.path
        if not path:
            raise LockfileError("Lockfile sem caminho de destino")
        utils.write_json_atomic(path, self.data)
        self.path = path
        logger.info("Lockfile gravado: %s (%d pacotes)", path, len(self.data.get("packages", {})))
        return path


def _source_to_dict(src: SourceLocation) -> dict:
    d = {"kind": src.kind}
    for key in ("url", "ref", "path"):
        value = getattr(src, key)
        if value is not None:
            d[key] = value
    return d


def _source_from_dict(d) -> SourceLocation:
    if not isinstance(d, dict) or d.get("kind") not in ("index", "vcs", "local"):
        raise LockfileCorrupt(f"Descritor de fonte inválido: {d!r}")
    return SourceLocation(kind=d["kind"], url=d.get("url"), ref=d.get("ref"), path=d.get("path"))


def _node_to_dict(n: ResolvedPackage) -> dict:
    return {
        "name": n.name,
        "version": str(n.version),
        "source": _source_to_dict(n.source),
        "integrity": n.integrity,
        "build": build_spec_to_dict(n.build),
        "dependencies": list(n.dependencies),
        "build_dependencies": list(n.build_dependencies),
        "scopes": list(n.scopes),
        "pinned": n.pinned,
        "opt": n.optional,
        "patches": list(n.patches),
    }


def write(graph: DependencyGraph, path: Optional[str] = None) -> LockfileDocument:
    roots: Dict[str, List[dict]] = {kind: [] for kind in SCOPE_KINDS}
    for r in graph.roots:
        entry = {"name": r.name, "constraint": r.constraint, "node": r.node}
        if r.source is not None:
            entry["source"] = _source_to_dict(r.source)
        if r.optional:
            entry["opt"] = True
        if r.pinned:
            entry["pin"] = True
        roots.setdefault(r.kind, []).append(entry)
    data = {
        "schema_version": LOCK_SCHEMA_VERSION,
        "roots": roots,
        "packages": {n.id: _node_to_dict(n) for n in graph},
    }
    return LockfileDocument(data, path)


def load(path: str) -> LockfileDocument:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except ValueError as e:
        raise LockfileCorrupt(f"Lockfile {path} não é JSON válido: {e}") from e
    if not isinstance(data, dict):
        raise LockfileCorrupt(f"Lockfile {path} deve conter um objeto JSON")
    return LockfileDocument(data, path)


def _require(entry: dict, key: str, nid: str):
    if key not in entry:
        raise LockfileCorrupt(f"Entrada {nid} sem o campo '{key}'")
    return entry[key]


def _node_from_dict(nid: str, entry: dict) -> ResolvedPackage:
    if not isinstance(entry, dict):
        raise LockfileCorrupt(f"Entrada {nid} deve ser um objeto")
    try:
        version = parse_version(_require(entry, "version", nid))
        build = build_spec_from_dict(entry.get("build"))
    except (VersionError, ManifestError) as e:
        raise LockfileCorrupt(f"Entrada {nid}: {e}") from e
    node = ResolvedPackage(
        name=_require(entry, "name", nid),
        version=version,
        source=_source_from_dict(_require(entry, "source", nid)),
        build=build,
        integrity=entry.get("integrity"),
        dependencies=tuple(entry.get("dependencies") or ()),
        build_dependencies=tuple(entry.get("build_dependencies") or ()),
        scopes=tuple(entry.get("scopes") or ()),
        pinned=bool(entry.get("pinned", False)),
        optional=bool(entry.get("opt", False)),
        patches=tuple(entry.get("patches") or ()),
    )
    if node.id != nid:
        raise LockfileCorrupt(f"Chave {nid} não corresponde à identidade {node.id}")
    return node


def read(doc: LockfileDocument) -> DependencyGraph:
    data = doc.data
    if "schema_version" not in data:
        raise LockfileCorrupt("Lockfile sem schema_version")
    if data["schema_version"] != LOCK_SCHEMA_VERSION:
        raise SchemaVersionMismatch(data["schema_version"])
    packages = data.get("packages")
    roots = data.get("roots", {})
    if not isinstance(packages, dict) or not isinstance(roots, dict):
        raise LockfileCorrupt("'packages' e 'roots' do lockfile devem ser objetos")

    nodes = [_node_from_dict(nid, entry) for nid, entry in packages.items()]
    root_reqs = []
    for kind, items in roots.items():
        for item in items or []:
            if not isinstance(item, dict) or not {"name", "constraint", "node"} <= set(item):
                raise LockfileCorrupt(f"Raiz inválida em '{kind}': {item!r}")
            src = item.get("source")
            root_reqs.append(RootRequirement(
                kind=kind, name=item["name"], constraint=item["constraint"], node=item["node"],
                source=_source_from_dict(src) if src is not None else None,
                optional=bool(item.get("opt", False)), pinned=bool(item.get("pin", False)),
            ))

    graph = DependencyGraph(nodes, root_reqs)
    dangling = graph.dangling_references()
    if dangling:
        raise LockfileCorrupt(f"Referências pendentes: {dangling}")
    cycle = graph.find_cycle()
    if cycle:
        raise LockfileCorrupt(f"Grafo do lockfile tem ciclo: {' -> '.join(cycle)}")
    return graph


def read_path(path: str) -> Optional[DependencyGraph]:
    """Lê o lockfile do disco; None se não existir."""
    if not os.path.isfile(path):
        return None
    return read(load(path))


# ---------------------------------------------------------------------
# Reconciliação
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class Unchanged:
    status = "unchanged"


@dataclass(frozen=True)
class NeedsPartialResolve:
    names: Tuple[str, ...]
    status = "partial"


@dataclass(frozen=True)
class NeedsFullResolve:
    reason: str = ""
    status = "full"


ReconcileResult = Union[Unchanged, NeedsPartialResolve, NeedsFullResolve]


def _src_key(src: Optional[SourceLocation]) -> Optional[str]:
    return src.key() if src is not None else None


def reconcile(doc: Union[LockfileDocument, DependencyGraph], manifest: Manifest) -> ReconcileResult:
    graph = doc if isinstance(doc, DependencyGraph) else read(doc)
    changed = set()
    surviving = 0
    for kind, specs in manifest.scopes().items():
        wanted = {s.name: (s.constraint_text, _src_key(s.source)) for s in specs}
        locked = {r.name: (r.constraint, _src_key(r.source)) for r in graph.roots_for(kind)}
        for name in set(wanted) | set(locked):
            if wanted.get(name) != locked.get(name):
                changed.add(name)
            else:
                surviving += 1
    if not changed:
        return Unchanged()
    if not graph.roots:
        return NeedsFullResolve("lockfile sem requisitos diretos")
    if surviving == 0:
        return NeedsFullResolve("every direct requirement changed")
    logger.info("Requisitos diretos alterados: %s", ", ".join(sorted(changed)))
    return NeedsPartialResolve(tuple(sorted(changed)))


def prior_for(graph: DependencyGraph, affected: Iterable[str]) -> DependencyGraph:
    """Lock anterior sem os nós afetados (reutiliza subgrafos não afetados)."""
    affected = set(affected)
    keep = graph.reachable_from(r.node for r in graph.roots if r.name not in affected)
    drop = [n.id for n in graph if n.name in affected and n.id not in keep]
    return graph.without(drop)


# ---------------------------------------------------------------------
# Pin
# ---------------------------------------------------------------------
def set_pinned(doc: LockfileDocument, name: str, pinned: bool = True) -> LockfileDocument:
    graph = read(doc)
    targets = graph.by_name(name)
    if not targets:
        raise LockfileError(f"Pacote {name} não está no lockfile")
    graph = graph.replace_nodes(replace(n, pinned=pinned) for n in targets)
    logger.info("%s %s", "Travado" if pinned else "Destravado", ", ".join(n.id for n in targets))
    return write(graph, doc.path)


# ---------------------------------------------------------------------
# Integridade
# ---------------------------------------------------------------------
def compute_integrity(path: str) -> str:
    """sha256 de um arquivo ou de uma árvore (caminhos relativos + conteúdo)."""
    if os.path.isfile(path):
        return "sha256-" + utils.sha256_file(path)
    if not os.path.isdir(path):
        raise FileNotFoundError(path)
    h = hashlib.sha256()
    for root, dirs, files in os.walk(path):
        dirs[:] = sorted(d for d in dirs if d not in (".git", ".hg", ".svn"))
        for fn in sorted(files):
            full = os.path.join(root, fn)
            rel = os.path.relpath(full, path).replace(os.sep, "/")
            h.update(rel.encode("utf-8") + b"\0")
            if os.path.islink(full):
                h.update(b"link:" + os.readlink(full).encode("utf-8"))
            else:
                h.update(utils.sha256_file(full).encode("ascii"))
            h.update(b"\0")
    return "sha256-" + h.hexdigest()


def verify_integrity(nid: str, path: str, expected: Optional[str]) -> str:
    """Recalcula o hash; levanta IntegrityMismatch se divergir do esperado."""
    actual = compute_integrity(path)
    if expected and actual != expected:
        logger.error("Integridade divergente para %s", nid)
        raise IntegrityMismatch(nid, expected, actual)
    return actual


__all__ = [
    "LOCK_SCHEMA_VERSION",
    "LockfileError", "LockfileCorrupt", "SchemaVersionMismatch", "IntegrityMismatch",
    "LockfileDocument", "write", "load", "read", "read_path",
    "Unchanged", "NeedsPartialResolve", "NeedsFullResolve", "reconcile", "prior_for",
    "set_pinned", "compute_integrity", "verify_integrity",
]
