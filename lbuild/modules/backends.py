#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
modules/backends.py — Backends de build por variante de BuildSpec

- BackendRegistry: tipo de build -> backend (prepare / build / install)
- default: copia módulos Lua, bin, conf e diretórios extras
- native: compila módulos C contra os headers do runtime e dependências externas
- parser: gera/compila gramáticas tree-sitter em lib/parser/<lang>.so
- external: delega a um comando legado (luarocks make por padrão)
- script: passos de shell em diretório isolado + mapa de instalação
- Falhas levantam BuildToolFailure(backend, status, diagnóstico); não há fallback entre backends
"""

from __future__ import annotations

import glob
import os
import stat
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from lbuild.modules import config, log, utils
from lbuild.modules import toolchain as tc
from lbuild.modules.sandbox import Sandbox

logger = log.get_logger("backends")


class BackendError(Exception):
    pass


class UnknownBackend(BackendError):
    pass


class BuildToolFailure(BackendError):
    def __init__(self, backend: str, exit_status: int, diagnostic: str = ""):
        self.backend = backend
        self.exit_status = exit_status
        self.diagnostic = diagnostic
        msg = f"build {backend} falhou com código {exit_status}"
        if diagnostic:
            msg += f": {diagnostic.strip()[-2000:]}"
        super().__init__(msg)


# ---------------------------
# Contexto de build
# ---------------------------
@dataclass
class BuildContext:
    """Tudo que um backend precisa para construir um nó."""
    node: object
    source_dir: str
    staging: str
    sandbox: Sandbox
    deps: Dict[str, str] = field(default_factory=dict)
    toolchain: Optional[tc.Toolchain] = None

    @property
    def spec(self):
        return self.node.build

    @property
    def log_name(self) -> str:
        return self.node.id.replace("/", "_")

    def dest(self, sub: str, *parts: str) -> str:
        return os.path.join(self.staging, sub, *parts)

    def env(self) -> Dict[str, str]:
        """PREFIX e diretórios do layout, mais LUA_PATH/LUA_CPATH das dependências já instaladas."""
        lua_path = []
        lua_cpath = []
        for entry in self.deps.values():
            lua_path += [os.path.join(entry, "src", "?.lua"), os.path.join(entry, "src", "?", "init.lua")]
            lua_cpath.append(os.path.join(entry, "lib", "?." + _libext()))
        env = {
            "PREFIX": self.staging,
            "LUADIR": self.dest("src"),
            "LIBDIR": self.dest("lib"),
            "BINDIR": self.dest("bin"),
            "CONFDIR": self.dest("conf"),
            "DOCDIR": self.dest("doc"),
            "LUA_VERSION": str(config.get("lua_version") or ""),
            "LUA_PATH": ";".join(lua_path + [""]) + ";",
            "LUA_CPATH": ";".join(lua_cpath + [""]) + ";",
        }
        if self.toolchain is not None:
            env.update(self.toolchain.env())
        return env


# Helpers ---------------------------------------------------------------
def _libext() -> str:
    return str(config.get("shared_lib_extension") or "so")


def _module_path(module: str, ext: str) -> str:
    return os.path.join(*module.split(".")) + "." + ext


def _run(ctx: BuildContext, backend: str, cmd, cwd: Optional[str] = None,
         env: Optional[Dict[str, str]] = None) -> str:
    """Executa no sandbox; status != 0 vira BuildToolFailure."""
    full_env = ctx.env()
    full_env.update(env or {})
    try:
        proc = ctx.sandbox.run(cmd, env=full_env, cwd=cwd or ctx.source_dir, log_name=ctx.log_name)
    except FileNotFoundError as e:
        raise BuildToolFailure(backend, 127, str(e)) from e
    if proc.returncode != 0:
        raise BuildToolFailure(backend, proc.returncode, (proc.stderr or "") + (proc.stdout or ""))
    return proc.stdout


def _source_file(ctx: BuildContext, backend: str, rel: str) -> str:
    path = os.path.join(ctx.source_dir, rel)
    if not os.path.exists(path):
        raise BuildToolFailure(backend, 1, f"arquivo declarado não encontrado: {rel}")
    return path


def _install_executable(src: str, dst: str) -> None:
    utils.copy_file(src, dst)
    mode = os.stat(dst).st_mode
    os.chmod(dst, mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)


def _copy_lua_tree(src_dir: str, dest_dir: str) -> int:
    count = 0
    for root, _, files in os.walk(src_dir):
        for fn in files:
            if fn.endswith(".lua"):
                rel = os.path.relpath(os.path.join(root, fn), src_dir)
                utils.copy_file(os.path.join(root, fn), os.path.join(dest_dir, rel))
                count += 1
    return count


def _compile_shared(ctx: BuildContext, backend: str, sources: List[str], output: str,
                    extra_cflags: List[str], extra_ldflags: List[str]) -> None:
    """Compila fontes C/C++ em objetos e liga uma biblioteca compartilhada."""
    tchain = ctx.toolchain
    objdir = os.path.join(ctx.sandbox.workdir, "obj", os.path.basename(output))
    os.makedirs(objdir, exist_ok=True)
    objects = []
    for i, src in enumerate(sources):
        compiler = tchain.cc
        if src.endswith((".cc", ".cpp", ".cxx")):
            compiler = os.environ.get("CXX", "c++")
        obj = os.path.join(objdir, f"{i}-{os.path.basename(src)}.o")
        cmd = [compiler] + list(tchain.cflags) + tchain.runtime.compile_flags() + extra_cflags
        cmd += ["-c", src, "-o", obj]
        _run(ctx, backend, cmd)
        objects.append(obj)
    os.makedirs(os.path.dirname(output), exist_ok=True)
    cmd = [tchain.cc] + list(tchain.ldflags) + objects + extra_ldflags + ["-o", output]
    if any(s.endswith((".cc", ".cpp", ".cxx")) for s in sources):
        cmd.append("-lstdc++")
    _run(ctx, backend, cmd)


# ---------------------------
# default
# ---------------------------
class DefaultBackend:
    name = "default"

    def prepare(self, ctx: BuildContext) -> None:
        pass

    def build(self, ctx: BuildContext) -> None:
        pass

    def install(self, ctx: BuildContext) -> None:
        spec = ctx.spec
        if spec.modules:
            for module, rel in sorted(spec.modules.items()):
                if not rel.endswith(".lua"):
                    raise BuildToolFailure(self.name, 1, f"módulo {module}: {rel} não é um arquivo .lua")
                utils.copy_file(_source_file(ctx, self.name, rel), ctx.dest("src", _module_path(module, "lua")))
        else:
            copied = self._autodetect(ctx)
            logger.debug("%s: %d módulos detectados", ctx.node.id, copied)
        for name, rel in sorted(spec.bin.items()):
            _install_executable(_source_file(ctx, self.name, rel), ctx.dest("bin", name))
        for name, rel in sorted(spec.conf.items()):
            utils.copy_file(_source_file(ctx, self.name, rel), ctx.dest("conf", name))
        for d in spec.copy_directories:
            src = _source_file(ctx, self.name, d)
            target = "doc" if os.path.basename(d) in ("doc", "docs") else os.path.join("etc", os.path.basename(d))
            utils.copy_tree(src, ctx.dest(target))

    @staticmethod
    def _autodetect(ctx: BuildContext) -> int:
        for sub in ("src", "lua"):
            path = os.path.join(ctx.source_dir, sub)
            if os.path.isdir(path):
                return _copy_lua_tree(path, ctx.dest("src"))
        count = 0
        for path in sorted(glob.glob(os.path.join(ctx.source_dir, "*.lua"))):
            utils.copy_file(path, ctx.dest("src", os.path.basename(path)))
            count += 1
        return count


# ---------------------------
# native
# ---------------------------
class NativeModuleBackend:
    name = "native"

    def prepare(self, ctx: BuildContext) -> None:
        # dependências externas falham aqui, antes de qualquer compilador rodar
        ctx.toolchain = tc.detect_toolchain(ctx.spec.external_dependencies)

    def build(self, ctx: BuildContext) -> None:
        spec = ctx.spec
        cflags = [f"-D{d}" for d in spec.defines]
        cflags += [f"-I{os.path.join(ctx.source_dir, d)}" for d in spec.incdirs]
        ldflags = [f"-L{os.path.join(ctx.source_dir, d)}" for d in spec.libdirs]
        for info in ctx.toolchain.externals.values():
            cflags += info.compile_flags()
            ldflags += info.link_flags()
        ldflags += [f"-l{lib}" for lib in spec.libraries]

        for module, sources in sorted(spec.modules.items()):
            if isinstance(sources, str):
                sources = [sources]
            if all(s.endswith(".lua") for s in sources):
                for s in sources:
                    utils.copy_file(_source_file(ctx, self.name, s), ctx.dest("src", _module_path(module, "lua")))
                continue
            paths = [_source_file(ctx, self.name, s) for s in sources]
            output = ctx.dest("lib", _module_path(module, _libext()))
            logger.info("Compilando %s (%s)", module, ctx.node.id)
            _compile_shared(ctx, self.name, paths, output, cflags, ldflags)

    def install(self, ctx: BuildContext) -> None:
        pass


# ---------------------------
# parser (tree-sitter)
# ---------------------------
_PARSER_STUB = """\
-- {lang} parser installed by lbuild
local here = debug.getinfo(1, "S").source:sub(2):match("(.*/)") or "./"
return {{
  lang = "{lang}",
  parser = here .. "../lib/parser/{lang}.{ext}",
}}
"""


class ParserGrammarBackend:
    name = "parser"

    def prepare(self, ctx: BuildContext) -> None:
        if not ctx.spec.lang:
            raise BuildToolFailure(self.name, 1, "gramática sem 'lang'")
        if ctx.spec.parser:
            ctx.toolchain = tc.detect_toolchain(ctx.spec.external_dependencies)

    def _grammar_dir(self, ctx: BuildContext) -> str:
        return os.path.join(ctx.source_dir, ctx.spec.location) if ctx.spec.location else ctx.source_dir

    def build(self, ctx: BuildContext) -> None:
        spec = ctx.spec
        gdir = self._grammar_dir(ctx)
        if spec.generate:
            env = {"TREE_SITTER_LANGUAGE_VERSION": str(config.get("tree_sitter_abi"))}
            _run(ctx, self.name, [config.get("grammar_compiler") or "tree-sitter", "generate"], cwd=gdir, env=env)
        if not spec.parser:
            return
        srcdir = os.path.join(gdir, "src")
        sources = [os.path.join(srcdir, "parser.c")]
        for scanner in ("scanner.c", "scanner.cc"):
            if os.path.isfile(os.path.join(srcdir, scanner)):
                sources.append(os.path.join(srcdir, scanner))
        if not os.path.isfile(sources[0]):
            raise BuildToolFailure(self.name, 1, f"parser.c não encontrado em {srcdir}")
        extra = [f"-I{srcdir}"]
        ldflags = []
        for info in ctx.toolchain.externals.values():
            extra += info.compile_flags()
            ldflags += info.link_flags()
        output = ctx.dest("lib", "parser", f"{spec.lang}.{_libext()}")
        _compile_shared(ctx, self.name, sources, output, extra, ldflags)

    def install(self, ctx: BuildContext) -> None:
        spec = ctx.spec
        if spec.parser:
            stub = ctx.dest("src", f"{spec.lang}_parser.lua")
            os.makedirs(os.path.dirname(stub), exist_ok=True)
            with open(stub, "w", encoding="utf-8") as f:
                f.write(_PARSER_STUB.format(lang=spec.lang, ext=_libext()))
        qdest = ctx.dest("etc", "queries", spec.lang)
        qsrc = os.path.join(self._grammar_dir(ctx), "queries")
        if os.path.isdir(qsrc):
            utils.copy_tree(qsrc, qdest)
        for fname, content in sorted(spec.queries.items()):
            os.makedirs(qdest, exist_ok=True)
            with open(os.path.join(qdest, fname), "w", encoding="utf-8") as f:
                f.write(content)


# ---------------------------
# external (compatibilidade)
# ---------------------------
class ExternalCompatBackend:
    name = "external"

    def prepare(self, ctx: BuildContext) -> None:
        pass

    def build(self, ctx: BuildContext) -> None:
        spec = ctx.spec
        template = spec.command or config.get("external_compat_command") or []
        if not template:
            raise BuildToolFailure(self.name, 1, "nenhum comando externo configurado")
        values = {"prefix": ctx.staging, "spec_file": spec.spec_file or "", "source": ctx.source_dir}
        cmd = [str(part).format(**values) for part in template]
        if spec.spec_file and "{spec_file}" not in " ".join(map(str, template)):
            cmd.append(spec.spec_file)
        _run(ctx, self.name, cmd, env=dict(spec.env))

    def install(self, ctx: BuildContext) -> None:
        pass


# ---------------------------
# script
# ---------------------------
class CustomScriptBackend:
    name = "script"

    _TARGETS = {"lua": ("src", "lua"), "lib": ("lib", None), "bin": ("bin", None), "conf": ("conf", None)}

    def prepare(self, ctx: BuildContext) -> None:
        unknown = sorted(set(ctx.spec.install) - set(self._TARGETS))
        if unknown:
            raise BuildToolFailure(self.name, 1, f"seções de install desconhecidas: {', '.join(unknown)}")

    def build(self, ctx: BuildContext) -> None:
        for step in ctx.spec.steps:
            logger.debug("%s: %s", ctx.node.id, step)
            _run(ctx, self.name, step, env=dict(ctx.spec.env))

    def install(self, ctx: BuildContext) -> None:
        for section, mapping in sorted(ctx.spec.install.items()):
            sub, ext = self._TARGETS[section]
            for target, rel in sorted(mapping.items()):
                src = _source_file(ctx, self.name, rel)
                if section == "lua":
                    dest = ctx.dest(sub, _module_path(target, ext))
                elif section == "lib":
                    dest = ctx.dest(sub, _module_path(target, _libext()))
                else:
                    dest = ctx.dest(sub, target)
                if section == "bin":
                    _install_executable(src, dest)
                else:
                    utils.copy_file(src, dest)


# ---------------------------
# Registro
# ---------------------------
class BackendRegistry:
    def __init__(self):
        self._backends: Dict[str, object] = {}

    def register(self, kind: str, backend) -> None:
        for method in ("prepare", "build", "install"):
            if not callable(getattr(backend, method, None)):
                raise BackendError(f"Backend para '{kind}' não implementa {method}()")
        self._backends[kind] = backend
        logger.debug("Backend registrado: %s", kind)

    def get(self, kind: str):
        try:
            return self._backends[kind]
        except KeyError:
            raise UnknownBackend(f"Nenhum backend registrado para o tipo de build '{kind}'") from None

    def kinds(self) -> List[str]:
        return sorted(self._backends)

    def __contains__(self, kind: str) -> bool:
        return kind in self._backends


def default_registry() -> BackendRegistry:
    reg = BackendRegistry()
    reg.register("default", DefaultBackend())
    reg.register("native", NativeModuleBackend())
    reg.register("parser", ParserGrammarBackend())
    reg.register("external", ExternalCompatBackend())
    reg.register("script", CustomScriptBackend())
    return reg


__all__ = [
    "BackendError", "UnknownBackend", "BuildToolFailure", "BuildContext",
    "DefaultBackend", "NativeModuleBackend", "ParserGrammarBackend",
    "ExternalCompatBackend", "CustomScriptBackend",
    "BackendRegistry", "default_registry",
]
