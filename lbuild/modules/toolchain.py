#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
modules/toolchain.py

Detecção de toolchain e de dependências externas para builds nativos.

Recursos:
- Compilador C: variável CC, senão primeiro de cc/gcc/clang no PATH.
- Headers/biblioteca do runtime Lua: LUA_INCDIR/LUA_LIBDIR, pkg-config, prefixos padrão.
- Dependências externas: <NOME>_INCDIR/<NOME>_LIBDIR/<NOME>_DIR, pkg-config, prefixos padrão.
- Falha antes de qualquer ferramenta de build rodar (UnresolvedExternalDependency).
- Relatório de ferramentas disponíveis e verificação do compilador (usados pelo doctor).
"""

from __future__ import annotations

import os
import re
import shutil
import subprocess
import tempfile
from dataclasses import dataclass, field
from typing import Optional, Dict, List, Mapping, Tuple

from lbuild.modules import config, log

logger = log.get_logger("toolchain")

STANDARD_PREFIXES = ["/usr/local", "/usr", "/opt/homebrew", "/opt/local"]

REPORT_TOOLS = ["cc", "gcc", "clang", "make", "cmake", "cargo", "pkg-config", "patch", "git"]


class ToolchainError(Exception):
    pass


class UnresolvedExternalDependency(ToolchainError):
    def __init__(self, name: str, tried: Optional[List[str]] = None):
        self.name = name
        self.tried = tried or []
        msg = f"Dependência externa '{name}' não encontrada"
        if self.tried:
            msg += f" (tentado: {', '.join(self.tried)})"
        msg += f"; defina {_env_prefix(name)}_DIR ou {_env_prefix(name)}_INCDIR/{_env_prefix(name)}_LIBDIR"
        super().__init__(msg)


@dataclass(frozen=True)
class ExternalDependencyInfo:
    name: str
    incdir: Optional[str] = None
    libdir: Optional[str] = None
    cflags: Tuple[str, ...] = ()
    libs: Tuple[str, ...] = ()
    origin: str = "prefix"  # env | pkg-config | prefix

    def compile_flags(self) -> List[str]:
        flags = list(self.cflags)
        if self.incdir and f"-I{self.incdir}" not in flags:
            flags.append(f"-I{self.incdir}")
        return flags

    def link_flags(self) -> List[str]:
        flags = list(self.libs)
        if self.libdir and f"-L{self.libdir}" not in flags:
            flags.insert(0, f"-L{self.libdir}")
        return flags


@dataclass(frozen=True)
class Toolchain:
    cc: str
    runtime: ExternalDependencyInfo
    cflags: Tuple[str, ...] = ()
    ldflags: Tuple[str, ...] = ()
    externals: Dict[str, ExternalDependencyInfo] = field(default_factory=dict)

    def env(self) -> Dict[str, str]:
        """Variáveis repassadas a comandos de build."""
        env = {"CC": self.cc, "CFLAGS": " ".join(self.cflags), "LIBFLAG": " ".join(self.ldflags)}
        if self.runtime.incdir:
            env["LUA_INCDIR"] = self.runtime.incdir
        if self.runtime.libdir:
            env["LUA_LIBDIR"] = self.runtime.libdir
        for name, info in self.externals.items():
            if info.incdir:
                env[f"{_env_prefix(name)}_INCDIR"] = info.incdir
            if info.libdir:
                env[f"{_env_prefix(name)}_LIBDIR"] = info.libdir
        return env


# Utilities ------------------------------------------------------------------


def _env_prefix(name: str) -> str:
    return re.sub(r"[^A-Za-z0-9]", "_", name).upper()


def _run(cmd: List[str]) -> subprocess.CompletedProcess:
    logger.debug("Executando: %s", " ".join(cmd))
    return subprocess.run(cmd, check=False, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)


def _pkg_config(module: str) -> Optional[Tuple[List[str], List[str]]]:
    if not shutil.which("pkg-config"):
        return None
    cflags = _run(["pkg-config", "--cflags", module])
    if cflags.returncode != 0:
        return None
    libs = _run(["pkg-config", "--libs", module])
    return cflags.stdout.split(), libs.stdout.split()


def _flag_dir(flags: List[str], prefix: str) -> Optional[str]:
    for f in flags:
        if f.startswith(prefix) and len(f) > len(prefix):
            return f[len(prefix):]
    return None


def _search_prefixes(header: Optional[str], library: Optional[str],
                     prefixes: List[str], subdirs: Tuple[str, ...] = ("",)) -> Optional[Tuple[str, Optional[str]]]:
    ext = config.get("shared_lib_extension") or "so"
    for prefix in prefixes:
        for sub in subdirs:
            incdir = os.path.join(prefix, "include", sub) if sub else os.path.join(prefix, "include")
            if header and not os.path.isfile(os.path.join(incdir, header)):
                continue
            if not header and not os.path.isdir(incdir):
                continue
            if not library:
                return incdir, None
            for libsub in ("lib", "lib64", "lib/x86_64-linux-gnu", "lib/aarch64-linux-gnu"):
                libdir = os.path.join(prefix, libsub)
                for cand in (f"lib{library}.{ext}", f"lib{library}.a"):
                    if os.path.exists(os.path.join(libdir, cand)):
                        return incdir, libdir
    return None


# Compiler -------------------------------------------------------------------


def detect_compiler(env: Optional[Mapping[str, str]] = None) -> str:
    env = os.environ if env is None else env
    if env.get("CC"):
        return env["CC"]
    for cand in ("cc", "gcc", "clang"):
        path = shutil.which(cand)
        if path:
            return path
    raise ToolchainError("Nenhum compilador C encontrado (defina CC ou instale cc/gcc/clang)")


# Runtime --------------------------------------------------------------------


def detect_runtime(env: Optional[Mapping[str, str]] = None,
                   prefixes: Optional[List[str]] = None) -> ExternalDependencyInfo:
    """
    Localiza lua.h e a biblioteca do runtime.
    Ordem: LUA_INCDIR/LUA_LIBDIR, pkg-config (config runtime_pkgconfig), prefixos padrão.
    """
    env = os.environ if env is None else env
    if env.get("LUA_INCDIR"):
        return ExternalDependencyInfo("lua", incdir=env["LUA_INCDIR"], libdir=env.get("LUA_LIBDIR"), origin="env")

    tried = ["LUA_INCDIR"]
    for module in config.get("runtime_pkgconfig") or []:
        tried.append(f"pkg-config {module}")
        found = _pkg_config(module)
        if found:
            cflags, libs = found
            logger.debug("Runtime via pkg-config %s", module)
            return ExternalDependencyInfo(
                "lua", incdir=_flag_dir(cflags, "-I"), libdir=_flag_dir(libs, "-L"),
                cflags=tuple(cflags), libs=tuple(libs), origin="pkg-config",
            )

    lua_version = str(config.get("lua_version") or "5.4")
    subdirs = (f"lua{lua_version}", f"lua-{lua_version}", "lua", "")
    hit = _search_prefixes("lua.h", None, prefixes or STANDARD_PREFIXES, subdirs)
    if hit:
        return ExternalDependencyInfo("lua", incdir=hit[0], origin="prefix")
    tried.extend(prefixes or STANDARD_PREFIXES)
    raise UnresolvedExternalDependency("lua", tried)


# External dependencies -----------------------------------------------------


def probe_external(name: str, hints: Optional[Mapping[str, str]] = None,
                   env: Optional[Mapping[str, str]] = None,
                   prefixes: Optional[List[str]] = None) -> ExternalDependencyInfo:
    """
    Resolve uma dependência externa declarada ({header, library} como dicas).
    """
    env = os.environ if env is None else env
    hints = hints or {}
    header = hints.get("header")
    library = hints.get("library")
    var = _env_prefix(name)

    if env.get(f"{var}_INCDIR") or env.get(f"{var}_LIBDIR"):
        return ExternalDependencyInfo(
            name, incdir=env.get(f"{var}_INCDIR"), libdir=env.get(f"{var}_LIBDIR"),
            libs=(f"-l{library}",) if library else (), origin="env",
        )
    if env.get(f"{var}_DIR"):
        base = env[f"{var}_DIR"]
        return ExternalDependencyInfo(
            name, incdir=os.path.join(base, "include"), libdir=os.path.join(base, "lib"),
            libs=(f"-l{library}",) if library else (), origin="env",
        )

    found = _pkg_config(name)
    if found:
        cflags, libs = found
        return ExternalDependencyInfo(
            name, incdir=_flag_dir(cflags, "-I"), libdir=_flag_dir(libs, "-L"),
            cflags=tuple(cflags), libs=tuple(libs), origin="pkg-config",
        )

    search = prefixes or STANDARD_PREFIXES
    if header or library:
        hit = _search_prefixes(header, library, search)
        if hit:
            incdir, libdir = hit
            return ExternalDependencyInfo(
                name, incdir=incdir, libdir=libdir,
                libs=(f"-l{library}",) if library else (), origin="prefix",
            )
    raise UnresolvedExternalDependency(name, [f"{var}_DIR", f"pkg-config {name}"] + list(search))


def detect_toolchain(external_dependencies: Optional[Mapping[str, Mapping[str, str]]] = None,
                     env: Optional[Mapping[str, str]] = None) -> Toolchain:
    """Compilador + runtime + dependências externas, tudo resolvido antes do build."""
    externals = {
        name: probe_external(name, hints, env=env)
        for name, hints in sorted((external_dependencies or {}).items())
    }
    tc = Toolchain(
        cc=detect_compiler(env),
        runtime=detect_runtime(env),
        cflags=tuple((config.get("cflags") or "").split()),
        ldflags=tuple((config.get("ldflags") or "").split()),
        externals=externals,
    )
    logger.debug("Toolchain: cc=%s runtime=%s", tc.cc, tc.runtime.incdir)
    return tc


# Verification suite --------------------------------------------------------


def _compile_and_run(code: str, compiler: str, extra: Optional[List[str]] = None) -> Tuple[bool, str]:
    """
    Compila código fonte (string) e executa binário, retornando (success, output-or-error).
    """
    tmpdir = tempfile.mkdtemp(prefix="lbuild-toolchain-")
    srcpath = os.path.join(tmpdir, "test.c")
    binpath = os.path.join(tmpdir, "a.out")
    try:
        with open(srcpath, "w", encoding="utf-8") as f:
            f.write(code)
        cmd = [compiler, srcpath, "-o", binpath] + list(extra or [])
        proc = _run(cmd)
        if proc.returncode != 0:
            return False, proc.stderr.strip() or proc.stdout.strip()
        runp = _run([binpath])
        if runp.returncode != 0:
            return False, runp.stderr.strip() or runp.stdout.strip()
        return True, runp.stdout.strip()
    except OSError as e:
        return False, str(e)
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


def _check_tool_version(tool: str) -> Tuple[bool, str]:
    path = shutil.which(tool)
    if not path:
        return False, "não encontrado"
    try:
        p = _run([path, "--version"])
    except OSError as e:
        return False, str(e)
    lines = (p.stdout or p.stderr or "").splitlines()
    return True, lines[0].strip() if lines else path


def verify_compiler(compiler: Optional[str] = None) -> Tuple[bool, str]:
    """Checagem rápida: compila e executa um hello.c."""
    try:
        compiler = compiler or detect_compiler()
    except ToolchainError as e:
        return False, str(e)
    code = '#include <stdio.h>\nint main(){puts("ok");return 0;}'
    ok, out = _compile_and_run(code, compiler)
    if not ok:
        logger.error("Verificação do compilador falhou: %s", out)
    return ok, out


def dependency_report() -> Dict[str, Dict[str, object]]:
    """
    Resumo das ferramentas de build disponíveis e do runtime (para o doctor).
    """
    tools = list(REPORT_TOOLS)
    grammar = config.get("grammar_compiler")
    if grammar and grammar not in tools:
        tools.append(grammar)
    report: Dict[str, Dict[str, object]] = {}
    for tool in tools:
        ok, info = _check_tool_version(tool)
        report[tool] = {"ok": ok, "info": info}
    try:
        rt = detect_runtime()
        report["lua-headers"] = {"ok": True, "info": f"{rt.incdir} ({rt.origin})"}
    except UnresolvedExternalDependency as e:
        report["lua-headers"] = {"ok": False, "info": str(e)}
    return report


__all__ = [
    "ToolchainError", "UnresolvedExternalDependency",
    "ExternalDependencyInfo", "Toolchain",
    "detect_compiler", "detect_runtime", "probe_external", "detect_toolchain",
    "verify_compiler", "dependency_report",
    "STANDARD_PREFIXES",
]
