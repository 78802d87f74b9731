#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
cli.py — CLI do lbuild (projeto: lbuild.yaml + lbuild.lock + lua_modules/)

Comandos: install, build, add, remove, update, lock, pin, unpin, sync,
tree, which, pack, doctor, config.
"""

from __future__ import annotations
import argparse
import json
import signal
import sys
from typing import Any

from lbuild.modules import config as config_mod
from lbuild.modules import log as log_mod
from lbuild.modules import toolchain as toolchain_mod
from lbuild.modules.dependency import ResolutionError
from lbuild.modules.graph import ROOT
from lbuild.modules.lockfile import LockfileError, NeedsPartialResolve
from lbuild.modules.meta import ManifestError
from lbuild.modules.project import OperationReport, Project, ProjectError
from lbuild.modules.runtime import LoaderError
from lbuild.modules.sandbox import CancelToken
from lbuild.modules.statelock import Busy

# ANSI colors simples
C = {
    "reset": "\033[0m",
    "red": "\033[31m",
    "green": "\033[32m",
    "yellow": "\033[33m",
    "cyan": "\033[36m",
    "bold": "\033[1m",
}

# erros esperados: mensagem curta, sem traceback
EXPECTED_ERRORS = (ResolutionError, LockfileError, ManifestError, ProjectError, Busy, LoaderError,
                   toolchain_mod.ToolchainError, config_mod.ConfigError)

logger = log_mod.get_logger("cli")


def color(text: str, col: str) -> str:
    if not sys.stdout.isatty():
        return text
    return f"{C.get(col, '')}{text}{C['reset']}"


def _print_json_or_plain(data: Any, as_json: bool) -> None:
    if as_json:
        print(json.dumps(data, ensure_ascii=False, indent=2))
    else:
        if isinstance(data, dict):
            for k, v in data.items():
                print(f"{color(str(k), 'cyan')}: {v}")
        elif isinstance(data, list):
            for item in data:
                print(item)
        else:
            print(data)


def _setup_logging(verbose: bool) -> None:
    log_mod.set_level("debug" if verbose else "info")


def _error(msg: str) -> None:
    print(color(f"[ERRO] {msg}", "red"), file=sys.stderr)


def _project(args) -> Project:
    return Project(
        getattr(args, "project", None) or ".",
        index=getattr(args, "index", None),
        jobs=getattr(args, "jobs", None),
        timeout=getattr(args, "timeout", None),
    )


def _report(report: OperationReport, as_json: bool) -> int:
    b = report.build
    if as_json:
        _print_json_or_plain({
            "action": report.action,
            "resolution": report.resolution,
            "ok": report.ok,
            "built": b.built() if b else [],
            "cached": b.cached() if b else [],
            "failed": b.failed() if b else [],
            "skipped": b.skipped() if b else [],
            "problems": report.lines(),
        }, True)
        return report.exit_code
    if b is not None:
        print(f"{report.action}: resolução {report.resolution}, "
              f"{len(b.built())} construídos, {len(b.cached())} em cache")
    for line in report.lines():
        print(color(line, "red" if line.startswith("failed") else "yellow"), file=sys.stderr)
    if report.ok:
        print(color(f"[OK] {report.action} concluído", "green"))
    else:
        _error(f"{report.action} terminou com falhas")
    return report.exit_code


def _with_cancel(args, fn):
    """Ctrl-C cancela (wait); um segundo Ctrl-C passa a terminar os processos."""
    cancel = CancelToken(getattr(args, "cancel_policy", None) or config_mod.get("cancel_policy"))

    def handler(signum, frame):
        cancel.cancel("terminate" if cancel.cancelled else None)

    prev = signal.signal(signal.SIGINT, handler)
    try:
        return fn(cancel)
    finally:
        signal.signal(signal.SIGINT, prev)


# ---------------------------
# Command handlers
# ---------------------------

def cmd_install(args):
    """
    lbuild install [--force]
    """
    project = _project(args)
    report = _with_cancel(args, lambda cancel: project.install(force=args.force, cancel=cancel))
    return _report(report, args.json)


def cmd_build(args):
    """
    lbuild build [--force]
    """
    project = _project(args)
    report = _with_cancel(args, lambda cancel: project.build(force=args.force, cancel=cancel))
    return _report(report, args.json)


def cmd_add(args):
    """
    lbuild add "<pkg> [restrição]" [--build|--test] [--opt] [--pin]
    """
    kind = "build" if args.build else "test" if args.test else "regular"
    fields = {}
    if args.opt:
        fields["optional"] = True
    if args.pin:
        fields["pinned"] = True
    report = _project(args).add(" ".join(args.spec), kind=kind, **fields)
    return _report(report, args.json)


def cmd_remove(args):
    kind = "build" if args.build else "test" if args.test else "regular"
    report = _project(args).remove(args.pkg, kind=kind)
    if report.sync and report.sync.removed:
        print(f"Removidos da árvore: {', '.join(report.sync.removed)}")
    return _report(report, args.json)


def cmd_update(args):
    """
    lbuild update [pkg ...]   (sem nomes: todos os não pinados)
    """
    project = _project(args)
    report = _with_cancel(args, lambda cancel: project.install(update=args.pkgs, cancel=cancel, action="update"))
    return _report(report, args.json)


def cmd_lock(args):
    """
    lbuild lock [--check]
    """
    project = _project(args)
    if args.check:
        status = project.status()
        data = {"status": status.status}
        if isinstance(status, NeedsPartialResolve):
            data["names"] = list(status.names)
        elif hasattr(status, "reason"):
            data["reason"] = status.reason
        _print_json_or_plain(data, args.json)
        return 0 if status.status == "unchanged" else 1
    report = project.lock()
    _print_json_or_plain({"resolution": report.resolution, "packages": len(report.graph)}, args.json)
    return 0


def cmd_pin(args):
    _project(args).pin(args.pkg)
    print(color(f"[OK] {args.pkg} pinado", "green"))
    return 0


def cmd_unpin(args):
    _project(args).unpin(args.pkg)
    print(color(f"[OK] {args.pkg} despinado", "green"))
    return 0


def cmd_sync(args):
    rep = _project(args).sync(dry_run=args.dry_run)
    _print_json_or_plain({"removed": rep.removed, "missing": rep.added}, args.json)
    if rep.added and not args.json:
        print(color("Pacotes faltando na árvore; rode `lbuild install`", "yellow"))
    return 0


def cmd_tree(args):
    """
    lbuild tree [pkg]   (sem nome: lista o grafo travado; com nome: cadeias de requerentes)
    """
    project = _project(args)
    if args.pkg:
        chains = project.explain(args.pkg)
        if not chains:
            _error(f"{args.pkg} não está no lockfile")
            return 1
        data = {nid: [" -> ".join(c) for c in paths] for nid, paths in chains.items()}
        _print_json_or_plain(data, args.json)
        return 0
    graph = project.locked_graph()
    if graph is None:
        _error("Nenhum lockfile; rode install primeiro")
        return 1
    installed = set(project.tree.installed_ids())
    if args.json:
        _print_json_or_plain({n.id: {"dependencies": list(n.dependencies),
                                     "build_dependencies": list(n.build_dependencies),
                                     "installed": n.id in installed,
                                     "pinned": n.pinned} for n in graph}, True)
        return 0
    for r in sorted(graph.roots, key=lambda r: (r.kind, r.name)):
        print(f"{color(r.kind, 'cyan')} {r.name} {r.constraint} -> {r.node}")
    for n in graph:
        flags = "".join(["*" if n.id in installed else " ", "P" if n.pinned else " "])
        deps = ", ".join(n.dependencies + tuple(f"{d} (build)" for d in n.build_dependencies))
        print(f"[{flags}] {n.id}" + (f": {deps}" if deps else ""))
    return 0


def cmd_which(args):
    path = _project(args).which(args.pkg, requirer=args.requirer or ROOT)
    if path is None:
        _error(f"{args.pkg} não é visível para {args.requirer or ROOT}")
        return 1
    print(path)
    return 0


def cmd_pack(args):
    out = _project(args).pack(args.pkg, dest=args.dest)
    if args.json:
        _print_json_or_plain({"rock": out}, True)
    else:
        print(out)
    return 0


def cmd_doctor(args):
    report = toolchain_mod.dependency_report()
    ok, out = toolchain_mod.verify_compiler()
    report["compiler-run"] = {"ok": ok, "info": out}
    if args.json:
        _print_json_or_plain(report, True)
    else:
        for name, item in report.items():
            mark = color("OK", "green") if item["ok"] else color("FALTA", "yellow")
            print(f"{name:14} {mark}  {item['info']}")
    return 0 if report["compiler-run"]["ok"] else 1


def cmd_config(args):
    """
    lbuild config get <key>
    lbuild config set <key> <value> [--system]
    lbuild config list
    lbuild config reset [--system]
    """
    act = args.action
    if act == "get":
        if not args.key:
            print("Uso: lbuild config get <chave>")
            return 1
        print(config_mod.get(args.key))
        return 0
    elif act == "set":
        if not args.key or args.value is None:
            print("Uso: lbuild config set <chave> <valor> [--system]")
            return 1
        config_mod.set(args.key, args.value, system=args.system)
        print(f"[OK] Configuração '{args.key}' definida para '{args.value}' ({'global' if args.system else 'usuário'})")
        return 0
    elif act == "list":
        _print_json_or_plain(config_mod.all(), args.json)
        return 0
    elif act == "reset":
        config_mod.reset(system=args.system)
        print(f"[OK] Configuração restaurada para padrões {'globais' if args.system else 'de usuário'}")
        return 0
    print("Ação desconhecida:", act)
    return 1


# -----------------------------------------------------------------------------
# Build argument parser and connect commands
# -----------------------------------------------------------------------------

def _kind_flags(sp) -> None:
    g = sp.add_mutually_exclusive_group()
    g.add_argument("--build", action="store_true", help="Dependência de build")
    g.add_argument("--test", action="store_true", help="Dependência de teste")


def build_parser():
    p = argparse.ArgumentParser(prog="lbuild", description="lbuild - resolução, lock e build de pacotes Lua")
    p.add_argument("--verbose", "-v", action="store_true", help="Modo verboso")
    p.add_argument("--json", action="store_true", help="Imprime JSON quando aplicável")
    p.add_argument("--project", "-C", default=".", help="Diretório do projeto (com lbuild.yaml)")
    p.add_argument("--index", default=None, help="Índice de pacotes (arquivo ou diretório)")
    p.add_argument("--jobs", "-j", type=int, default=None, help="Builds em paralelo")
    p.add_argument("--timeout", type=float, default=None, help="Timeout por build (segundos)")
    p.add_argument("--cancel-policy", choices=["wait", "terminate"], default=None)
    sub = p.add_subparsers(dest="command")

    si = sub.add_parser("install", aliases=["i"], help="Resolver, travar e construir o projeto")
    si.add_argument("--force", action="store_true", help="Reconstruir mesmo com cache")
    si.set_defaults(func=cmd_install)

    sb = sub.add_parser("build", aliases=["b"], help="Construir o projeto (igual a install)")
    sb.add_argument("--force", action="store_true")
    sb.set_defaults(func=cmd_build)

    sa = sub.add_parser("add", help="Adicionar dependência direta")
    sa.add_argument("spec", nargs="+", help='ex: lpeg ">= 1.0"')
    _kind_flags(sa)
    sa.add_argument("--opt", action="store_true", help="Dependência opcional")
    sa.add_argument("--pin", action="store_true", help="Pinar a versão escolhida")
    sa.set_defaults(func=cmd_add)

    sr = sub.add_parser("remove", aliases=["rm"], help="Remover dependência direta")
    sr.add_argument("pkg")
    _kind_flags(sr)
    sr.set_defaults(func=cmd_remove)

    sup = sub.add_parser("update", aliases=["upd"], help="Atualizar dependências não pinadas")
    sup.add_argument("pkgs", nargs="*")
    sup.set_defaults(func=cmd_update)

    sl = sub.add_parser("lock", help="Atualizar lockfile sem construir")
    sl.add_argument("--check", action="store_true", help="Só mostrar se o lock está em dia")
    sl.set_defaults(func=cmd_lock)

    sp = sub.add_parser("pin", help="Pinar pacote no lockfile")
    sp.add_argument("pkg")
    sp.set_defaults(func=cmd_pin)

    su = sub.add_parser("unpin", help="Despinar pacote no lockfile")
    su.add_argument("pkg")
    su.set_defaults(func=cmd_unpin)

    ss = sub.add_parser("sync", help="Remover da árvore o que não está no lockfile")
    ss.add_argument("--dry-run", action="store_true")
    ss.set_defaults(func=cmd_sync)

    st = sub.add_parser("tree", help="Mostrar grafo travado / por que um pacote está lá")
    st.add_argument("pkg", nargs="?")
    st.set_defaults(func=cmd_tree)

    sw = sub.add_parser("which", help="Caminho carregado para um pacote")
    sw.add_argument("pkg")
    sw.add_argument("--requirer", default=None, help="Id do nó requisitante (padrão: projeto)")
    sw.set_defaults(func=cmd_which)

    sk = sub.add_parser("pack", help="Empacotar pacote instalado em .rock")
    sk.add_argument("pkg")
    sk.add_argument("--dest", default=None, help="Diretório de saída (padrão: raiz do projeto)")
    sk.set_defaults(func=cmd_pack)

    sd = sub.add_parser("doctor", help="Verificar ferramentas de build e compilador")
    sd.set_defaults(func=cmd_doctor)

    sc = sub.add_parser("config", help="Gerenciar configuração do lbuild")
    sc.add_argument("action", choices=["get", "set", "list", "reset"], help="Ação sobre a configuração")
    sc.add_argument("key", nargs="?", help="Chave da configuração")
    sc.add_argument("value", nargs="?", help="Valor (para set)")
    sc.add_argument("--system", action="store_true", help="Salvar/operar no config global (/etc)")
    sc.set_defaults(func=cmd_config)

    return p


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        sys.exit(1)

    _setup_logging(getattr(args, "verbose", False))

    try:
        rc = args.func(args)
    except EXPECTED_ERRORS as e:
        _error(str(e))
        sys.exit(2)
    except Exception as e:
        logger.exception("Erro ao executar comando")
        _error(str(e))
        sys.exit(1)
    sys.exit(rc if isinstance(rc, int) else 0)


__all__ = ["main", "build_parser"]


if __name__ == "__main__":
    main()
