#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
modules/project.py — Operações de projeto (o que a CLI chama)

- install: trava de estado, reconciliação, resolução (total, parcial ou nenhuma),
  lockfile, build paralelo, integridade preenchida e tabela de carregamento
- add / remove: editam o lbuild.yaml e reinstalam
- update: re-resolve ignorando o lock anterior dos nomes dados (pinados ficam)
- pin / unpin, status (reconcile), sync, which
- pack: empacota uma entrada instalada em <nome>-<versão>.<arch|all>.rock (zip)
- OperationReport: ok/exit_code e linhas com falhas e pulos
"""

from __future__ import annotations

import json
import os
import platform
import zipfile
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from lbuild.modules import config, log, lockfile, runtime, utils
from lbuild.modules import sync as sync_mod
from lbuild.modules.backends import BackendRegistry, BuildToolFailure
from lbuild.modules.build import BuildOrchestrator, BuildReport
from lbuild.modules.dependency import DependencyResolver, explain
from lbuild.modules.graph import ROOT, DependencyGraph
from lbuild.modules.meta import (
    Manifest, ManifestError, PackageSpec, RepoIndex,
    add_dependency, load_index, load_manifest, local_entry, remove_dependency,
)
from lbuild.modules.sandbox import CancelToken
from lbuild.modules.statelock import StateLock
from lbuild.modules.tree import META_FILE, InstallTree

logger = log.get_logger("project")

PACK_DIRS = ("src", "lib", "bin", "conf", "doc")


class ProjectError(Exception):
    pass


# ---------------------------
# Relatório
# ---------------------------
@dataclass
class OperationReport:
    action: str
    graph: Optional[DependencyGraph] = None
    build: Optional[BuildReport] = None
    resolution: str = "unchanged"  # unchanged | partial | full | update
    sync: Optional[sync_mod.SyncReport] = None

    @property
    def ok(self) -> bool:
        return self.build is None or self.build.ok

    @property
    def exit_code(self) -> int:
        return 0 if self.ok else 1

    def lines(self) -> List[str]:
        out = []
        if self.build is None:
            return out
        for nid in self.build.failed():
            err = self.build[nid].error
            if isinstance(err, BuildToolFailure):
                out.append(f"failed  {nid}: [{err.backend}] exit {err.exit_status}: {err.diagnostic.strip()}")
            else:
                out.append(f"failed  {nid}: {type(err).__name__}: {err}")
        for nid in self.build.skipped():
            out.append(f"skipped {nid}: {self.build[nid].cause}")
        return out


# ---------------------------
# Projeto
# ---------------------------
class Project:
    def __init__(self, root: str = ".", index=None, tree_dir: Optional[str] = None,
                 registry: Optional[BackendRegistry] = None, jobs: Optional[int] = None,
                 timeout: Optional[float] = None, progress: Optional[Callable] = None):
        self.root = os.path.abspath(root)
        self.manifest_path = os.path.join(self.root, config.get("manifest_name"))
        self.lock_path = os.path.join(self.root, config.get("lockfile_name"))
        self.state_lock_path = os.path.join(self.root, config.get("state_lock_name"))
        self.tree = InstallTree(os.path.join(self.root, tree_dir or config.get("tree_dir")))
        self._index = index
        self.registry = registry
        self.jobs = jobs
        self.timeout = timeout
        self.progress = progress

    # Helpers ---------------------------------------------------------------
    def manifest(self) -> Manifest:
        return load_manifest(self.manifest_path)

    def state_lock(self) -> StateLock:
        return StateLock(self.state_lock_path)

    def index(self, manifest: Manifest):
        """Índice configurado mais entradas sintéticas para dependências locais (path:)."""
        if self._index is not None and not isinstance(self._index, str):
            idx = self._index
        else:
            path = self._index or manifest.index or config.get("index")
            idx = load_index(path) if path else RepoIndex()
        seen = set()
        queue = [s for specs in manifest.scopes().values() for s in specs]
        while queue:
            spec = queue.pop(0)
            src = spec.source
            if src is None or src.kind != "local" or src.key() in seen:
                continue
            seen.add(src.key())
            entry = local_entry(src.path)
            if entry.name != spec.name:
                raise ManifestError(f"{src.path} declara o pacote {entry.name}, esperado {spec.name}")
            if not any(e.node_id == entry.node_id for e in idx.query(entry.name)):
                idx.add_entry(entry)
            queue.extend(entry.dependencies + entry.build_dependencies)
        return idx

    def locked_graph(self) -> Optional[DependencyGraph]:
        return lockfile.read_path(self.lock_path)

    def status(self) -> lockfile.ReconcileResult:
        prior = self.locked_graph()
        if prior is None:
            return lockfile.NeedsFullResolve("sem lockfile")
        return lockfile.reconcile(prior, self.manifest())

    # Lock -------------------------------------------------------------------
    def _lock(self, update: Optional[Iterable[str]] = None) -> Tuple[DependencyGraph, str]:
        manifest = self.manifest()
        prior = self.locked_graph()
        resolver = DependencyResolver(self.index(manifest))

        if prior is not None and update is not None:
            names = list(update) or sorted({n.name for n in prior})
            logger.info("Atualizando: %s", ", ".join(names))
            graph, mode = resolver.resolve(manifest, prior, update=names), "update"
        elif prior is None:
            graph, mode = resolver.resolve(manifest), "full"
        else:
            status = lockfile.reconcile(prior, manifest)
            if isinstance(status, lockfile.Unchanged):
                return prior, "unchanged"
            if isinstance(status, lockfile.NeedsPartialResolve):
                graph = resolver.resolve(manifest, lockfile.prior_for(prior, status.names))
                mode = "partial"
            else:
                logger.info("Resolução completa: %s", status.reason)
                graph, mode = resolver.resolve(manifest), "full"

        if graph != prior:
            lockfile.write(graph, self.lock_path).save()
        return graph, mode

    def lock(self, update: Optional[Iterable[str]] = None) -> OperationReport:
        with self.state_lock():
            graph, mode = self._lock(update)
        return OperationReport("lock", graph=graph, resolution=mode)

    # Install ----------------------------------------------------------------
    def _orchestrator(self, force: bool) -> BuildOrchestrator:
        orch = BuildOrchestrator(self.tree, registry=self.registry, jobs=self.jobs,
                                 timeout=self.timeout, force=force)
        if self.progress:
            orch.add_progress_cb(self.progress)
        return orch

    def install(self, force: bool = False, cancel: Optional[CancelToken] = None,
                update: Optional[Iterable[str]] = None, action: str = "install") -> OperationReport:
        with self.state_lock():
            graph, mode = self._lock(update)
            report = self._orchestrator(force).build(graph, cancel)

            # integridade só é registrada quando ainda não existe (ou a fonte é local)
            fill: Dict[str, str] = {}
            for nid, h in report.integrity().items():
                node = graph[nid]
                if node.integrity is None or (node.source.kind == "local" and node.integrity != h):
                    fill[nid] = h
            if fill:
                graph = graph.with_integrity(fill)
                lockfile.write(graph, self.lock_path).save()

            runtime.write_loader_table(self.tree.loader_path, runtime.loader_table(graph, self.tree))

        result = OperationReport(action, graph=graph, build=report, resolution=mode)
        for line in result.lines():
            logger.warning(line)
        return result

    def build(self, force: bool = False, cancel: Optional[CancelToken] = None) -> OperationReport:
        return self.install(force=force, cancel=cancel, action="build")

    def add(self, spec_text: str, kind: str = "regular", **spec_fields) -> OperationReport:
        spec = PackageSpec.from_string(spec_text)
        if spec_fields:
            spec = PackageSpec(name=spec.name, constraint=spec.constraint, **spec_fields)
        add_dependency(self.manifest_path, spec, kind)
        return self.install(action="add")

    def remove(self, name: str, kind: str = "regular") -> OperationReport:
        if not remove_dependency(self.manifest_path, name, kind):
            raise ProjectError(f"{name} não é uma dependência direta ({kind})")
        result = self.install(action="remove")
        result.sync = self.sync()
        return result

    def update(self, names: Optional[Iterable[str]] = None, force: bool = False) -> OperationReport:
        return self.install(force=force, update=list(names or []), action="update")

    # Pin ------------------------------------------------------------------
    def _set_pinned(self, name: str, pinned: bool) -> None:
        with self.state_lock():
            if not os.path.isfile(self.lock_path):
                raise ProjectError("Nenhum lockfile; rode install primeiro")
            lockfile.set_pinned(lockfile.load(self.lock_path), name, pinned).save()

    def pin(self, name: str) -> None:
        self._set_pinned(name, True)

    def unpin(self, name: str) -> None:
        self._set_pinned(name, False)

    # Árvore -----------------------------------------------------------------
    def sync(self, dry_run: bool = False) -> sync_mod.SyncReport:
        with self.state_lock():
            graph = self.locked_graph()
            if graph is None:
                raise ProjectError("Nenhum lockfile; rode install primeiro")
            return sync_mod.sync(self.tree, graph, dry_run=dry_run)

    def which(self, name: str, requirer: Optional[str] = None) -> Optional[str]:
        table = runtime.read_loader_table(self.tree.loader_path)
        return runtime.lookup(table, requirer or ROOT, name)

    def explain(self, name: str) -> Dict[str, List[List[str]]]:
        graph = self.locked_graph()
        if graph is None:
            raise ProjectError("Nenhum lockfile; rode install primeiro")
        return explain(graph, name)

    # Pacote -----------------------------------------------------------------
    def pack(self, name: str, dest: Optional[str] = None) -> str:
        """
        Empacota a entrada instalada de `name` (a maior versão travada)
        em <dest>/<nome>-<versão>.<arch|all>.rock.
        Sem arquivos em lib/ o pacote é puro Lua e leva o sufixo "all".
        """
        graph = self.locked_graph()
        if graph is None:
            raise ProjectError("Nenhum lockfile; rode install primeiro")
        nodes = sorted(graph.by_name(name), key=lambda n: n.version)
        if not nodes:
            raise ProjectError(f"Pacote {name} não está no lockfile")
        node = nodes[-1]
        if not self.tree.is_installed(node.id):
            raise ProjectError(f"{node.id} não está instalado; rode install primeiro")

        entry = self.tree.entry_path(node.id)
        files = []
        for sub in PACK_DIRS:
            base = os.path.join(entry, sub)
            for root, _, names in os.walk(base):
                for fn in sorted(names):
                    path = os.path.join(root, fn)
                    files.append((os.path.relpath(path, entry).replace(os.sep, "/"), path))
        binary = any(rel.startswith("lib/") for rel, _ in files)
        arch = f"{platform.system().lower()}-{platform.machine()}" if binary else "all"

        dest = os.path.abspath(dest or self.root)
        utils.ensure_dir(dest)
        out = os.path.join(dest, f"{node.name}-{node.version}.{arch}.rock")
        manifest = {rel: utils.sha256_file(path) for rel, path in files}
        with zipfile.ZipFile(out, "w", zipfile.ZIP_DEFLATED) as zf:
            for rel, path in sorted(files):
                zf.write(path, rel)
            zf.write(self.tree.meta_path(node.id), META_FILE)
            zf.writestr("rock_manifest.json", json.dumps(manifest, indent=2, sort_keys=True) + "\n")
        logger.info("Empacotado %s em %s (%d arquivos)", node.id, out, len(files))
        return out


__all__ = ["ProjectError", "OperationReport", "Project"]
