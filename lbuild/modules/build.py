
# build.py
"""
Orquestrador de build do lbuild.

Funcionalidades principais:
- constrói os nós do grafo resolvido em paralelo (ThreadPoolExecutor limitado por jobs)
- um nó só é despachado quando todas as dependências (normais e de build) tiveram sucesso
- falha de um nó marca os dependentes transitivos como skipped; o resto continua
- cache: nó instalado com a mesma integridade é reaproveitado (force reconstrói)
- fetch + patches + backend (prepare, build, install) em sandbox por nó
- staging em <tree>/.staging e publicação atômica; nada parcial é publicado
- timeout por build, cancelamento (wait | terminate), integridade fail-closed
- hooks de progresso cb(evento, dados)
"""

from __future__ import annotations

import os
import time
import uuid
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from lbuild.modules import config, log
from lbuild.modules import fetch
from lbuild.modules.backends import BackendRegistry, BuildContext, default_registry
from lbuild.modules.graph import DependencyGraph
from lbuild.modules.lockfile import compute_integrity
from lbuild.modules.sandbox import BuildCancelled, CancelToken, Sandbox
from lbuild.modules.tree import InstallTree

logger = log.get_logger("build")

BUILT = "built"
CACHED = "cached"
FAILED = "failed"
SKIPPED = "skipped"

CANCELLED_CAUSE = "cancelled"


class BuildError(Exception):
    pass


# Resultados -----------------------------------------------------------------
@dataclass(frozen=True)
class BuildResult:
    node: str
    status: str
    integrity: Optional[str] = None
    error: Optional[BaseException] = None
    cause: Optional[str] = None
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status in (BUILT, CACHED)

    def describe(self) -> str:
        if self.status == FAILED:
            return f"{self.node}: failed ({type(self.error).__name__}: {self.error})"
        if self.status == SKIPPED:
            return f"{self.node}: skipped ({self.cause})"
        return f"{self.node}: {self.status}"


@dataclass
class BuildReport:
    results: Dict[str, BuildResult] = field(default_factory=dict)
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return all(r.ok for r in self.results.values())

    def _with(self, *statuses: str) -> List[str]:
        return sorted(nid for nid, r in self.results.items() if r.status in statuses)

    def succeeded(self) -> List[str]:
        return self._with(BUILT, CACHED)

    def built(self) -> List[str]:
        return self._with(BUILT)

    def cached(self) -> List[str]:
        return self._with(CACHED)

    def failed(self) -> List[str]:
        return self._with(FAILED)

    def skipped(self) -> List[str]:
        return self._with(SKIPPED)

    def integrity(self) -> Dict[str, str]:
        return {nid: r.integrity for nid, r in self.results.items() if r.ok and r.integrity}

    def __getitem__(self, nid: str) -> BuildResult:
        return self.results[nid]

    def lines(self) -> List[str]:
        return [self.results[nid].describe() for nid in sorted(self.results)]


# Orquestrador ----------------------------------------------------------------
class BuildOrchestrator:
    def __init__(self, tree: InstallTree,
                 registry: Optional[BackendRegistry] = None,
                 jobs: Optional[int] = None,
                 timeout: Optional[float] = None,
                 cancel_policy: Optional[str] = None,
                 force: bool = False,
                 keep_sandbox: bool = False,
                 sandbox_dir: Optional[str] = None,
                 logs_dir: Optional[str] = None):
        self.tree = tree
        self.registry = registry or default_registry()
        self.jobs = max(1, int(jobs or config.get("jobs") or os.cpu_count() or 1))
        self.timeout = timeout if timeout is not None else config.get("build_timeout")
        self.cancel_policy = cancel_policy or config.get("cancel_policy") or "wait"
        self.force = force
        self.keep_sandbox = keep_sandbox
        self.sandbox_dir = sandbox_dir or config.get("sandbox_dir")
        self.logs_dir = logs_dir or os.path.join(config.get("log_dir"), "builds")
        self._progress_callbacks: List[Callable[[str, Dict], None]] = []

    # ---------------------------
    # Progress hooks
    # ---------------------------
    def add_progress_cb(self, cb: Callable[[str, Dict], None]) -> None:
        """Registra callback de progresso: cb(evento, dados)."""
        if callable(cb):
            self._progress_callbacks.append(cb)

    def _emit(self, event: str, data: Optional[Dict] = None) -> None:
        payload = data or {}
        payload["_ts"] = int(time.time())
        logger.debug("emit: %s %s", event, payload)
        for cb in list(self._progress_callbacks):
            try:
                cb(event, payload)
            except Exception:
                logger.exception("progress cb failed")

    # ---------------------------
    # Um nó
    # ---------------------------
    def _build_worker(self, graph: DependencyGraph, nid: str, cancel: CancelToken) -> BuildResult:
        """
        Constrói um nó; exceções viram BuildResult(failed) para o pool continuar.
        """
        node = graph[nid]
        nlog = log.for_node(logger, nid)
        start = time.monotonic()
        self._emit("build.start", {"node": nid})

        sb = None
        staging = None
        try:
            expected = node.integrity
            if node.source.kind == "local" and os.path.isdir(node.source.path or ""):
                # fonte local muda sem mudar de versão: compara com o conteúdo atual
                expected = compute_integrity(node.source.path)
            if not self.force and self.tree.is_cached(nid, expected):
                meta = self.tree.read_meta(nid) or {}
                nlog.info("em cache")
                self._emit("build.done", {"node": nid, "cached": True})
                return BuildResult(nid, CACHED, integrity=meta.get("integrity") or expected,
                                   duration=time.monotonic() - start)

            workdir = os.path.join(self.sandbox_dir, f"{nid}-{uuid.uuid4().hex[:8]}")
            sb = Sandbox(workdir, timeout=self.timeout, cancel=cancel, logs_dir=self.logs_dir)
            staging = self.tree.new_staging()
            fetched = fetch.fetch_source(node, workdir)
            fetch.apply_patches(node, fetched.path)
            backend = self.registry.get(node.build.kind)
            ctx = BuildContext(node=node, source_dir=fetched.path, staging=staging, sandbox=sb,
                               deps=self._dependency_paths(graph, node))
            for phase in ("prepare", "build", "install"):
                if cancel.terminate:
                    raise BuildCancelled(nid)
                nlog.debug("fase %s", phase)
                getattr(backend, phase)(ctx)
            if cancel.terminate:
                raise BuildCancelled(nid)
            self.tree.publish(staging, node, fetched.integrity)
            self._emit("build.done", {"node": nid})
            return BuildResult(nid, BUILT, integrity=fetched.integrity, duration=time.monotonic() - start)
        except Exception as e:
            nlog.error("build falhou: %s", e)
            nlog.debug("detalhes", exc_info=True)
            self._emit("build.error", {"node": nid, "err": str(e)})
            return BuildResult(nid, FAILED, error=e, duration=time.monotonic() - start)
        finally:
            if staging is not None:
                self.tree.discard(staging)
            if sb is not None and not self.keep_sandbox:
                sb.cleanup()

    def _dependency_paths(self, graph: DependencyGraph, node) -> Dict[str, str]:
        """
        Nome -> entrada na árvore para o ambiente do build.
        Com o mesmo nome nos dois escopos, vence a dependência de build.
        """
        paths = {graph[d].name: self.tree.entry_path(d) for d in node.dependencies if d in graph}
        paths.update({graph[d].name: self.tree.entry_path(d) for d in node.build_dependencies if d in graph})
        return paths

    # ---------------------------
    # Grafo inteiro
    # ---------------------------
    def _skip(self, report: BuildReport, nid: str, cause: str) -> None:
        report.results[nid] = BuildResult(nid, SKIPPED, cause=cause)
        logger.warning("Pulando %s (%s)", nid, cause)
        self._emit("build.skip", {"node": nid, "cause": cause})

    def build(self, graph: DependencyGraph, cancel: Optional[CancelToken] = None) -> BuildReport:
        cancel = cancel or CancelToken(self.cancel_policy)
        order = graph.topological_order()
        deps = {nid: [d for d in graph[nid].requires if d in graph] for nid in order}
        pending = list(order)
        report = BuildReport()
        self._emit("build.queue", {"total": len(order)})
        logger.info("Construindo %d pacotes (jobs=%d)", len(order), self.jobs)

        with ThreadPoolExecutor(max_workers=self.jobs) as pool:
            running = {}
            while pending or running:
                if cancel.cancelled:
                    for nid in pending:
                        self._skip(report, nid, CANCELLED_CAUSE)
                    pending = []
                else:
                    # falhas propagam em ordem topológica; uma passada resolve a cascata
                    for nid in list(pending):
                        bad = [d for d in deps[nid] if d in report.results and not report.results[d].ok]
                        if bad:
                            first = report.results[bad[0]]
                            cause = first.cause if first.status == SKIPPED else first.node
                            self._skip(report, nid, cause)
                            pending.remove(nid)
                    ready = sorted(nid for nid in pending
                                   if all(d in report.results and report.results[d].ok for d in deps[nid]))
                    for nid in ready:
                        if len(running) >= self.jobs:
                            break
                        running[pool.submit(self._build_worker, graph, nid, cancel)] = nid
                        pending.remove(nid)

                if not running:
                    if pending and not cancel.cancelled:
                        raise BuildError(f"Nenhum pacote pronto para build: {', '.join(pending)}")
                    continue
                done, _ = wait(running, return_when=FIRST_COMPLETED)
                for fut in done:
                    nid = running.pop(fut)
                    report.results[nid] = fut.result()
                    self._emit("build.progress", {
                        "node": nid, "ok": report.results[nid].ok,
                        "completed": len(report.results), "total": len(order),
                    })

        report.cancelled = cancel.cancelled
        self.tree.clean_staging()
        logger.info("Build: %d ok, %d falhas, %d pulados",
                    len(report.succeeded()), len(report.failed()), len(report.skipped()))
        return report


__all__ = [
    "BuildError", "BuildResult", "BuildReport", "BuildOrchestrator",
    "BUILT", "CACHED", "FAILED", "SKIPPED", "CANCELLED_CAUSE",
]
