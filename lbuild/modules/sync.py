import os
from dataclasses import dataclass, field
from typing import Iterable, List

from lbuild.modules import log
from lbuild.modules.graph import DependencyGraph
from lbuild.modules.tree import InstallTree

logger = log.get_logger("sync")


@dataclass
class SyncReport:
    added: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not self.added and not self.removed


def diff(tree: InstallTree, graph: DependencyGraph) -> SyncReport:
    """Compara árvore e lockfile sem alterar nada"""
    installed = set(tree.installed_ids())
    locked = set(graph.nodes)
    return SyncReport(added=sorted(locked - installed), removed=sorted(installed - locked))


def uninstall(tree: InstallTree, node_ids: Iterable[str]) -> List[str]:
    """Remove entradas da árvore; devolve as que existiam"""
    removed = []
    for nid in sorted(node_ids):
        if tree.remove(nid):
            removed.append(nid)
    return removed


def sync(tree: InstallTree, graph: DependencyGraph, dry_run: bool = False) -> SyncReport:
    """
    Alinha a árvore ao lockfile:
      - remove entradas que não estão no lock
      - lista em `added` os nós travados que ainda precisam de build
    """
    if not os.path.isdir(tree.root):
        return SyncReport(added=sorted(graph.nodes))
    report = diff(tree, graph)
    if not dry_run and report.removed:
        report.removed = uninstall(tree, report.removed)
        log.info("Sincronizado: %d entradas removidas de %s", len(report.removed), tree.root)
    return report


__all__ = ["SyncReport", "diff", "uninstall", "sync"]
