"""
Grafo de dependências resolvido.

ResolvedPackage é o nó (identidade = nome, versão, fonte); DependencyGraph
guarda os nós, as arestas (dependências normais e de build) e os requisitos
diretos do projeto por escopo. O grafo é imutável: operações de atualização
devolvem um grafo novo.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Set, Tuple

from lbuild.modules.meta import DefaultBuild, SourceLocation, node_id
from lbuild.modules.version import Version

ROOT = "<root>"


@dataclass(frozen=True)
class ResolvedPackage:
    name: str
    version: Version
    source: SourceLocation = field(default_factory=SourceLocation)
    build: object = field(default_factory=DefaultBuild)
    integrity: Optional[str] = None
    dependencies: Tuple[str, ...] = ()
    build_dependencies: Tuple[str, ...] = ()
    scopes: Tuple[str, ...] = ()
    pinned: bool = False
    optional: bool = False
    patches: Tuple[str, ...] = ()

    @property
    def id(self) -> str:
        return node_id(self.name, self.version, self.source)

    @property
    def requires(self) -> Tuple[str, ...]:
        """Todas as arestas de saída (runtime + build), sem duplicatas."""
        return tuple(dict.fromkeys(self.dependencies + self.build_dependencies))

    def __str__(self) -> str:
        return self.id


@dataclass(frozen=True)
class RootRequirement:
    kind: str
    name: str
    constraint: str
    node: str
    source: Optional[SourceLocation] = None
    optional: bool = False
    pinned: bool = False


class GraphError(Exception):
    pass


class DependencyGraph:
    def __init__(self, nodes: Iterable[ResolvedPackage] = (), roots: Iterable[RootRequirement] = ()):
        self._nodes: Dict[str, ResolvedPackage] = {}
        for n in sorted(nodes, key=lambda n: n.id):
            self._nodes[n.id] = n
        self.roots: Tuple[RootRequirement, ...] = tuple(roots)

    # -- acesso ---------------------------------------------------------
    @property
    def nodes(self) -> Mapping[str, ResolvedPackage]:
        return self._nodes

    def __getitem__(self, nid: str) -> ResolvedPackage:
        return self._nodes[nid]

    def __contains__(self, nid: str) -> bool:
        return nid in self._nodes

    def __iter__(self) -> Iterator[ResolvedPackage]:
        return iter(self._nodes.values())

    def __len__(self) -> int:
        return len(self._nodes)

    def __eq__(self, other) -> bool:
        if not isinstance(other, DependencyGraph):
            return NotImplemented
        return self._nodes == other._nodes and sorted(self.roots, key=_root_key) == sorted(other.roots, key=_root_key)

    def __repr__(self) -> str:
        return f"DependencyGraph({', '.join(self._nodes)})"

    def by_name(self, name: str) -> List[ResolvedPackage]:
        return [n for n in self._nodes.values() if n.name == name]

    def roots_for(self, kind: Optional[str] = None) -> List[RootRequirement]:
        return [r for r in self.roots if kind is None or r.kind == kind]

    def edges(self) -> List[Tuple[str, str, str]]:
        out = []
        for n in self._nodes.values():
            out.extend((n.id, d, "regular") for d in n.dependencies)
            out.extend((n.id, d, "build") for d in n.build_dependencies)
        return out

    # -- navegação ------------------------------------------------------
    def dependents_of(self, nid: str) -> Set[str]:
        return {n.id for n in self._nodes.values() if nid in n.requires}

    def transitive_dependents(self, nid: str) -> Set[str]:
        reverse: Dict[str, Set[str]] = {}
        for n in self._nodes.values():
            for d in n.requires:
                reverse.setdefault(d, set()).add(n.id)
        seen: Set[str] = set()
        queue = deque([nid])
        while queue:
            cur = queue.popleft()
            for dep in reverse.get(cur, ()):
                if dep not in seen:
                    seen.add(dep)
                    queue.append(dep)
        return seen

    def reachable_from(self, nids: Iterable[str]) -> Set[str]:
        seen: Set[str] = set()
        stack = list(nids)
        while stack:
            cur = stack.pop()
            if cur in seen or cur not in self._nodes:
                continue
            seen.add(cur)
            stack.extend(self._nodes[cur].requires)
        return seen

    def topological_order(self) -> List[str]:
        """Ordem de build (dependências primeiro), Kahn determinístico."""
        indeg = {nid: 0 for nid in self._nodes}
        reverse: Dict[str, List[str]] = {nid: [] for nid in self._nodes}
        for n in self._nodes.values():
            for d in n.requires:
                if d in self._nodes:
                    indeg[n.id] += 1
                    reverse[d].append(n.id)
        ready = sorted(nid for nid, k in indeg.items() if k == 0)
        order = []
        while ready:
            cur = ready.pop(0)
            order.append(cur)
            for nxt in sorted(reverse[cur]):
                indeg[nxt] -= 1
                if indeg[nxt] == 0:
                    ready.append(nxt)
            ready.sort()
        if len(order) != len(self._nodes):
            raise GraphError(f"Ciclo no grafo: {self.find_cycle()}")
        return order

    def find_cycle(self) -> Optional[List[str]]:
        WHITE, GREY, BLACK = 0, 1, 2
        color = {nid: WHITE for nid in self._nodes}
        path: List[str] = []

        def visit(nid: str) -> Optional[List[str]]:
            color[nid] = GREY
            path.append(nid)
            for d in self._nodes[nid].requires:
                if d not in color:
                    continue
                if color[d] == GREY:
                    return path[path.index(d):] + [d]
                if color[d] == WHITE:
                    found = visit(d)
                    if found:
                        return found
            path.pop()
            color[nid] = BLACK
            return None

        for nid in self._nodes:
            if color[nid] == WHITE:
                found = visit(nid)
                if found:
                    return found
        return None

    def is_acyclic(self) -> bool:
        return self.find_cycle() is None

    def dangling_references(self) -> List[Tuple[str, str]]:
        out = [(n.id, d) for n in self._nodes.values() for d in n.requires if d not in self._nodes]
        out.extend((ROOT, r.node) for r in self.roots if r.node not in self._nodes)
        return out

    # -- atualização ----------------------------------------------------
    def replace_nodes(self, updated: Iterable[ResolvedPackage]) -> "DependencyGraph":
        nodes = dict(self._nodes)
        for n in updated:
            nodes[n.id] = n
        return DependencyGraph(nodes.values(), self.roots)

    def with_integrity(self, hashes: Mapping[str, str]) -> "DependencyGraph":
        return self.replace_nodes(
            replace(self._nodes[nid], integrity=h) for nid, h in hashes.items() if nid in self._nodes
        )

    def without(self, nids: Iterable[str]) -> "DependencyGraph":
        drop = set(nids)
        return DependencyGraph(
            (n for n in self._nodes.values() if n.id not in drop),
            (r for r in self.roots if r.node not in drop),
        )


def _root_key(r: RootRequirement):
    return (r.kind, r.name, r.node)


__all__ = ["ROOT", "ResolvedPackage", "RootRequirement", "DependencyGraph", "GraphError"]
