#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
modules/dependency.py — Resolver de dependências do lbuild

Funcionalidades principais:
- Backtracking cronológico sobre um estado de busca explícito e imutável
  (SearchState = pilha de choice points + atribuição parcial)
- Candidatos: versão do lock anterior primeiro (se ainda satisfaz), depois
  ordem decrescente de versão (empate: ordem do índice)
- Escopos de resolução: regular / build / test; dependências que discordam
  de um escopo externo são resolvidas no escopo privado do requerente,
  permitindo versões coexistentes do mesmo pacote
- Erros: ResolutionConflict (restrição + cadeia de requerentes),
  CycleDetected, ResolutionAborted (limite de passos)
- API: DependencyResolver(index).resolve(manifest, prior_lock) -> DependencyGraph
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from lbuild.modules import config, log
from lbuild.modules.graph import ROOT, DependencyGraph, ResolvedPackage, RootRequirement
from lbuild.modules.meta import SCOPE_KINDS, IndexEntry, Manifest, PackageSpec
from lbuild.modules.version import Constraint

logger = log.get_logger("dependency")

Scope = Tuple[str, ...]


# ---------------------------------------------------------------------
# Erros
# ---------------------------------------------------------------------
class ResolutionError(Exception):
    pass


class ResolutionConflict(ResolutionError):
    def __init__(self, name: str, constraint: str, chain: Iterable[Tuple[str, ...]], reason: str = ""):
        self.name = name
        self.constraint = str(constraint)
        self.chain = [tuple(c) for c in chain]
        self.reason = reason
        paths = "; ".join(" -> ".join(c) for c in self.chain)
        msg = f"Impossível satisfazer {name} {self.constraint}"
        if reason:
            msg += f" ({reason})"
        if paths:
            msg += f", exigido por: {paths}"
        super().__init__(msg)


class CycleDetected(ResolutionError):
    def __init__(self, cycle: List[str]):
        self.cycle = list(cycle)
        super().__init__("Ciclo de dependências: " + " -> ".join(self.cycle))


class ResolutionAborted(ResolutionError):
    pass


# ---------------------------------------------------------------------
# Estado de busca (valores imutáveis)
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class Requirement:
    spec: PackageSpec
    kind: str
    requirer: Optional[str]
    home: Scope
    chain: Tuple[str, ...]
    edge: str = "regular"

    @property
    def lookup_scope(self) -> Scope:
        """Escopo privado do requerente (o projeto não tem escopo privado)."""
        if self.requirer is None:
            return self.home
        return self.home + (self.requirer,)


@dataclass(frozen=True)
class Selection:
    node: str
    constraint: Constraint
    requirers: Tuple[Tuple[str, ...], ...] = ()


@dataclass(frozen=True)
class Assignment:
    pending: Tuple[Requirement, ...] = ()
    selections: Mapping[Scope, Mapping[str, Selection]] = field(default_factory=dict)
    nodes: Mapping[str, ResolvedPackage] = field(default_factory=dict)
    roots: Tuple[RootRequirement, ...] = ()


@dataclass(frozen=True)
class Branch:
    requirement: Requirement
    scope: Scope
    candidates: Tuple[IndexEntry, ...]


@dataclass(frozen=True)
class DeadEnd:
    error: ResolutionError


@dataclass(frozen=True)
class ChoicePoint:
    assignment: Assignment
    branch: Branch
    cursor: int = -1


@dataclass(frozen=True)
class SearchState:
    assignment: Assignment
    choices: Tuple[ChoicePoint, ...] = ()
    failures: Tuple[ResolutionError, ...] = ()
    steps: int = 0
    exhausted: bool = False

    @property
    def done(self) -> bool:
        return self.exhausted or not self.assignment.pending


def scope_key(scope: Scope) -> str:
    return "/".join(scope)


# ---------------------------------------------------------------------
# Contexto de uma execução (consulta memoizada + lock anterior)
# ---------------------------------------------------------------------
class PriorLock:
    """Preferências vindas do lock anterior (heurística de churn mínimo)."""

    def __init__(self, graph: Optional[DependencyGraph] = None, ignore: Iterable[str] = ()):
        self._by_name: Dict[str, List[ResolvedPackage]] = {}
        ignore = set(ignore)
        if graph is not None:
            for node in graph:
                if node.name in ignore and not node.pinned:
                    continue
                self._by_name.setdefault(node.name, []).append(node)

    def preferred(self, name: str, scope: Scope) -> List[ResolvedPackage]:
        key = scope_key(scope)
        nodes = sorted(self._by_name.get(name, []), key=lambda n: n.version, reverse=True)
        return sorted(nodes, key=lambda n: (key not in n.scopes, not n.pinned))

    def is_pinned(self, nid: str) -> bool:
        return any(n.pinned and n.id == nid for nodes in self._by_name.values() for n in nodes)


class ResolveContext:
    def __init__(self, query: Callable[[str], Iterable[IndexEntry]], prior: PriorLock,
                 include_optional: bool = True):
        self._query = query
        self._cache: Dict[str, Tuple[IndexEntry, ...]] = {}
        self.prior = prior
        self.include_optional = include_optional

    def query(self, name: str) -> Tuple[IndexEntry, ...]:
        if name not in self._cache:
            self._cache[name] = tuple(self._query(name))
            logger.debug("Índice: %s -> %d candidatos", name, len(self._cache[name]))
        return self._cache[name]


# ---------------------------------------------------------------------
# Passos puros
# ---------------------------------------------------------------------
def initial_state(manifest: Manifest, include_optional: bool = True) -> SearchState:
    pending = []
    for kind in SCOPE_KINDS:
        for spec in manifest.scopes()[kind]:
            if spec.optional and not include_optional:
                continue
            pending.append(Requirement(spec=spec, kind=kind, requirer=None, home=(kind,), chain=(ROOT,)))
    return SearchState(Assignment(pending=tuple(pending)))


def _lookup(a: Assignment, scope: Scope, name: str) -> Optional[Tuple[Scope, Selection]]:
    for depth in range(len(scope), 0, -1):
        s = scope[:depth]
        sel = a.selections.get(s, {}).get(name)
        if sel is not None:
            return s, sel
    return None


def _with_selection(a: Assignment, scope: Scope, name: str, sel: Selection):
    selections = dict(a.selections)
    inner = dict(selections.get(scope, {}))
    inner[name] = sel
    selections[scope] = inner
    return selections


def _closes_cycle(nodes: Mapping[str, ResolvedPackage], requirer: Optional[str], target: str) -> Optional[List[str]]:
    """Devolve o ciclo se a aresta requirer -> target fechar um ciclo."""
    if requirer is None:
        return None
    if requirer == target:
        return [requirer, target]
    parents: Dict[str, Optional[str]] = {target: None}
    stack = [target]
    while stack:
        cur = stack.pop()
        node = nodes.get(cur)
        if node is None:
            continue
        for dep in node.requires:
            if dep in parents:
                continue
            parents[dep] = cur
            if dep == requirer:
                path = [dep]
                while parents[path[-1]] is not None:
                    path.append(parents[path[-1]])
                path.reverse()
                return [requirer] + path
            stack.append(dep)
    return None


def _link(a: Assignment, req: Requirement, target: str) -> Assignment:
    if req.requirer is None:
        root = RootRequirement(
            kind=req.kind, name=req.spec.name, constraint=req.spec.constraint_text,
            node=target, source=req.spec.source, optional=req.spec.optional, pinned=req.spec.pinned,
        )
        return replace(a, roots=a.roots + (root,))
    nodes = dict(a.nodes)
    node = nodes[req.requirer]
    if req.edge == "build":
        if target not in node.build_dependencies:
            node = replace(node, build_dependencies=node.build_dependencies + (target,))
    elif target not in node.dependencies:
        node = replace(node, dependencies=node.dependencies + (target,))
    nodes[req.requirer] = node
    return replace(a, nodes=nodes)


def _candidates(ctx: ResolveContext, req: Requirement, scope: Scope) -> Tuple[IndexEntry, ...]:
    spec = req.spec
    entries = ctx.query(spec.name)
    if spec.source is not None:
        entries = tuple(e for e in entries if e.source.key() == spec.source.key())
    matching = [e for e in entries if spec.constraint.satisfies(e.version)]
    # ordem decrescente; sort estável mantém a ordem do índice nos empates
    matching.sort(key=lambda e: e.version.sort_key(), reverse=True)
    preferred = [n.id for n in ctx.prior.preferred(spec.name, scope)]
    if preferred:
        rank = {nid: i for i, nid in enumerate(preferred)}
        front = sorted((e for e in matching if e.node_id in rank), key=lambda e: rank[e.node_id])
        matching = front + [e for e in matching if e.node_id not in rank]
    return tuple(matching)


def expand(a: Assignment, ctx: ResolveContext) -> Union[Assignment, Branch, DeadEnd]:
    """Processa o próximo requisito pendente."""
    req = a.pending[0]
    rest = replace(a, pending=a.pending[1:])
    name = req.spec.name
    private = req.lookup_scope
    found = _lookup(a, private, name)
    target = req.home

    if found is not None:
        scope, sel = found
        node = a.nodes[sel.node]
        merged = sel.constraint.intersect(req.spec.constraint)
        same_source = req.spec.source is None or req.spec.source.key() == node.source.key()
        if same_source and not merged.is_empty():
            if not merged.satisfies(node.version):
                return DeadEnd(ResolutionConflict(
                    name, merged, sel.requirers + (req.chain,),
                    f"selected {node.version} no longer satisfies",
                ))
            cycle = _closes_cycle(a.nodes, req.requirer, sel.node)
            if cycle:
                return DeadEnd(CycleDetected(cycle))
            unified = replace(sel, constraint=merged, requirers=sel.requirers + (req.chain,))
            rest = replace(rest, selections=_with_selection(rest, scope, name, unified))
            return _link(rest, req, sel.node)
        if req.requirer is None or scope == private:
            return DeadEnd(ResolutionConflict(
                name, f"{sel.constraint},{req.spec.constraint}", sel.requirers + (req.chain,),
                "constraints disagree within one scope",
            ))
        # restrições discordam: resolve no escopo privado do requerente
        target = private
        logger.debug("%s: escopo privado para %s (%s vs %s)", req.requirer, name, sel.constraint, req.spec.constraint)

    candidates = _candidates(ctx, req, target)
    if not candidates:
        return DeadEnd(ResolutionConflict(name, req.spec.constraint, (req.chain,), "nenhuma versão compatível no índice"))
    return Branch(req, target, candidates)


def apply_candidate(a: Assignment, branch: Branch, entry: IndexEntry, ctx: ResolveContext) -> Union[Assignment, DeadEnd]:
    req = branch.requirement
    nid = entry.node_id
    cycle = _closes_cycle(a.nodes, req.requirer, nid)
    if cycle:
        return DeadEnd(CycleDetected(cycle))

    key = scope_key(branch.scope)
    pending = a.pending[1:]
    nodes = dict(a.nodes)
    if nid not in nodes:
        nodes[nid] = ResolvedPackage(
            name=entry.name, version=entry.version, source=entry.source, build=entry.build,
            integrity=entry.integrity, scopes=(key,), optional=req.spec.optional,
            pinned=req.spec.pinned or ctx.prior.is_pinned(nid), patches=entry.patches,
        )
        chain = req.chain + (nid,)
        deps = tuple(
            Requirement(spec=d, kind=req.kind, requirer=nid, home=branch.scope, chain=chain)
            for d in entry.dependencies
            if ctx.include_optional or not d.optional
        )
        build_deps = tuple(
            Requirement(spec=d, kind="build", requirer=nid, home=("build",), chain=chain, edge="build")
            for d in entry.build_dependencies
        )
        pending = pending + deps + build_deps
    elif key not in nodes[nid].scopes:
        nodes[nid] = replace(nodes[nid], scopes=nodes[nid].scopes + (key,))

    sel = Selection(nid, req.spec.constraint, (req.chain,))
    a2 = Assignment(pending=pending, selections=_with_selection(a, branch.scope, entry.name, sel),
                    nodes=nodes, roots=a.roots)
    return _link(a2, req, nid)


def backtrack(search: SearchState, ctx: ResolveContext) -> SearchState:
    """Avança o choice point mais recente; esgotado, falha para o anterior."""
    choices = list(search.choices)
    failures = list(search.failures)
    steps = search.steps
    while choices:
        cp = choices.pop()
        for cursor in range(cp.cursor + 1, len(cp.branch.candidates)):
            steps += 1
            result = apply_candidate(cp.assignment, cp.branch, cp.branch.candidates[cursor], ctx)
            if isinstance(result, Assignment):
                choices.append(replace(cp, cursor=cursor))
                return SearchState(result, tuple(choices), tuple(failures), steps)
            failures.append(result.error)
    return SearchState(search.assignment, (), tuple(failures), steps, exhausted=True)


def step(search: SearchState, ctx: ResolveContext) -> SearchState:
    outcome = expand(search.assignment, ctx)
    if isinstance(outcome, Assignment):
        return replace(search, assignment=outcome, steps=search.steps + 1)
    if isinstance(outcome, Branch):
        cp = ChoicePoint(search.assignment, outcome)
        return backtrack(replace(search, choices=search.choices + (cp,), steps=search.steps + 1), ctx)
    return backtrack(replace(search, failures=search.failures + (outcome.error,), steps=search.steps + 1), ctx)


def _final_error(failures: Tuple[ResolutionError, ...]) -> ResolutionError:
    conflicts = [f for f in failures if not isinstance(f, CycleDetected)]
    if conflicts:
        return conflicts[-1]
    if failures:
        return failures[-1]
    return ResolutionConflict("<desconhecido>", "*", (), "busca esgotada")


def finish(search: SearchState) -> DependencyGraph:
    a = search.assignment
    nodes = [replace(n, scopes=tuple(sorted(n.scopes))) for n in a.nodes.values()]
    return DependencyGraph(nodes, a.roots)


# ---------------------------------------------------------------------
# API pública
# ---------------------------------------------------------------------
class DependencyResolver:
    """
    Resolver com backtracking cronológico.
    - index: objeto com query(name) -> entradas (ex.: meta.RepoIndex)
    - max_steps: limite de passos para evitar explosão da busca
    """

    def __init__(self, index, max_steps: Optional[int] = None, include_optional: bool = True):
        self.index = index
        self.max_steps = int(max_steps or config.get("max_resolution_steps"))
        self.include_optional = include_optional

    def resolve(self, root_specs, prior_lock: Optional[DependencyGraph] = None,
                update: Iterable[str] = ()) -> DependencyGraph:
        manifest = root_specs if isinstance(root_specs, Manifest) else Manifest.from_specs(root_specs)
        ctx = ResolveContext(self.index.query, PriorLock(prior_lock, ignore=update), self.include_optional)
        search = initial_state(manifest, self.include_optional)
        logger.info("Resolvendo %d requisitos diretos", len(search.assignment.pending))

        while not search.done:
            if search.steps > self.max_steps:
                raise ResolutionAborted(f"Limite de passos de resolução excedido ({self.max_steps})")
            search = step(search, ctx)

        if search.exhausted:
            err = _final_error(search.failures)
            logger.error("Resolução falhou: %s", err)
            raise err

        graph = finish(search)
        logger.info("Resolvido: %d pacotes em %d passos", len(graph), search.steps)
        return graph


def resolve(root_specs, index, prior_lock: Optional[DependencyGraph] = None, **kwargs) -> DependencyGraph:
    update = kwargs.pop("update", ())
    return DependencyResolver(index, **kwargs).resolve(root_specs, prior_lock, update=update)


def explain(graph: DependencyGraph, name: str) -> Dict[str, List[List[str]]]:
    """Para cada nó com o nome dado, as cadeias de requerentes desde o projeto."""
    out: Dict[str, List[List[str]]] = {n.id: [] for n in graph.by_name(name)}
    if not out:
        return out

    def walk(nid: str, path: List[str]) -> None:
        if nid in path:
            return
        if nid in out:
            out[nid].append(path + [nid])
        for dep in graph[nid].requires:
            walk(dep, path + [nid])

    for root in graph.roots:
        if root.node in graph:
            walk(root.node, [f"{ROOT}:{root.kind}"])
    return out


__all__ = [
    "ResolutionError", "ResolutionConflict", "CycleDetected", "ResolutionAborted",
    "Requirement", "Selection", "Assignment", "Branch", "DeadEnd", "ChoicePoint", "SearchState",
    "PriorLock", "ResolveContext", "initial_state", "expand", "apply_candidate", "backtrack", "step",
    "finish", "scope_key", "DependencyResolver", "resolve", "explain",
]
