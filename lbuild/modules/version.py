#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
modules/version.py — Modelo de versões e restrições do lbuild

- Version: tupla ordenada (major, minor, patch, qualificadores, revisão)
- Qualificadores após o patch (1.2.3.1) são pré-releases e ficam abaixo da tripla
- Revisão de spec (1.2.3-2) é o último critério de ordenação
- Constraint: exact (==), bound (>=, >, <=, <, ~=), compatible (~>) e wildcard (*, 1.2.*)
- intersect() pode produzir a restrição vazia (insatisfazível)
- Funções puras, sem efeitos colaterais
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from functools import total_ordering
from typing import FrozenSet, Optional, Tuple


class VersionError(ValueError):
    pass


# Sentinelas de revisão para limites que ignoram a revisão ("1.2.3" casa 1.2.3-N)
_REV_BEFORE = -1
_REV_AFTER = float("inf")

_VERSION_RE = re.compile(r"^v?(\d+(?:\.\d+)*)(?:-(\d+))?$")
_ATOM_RE = re.compile(r"^(==|=|>=|<=|~>|~=|!=|>|<)?\s*(.*)$")


# ---------------------------
# Version
# ---------------------------
@total_ordering
@dataclass(frozen=True)
class Version:
    major: int
    minor: int = 0
    patch: int = 0
    qualifiers: Tuple[int, ...] = ()
    revision: int = 0

    @property
    def is_prerelease(self) -> bool:
        return bool(self.qualifiers)

    @property
    def triple(self) -> Tuple[int, int, int]:
        return (self.major, self.minor, self.patch)

    def as_tuple(self) -> Tuple[int, ...]:
        """Forma plana: (major, minor, patch, revisão, *qualificadores)."""
        return (self.major, self.minor, self.patch, self.revision) + self.qualifiers

    def sort_key(self) -> tuple:
        return (self.major, self.minor, self.patch,
                0 if self.qualifiers else 1, self.qualifiers, self.revision)

    def __lt__(self, other):
        if not isinstance(other, Version):
            return NotImplemented
        return self.sort_key() < other.sort_key()

    def __str__(self) -> str:
        text = ".".join(str(c) for c in (self.major, self.minor, self.patch) + self.qualifiers)
        if self.revision:
            text += f"-{self.revision}"
        return text

    def __repr__(self) -> str:
        return f"Version('{self}')"


def parse_version(text) -> Version:
    """Converte '1.2', '1.2.3', '1.2.3-1' ou '1.2.3.4' em Version."""
    if isinstance(text, Version):
        return text
    raw = str(text).strip()
    m = _VERSION_RE.match(raw)
    if not m:
        raise VersionError(f"Versão inválida: {text!r}")
    comps = [int(c) for c in m.group(1).split(".")]
    while len(comps) < 3:
        comps.append(0)
    revision = int(m.group(2)) if m.group(2) else 0
    return Version(comps[0], comps[1], comps[2], tuple(comps[3:]), revision)


def _written_components(raw: str) -> int:
    m = _VERSION_RE.match(raw)
    return len(m.group(1).split(".")) if m else 0


def _has_revision(raw: str) -> bool:
    m = _VERSION_RE.match(raw)
    return bool(m and m.group(2))


def _point(v: Version, rev=None) -> tuple:
    base = v.sort_key()[:5]
    return base + (v.revision if rev is None else rev,)


def _bump(v: Version, written: int) -> Version:
    if written <= 1:
        return Version(v.major + 1)
    if written == 2:
        return Version(v.major, v.minor + 1)
    return Version(v.major, v.minor, v.patch + 1)


# ---------------------------
# Constraint
# ---------------------------
@dataclass(frozen=True)
class Bound:
    point: tuple
    inclusive: bool
    version: Version


@dataclass(frozen=True)
class Constraint:
    lower: Optional[Bound] = None
    upper: Optional[Bound] = None
    excluded: FrozenSet[tuple] = frozenset()
    empty: bool = False
    kind: str = field(default="wildcard", compare=False)
    text: str = field(default="*", compare=False)

    def satisfies(self, v: Version) -> bool:
        if self.empty:
            return False
        key = _point(v)
        if self.lower is not None:
            if key < self.lower.point or (key == self.lower.point and not self.lower.inclusive):
                return False
        if self.upper is not None:
            up = self.upper
            if key > up.point or (key == up.point and not up.inclusive):
                return False
            # "<2.0" não admite pré-releases de 2.0.0
            if (not up.inclusive and not up.version.is_prerelease
                    and v.is_prerelease and v.triple == up.version.triple):
                return False
        if (key[:5], None) in self.excluded or (key[:5], v.revision) in self.excluded:
            return False
        return True

    __contains__ = satisfies

    def intersect(self, other: "Constraint") -> "Constraint":
        if self.empty or other.empty:
            return EMPTY
        lower = _tighter_lower(self.lower, other.lower)
        upper = _tighter_upper(self.upper, other.upper)
        excluded = self.excluded | other.excluded
        texts = [t for t in (self.text, other.text) if t != "*"]
        text = ",".join(dict.fromkeys(texts)) or "*"
        if other.text == "*":
            kind = self.kind
        elif self.text == "*":
            kind = other.kind
        else:
            kind = "bound"
        result = Constraint(lower, upper, excluded, kind=kind, text=text)
        if result._interval_empty():
            return EMPTY
        return result

    def is_empty(self) -> bool:
        return self.empty or self._interval_empty()

    def _interval_empty(self) -> bool:
        lo, up = self.lower, self.upper
        if lo is None or up is None:
            return False
        if lo.point > up.point:
            return True
        if lo.point == up.point:
            if not (lo.inclusive and up.inclusive):
                return True
            # ponto sentinela (sem revisão concreta)
            if lo.point[5] in (_REV_BEFORE, _REV_AFTER):
                return True
            return (lo.point[:5], None) in self.excluded or (lo.point[:5], lo.point[5]) in self.excluded
        if lo.point[:5] == up.point[:5] and (lo.point[:5], None) in self.excluded:
            return True
        return False

    def __str__(self) -> str:
        return self.text


def _tighter_lower(a: Optional[Bound], b: Optional[Bound]) -> Optional[Bound]:
    if a is None:
        return b
    if b is None:
        return a
    return max(a, b, key=lambda x: (x.point, not x.inclusive))


def _tighter_upper(a: Optional[Bound], b: Optional[Bound]) -> Optional[Bound]:
    if a is None:
        return b
    if b is None:
        return a
    return min(a, b, key=lambda x: (x.point, x.inclusive))


ANY = Constraint()
EMPTY = Constraint(empty=True, kind="empty", text="<unsatisfiable>")


def _atom(op: str, raw: str) -> Constraint:
    if raw in ("", "*"):
        return ANY
    if raw.endswith(".*"):
        prefix = raw[:-2]
        v = parse_version(prefix)
        written = _written_components(prefix)
        return Constraint(
            lower=Bound(_point(v, _REV_BEFORE), True, v),
            upper=Bound(_point(_bump(v, written), _REV_BEFORE), False, _bump(v, written)),
            kind="wildcard", text=raw,
        )
    v = parse_version(raw)
    exact_rev = _has_revision(raw)
    text = f"{op}{raw}" if op else raw
    if op in ("", "=", "=="):
        if exact_rev:
            b = Bound(_point(v), True, v)
            return Constraint(b, b, kind="exact", text=text)
        return Constraint(Bound(_point(v, _REV_BEFORE), True, v),
                          Bound(_point(v, _REV_AFTER), True, v),
                          kind="exact", text=text)
    if op == "~>":
        written = _written_components(raw)
        up = _bump(v, written)
        return Constraint(Bound(_point(v, _REV_BEFORE), True, v),
                          Bound(_point(up, _REV_BEFORE), False, up),
                          kind="compatible", text=text)
    if op in ("~=", "!="):
        entry = (_point(v)[:5], v.revision if exact_rev else None)
        return Constraint(excluded=frozenset([entry]), kind="bound", text=text)
    if op == ">=":
        return Constraint(lower=Bound(_point(v, None if exact_rev else _REV_BEFORE), True, v), kind="bound", text=text)
    if op == ">":
        return Constraint(lower=Bound(_point(v, None if exact_rev else _REV_AFTER), False, v), kind="bound", text=text)
    if op == "<=":
        return Constraint(upper=Bound(_point(v, None if exact_rev else _REV_AFTER), True, v), kind="bound", text=text)
    if op == "<":
        return Constraint(upper=Bound(_point(v, None if exact_rev else _REV_BEFORE), False, v), kind="bound", text=text)
    raise VersionError(f"Operador desconhecido {op!r}")


def parse_constraint(text) -> Constraint:
    """
    Converte texto em Constraint. Átomos separados por vírgula são conjunções:
    '>=1.0,<2.0', '~> 1.2', '==1.2.3', '1.2.*', '*'.
    """
    if isinstance(text, Constraint):
        return text
    if text is None:
        return ANY
    raw = str(text).strip()
    if raw in ("", "*"):
        return ANY
    parts = []
    for piece in raw.split(","):
        piece = piece.strip()
        m = _ATOM_RE.match(piece)
        op, rest = (m.group(1) or ""), m.group(2).strip()
        atom = _atom(op, rest)
        if atom is not ANY:
            parts.append(atom)
    if not parts:
        return ANY
    result = parts[0]
    for atom in parts[1:]:
        result = result.intersect(atom)
    if len(parts) > 1 and not result.empty:
        result = Constraint(result.lower, result.upper, result.excluded,
                            kind="bound", text=",".join(p.text for p in parts))
    return result


# ---------------------------
# API funcional
# ---------------------------
def satisfies(v, c) -> bool:
    return parse_constraint(c).satisfies(parse_version(v))


def intersect(c1, c2) -> Constraint:
    return parse_constraint(c1).intersect(parse_constraint(c2))


__all__ = [
    "Version", "Constraint", "Bound", "VersionError",
    "ANY", "EMPTY",
    "parse_version", "parse_constraint", "satisfies", "intersect",
]
