#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
runtime.py — Tabela de carregamento por requisitante

- Para cada requisitante (id do nó ou <root>) mapeia nome -> caminho instalado
- Permite que versões diferentes do mesmo pacote coexistam na árvore:
  cada requisitante enxerga exatamente a versão que o resolvedor escolheu para ele
- Raízes regulares em <root>; raízes de build/test em <root>:build e <root>:test
- Persistida como JSON em <tree>/loader.json
- lookup() para o carregador e para `lbuild which`
"""

import os
from typing import Dict, Optional

from lbuild.modules import log, utils
from lbuild.modules.graph import ROOT, DependencyGraph
from lbuild.modules.tree import InstallTree

logger = log.get_logger("runtime")

LoaderTable = Dict[str, Dict[str, str]]


class LoaderError(Exception):
    pass


def root_key(kind: str) -> str:
    """Requisitante das raízes de um escopo: <root> para regular, <root>:<kind> nos demais."""
    return ROOT if kind == "regular" else f"{ROOT}:{kind}"


def loader_table(graph: DependencyGraph, tree: InstallTree) -> LoaderTable:
    """
    Monta {requisitante: {nome: caminho}} a partir das arestas de runtime.
    Dependências de build não entram: só valem durante o build do nó.
    """
    table: LoaderTable = {}
    for root in graph.roots:
        if root.node in graph:
            table.setdefault(root_key(root.kind), {})[root.name] = tree.entry_path(root.node)
    for node in graph:
        for dep in node.requires:
            if dep not in graph:
                raise LoaderError(f"{node.id} referencia {dep}, ausente do grafo")
        for dep in node.dependencies:
            table.setdefault(node.id, {})[graph[dep].name] = tree.entry_path(dep)
    return table


def write_loader_table(path: str, table: LoaderTable) -> str:
    utils.write_json_atomic(path, table)
    logger.debug("Tabela de carregamento gravada em %s", path)
    return path


def read_loader_table(path: str) -> LoaderTable:
    if not os.path.isfile(path):
        raise LoaderError(f"Tabela de carregamento não encontrada: {path} (rode install)")
    return utils.load_json(path)


def lookup(table: LoaderTable, requirer: str, name: str) -> Optional[str]:
    """Caminho que `requirer` deve carregar para `name` (None se não declarado)."""
    return table.get(requirer or ROOT, {}).get(name)


def module_search_paths(entry: str) -> Dict[str, str]:
    """Templates de package.path/cpath para uma entrada da árvore."""
    return {
        "path": ";".join([os.path.join(entry, "src", "?.lua"), os.path.join(entry, "src", "?", "init.lua")]),
        "cpath": os.path.join(entry, "lib", "?.so"),
    }


__all__ = ["LoaderError", "root_key", "loader_table", "write_loader_table", "read_loader_table", "lookup", "module_search_paths"]
