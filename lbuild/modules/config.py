#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
config.py — Configuração do lbuild

- Fonte única, primeira que existir: $LBUILD_CONFIG > ~/.config/lbuild/config.yml
  > /etc/lbuild/config.yml; o arquivo é mesclado sobre DEFAULTS
- Valores de `set` passam por YAML ("3" -> 3, "[a, b]" -> lista)
- Só chaves conhecidas (DEFAULTS) podem ser gravadas
- Campos para projeto, resolução, build paralelo, toolchain e backends
"""

import os
import yaml

USER_CONFIG = os.path.expanduser("~/.config/lbuild/config.yml")
SYSTEM_CONFIG = "/etc/lbuild/config.yml"

DEFAULTS = {
    # Diretórios
    "cache_dir": os.path.expanduser("~/.cache/lbuild"),
    "log_dir": os.path.expanduser("~/.cache/lbuild/logs"),
    "sandbox_dir": os.path.expanduser("~/.cache/lbuild/sandbox"),

    # Projeto
    "manifest_name": "lbuild.yaml",
    "lockfile_name": "lbuild.lock",
    "tree_dir": "lua_modules",
    "state_lock_name": ".lbuild-state.lock",
    "index": None,  # arquivo ou diretório

    # Resolução
    "max_resolution_steps": 20000,

    # Build paralelo
    "jobs": os.cpu_count() or 1,
    "build_timeout": 1800,  # segundos, compartilhado pelos comandos de um pacote
    "cancel_policy": "wait",  # wait | terminate

    # Runtime / toolchain
    "lua_version": "5.4",
    "runtime_pkgconfig": ["lua5.4", "lua-5.4", "lua54", "lua"],
    "cflags": "-O2 -fPIC",
    "ldflags": "-shared",
    "shared_lib_extension": "so",

    # Backends
    "external_compat_command": ["luarocks", "make", "--tree", "{prefix}"],
    "grammar_compiler": "tree-sitter",
    "tree_sitter_abi": 14,
}

_config = DEFAULTS.copy()


class ConfigError(Exception):
    pass


def _load_from(path: str) -> dict:
    if not os.path.isfile(path):
        return {}
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: esperado um mapa YAML")
    return data


def config_path(system: bool = False) -> str:
    """Arquivo onde `set`/`reset` gravam."""
    if system:
        return SYSTEM_CONFIG
    return os.getenv("LBUILD_CONFIG") or USER_CONFIG


def active_path():
    """Arquivo efetivamente carregado (None = só defaults)."""
    for path in (os.getenv("LBUILD_CONFIG"), USER_CONFIG, SYSTEM_CONFIG):
        if path and os.path.exists(path):
            return path
    return None


def load_config() -> dict:
    global _config
    path = active_path()
    _config = {**DEFAULTS, **(_load_from(path) if path else {})}
    return _config


def _save(cfg: dict, system: bool = False) -> None:
    path = config_path(system)
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(cfg, f, default_flow_style=False, allow_unicode=True)


def get(key: str, default=None):
    """Valor da chave; cai para DEFAULTS e depois para `default`."""
    return _config.get(key, DEFAULTS.get(key, default))


def set(key: str, value, system: bool = False):
    """Grava uma chave conhecida no arquivo de configuração."""
    if key not in DEFAULTS:
        raise ConfigError(f"Chave desconhecida: {key}")
    if isinstance(value, str):
        value = yaml.safe_load(value) if value.strip() else value
    path = config_path(system)
    cfg = _load_from(path) if os.path.exists(path) else {}
    cfg[key] = value
    _save(cfg, system=system)
    load_config()


def all() -> dict:
    return load_config()


def reset(system: bool = False):
    """Restaura os valores padrão."""
    _save(DEFAULTS.copy(), system=system)
    load_config()


# Carrega config logo no import
load_config()
