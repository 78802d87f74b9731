# tree.py
"""
Árvore de instalação do projeto (lua_modules/).

Recursos:
- Uma entrada por nó resolvido: <tree>/<node id>/{src,lib,bin,etc,conf,doc}
- Metadados em <entrada>/.installed.meta (nó, integridade, manifesto de arquivos)
- Staging em <tree>/.staging/<uuid> e publicação atômica com os.replace
- Remoção precisa e verificação baseada no manifesto
- Consultas: instalados, cache por integridade
"""

from __future__ import annotations
import os
import json
import shutil
import uuid
from typing import Dict, List, Optional

from lbuild.modules import config, log, utils

logger = log.get_logger("tree")

META_FILE = ".installed.meta"
STAGING_DIR = ".staging"
LOADER_FILE = "loader.json"
LAYOUT = ("src", "lib", "bin", "etc", "conf", "doc")


class TreeError(Exception):
    pass


class InstallTree:
    def __init__(self, root: Optional[str] = None):
        self.root = os.path.abspath(root or config.get("tree_dir") or "lua_modules")

    def __repr__(self) -> str:
        return f"InstallTree({self.root!r})"

    # Helpers ---------------------------------------------------------------
    def entry_path(self, nid: str) -> str:
        return os.path.join(self.root, nid)

    def meta_path(self, nid: str) -> str:
        return os.path.join(self.entry_path(nid), META_FILE)

    @property
    def staging_root(self) -> str:
        return os.path.join(self.root, STAGING_DIR)

    @property
    def loader_path(self) -> str:
        return os.path.join(self.root, LOADER_FILE)

    def read_meta(self, nid: str) -> Optional[dict]:
        path = self.meta_path(nid)
        if not os.path.isfile(path):
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                meta = json.load(f)
        except (UnicodeDecodeError, ValueError):
            logger.warning("Metadados corrompidos em %s", path)
            return None
        return meta if isinstance(meta, dict) else None

    # Consultas -------------------------------------------------------------
    def is_installed(self, nid: str) -> bool:
        return self.read_meta(nid) is not None

    def is_cached(self, nid: str, expected: Optional[str]) -> bool:
        """
        A entrada instalada serve como cache do nó?
        Sem integridade esperada, basta a entrada existir.
        """
        meta = self.read_meta(nid)
        if meta is None:
            return False
        return not expected or meta.get("integrity") == expected

    def list_installed(self) -> List[dict]:
        if not os.path.isdir(self.root):
            return []
        pkgs = []
        for fn in sorted(os.listdir(self.root)):
            if fn.startswith("."):
                continue
            meta = self.read_meta(fn)
            if meta is not None:
                pkgs.append(meta)
        return pkgs

    def installed_ids(self) -> List[str]:
        return [m["node"] for m in self.list_installed()]

    def search_installed(self, pattern: str) -> List[dict]:
        return [m for m in self.list_installed() if pattern in m["name"]]

    # Staging / publicação --------------------------------------------------
    def new_staging(self) -> str:
        path = os.path.join(self.staging_root, uuid.uuid4().hex)
        for sub in LAYOUT:
            os.makedirs(os.path.join(path, sub), exist_ok=True)
        return path

    def discard(self, staging: str) -> None:
        if os.path.isdir(staging):
            shutil.rmtree(staging, ignore_errors=True)
            logger.debug("Staging descartado: %s", staging)

    def publish(self, staging: str, node, integrity: Optional[str]) -> dict:
        """
        Grava o manifesto e move o staging para a entrada definitiva.
        Uma entrada anterior com o mesmo id é substituída.
        """
        files = []
        for root, _, names in os.walk(staging):
            for fn in names:
                files.append(os.path.relpath(os.path.join(root, fn), staging).replace(os.sep, "/"))
        installed_meta = {
            "name": node.name,
            "version": str(node.version),
            "node": node.id,
            "source": node.source.key(),
            "integrity": integrity,
            "files": sorted(files),
        }
        with open(os.path.join(staging, META_FILE), "w", encoding="utf-8") as f:
            json.dump(installed_meta, f, indent=2, sort_keys=True)

        dest = self.entry_path(node.id)
        old = None
        if os.path.exists(dest):
            old = os.path.join(self.staging_root, f"old-{uuid.uuid4().hex}")
            os.replace(dest, old)
        os.replace(staging, dest)
        if old:
            shutil.rmtree(old, ignore_errors=True)
        logger.info("Instalado: %s", node.id)
        return installed_meta

    def clean_staging(self) -> None:
        if os.path.isdir(self.staging_root):
            shutil.rmtree(self.staging_root, ignore_errors=True)

    # Remoção / verificação -------------------------------------------------
    def remove(self, nid: str) -> bool:
        path = self.entry_path(nid)
        if not os.path.isdir(path):
            logger.warning("Pacote %s não encontrado na árvore", nid)
            return False
        utils.rm(path)
        logger.info("Removido %s", nid)
        return True

    def verify(self, nid: str) -> bool:
        meta = self.read_meta(nid)
        if not meta:
            raise TreeError(f"{nid} não está instalado")
        base = self.entry_path(nid)
        for rel in meta.get("files", []):
            if not os.path.exists(os.path.join(base, rel)):
                logger.error("Arquivo perdido: %s/%s", nid, rel)
                return False
        return True

    def module_dirs(self, nid: str) -> Dict[str, str]:
        base = self.entry_path(nid)
        return {sub: os.path.join(base, sub) for sub in LAYOUT}


__all__ = ["InstallTree", "TreeError", "META_FILE", "STAGING_DIR", "LOADER_FILE", "LAYOUT"]
