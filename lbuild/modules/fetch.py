# fetch.py
"""
Obtenção de fontes para o build de um nó.

- index: URL (http/https com cache de downloads, file:// ou caminho local)
- vcs: git clone + checkout da ref travada
- local: cópia do diretório do projeto dependente
- verificação de integridade contra o lockfile (fail-closed)
- patches declarados aplicados sobre a árvore extraída
"""

from __future__ import annotations

import os
import shutil
import subprocess
from dataclasses import dataclass
from typing import Optional

import requests

from lbuild.modules import log, utils
from lbuild.modules.lockfile import IntegrityMismatch, compute_integrity, verify_integrity

logger = log.get_logger("fetch")

_IGNORE = shutil.ignore_patterns(".git", ".hg", ".svn")


class FetchError(Exception):
    pass


class PatchError(FetchError):
    pass


@dataclass(frozen=True)
class FetchedSource:
    path: str
    integrity: str


# Helpers --------------------------------------------------------------------
def _local_path(url: str) -> Optional[str]:
    if url.startswith("file://"):
        return url[len("file://"):]
    if "://" not in url and os.path.exists(url):
        return url
    return None


def extract_source(archive_path: str, dest_dir: str) -> str:
    """
    Extrai o arquivo em dest_dir e devolve a raiz da fonte
    (o subdiretório único, quando o tarball cria uma pasta).
    """
    utils.extract_archive(archive_path, dest_dir)
    entries = [e for e in os.listdir(dest_dir) if not e.startswith(".")]
    if len(entries) == 1 and os.path.isdir(os.path.join(dest_dir, entries[0])):
        return os.path.join(dest_dir, entries[0])
    return dest_dir


def _from_path(nid: str, path: str, dest: str, expected: Optional[str], enforce: bool) -> FetchedSource:
    if not os.path.exists(path):
        raise FetchError(f"{nid}: fonte não encontrada: {path}")
    integrity = verify_integrity(nid, path, expected) if enforce else compute_integrity(path)
    if os.path.isdir(path):
        utils.copy_tree(path, dest, ignore=_IGNORE)
        return FetchedSource(dest, integrity)
    return FetchedSource(extract_source(path, dest), integrity)


def _download(nid: str, url: str, dest: str, expected: Optional[str]) -> FetchedSource:
    filename = os.path.basename(url.split("?")[0]) or nid
    archive = utils.get_cache_path("downloads", nid, filename)
    try:
        utils.download(url, archive)
    except (requests.RequestException, OSError) as e:
        raise FetchError(f"{nid}: falha ao baixar {url}: {e}") from e
    try:
        integrity = verify_integrity(nid, archive, expected)
    except IntegrityMismatch:
        utils.rm(archive)
        raise
    return FetchedSource(extract_source(archive, dest), integrity)


def _clone(nid: str, url: str, ref: Optional[str], dest: str, expected: Optional[str]) -> FetchedSource:
    log.info("Clonando git %s @ %s", url, ref or "HEAD")
    try:
        utils.run(["git", "clone", "--quiet", url, dest])
        if ref:
            utils.run(["git", "checkout", "--quiet", ref], cwd=dest)
    except subprocess.CalledProcessError as e:
        raise FetchError(f"{nid}: git falhou ({e.returncode}): {e.stderr}") from e
    return FetchedSource(dest, verify_integrity(nid, dest, expected))


# Core -----------------------------------------------------------------------
def fetch_source(node, workdir: str) -> FetchedSource:
    """
    Coloca a fonte de `node` em <workdir>/source e verifica a integridade
    travada. Fontes locais são sempre relidas; a integridade é só registrada.
    """
    src = node.source
    dest = os.path.join(workdir, "source")
    if os.path.exists(dest):
        shutil.rmtree(dest)
    os.makedirs(workdir, exist_ok=True)

    if src.kind == "local":
        fetched = _from_path(node.id, src.path, dest, None, enforce=False)
    elif src.kind == "vcs":
        fetched = _clone(node.id, src.url, src.ref, dest, node.integrity)
    else:
        if not src.url:
            raise FetchError(f"{node.id}: fonte sem url no índice")
        local = _local_path(src.url)
        if local is not None:
            fetched = _from_path(node.id, local, dest, node.integrity, enforce=True)
        else:
            fetched = _download(node.id, src.url, dest, node.integrity)
    logger.debug("Fonte de %s em %s", node.id, fetched.path)
    return fetched


def apply_patches(node, src_tree: str) -> None:
    for p in node.patches:
        if not os.path.isfile(p):
            raise PatchError(f"{node.id}: patch declarado não encontrado: {p}")
        try:
            utils.apply_patch(p, src_tree, strip=1)
        except RuntimeError as e:
            raise PatchError(str(e)) from e


__all__ = ["FetchError", "PatchError", "FetchedSource", "fetch_source", "extract_source", "apply_patches"]
