"""
utils.py — Helpers de arquivos, comandos, downloads e YAML/JSON usados pelo lbuild
"""

import os
import shutil
import hashlib
import tarfile
import zipfile
import subprocess
import tempfile
import json

import requests
import yaml
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from lbuild.modules import log, config

USER_AGENT = "lbuild/0.1"


# -------------------------
# Sistema de arquivos
# -------------------------
def ensure_dir(path: str):
    os.makedirs(path, exist_ok=True)


def copy_file(src: str, dst: str):
    """Copia arquivo preservando metadados (cria o diretório de destino)"""
    ensure_dir(os.path.dirname(dst))
    shutil.copy2(src, dst)


def copy_tree(src: str, dst: str, ignore=None):
    """Copia árvore de diretórios (mescla se dst já existir)"""
    shutil.copytree(src, dst, dirs_exist_ok=True, ignore=ignore)


def rm(path: str):
    if os.path.islink(path) or os.path.isfile(path):
        os.remove(path)
    elif os.path.isdir(path):
        shutil.rmtree(path)


def write_json_atomic(path: str, data, sort_keys: bool = True):
    """Grava JSON de forma atômica: temporário no mesmo diretório + os.replace"""
    directory = os.path.dirname(os.path.abspath(path))
    ensure_dir(directory)
    fd, tmp = tempfile.mkstemp(prefix=".tmp-", dir=directory)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, sort_keys=sort_keys, ensure_ascii=False)
            f.write("\n")
        os.replace(tmp, path)
    finally:
        if os.path.exists(tmp):
            os.remove(tmp)


# -------------------------
# Execução de comandos
# -------------------------
def run(cmd: list[str], cwd: str | None = None, env: dict | None = None, check=True):
    """log.run_cmd + CalledProcessError quando check e rc != 0"""
    rc, out, err = log.run_cmd(cmd, cwd=cwd, env=env)
    if check and rc != 0:
        raise subprocess.CalledProcessError(rc, cmd, out, err)
    return rc, out, err


# -------------------------
# Download e cache
# -------------------------
def http_session(retries: int = 3) -> requests.Session:
    """Sessão com retry/backoff para erros transitórios do servidor"""
    s = requests.Session()
    s.headers["User-Agent"] = USER_AGENT
    retry = Retry(total=retries, backoff_factor=0.5, status_forcelist=(429, 500, 502, 503, 504),
                  allowed_methods=("GET", "HEAD"))
    s.mount("http://", HTTPAdapter(max_retries=retry))
    s.mount("https://", HTTPAdapter(max_retries=retry))
    return s


def download(url: str, dest: str, session: requests.Session | None = None, timeout: float = 60):
    """
    Baixa `url` para `dest`; um arquivo já presente é reaproveitado
    (quem chama verifica a integridade e apaga em caso de divergência).
    """
    if os.path.isfile(dest):
        log.debug("Download em cache: %s", dest)
        return dest
    ensure_dir(os.path.dirname(dest))
    log.info("Baixando %s", url)
    tmp = dest + ".part"
    sess = session or http_session()
    try:
        with sess.get(url, stream=True, timeout=timeout) as r:
            r.raise_for_status()
            with open(tmp, "wb") as f:
                for chunk in r.iter_content(chunk_size=65536):
                    f.write(chunk)
        os.replace(tmp, dest)
    finally:
        if os.path.exists(tmp):
            os.remove(tmp)
    return dest


def sha256_file(path: str) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            h.update(chunk)
    return h.hexdigest()


def get_cache_path(*parts: str) -> str:
    return os.path.join(config.get("cache_dir"), *parts)


# -------------------------
# Extração e patches
# -------------------------
def extract_archive(archive_path: str, dest_dir: str):
    """Extrai tarball (.tar.gz, .tar.xz, ...) ou .zip, recusando caminhos fora de dest_dir"""
    ensure_dir(dest_dir)
    log.debug("Extraindo %s em %s", archive_path, dest_dir)
    if zipfile.is_zipfile(archive_path):
        root = os.path.realpath(dest_dir)
        with zipfile.ZipFile(archive_path) as zf:
            for name in zf.namelist():
                target = os.path.realpath(os.path.join(root, name))
                if target != root and not target.startswith(root + os.sep):
                    raise ValueError(f"{archive_path}: entrada fora do destino: {name}")
            zf.extractall(dest_dir)
    else:
        with tarfile.open(archive_path, "r:*") as tar:
            tar.extractall(dest_dir, filter="data")
    return dest_dir


def apply_patch(patch_file: str, src_dir: str, strip: int = 1):
    log.info("Aplicando patch %s", os.path.basename(patch_file))
    rc, _, err = run(["patch", "--batch", f"-p{strip}", "-i", os.path.abspath(patch_file)],
                     cwd=src_dir, check=False)
    if rc != 0:
        raise RuntimeError(f"Falha ao aplicar patch {patch_file}: {err}")


# -------------------------
# YAML / JSON
# -------------------------
def load_yaml(path: str) -> dict:
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def dump_yaml(path: str, data: dict):
    """Grava YAML preservando a ordem das chaves (manifest editado pelo usuário)"""
    ensure_dir(os.path.dirname(os.path.abspath(path)))
    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(data, f, default_flow_style=False, allow_unicode=True, sort_keys=False)


def load_json(path: str) -> dict:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)
