"""
log.py — Logging do lbuild

- logger raiz "lbuild" com console colorido (só em terminal) e arquivo rotativo em log_dir
- nível inicial do console via $LBUILD_LOG_LEVEL (padrão: info); o arquivo grava tudo
- for_node(): sub-logger que prefixa as mensagens com o id do nó em build
- run_cmd(): executa comando externo com saída registrada no log
"""

import logging
import os
import subprocess
import sys
from logging.handlers import RotatingFileHandler
from datetime import datetime

from lbuild.modules import config

LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}

LOG_FILE = "lbuild.log"

_root_logger = logging.getLogger("lbuild")
_root_logger.setLevel(logging.DEBUG)


class ColorFormatter(logging.Formatter):
    """Console: '[hora] nível [módulo] mensagem', com cor quando o destino é um tty"""
    COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
    }
    RESET = "\033[0m"

    def __init__(self, fmt=None, use_color=True):
        super().__init__(fmt)
        self.use_color = use_color

    def format(self, record):
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        module = f"[{record.name[len('lbuild.'):]}]" if record.name.startswith("lbuild.") else ""
        head = f"[{ts}] {record.levelname.lower():<8}{module}"
        if self.use_color:
            head = f"{self.COLORS.get(record.levelno, '')}{head}{self.RESET}"
        return f"{head} {super().format(record)}"


class NodeAdapter(logging.LoggerAdapter):
    """Prefixa cada mensagem com o nó ('A@1.0.0: ...')"""

    def process(self, msg, kwargs):
        return f"{self.extra['node']}: {msg}", kwargs


def _console_handler() -> logging.Handler:
    ch = logging.StreamHandler(sys.stderr)
    ch.setLevel(LEVELS.get(os.getenv("LBUILD_LOG_LEVEL", "info").lower(), logging.INFO))
    ch.setFormatter(ColorFormatter("%(message)s", use_color=sys.stderr.isatty()))
    return ch


def _file_handler():
    log_dir = config.get("log_dir")
    try:
        os.makedirs(log_dir, exist_ok=True)
    except OSError as e:
        _root_logger.warning("Sem log em arquivo, %s indisponível: %s", log_dir, e)
        return None
    fh = RotatingFileHandler(os.path.join(log_dir, LOG_FILE), maxBytes=5 * 1024 * 1024, backupCount=3)
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(logging.Formatter(
        "%(asctime)s [%(levelname)s] [%(name)s] [%(threadName)s] %(message)s",
        "%Y-%m-%d %H:%M:%S"
    ))
    return fh


def _setup_handlers():
    if _root_logger.handlers:
        return
    _root_logger.addHandler(_console_handler())
    fh = _file_handler()
    if fh is not None:
        _root_logger.addHandler(fh)


_setup_handlers()


# -------------------------
# API pública
# -------------------------
def get_logger(name: str = "lbuild"):
    """Sub-logger (ex.: log.get_logger("sandbox") -> lbuild.sandbox)"""
    return _root_logger.getChild(name)


def for_node(logger: logging.Logger, nid: str) -> NodeAdapter:
    return NodeAdapter(logger, {"node": nid})


def set_level(level: str):
    """Altera o nível do console; o arquivo continua em debug"""
    lvl = LEVELS.get(level.lower())
    if lvl is None:
        raise ValueError(f"Nível inválido: {level}")
    for handler in _root_logger.handlers:
        if not isinstance(handler, RotatingFileHandler):
            handler.setLevel(lvl)


def run_cmd(cmd: list[str], cwd: str | None = None, env: dict | None = None,
            timeout: float | None = None):
    """
    Executa comando externo e devolve (returncode, stdout, stderr).
    stdout vai para o log em debug, stderr em warning.
    Levanta subprocess.TimeoutExpired se o timeout estourar (processo é morto).
    """
    logger = get_logger("cmd")
    logger.debug("$ %s", " ".join(cmd))
    process = subprocess.Popen(cmd, cwd=cwd, env=env, stdout=subprocess.PIPE,
                               stderr=subprocess.PIPE, text=True)
    try:
        out, err = process.communicate(timeout=timeout)
    except subprocess.TimeoutExpired:
        process.kill()
        process.communicate()
        raise

    for line in out.splitlines():
        logger.debug("[stdout] %s", line)
    for line in err.splitlines():
        logger.warning("[stderr] %s", line)
    if process.returncode != 0:
        logger.error("%s terminou com código %s", cmd[0], process.returncode)
    return process.returncode, out.rstrip("\n"), err.rstrip("\n")


# Atalhos no logger raiz
def debug(msg, *args, **kwargs): _root_logger.debug(msg, *args, **kwargs)
def info(msg, *args, **kwargs): _root_logger.info(msg, *args, **kwargs)
