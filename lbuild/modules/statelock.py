"""
Trava consultiva do estado do projeto (lockfile + árvore de instalação).

Mantida durante resolve + lock + build; um segundo processo que tente
adquiri-la falha imediatamente com Busy.
"""

from __future__ import annotations

import errno
import fcntl
import os
from typing import Optional

from lbuild.modules import log

logger = log.get_logger("statelock")


class Busy(Exception):
    def __init__(self, path: str, holder: Optional[str] = None):
        self.path = path
        self.holder = holder
        msg = f"Estado do projeto travado por outro processo ({path})"
        if holder:
            msg += f", pid {holder}"
        super().__init__(msg)


class StateLock:
    def __init__(self, path: str):
        self.path = path
        self._fh = None

    @property
    def locked(self) -> bool:
        return self._fh is not None

    def acquire(self) -> "StateLock":
        if self._fh is not None:
            return self
        os.makedirs(os.path.dirname(os.path.abspath(self.path)), exist_ok=True)
        fh = open(self.path, "a+", encoding="utf-8")
        try:
            fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as e:
            fh.seek(0)
            holder = fh.read().strip() or None
            fh.close()
            if e.errno in (errno.EAGAIN, errno.EACCES, errno.EWOULDBLOCK):
                raise Busy(self.path, holder) from e
            raise
        fh.seek(0)
        fh.truncate()
        fh.write(str(os.getpid()))
        fh.flush()
        self._fh = fh
        logger.debug("Trava adquirida: %s", self.path)
        return self

    def release(self) -> None:
        if self._fh is None:
            return
        try:
            self._fh.seek(0)
            self._fh.truncate()
            fcntl.flock(self._fh.fileno(), fcntl.LOCK_UN)
        finally:
            self._fh.close()
            self._fh = None
            logger.debug("Trava liberada: %s", self.path)

    def __enter__(self) -> "StateLock":
        return self.acquire()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


__all__ = ["Busy", "StateLock"]
