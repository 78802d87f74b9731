#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
modules/sandbox.py — Diretório de trabalho isolado por build

- Classe Sandbox: cwd próprio, ambiente controlado, limites via prlimit
- Timeout por build (prazo compartilhado por todos os comandos do pacote)
- Cancelamento cooperativo (CancelToken), com política wait | terminate
- Logs por comando
- Callbacks de eventos
"""

import os
import shutil
import subprocess
import threading
import time
from typing import List, Dict, Optional, Callable, Union

from lbuild.modules import log

logger = log.get_logger("sandbox")

_POLL_INTERVAL = 0.1


class BuildTimeout(Exception):
    def __init__(self, cmd, timeout: float):
        self.cmd = cmd
        self.timeout = timeout
        super().__init__(f"Timeout após {timeout:g}s: {_cmd_text(cmd)}")


class BuildCancelled(Exception):
    pass


def _cmd_text(cmd) -> str:
    return cmd if isinstance(cmd, str) else " ".join(cmd)


# ---------------------------
# Cancelamento
# ---------------------------
class CancelToken:
    """
    Sinal de cancelamento compartilhado entre o orquestrador e os workers.
    policy: "wait" deixa builds em andamento terminarem; "terminate" mata os processos.
    """

    def __init__(self, policy: str = "wait"):
        if policy not in ("wait", "terminate"):
            raise ValueError(f"Política de cancelamento inválida: {policy}")
        self.policy = policy
        self._event = threading.Event()

    def cancel(self, policy: Optional[str] = None) -> None:
        if policy:
            self.policy = policy
        self._event.set()
        logger.warning("Cancelamento solicitado (política: %s)", self.policy)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def terminate(self) -> bool:
        return self._event.is_set() and self.policy == "terminate"


# ---------------------------
# Classe principal
# ---------------------------
class Sandbox:
    def __init__(self, workdir: str,
                 env: Optional[Dict[str, str]] = None,
                 timeout: Optional[float] = None,
                 cancel: Optional[CancelToken] = None,
                 logs_dir: Optional[str] = None,
                 resources: Optional[Dict] = None,
                 callbacks: Optional[Dict[str, Callable]] = None):
        """
        :param workdir: diretório de trabalho do build (criado se não existir)
        :param env: variáveis extras sobre os.environ
        :param timeout: prazo total em segundos para este build
        :param cancel: CancelToken compartilhado
        :param logs_dir: onde gravar logs por comando
        :param resources: limites {cpu, memory} aplicados via prlimit
        :param callbacks: callbacks {on_start, on_exit}
        """
        self.workdir = workdir
        self.env = dict(env or {})
        self.timeout = timeout
        self.cancel = cancel
        self.logs_dir = logs_dir
        self.resources = resources or {}
        self.callbacks = callbacks or {}
        self._deadline = time.monotonic() + timeout if timeout else None
        os.makedirs(self.workdir, exist_ok=True)
        if self.logs_dir:
            os.makedirs(self.logs_dir, exist_ok=True)

    def remaining(self) -> Optional[float]:
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def _final_cmd(self, cmd: List[str]) -> List[str]:
        prlimit = []
        if self.resources.get("memory"):
            prlimit += ["--as=" + str(self.resources["memory"])]
        if self.resources.get("cpu"):
            prlimit += ["--cpu=" + str(self.resources["cpu"])]
        if prlimit and shutil.which("prlimit"):
            return ["prlimit"] + prlimit + ["--"] + list(cmd)
        return list(cmd)

    @staticmethod
    def _stop(proc: subprocess.Popen) -> None:
        proc.terminate()
        try:
            proc.communicate(timeout=5)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.communicate()

    # ---------------------------
    # Execução de comandos
    # ---------------------------
    def run(self, cmd: Union[List[str], str], env: Optional[Dict[str, str]] = None,
            cwd: Optional[str] = None, log_name: Optional[str] = None) -> subprocess.CompletedProcess:
        """
        Executa comando no diretório do sandbox. Strings são executadas via /bin/sh -c.
        Levanta BuildTimeout quando o prazo do build estoura e BuildCancelled
        quando o cancelamento pede terminate. O código de saída não é verificado.
        """
        if self.cancel is not None and self.cancel.cancelled and self.cancel.terminate:
            raise BuildCancelled(_cmd_text(cmd))
        argv = ["/bin/sh", "-c", cmd] if isinstance(cmd, str) else self._final_cmd(cmd)
        full_env = {**os.environ, **self.env, **(env or {})}
        run_cwd = cwd or self.workdir
        logger.debug("Sandbox.run: %s (cwd=%s)", _cmd_text(cmd), run_cwd)

        if "on_start" in self.callbacks:
            self.callbacks["on_start"](cmd)
        proc = subprocess.Popen(argv, cwd=run_cwd, env=full_env, text=True,
                                stdout=subprocess.PIPE, stderr=subprocess.PIPE)
        while True:
            try:
                out, err = proc.communicate(timeout=_POLL_INTERVAL)
                break
            except subprocess.TimeoutExpired:
                remaining = self.remaining()
                if remaining is not None and remaining <= 0:
                    self._stop(proc)
                    logger.error("Timeout: %s", _cmd_text(cmd))
                    raise BuildTimeout(cmd, self.timeout)
                if self.cancel is not None and self.cancel.terminate:
                    self._stop(proc)
                    logger.warning("Processo terminado por cancelamento: %s", _cmd_text(cmd))
                    raise BuildCancelled(_cmd_text(cmd))

        if log_name and self.logs_dir:
            logfile = os.path.join(self.logs_dir, f"{log_name}.log")
            with open(logfile, "a", encoding="utf-8") as f:
                f.write(f"$ {_cmd_text(cmd)}\n{out}{err}\n[exit {proc.returncode}]\n")
        if "on_exit" in self.callbacks:
            self.callbacks["on_exit"](cmd, proc.returncode)
        return subprocess.CompletedProcess(argv, proc.returncode, stdout=out, stderr=err)

    # ---------------------------
    # Cleanup
    # ---------------------------
    def cleanup(self) -> None:
        if os.path.exists(self.workdir):
            shutil.rmtree(self.workdir, ignore_errors=True)
            logger.debug("Sandbox %s removido", self.workdir)


__all__ = ["BuildTimeout", "BuildCancelled", "CancelToken", "Sandbox"]
