"""Detached agent processes: spawning, exact-tag lookup and signalling."""

import logging
import os
import signal as signals
import subprocess
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from pathlib import Path
from typing import Literal

import psutil

from scout.errors import ResourceError

logger = logging.getLogger(__name__)

# Every agent process (and its children, which inherit the environment)
# carries the run's callback id under this variable.
TAG_ENV_VAR = "SCOUT_CALLBACK_ID"

SignalKind = Literal["term", "kill"]


class ProcessSupervisor(ABC):
    @abstractmethod
    def spawn_detached(self, command: list[str], env: dict[str, str], cwd: Path, log_path: Path) -> int:
        """Start ``command`` in its own session and return its pid without waiting."""

    @abstractmethod
    def list_processes_tagged(self, tag: str) -> list[int]: ...

    @abstractmethod
    def signal(self, pid: int, kind: SignalKind) -> bool:
        """Deliver a signal; False if the process was already gone."""

    @abstractmethod
    def is_alive(self, pid: int) -> bool: ...


class OsProcessSupervisor(ProcessSupervisor):
    def spawn_detached(self, command: list[str], env: dict[str, str], cwd: Path, log_path: Path) -> int:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        log_handle = log_path.open("a", encoding="utf-8")
        try:
            proc = subprocess.Popen(
                command,
                cwd=cwd,
                env={**os.environ, **env},
                stdin=subprocess.DEVNULL,
                stdout=log_handle,
                stderr=subprocess.STDOUT,
                close_fds=True,
                start_new_session=True,
            )
        finally:
            log_handle.close()
        logger.info("Spawned agent pid=%s (log: %s)", proc.pid, log_path)
        return proc.pid

    def list_processes_tagged(self, tag: str) -> list[int]:
        pids = []
        for proc in psutil.process_iter(["pid"]):
            try:
                if proc.environ().get(TAG_ENV_VAR) == tag:
                    pids.append(proc.pid)
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue
        return pids

    def signal(self, pid: int, kind: SignalKind) -> bool:
        sig = signals.SIGTERM if kind == "term" else signals.SIGKILL
        try:
            psutil.Process(pid).send_signal(sig)
        except psutil.NoSuchProcess:
            return False
        except psutil.AccessDenied as exc:
            raise ResourceError(f"Not permitted to signal pid {pid}") from exc
        return True

    def is_alive(self, pid: int) -> bool:
        try:
            proc = psutil.Process(pid)
            return proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE
        except psutil.NoSuchProcess:
            return False


def terminate_tagged(
    supervisor: ProcessSupervisor,
    tag: str,
    grace_seconds: float,
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    """TERM every process tagged ``tag``, then KILL whatever outlives the grace period.

    Returns how many processes carried the tag. Signal failures are logged.
    """
    pids = supervisor.list_processes_tagged(tag)
    if not pids:
        return 0
    for pid in pids:
        _send(supervisor, pid, "term")
    sleep(grace_seconds)
    for pid in pids:
        if supervisor.is_alive(pid):
            logger.warning("pid %s ignored SIGTERM, killing", pid)
            _send(supervisor, pid, "kill")
    return len(pids)


def _send(supervisor: ProcessSupervisor, pid: int, kind: SignalKind) -> None:
    try:
        supervisor.signal(pid, kind)
    except ResourceError as exc:
        logger.error("Could not signal pid %s: %s", pid, exc.message)
