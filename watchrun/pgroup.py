"""Process-group setup and termination.

A :class:`ProcessGroup` has two steps: :meth:`~ProcessGroup.popen_kwargs`
places a new process in its own group when it is spawned, and
:meth:`~ProcessGroup.kill` terminates that group. Callers never branch on
the platform; :func:`default_process_group` picks the implementation.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import sys
import threading
from typing import Any, Dict, List, Optional

import psutil

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = [
    "FallbackProcessGroup",
    "PosixProcessGroup",
    "ProcessGroup",
    "default_process_group",
]

DEFAULT_GRACE_SECONDS = 0.5


class ProcessGroup:
    """Base class for process-group capabilities.

    Attributes:
        grace (float): Seconds between the polite termination request and the
            hard kill of whatever survived it.
    """

    def __init__(self, grace: float = DEFAULT_GRACE_SECONDS) -> None:
        self.grace = grace

    def popen_kwargs(self) -> Dict[str, Any]:
        """Return extra keyword arguments for :class:`subprocess.Popen`."""
        return {}

    def kill(self, process: subprocess.Popen) -> Optional[threading.Timer]:
        """Terminate ``process`` and everything in its group.

        Returns once the termination request was issued. The hard kill runs on
        a daemon timer after :attr:`grace` seconds, which is returned so callers
        may cancel or wait for it.
        """
        raise NotImplementedError

    def _escalate(self, action: Any, *args: Any) -> threading.Timer:
        timer = threading.Timer(self.grace, action, args=args)
        timer.name = "ProcessGroupKill"
        timer.daemon = True
        timer.start()
        return timer


class PosixProcessGroup(ProcessGroup):
    """Start each process in a new session and signal the whole group."""

    def popen_kwargs(self) -> Dict[str, Any]:
        return {"start_new_session": True}

    def kill(self, process: subprocess.Popen) -> Optional[threading.Timer]:
        # start_new_session makes the child a group leader: pgid == pid
        pgid = process.pid
        if not self._signal(pgid, signal.SIGTERM):
            return None
        return self._escalate(self._hard_kill, process, pgid)

    def _hard_kill(self, process: subprocess.Popen, pgid: int) -> None:
        if process.poll() is None or self._signal(pgid, 0):
            logger.debug(f"Process group {pgid} survived SIGTERM, sending SIGKILL")
            self._signal(pgid, signal.SIGKILL)

    @staticmethod
    def _signal(pgid: int, sig: int) -> bool:
        try:
            os.killpg(pgid, sig)
            return True
        except (ProcessLookupError, PermissionError) as e:
            logger.debug(f"Process group {pgid} already gone ({e})")
            return False


class FallbackProcessGroup(ProcessGroup):
    """Best-effort tree kill for platforms without POSIX process groups."""

    def popen_kwargs(self) -> Dict[str, Any]:
        flags = getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0)
        return {"creationflags": flags} if flags else {}

    def kill(self, process: subprocess.Popen) -> Optional[threading.Timer]:
        tree = self._tree(process.pid)
        if not tree:
            return None
        for proc in tree:
            try:
                proc.terminate()
            except psutil.NoSuchProcess:
                pass
            except psutil.AccessDenied as e:
                logger.debug(f"Cannot terminate {proc.pid}: {e}")
        return self._escalate(self._hard_kill, tree)

    @staticmethod
    def _tree(pid: int) -> List[psutil.Process]:
        try:
            parent = psutil.Process(pid)
            return [parent] + parent.children(recursive=True)
        except psutil.NoSuchProcess:
            return []
        except psutil.AccessDenied as e:
            logger.debug(f"Cannot list children of {pid}: {e}")
            return [psutil.Process(pid)]

    @staticmethod
    def _hard_kill(tree: List[psutil.Process]) -> None:
        _, alive = psutil.wait_procs(tree, timeout=0)
        for proc in alive:
            try:
                proc.kill()
            except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
                logger.debug(f"Cannot kill {proc.pid}: {e}")


def default_process_group(grace: float = DEFAULT_GRACE_SECONDS) -> ProcessGroup:
    """Return the process-group implementation for this platform."""
    if sys.platform != "win32" and hasattr(os, "killpg"):
        return PosixProcessGroup(grace)
    return FallbackProcessGroup(grace)
