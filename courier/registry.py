"""
In-memory registry of live sync processes, keyed by run id.
"""

from __future__ import annotations

import logging
import subprocess
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional

from courier.errors import DuplicateRunError

logger = logging.getLogger("courier.registry")

DEFAULT_KILL_GRACE_SECONDS = 5.0

STOP_USER = "user"
STOP_SHUTDOWN = "shutdown"
STOP_PRECANCELLED = "precancelled"


@dataclass
class _Entry:
    process: subprocess.Popen
    stop_reason: Optional[str] = None
    kill_timer: Optional[threading.Timer] = None


class ProcessRegistry:
    """Concurrent map of run id to process handle.

    ``stop`` records why the process is being stopped; ``unregister`` hands
    that reason back to the exit handler, which uses it to tell a requested
    stop apart from a process that died on its own.
    """

    def __init__(self, kill_grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS):
        self.kill_grace_seconds = kill_grace_seconds
        self._entries: Dict[int, _Entry] = {}
        self._lock = threading.Lock()

    def register(self, run_id: int, process: subprocess.Popen) -> None:
        with self._lock:
            if run_id in self._entries:
                raise DuplicateRunError(f"A process is already registered for run {run_id}.")
            self._entries[run_id] = _Entry(process=process)

    def unregister(self, run_id: int) -> Optional[str]:
        with self._lock:
            entry = self._entries.pop(run_id, None)
        if entry is None:
            return None
        if entry.kill_timer is not None:
            entry.kill_timer.cancel()
        return entry.stop_reason

    def stop(self, run_id: int, reason: str = STOP_USER) -> bool:
        with self._lock:
            entry = self._entries.get(run_id)
            if entry is None or entry.process.poll() is not None:
                return False
            if entry.stop_reason is None:
                entry.stop_reason = reason
            process = entry.process
            if entry.kill_timer is None:
                entry.kill_timer = threading.Timer(
                    self.kill_grace_seconds,
                    self._force_kill,
                    args=(run_id, process),
                )
                entry.kill_timer.daemon = True
                entry.kill_timer.start()

        logger.info("[run %s] Sending SIGTERM to pid %s (reason=%s)", run_id, process.pid, reason)
        try:
            process.terminate()
        except ProcessLookupError:
            pass
        return True

    def is_registered(self, run_id: int) -> bool:
        with self._lock:
            return run_id in self._entries

    def reap(self, run_id: int, timeout: Optional[float] = None) -> Optional[int]:
        """Wait for a registered process to exit, killing it if it outlives ``timeout``."""
        with self._lock:
            entry = self._entries.get(run_id)
        if entry is None:
            return None
        process = entry.process
        try:
            return process.wait(self.kill_grace_seconds if timeout is None else timeout)
        except subprocess.TimeoutExpired:
            logger.warning("[run %s] pid %s did not exit; sending SIGKILL", run_id, process.pid)
            process.kill()
            return process.wait()

    def is_running(self, run_id: int) -> bool:
        with self._lock:
            entry = self._entries.get(run_id)
        return entry is not None and entry.process.poll() is None

    def running_ids(self) -> List[int]:
        with self._lock:
            return [run_id for run_id, entry in self._entries.items() if entry.process.poll() is None]

    def stop_all(self, reason: str = STOP_SHUTDOWN) -> List[int]:
        return [run_id for run_id in self.running_ids() if self.stop(run_id, reason)]

    def _force_kill(self, run_id: int, process: subprocess.Popen) -> None:
        if process.poll() is not None:
            return
        logger.warning(
            "[run %s] pid %s still alive %.0fs after SIGTERM; sending SIGKILL",
            run_id,
            process.pid,
            self.kill_grace_seconds,
        )
        try:
            process.kill()
        except ProcessLookupError:
            pass
