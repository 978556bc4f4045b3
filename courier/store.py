"""
Job store interface and the two implementations shipped with courier.

``MemoryJobStore`` keeps everything in process. ``FileJobStore`` reads job
definitions and settings from the YAML config, reloading them when the file
changes, and records every run in a JSONL history file that other courier
processes on the same config read and append to as well.
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Protocol, Set

from courier.config import CourierConfig, Settings, load_config
from courier.errors import ConfigError, CourierError, RunNotFoundError
from courier.models import STATUS_RUNNING, Job, ProgressSnapshot, Run, RunOutcome

logger = logging.getLogger("courier.store")
UTC = timezone.utc


class JobStore(Protocol):
    def list_enabled_jobs(self) -> List[Job]: ...

    def is_running(self, job_id: str) -> bool: ...

    def last_run_start_time(self, job_id: str) -> Optional[datetime]: ...

    def create_run(self, job_id: str, kind: str) -> Run: ...

    def append_progress(self, run_id: int, snapshot: ProgressSnapshot) -> None: ...

    def finalize_run(self, run_id: int, outcome: RunOutcome) -> bool: ...

    def get_run(self, run_id: int) -> Optional[Run]: ...


class MemoryJobStore:
    """Thread-safe in-process store. Runs never change once terminal."""

    def __init__(
        self,
        jobs: Iterable[Job] = (),
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._jobs: Dict[str, Job] = {job.id: job for job in jobs}
        self._runs: Dict[int, Run] = {}
        self._progress: Dict[int, List[ProgressSnapshot]] = {}
        self._next_id = 1
        self._lock = threading.RLock()
        self._clock = clock or (lambda: datetime.now(tz=UTC))

    def set_jobs(self, jobs: Iterable[Job]) -> None:
        with self._lock:
            self._jobs = {job.id: job for job in jobs}

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._lock:
            return self._jobs.get(job_id)

    def list_jobs(self) -> List[Job]:
        with self._lock:
            return list(self._jobs.values())

    def list_enabled_jobs(self) -> List[Job]:
        return [job for job in self.list_jobs() if job.enabled]

    def list_runs(self, job_id: Optional[str] = None) -> List[Run]:
        with self._lock:
            runs = sorted(self._runs.values(), key=lambda run: run.id)
        if job_id is not None:
            runs = [run for run in runs if run.job_id == job_id]
        return runs

    def progress_history(self, run_id: int) -> List[ProgressSnapshot]:
        with self._lock:
            return list(self._progress.get(run_id, []))

    def is_running(self, job_id: str) -> bool:
        with self._lock:
            return any(run.job_id == job_id and run.status == STATUS_RUNNING for run in self._runs.values())

    def last_run_start_time(self, job_id: str) -> Optional[datetime]:
        with self._lock:
            starts = [run.started_at for run in self._runs.values() if run.job_id == job_id]
        return max(starts) if starts else None

    def create_run(self, job_id: str, kind: str) -> Run:
        with self._lock:
            run = Run(
                id=self._next_id,
                job_id=job_id,
                kind=kind,
                status=STATUS_RUNNING,
                started_at=self._clock(),
                short_summary="Job started...",
            )
            self._next_id += 1
            self._runs[run.id] = run
            return _copy_run(run)

    def get_run(self, run_id: int) -> Optional[Run]:
        with self._lock:
            run = self._runs.get(run_id)
            return _copy_run(run) if run is not None else None

    def append_progress(self, run_id: int, snapshot: ProgressSnapshot) -> None:
        with self._lock:
            run = self._runs.get(run_id)
            if run is None:
                raise RunNotFoundError(f"Unknown run {run_id}.")
            if run.is_terminal:
                return
            run.bytes_transferred = snapshot.bytes_transferred
            run.files_transferred = snapshot.files_transferred
            run.errors_count = snapshot.errors_count
            run.short_summary = snapshot.short_summary
            self._progress.setdefault(run_id, []).append(snapshot)

    def finalize_run(self, run_id: int, outcome: RunOutcome) -> bool:
        """Apply a terminal outcome. Returns False if the run was already terminal."""
        with self._lock:
            run = self._runs.get(run_id)
            if run is None:
                raise RunNotFoundError(f"Unknown run {run_id}.")
            if run.is_terminal:
                logger.info("[run %s] Already %s; ignoring %s outcome", run_id, run.status, outcome.status)
                return False
            finished = self._clock()
            run.status = outcome.status
            run.finished_at = finished
            run.duration_seconds = max(int(round((finished - run.started_at).total_seconds())), 0)
            run.bytes_transferred = outcome.bytes_transferred
            run.files_transferred = outcome.files_transferred
            run.errors_count = outcome.errors_count
            run.short_summary = outcome.short_summary
            run.log_excerpt = outcome.log_excerpt
            finalized = _copy_run(run)
        self._on_finalized(finalized)
        return True

    def _on_finalized(self, run: Run) -> None:
        pass


class FileJobStore(MemoryJobStore):
    """Jobs from a YAML config file; runs recorded in a JSONL history.

    The history is shared by every courier process using the same config. A
    run is appended once when it starts and again when it finishes, and new
    ids are allocated under an exclusive lock on a sibling ``.lock`` file.
    """

    def __init__(self, config_path: Path, clock: Optional[Callable[[], datetime]] = None):
        super().__init__(clock=clock)
        self.config_path = config_path
        self._config_mtime: Optional[float] = None
        self._config: Optional[CourierConfig] = None
        self._history_lock = threading.Lock()
        self._history_path: Optional[Path] = None
        self._history_offset = 0
        self._history_line_no = 0
        self._owned: Set[int] = set()
        self._foreign_owners: Dict[int, int] = {}
        self.reload(force=True)
        self._replay_history()

    @property
    def config(self) -> CourierConfig:
        self.reload()
        assert self._config is not None
        return self._config

    def settings(self) -> Settings:
        return self.config.settings

    @property
    def history_file(self) -> Optional[Path]:
        return self._config.settings.history_file if self._config else None

    def reload(self, force: bool = False) -> bool:
        """Re-read the config file if it changed. A broken edit keeps the previous config."""
        try:
            mtime = self.config_path.stat().st_mtime
        except OSError as exc:
            if force:
                raise ConfigError(f"Error: Config file not found: {self.config_path}") from exc
            logger.warning("Config file %s is unreadable; keeping previous config: %s", self.config_path, exc)
            return False
        if not force and self._config_mtime == mtime:
            return False
        try:
            config = load_config(self.config_path)
        except CourierError as exc:
            if force:
                raise
            logger.error("Config reload failed; keeping previous config: %s", exc)
            self._config_mtime = mtime
            return False
        self._config = config
        self._config_mtime = mtime
        self.set_jobs(config.jobs)
        logger.info("Loaded %s job(s) from %s", len(config.jobs), self.config_path)
        return True

    def list_enabled_jobs(self) -> List[Job]:
        self.reload()
        return super().list_enabled_jobs()

    def is_running(self, job_id: str) -> bool:
        self._sync_history()
        self._drop_orphaned_runs()
        return super().is_running(job_id)

    def last_run_start_time(self, job_id: str) -> Optional[datetime]:
        self._sync_history()
        return super().last_run_start_time(job_id)

    def list_runs(self, job_id: Optional[str] = None) -> List[Run]:
        self._sync_history()
        return super().list_runs(job_id)

    def create_run(self, job_id: str, kind: str) -> Run:
        """Allocate the next id under the history lock so other courier processes never reuse it."""
        path = self.history_file
        if path is None:
            return super().create_run(job_id, kind)
        with self._history_guard(path):
            self._read_new_history(path)
            run = super().create_run(job_id, kind)
            self._owned.add(run.id)
            self._append_history(path, run)
        return run

    @contextmanager
    def _history_guard(self, path: Path) -> Iterator[None]:
        lock_path = path.with_name(path.name + ".lock")
        with self._history_lock:
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                handle = lock_path.open("a", encoding="utf-8")
            except OSError as exc:
                logger.warning("Cannot open history lock %s; continuing unlocked: %s", lock_path, exc)
                handle = None
            if handle is None:
                yield
                return
            with handle:
                fcntl.flock(handle, fcntl.LOCK_EX)
                try:
                    yield
                finally:
                    fcntl.flock(handle, fcntl.LOCK_UN)

    def _replay_history(self) -> None:
        path = self.history_file
        if path is None:
            return
        with self._history_lock:
            restored = self._read_new_history(path)
        if restored:
            logger.info("Replayed %s run(s) from %s", restored, path)

    def _sync_history(self) -> None:
        path = self.history_file
        if path is None:
            return
        with self._history_lock:
            self._read_new_history(path)

    def _read_new_history(self, path: Path) -> int:
        """Apply history lines appended since the last read. Caller holds ``_history_lock``."""
        if self._history_path != path:
            self._history_path = path
            self._history_offset = 0
            self._history_line_no = 0
        try:
            with path.open("rb") as handle:
                size = os.fstat(handle.fileno()).st_size
                if size < self._history_offset:
                    self._history_offset = 0
                    self._history_line_no = 0
                if size == self._history_offset:
                    return 0
                handle.seek(self._history_offset)
                data = handle.read(size - self._history_offset)
        except FileNotFoundError:
            return 0
        except OSError as exc:
            logger.warning("Failed to read run history %s: %s", path, exc)
            return 0

        complete = data.rfind(b"\n") + 1
        self._history_offset += complete
        applied = 0
        for line in data[:complete].decode("utf-8", errors="replace").splitlines():
            self._history_line_no += 1
            if not line.strip():
                continue
            try:
                payload = json.loads(line)
                run = Run.from_payload(payload)
                owner_pid = payload.get("owner_pid")
                owner_pid = int(owner_pid) if owner_pid is not None else None
            except (ValueError, KeyError, TypeError) as exc:
                logger.warning("Skipping malformed history line %s in %s: %s", self._history_line_no, path, exc)
                continue
            if self._apply_history_record(run, owner_pid):
                applied += 1
        return applied

    def _apply_history_record(self, run: Run, owner_pid: Optional[int]) -> bool:
        with self._lock:
            self._next_id = max(self._next_id, run.id + 1)
            if run.id in self._owned:
                return False
            existing = self._runs.get(run.id)
            if existing is not None and existing.is_terminal:
                return False
            if run.is_terminal:
                self._foreign_owners.pop(run.id, None)
            elif owner_pid is None or not _process_alive(owner_pid):
                return False
            else:
                self._foreign_owners[run.id] = owner_pid
            self._runs[run.id] = run
            return True

    def _drop_orphaned_runs(self) -> None:
        with self._lock:
            orphaned = [run_id for run_id, pid in self._foreign_owners.items() if not _process_alive(pid)]
            for run_id in orphaned:
                del self._foreign_owners[run_id]
                self._runs.pop(run_id, None)
        for run_id in orphaned:
            logger.warning("[run %s] Owning process exited without recording an outcome; ignoring run", run_id)

    def _append_history(self, path: Path, run: Run) -> None:
        payload = run.to_payload()
        payload["owner_pid"] = os.getpid()
        try:
            with path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(payload, separators=(",", ":")) + "\n")
        except OSError as exc:
            logger.warning("[run %s] Failed to append run history to %s: %s", run.id, path, exc)

    def _on_finalized(self, run: Run) -> None:
        path = self.history_file
        if path is None:
            return
        with self._history_guard(path):
            self._append_history(path, run)


def _process_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _copy_run(run: Run) -> Run:
    return replace(run)
