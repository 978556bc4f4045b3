"""
Job Runner: spawns the sync tool for one run, streams its progress into the
store and finalizes the run exactly once.
"""

from __future__ import annotations

import codecs
import logging
import os
import shlex
import signal
import subprocess
import threading
import time
from typing import Callable, Dict, List, Optional, Set, Union

from courier.config import Settings, split_flags
from courier.errors import CourierError, RunNotFoundError
from courier.models import (
    KIND_MIRROR,
    KIND_VERIFY,
    RUN_KINDS,
    RUN_VERIFY,
    STATUS_CANCELLED,
    STATUS_FAILURE,
    STATUS_RUNNING,
    STATUS_SUCCESS,
    Job,
    NotificationEvent,
    ProgressSnapshot,
    Run,
    RunOutcome,
)
from courier.notify import Notifier, safe_notify
from courier.progress import LogTail, TransferProgressParser, VerifyProgressParser, format_bytes, format_duration
from courier.registry import STOP_PRECANCELLED, STOP_SHUTDOWN, STOP_USER, ProcessRegistry
from courier.store import JobStore

logger = logging.getLogger("courier.runner")

DEFAULT_PROGRESS_INTERVAL_SECONDS = 5.0
READ_CHUNK_SIZE = 64 * 1024
VERIFY_FILTER_FLAGS = {"--exclude", "--min-size", "--max-size"}
FORCE_STOPPED_SUMMARY = "Force stopped by user (process not found in memory)."

Parser = Union[TransferProgressParser, VerifyProgressParser]


def verify_filter_args(args: List[str]) -> List[str]:
    """Keep only the filter flags (and their values) a one-way check understands."""
    kept: List[str] = []
    idx = 0
    while idx < len(args):
        arg = args[idx]
        name, has_value, _ = arg.partition("=")
        if name in VERIFY_FILTER_FLAGS:
            kept.append(arg)
            if not has_value and idx + 1 < len(args):
                kept.append(args[idx + 1])
                idx += 1
        idx += 1
    return kept


def build_command(job: Job, run_kind: str, settings: Settings, checksum: bool = False) -> List[str]:
    check = run_kind == RUN_VERIFY or job.kind == KIND_VERIFY
    if check:
        subcommand = "check"
    elif job.kind == KIND_MIRROR:
        subcommand = "sync"
    else:
        subcommand = "copy"

    command = [*settings.sync_command, subcommand, job.source, job.destination]
    command += [
        "--config",
        settings.effective_rclone_config(),
        "--stats-one-line",
        "--stats",
        "5s",
        "-v",
        "--use-json-log",
    ]
    if check:
        command.append("--one-way")
        if checksum:
            command.append("--checksum")
    if settings.max_bandwidth:
        command += ["--bwlimit", settings.max_bandwidth]

    extra = split_flags(job.flags)
    if check and job.kind != KIND_VERIFY:
        extra = verify_filter_args(extra)
    return command + extra


def _exit_description(returncode: int) -> str:
    if returncode < 0:
        try:
            name = signal.Signals(-returncode).name
        except ValueError:
            name = f"signal {-returncode}"
        return f"terminated by {name}"
    return f"exit code {returncode}"


def _rate(amount: float, elapsed_seconds: float) -> float:
    return amount / elapsed_seconds if elapsed_seconds > 0 else 0.0


class JobRunner:
    def __init__(
        self,
        store: JobStore,
        registry: Optional[ProcessRegistry] = None,
        notifier: Optional[Notifier] = None,
        settings_source: Optional[Callable[[], Settings]] = None,
        progress_interval: float = DEFAULT_PROGRESS_INTERVAL_SECONDS,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.registry = registry or ProcessRegistry()
        self.notifier = notifier
        self._settings_source = settings_source or Settings
        self.progress_interval = progress_interval
        self._monotonic = monotonic
        self._active: Set[int] = set()
        self._threads: Dict[int, threading.Thread] = {}
        self._lock = threading.Lock()

    def settings(self) -> Settings:
        return self._settings_source()

    def active_count(self) -> int:
        with self._lock:
            return len(self._active)

    def launch(self, job: Job, kind: str, checksum: bool = False) -> Run:
        """Create a run and execute it on a background thread."""
        run = self._create_run(job, kind)
        thread = threading.Thread(
            target=self.execute,
            args=(job, run, checksum),
            daemon=True,
            name=f"courier-run-{run.id}",
        )
        with self._lock:
            self._active.add(run.id)
            self._threads[run.id] = thread
        logger.info("[run %s] Dispatching %s run of %s", run.id, kind, job.name)
        thread.start()
        return run

    def run_now(self, job: Job, kind: str, checksum: bool = False) -> Optional[Run]:
        """Create a run and execute it on the calling thread."""
        run = self._create_run(job, kind)
        return self.execute(job, run, checksum)

    def _create_run(self, job: Job, kind: str) -> Run:
        if kind not in RUN_KINDS:
            raise CourierError(f"Unsupported run kind \"{kind}\" for job {job.id}.")
        return self.store.create_run(job.id, kind)

    def wait(self, timeout: Optional[float] = None) -> None:
        with self._lock:
            threads = list(self._threads.values())
        for thread in threads:
            thread.join(timeout)

    def execute(self, job: Job, run: Run, checksum: bool = False) -> Optional[Run]:
        with self._lock:
            self._active.add(run.id)
        try:
            self._execute(job, run, checksum)
        except Exception as exc:
            logger.exception("[run %s] Unexpected error while running %s", run.id, job.name)
            if self.registry.is_running(run.id):
                self.registry.stop(run.id, STOP_SHUTDOWN)
            self.registry.reap(run.id)
            self.registry.unregister(run.id)
            self._finish(
                job,
                run,
                RunOutcome(status=STATUS_FAILURE, errors_count=1, short_summary=f"Internal error: {exc}"),
            )
        finally:
            with self._lock:
                self._active.discard(run.id)
                self._threads.pop(run.id, None)
        return self.store.get_run(run.id)

    def _execute(self, job: Job, run: Run, checksum: bool) -> None:
        current = self.store.get_run(run.id)
        if current is not None and current.is_terminal:
            logger.info("[run %s] Already %s before start; not spawning", run.id, current.status)
            return

        if not job.has_endpoints:
            logger.error("[run %s] Job %s has no source or destination configured", run.id, job.name)
            self._finish(
                job,
                run,
                RunOutcome(
                    status=STATUS_FAILURE,
                    errors_count=1,
                    short_summary="Configuration error: source and destination are required.",
                ),
            )
            return

        if self.registry.is_running(run.id):
            logger.warning("[run %s] A process is already running for this run; not spawning", run.id)
            return

        settings = self.settings()
        command = build_command(job, run.kind, settings, checksum)
        env = os.environ.copy()
        env["RCLONE_CONFIG"] = settings.effective_rclone_config()
        logger.info("[run %s] Starting %s: %s", run.id, job.name, " ".join(shlex.quote(arg) for arg in command))

        started = self._monotonic()
        try:
            process = subprocess.Popen(
                command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                env=env,
            )
        except OSError as exc:
            logger.error("[run %s] Failed to start %s: %s", run.id, command[0], exc)
            self._finish(
                job,
                run,
                RunOutcome(
                    status=STATUS_FAILURE,
                    errors_count=1,
                    short_summary=f"Failed to start {command[0]}: {exc}",
                    log_excerpt=str(exc),
                ),
            )
            return

        self.registry.register(run.id, process)
        current = self.store.get_run(run.id)
        if current is not None and current.is_terminal:
            logger.info("[run %s] Cancelled while starting; stopping pid %s", run.id, process.pid)
            self.registry.stop(run.id, STOP_PRECANCELLED)

        parser: Parser = VerifyProgressParser() if run.kind == RUN_VERIFY else TransferProgressParser()
        tail = LogTail()
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        last_persist: Optional[float] = None

        assert process.stdout is not None
        with process.stdout:
            while True:
                chunk = process.stdout.read1(READ_CHUNK_SIZE)
                if not chunk:
                    break
                text = decoder.decode(chunk)
                tail.append(text)
                parser.feed(text)
                now = self._monotonic()
                if last_persist is None or now - last_persist >= self.progress_interval:
                    self._persist_progress(run, parser, now - started)
                    last_persist = now
        tail_text = decoder.decode(b"", final=True)
        tail.append(tail_text)
        parser.feed(tail_text)
        parser.flush()

        returncode = process.wait()
        stop_reason = self.registry.unregister(run.id)
        elapsed = self._monotonic() - started
        logger.info(
            "[run %s] Process exited (%s) after %s, %s output lines",
            run.id,
            _exit_description(returncode),
            format_duration(elapsed),
            parser.lines_seen,
        )

        outcome = self._outcome(run, parser, tail, returncode, stop_reason, elapsed)
        self._finish(job, run, outcome)

    def _persist_progress(self, run: Run, parser: Parser, elapsed_seconds: float) -> None:
        if isinstance(parser, VerifyProgressParser):
            snapshot = ProgressSnapshot(
                bytes_transferred=0,
                files_transferred=parser.matched_files,
                errors_count=parser.differences,
                short_summary=parser.summary(elapsed_seconds),
                rate_limit_hits=parser.rate_limit_hits,
            )
        else:
            snapshot = ProgressSnapshot(
                bytes_transferred=parser.bytes_transferred,
                files_transferred=parser.files_transferred,
                errors_count=parser.errors_count,
                short_summary=parser.summary(elapsed_seconds),
                rate_limit_hits=parser.rate_limit_hits,
            )
        try:
            self.store.append_progress(run.id, snapshot)
        except Exception as exc:
            logger.warning("[run %s] Failed to persist progress: %s", run.id, exc)

    def _outcome(
        self,
        run: Run,
        parser: Parser,
        tail: LogTail,
        returncode: int,
        stop_reason: Optional[str],
        elapsed: float,
    ) -> RunOutcome:
        if isinstance(parser, VerifyProgressParser):
            return self._verify_outcome(parser, tail, returncode, stop_reason, elapsed)

        bytes_done = parser.bytes_transferred
        files_done = parser.files_transferred
        errors = parser.errors_count
        totals = f"{format_bytes(bytes_done)} in {files_done} files"

        if stop_reason is not None:
            return RunOutcome(
                status=STATUS_CANCELLED,
                bytes_transferred=bytes_done,
                files_transferred=files_done,
                errors_count=errors,
                short_summary=f"Stopped ({stop_reason}) after {format_duration(elapsed)}; {totals} so far",
                log_excerpt=tail.excerpt(),
            )

        if returncode == 0:
            parts = [
                f"Transferred {totals}",
                f"avg {format_bytes(_rate(bytes_done, elapsed))}/s",
                f"{_rate(files_done, elapsed):.1f} files/s",
                f"{errors} errors",
                f"took {format_duration(elapsed)}",
            ]
            if parser.rate_limit_hits:
                parts.append(f"⚠ {parser.rate_limit_hits} rate-limit hits")
            return RunOutcome(
                status=STATUS_SUCCESS,
                bytes_transferred=bytes_done,
                files_transferred=files_done,
                errors_count=errors,
                short_summary=" · ".join(parts),
                log_excerpt=tail.excerpt(),
            )

        errors = max(errors, 1)
        return RunOutcome(
            status=STATUS_FAILURE,
            bytes_transferred=bytes_done,
            files_transferred=files_done,
            errors_count=errors,
            short_summary=f"Failed ({_exit_description(returncode)}) · {totals} · {errors} errors",
            log_excerpt=tail.excerpt(),
        )

    def _verify_outcome(
        self,
        parser: VerifyProgressParser,
        tail: LogTail,
        returncode: int,
        stop_reason: Optional[str],
        elapsed: float,
    ) -> RunOutcome:
        matched = parser.matched_files
        differences = parser.differences
        breakdown = f"{differences} differences ({parser.missing_files} missing, {parser.mismatched_files} mismatched)"

        if stop_reason is not None:
            return RunOutcome(
                status=STATUS_CANCELLED,
                files_transferred=matched,
                errors_count=differences,
                short_summary=f"Stopped ({stop_reason}) after {format_duration(elapsed)}; {matched} files checked so far",
                log_excerpt=tail.excerpt(),
            )

        if returncode == 0 and differences == 0:
            return RunOutcome(
                status=STATUS_SUCCESS,
                files_transferred=matched,
                errors_count=0,
                short_summary=f"Verified {matched} files · all match · took {format_duration(elapsed)}",
                log_excerpt=tail.excerpt(),
            )

        summary = f"Verification failed · {matched} files checked · {breakdown}"
        if returncode != 0:
            summary += f" · {_exit_description(returncode)}"
        return RunOutcome(
            status=STATUS_FAILURE,
            files_transferred=matched,
            errors_count=max(differences, 1),
            short_summary=summary,
            log_excerpt=tail.excerpt(),
        )

    def _finish(self, job: Job, run: Run, outcome: RunOutcome) -> None:
        if not self.store.finalize_run(run.id, outcome):
            return
        if outcome.status == STATUS_SUCCESS:
            logger.info("[run %s] %s succeeded: %s", run.id, job.name, outcome.short_summary)
        elif outcome.status == STATUS_CANCELLED:
            logger.info("[run %s] %s cancelled: %s", run.id, job.name, outcome.short_summary)
            return
        else:
            logger.error("[run %s] %s failed: %s", run.id, job.name, outcome.short_summary)

        final = self.store.get_run(run.id)
        duration = final.duration_seconds if final is not None and final.duration_seconds is not None else 0
        safe_notify(
            self.notifier,
            NotificationEvent(
                job_name=job.name,
                status=outcome.status,
                run_kind=run.kind,
                bytes_transferred=outcome.bytes_transferred,
                files_transferred=outcome.files_transferred,
                errors_count=outcome.errors_count,
                duration_seconds=duration,
                summary=outcome.short_summary,
                metadata={"run_id": run.id, "job_id": job.id},
            ),
        )

    def stop(self, run_id: int) -> bool:
        """Request a stop. The exit handler sets the terminal status."""
        run = self.store.get_run(run_id)
        if run is None:
            raise RunNotFoundError(f"Unknown run {run_id}.")
        if self.registry.stop(run_id, STOP_USER):
            return True
        if self.registry.is_registered(run_id):
            logger.info("[run %s] Process already exiting; leaving the outcome to its exit handler", run_id)
            return True
        if run.status != STATUS_RUNNING:
            return False
        logger.warning("[run %s] No live process registered; marking cancelled", run_id)
        return self.store.finalize_run(
            run_id,
            RunOutcome(
                status=STATUS_CANCELLED,
                bytes_transferred=run.bytes_transferred,
                files_transferred=run.files_transferred,
                errors_count=run.errors_count,
                short_summary=FORCE_STOPPED_SUMMARY,
            ),
        )

    def shutdown(self, wait: bool = True, timeout: Optional[float] = None) -> List[int]:
        stopped = self.registry.stop_all(STOP_SHUTDOWN)
        if stopped:
            logger.info("Stopping %s active run(s): %s", len(stopped), stopped)
        if wait:
            self.wait(timeout)
        return stopped
