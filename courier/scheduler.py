"""
Scheduler Loop: periodically decides which enabled jobs are due and hands
them to the Job Runner.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Set, Tuple

from courier.config import DEFAULT_DEBOUNCE_MINUTES, Settings
from courier.models import Job
from courier.runner import JobRunner
from courier.schedule import ResolvedTimezone, Unrecognized, describe, evaluate, parse_schedule, resolve_timezone
from courier.store import JobStore

logger = logging.getLogger("courier.scheduler")
UTC = timezone.utc


class TriggerDebounce:
    """Remembers when each job was last triggered by the scheduler."""

    def __init__(self, window: timedelta = timedelta(minutes=DEFAULT_DEBOUNCE_MINUTES)):
        self.window = window
        self._last_trigger: Dict[str, datetime] = {}
        self._lock = threading.Lock()

    def recently_triggered(self, job_id: str, now: datetime) -> bool:
        with self._lock:
            last = self._last_trigger.get(job_id)
        return last is not None and now - last < self.window

    def record(self, job_id: str, now: datetime) -> None:
        with self._lock:
            self._last_trigger[job_id] = now


class SchedulerLoop:
    def __init__(
        self,
        store: JobStore,
        runner: JobRunner,
        settings_source: Optional[Callable[[], Settings]] = None,
        debounce: Optional[TriggerDebounce] = None,
        clock: Optional[Callable[[], datetime]] = None,
        poll_seconds: Optional[int] = None,
        startup_delay_seconds: Optional[int] = None,
    ):
        self.store = store
        self.runner = runner
        self._settings_source = settings_source or runner.settings
        self.debounce = debounce or TriggerDebounce()
        self._clock = clock or (lambda: datetime.now(tz=UTC))
        self._poll_seconds = poll_seconds
        self._startup_delay_seconds = startup_delay_seconds
        self._warned_timezones: Set[str] = set()
        self._reported_schedules: Set[Tuple[str, str]] = set()

    def settings(self) -> Settings:
        return self._settings_source()

    def tick(self, now: Optional[datetime] = None) -> List[str]:
        """Evaluate every enabled job once. Returns the ids of triggered jobs."""
        now = now or self._clock()
        settings = self.settings()
        tz = self._timezone(settings.timezone)
        try:
            jobs = self.store.list_enabled_jobs()
        except Exception:
            logger.exception("Failed to list enabled jobs; skipping tick")
            return []

        triggered: List[str] = []
        for job in jobs:
            try:
                if self._consider(job, now, tz, settings):
                    triggered.append(job.id)
            except Exception:
                logger.exception("Failed to evaluate job %s", job.id)
        return triggered

    def _consider(self, job: Job, now: datetime, tz: ResolvedTimezone, settings: Settings) -> bool:
        if not job.has_endpoints:
            return False
        if self.debounce.recently_triggered(job.id, now):
            return False
        if self.store.is_running(job.id):
            return False

        spec = parse_schedule(job.schedule)
        if isinstance(spec, Unrecognized):
            key = (job.id, spec.raw)
            if key not in self._reported_schedules:
                self._reported_schedules.add(key)
                logger.error('Job %s has an unrecognized schedule "%s"; it will never run automatically.', job.id, spec.raw)
            return False

        last_run = self.store.last_run_start_time(job.id)
        now_local = now.astimezone(tz.zone)
        last_local = last_run.astimezone(tz.zone) if last_run is not None else None
        decision = evaluate(spec, now_local, last_local)
        if not decision.due:
            return False

        limit = settings.max_concurrent_jobs
        if limit and self.runner.active_count() >= limit:
            logger.info(
                "Job %s is due but %s run(s) are active (max_concurrent_jobs=%s); retrying next tick.",
                job.id,
                self.runner.active_count(),
                limit,
            )
            return False

        self.debounce.record(job.id, now)
        logger.info(
            "Triggering %s (%s, %s): %s",
            job.name,
            describe(spec),
            tz.name,
            decision.reason,
        )
        self.runner.launch(job, job.scheduled_run_kind)
        return True

    def _timezone(self, name: str) -> ResolvedTimezone:
        resolved = resolve_timezone(name)
        if resolved.fell_back and resolved.requested not in self._warned_timezones:
            self._warned_timezones.add(resolved.requested)
            logger.warning('Unknown timezone "%s"; evaluating schedules in UTC.', resolved.requested)
        return resolved

    def run_forever(self, stop_event: threading.Event) -> None:
        settings = self.settings()
        startup_delay = (
            self._startup_delay_seconds
            if self._startup_delay_seconds is not None
            else settings.startup_delay_seconds
        )
        poll_seconds = self._poll_seconds or settings.poll_seconds
        logger.info("Scheduler starting in %ss, poll_seconds=%s", startup_delay, poll_seconds)
        if stop_event.wait(startup_delay):
            return
        while not stop_event.is_set():
            self.tick()
            if stop_event.wait(poll_seconds):
                break
        logger.info("Scheduler stopped.")
