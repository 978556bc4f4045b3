"""
Schedule strings and the due-ness evaluator.

A job stores its schedule as a raw string. ``parse_schedule`` turns it into
one of four variants, and ``evaluate`` decides whether a run is due given
the current local time and the start time of the job's last run. Nothing in
here reads the clock or performs I/O.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

UTC = timezone.utc

DAY_NAME_TO_WEEKDAY = {
    "mon": 0,
    "monday": 0,
    "tue": 1,
    "tuesday": 1,
    "wed": 2,
    "wednesday": 2,
    "thu": 3,
    "thursday": 3,
    "fri": 4,
    "friday": 4,
    "sat": 5,
    "saturday": 5,
    "sun": 6,
    "sunday": 6,
}
WEEKDAY_NAMES = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]
TIMEZONE_ALIASES = {
    "Europe/Kyiv": "Europe/Kiev",
    "Europe/Kiev": "Europe/Kyiv",
}

DAILY_RE = re.compile(r"^daily\s+(\d{1,2}):(\d{2})$", re.IGNORECASE)
EVERY_RE = re.compile(r"^every\s+(\d+)h$", re.IGNORECASE)
WEEKLY_RE = re.compile(r"^weekly\s+(\w+)\s+(\d{1,2}):(\d{2})$", re.IGNORECASE)


@dataclass(frozen=True)
class Daily:
    hour: int
    minute: int


@dataclass(frozen=True)
class EveryHours:
    hours: int


@dataclass(frozen=True)
class Weekly:
    weekday: int  # 0=Monday, as datetime.weekday()
    hour: int
    minute: int


@dataclass(frozen=True)
class Unrecognized:
    raw: str


ScheduleSpec = Union[Daily, EveryHours, Weekly, Unrecognized]


@dataclass(frozen=True)
class DueDecision:
    due: bool
    reason: str


@dataclass(frozen=True)
class ResolvedTimezone:
    zone: ZoneInfo
    name: str
    requested: str
    fell_back: bool


def _valid_time(hour: int, minute: int) -> bool:
    return 0 <= hour <= 23 and 0 <= minute <= 59


def parse_schedule(raw: str) -> ScheduleSpec:
    text = (raw or "").strip()

    match = DAILY_RE.match(text)
    if match:
        hour, minute = int(match.group(1)), int(match.group(2))
        if _valid_time(hour, minute):
            return Daily(hour=hour, minute=minute)
        return Unrecognized(raw=raw)

    match = EVERY_RE.match(text)
    if match:
        hours = int(match.group(1))
        if hours >= 1:
            return EveryHours(hours=hours)
        return Unrecognized(raw=raw)

    match = WEEKLY_RE.match(text)
    if match:
        weekday = DAY_NAME_TO_WEEKDAY.get(match.group(1).lower())
        hour, minute = int(match.group(2)), int(match.group(3))
        if weekday is not None and _valid_time(hour, minute):
            return Weekly(weekday=weekday, hour=hour, minute=minute)
        return Unrecognized(raw=raw)

    return Unrecognized(raw=raw)


def describe(spec: ScheduleSpec) -> str:
    if isinstance(spec, Daily):
        return f"Runs daily at {spec.hour:02d}:{spec.minute:02d}"
    if isinstance(spec, EveryHours):
        return f"Runs every {spec.hours} hour(s) after the previous run"
    if isinstance(spec, Weekly):
        return f"Runs every {WEEKDAY_NAMES[spec.weekday]} at {spec.hour:02d}:{spec.minute:02d}"
    if isinstance(spec, Unrecognized):
        return f'Unrecognized schedule "{spec.raw}"'
    raise TypeError(f"Unsupported schedule variant: {spec!r}")


def _daily_decision(
    hour: int,
    minute: int,
    now_local: datetime,
    last_run_local: Optional[datetime],
    label: str,
) -> DueDecision:
    target_minute = hour * 60 + minute
    now_minute = now_local.hour * 60 + now_local.minute
    if now_minute < target_minute:
        return DueDecision(False, f"{label}: not yet {hour:02d}:{minute:02d}")

    if last_run_local is None:
        return DueDecision(True, f"{label}: time reached and never ran before")

    last_local = last_run_local.astimezone(now_local.tzinfo) if now_local.tzinfo else last_run_local
    if last_local.date() != now_local.date():
        return DueDecision(True, f"{label}: time reached and no run yet today")
    if last_local.hour * 60 + last_local.minute < target_minute:
        return DueDecision(True, f"{label}: time reached and last run was before the target")
    return DueDecision(False, f"{label}: already ran since {hour:02d}:{minute:02d} today")


def _absolute(value: datetime) -> datetime:
    # aware datetimes sharing a tzinfo subtract as wall-clock times
    return value.astimezone(UTC) if value.tzinfo else value


def evaluate(
    spec: ScheduleSpec,
    now_local: datetime,
    last_run_local: Optional[datetime],
) -> DueDecision:
    if isinstance(spec, Daily):
        return _daily_decision(spec.hour, spec.minute, now_local, last_run_local, "Daily")

    if isinstance(spec, EveryHours):
        if last_run_local is None:
            return DueDecision(True, f"Every {spec.hours}h: never ran before")
        elapsed = _absolute(now_local) - _absolute(last_run_local)
        elapsed_minutes = int(elapsed.total_seconds() // 60)
        if elapsed >= timedelta(hours=spec.hours):
            return DueDecision(True, f"Every {spec.hours}h: {elapsed_minutes}min since last run")
        return DueDecision(
            False,
            f"Every {spec.hours}h: only {elapsed_minutes}min since last run (need {spec.hours * 60}min)",
        )

    if isinstance(spec, Weekly):
        if now_local.weekday() != spec.weekday:
            return DueDecision(
                False,
                f"Weekly: today is {WEEKDAY_NAMES[now_local.weekday()]}, target {WEEKDAY_NAMES[spec.weekday]}",
            )
        return _daily_decision(spec.hour, spec.minute, now_local, last_run_local, "Weekly")

    if isinstance(spec, Unrecognized):
        return DueDecision(False, f'Unknown schedule format: "{spec.raw}"')

    raise TypeError(f"Unsupported schedule variant: {spec!r}")


def is_due(spec: ScheduleSpec, now_local: datetime, last_run_local: Optional[datetime]) -> bool:
    return evaluate(spec, now_local, last_run_local).due


def next_due_after(
    spec: ScheduleSpec,
    after_local: datetime,
    last_run_local: Optional[datetime],
) -> Optional[datetime]:
    """Earliest local time at or after ``after_local`` when the job becomes due.

    Assumes no other run starts in between. Returns None for unrecognized
    schedules.
    """
    if isinstance(spec, Unrecognized):
        return None
    if is_due(spec, after_local, last_run_local):
        return after_local

    if isinstance(spec, EveryHours):
        # is_due is False, so a previous run exists
        due = _absolute(last_run_local) + timedelta(hours=spec.hours)
        return due.astimezone(after_local.tzinfo) if after_local.tzinfo else due

    if isinstance(spec, Daily):
        cron_expr = f"{spec.minute} {spec.hour} * * *"
    elif isinstance(spec, Weekly):
        cron_expr = f"{spec.minute} {spec.hour} * * {(spec.weekday + 1) % 7}"
    else:
        raise TypeError(f"Unsupported schedule variant: {spec!r}")

    nxt = croniter(cron_expr, after_local).get_next(datetime)
    if nxt.tzinfo is None and after_local.tzinfo is not None:
        nxt = nxt.replace(tzinfo=after_local.tzinfo)
    return nxt


def system_timezone() -> ResolvedTimezone:
    local_tz = datetime.now().astimezone().tzinfo
    if isinstance(local_tz, ZoneInfo):
        return ResolvedTimezone(zone=local_tz, name=local_tz.key, requested="", fell_back=False)
    tz_name = os.environ.get("TZ")
    if tz_name:
        try:
            return ResolvedTimezone(zone=ZoneInfo(tz_name), name=tz_name, requested="", fell_back=False)
        except (ZoneInfoNotFoundError, ValueError):
            pass
    return ResolvedTimezone(zone=ZoneInfo("UTC"), name="UTC", requested="", fell_back=False)


def resolve_timezone(name: Optional[str]) -> ResolvedTimezone:
    """Resolve an IANA name, trying known aliases, falling back to UTC.

    An empty name means the system timezone. ``fell_back`` is set only when
    a non-empty name could not be resolved.
    """
    requested = (name or "").strip()
    if not requested:
        return system_timezone()

    for candidate in (requested, TIMEZONE_ALIASES.get(requested)):
        if not candidate:
            continue
        try:
            zone = ZoneInfo(candidate)
        except (ZoneInfoNotFoundError, ValueError):
            continue
        return ResolvedTimezone(zone=zone, name=candidate, requested=requested, fell_back=False)

    return ResolvedTimezone(zone=ZoneInfo("UTC"), name="UTC", requested=requested, fell_back=True)
