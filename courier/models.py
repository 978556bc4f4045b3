"""
Records shared by the scheduler, the runner and the job stores.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

UTC = timezone.utc

KIND_COPY = "copy"
KIND_MIRROR = "mirror"
KIND_VERIFY = "verify"
SYNC_KINDS = {KIND_COPY, KIND_MIRROR, KIND_VERIFY}

RUN_BACKUP = "backup"
RUN_VERIFY = "verify"
RUN_KINDS = {RUN_BACKUP, RUN_VERIFY}

STATUS_RUNNING = "running"
STATUS_SUCCESS = "success"
STATUS_FAILURE = "failure"
STATUS_CANCELLED = "cancelled"
STATUS_SKIPPED = "skipped"
TERMINAL_STATUSES = {STATUS_SUCCESS, STATUS_FAILURE, STATUS_CANCELLED, STATUS_SKIPPED}


@dataclass(frozen=True)
class Job:
    id: str
    name: str
    kind: str
    enabled: bool
    source: str
    destination: str
    schedule: str
    flags: Union[str, List[str]] = ""
    description: str = ""

    @property
    def scheduled_run_kind(self) -> str:
        return RUN_VERIFY if self.kind == KIND_VERIFY else RUN_BACKUP

    @property
    def has_endpoints(self) -> bool:
        return bool(self.source.strip()) and bool(self.destination.strip())


@dataclass
class Run:
    id: int
    job_id: str
    kind: str
    status: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    duration_seconds: Optional[int] = None
    bytes_transferred: int = 0
    files_transferred: int = 0
    errors_count: int = 0
    short_summary: str = ""
    log_excerpt: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_payload(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["started_at"] = self.started_at.astimezone(UTC).isoformat()
        if self.finished_at is not None:
            payload["finished_at"] = self.finished_at.astimezone(UTC).isoformat()
        return payload

    @staticmethod
    def from_payload(payload: Dict[str, Any]) -> "Run":
        finished_raw = payload.get("finished_at")
        return Run(
            id=int(payload["id"]),
            job_id=str(payload["job_id"]),
            kind=str(payload.get("kind", RUN_BACKUP)),
            status=str(payload["status"]),
            started_at=_parse_utc(payload["started_at"]),
            finished_at=_parse_utc(finished_raw) if finished_raw else None,
            duration_seconds=payload.get("duration_seconds"),
            bytes_transferred=int(payload.get("bytes_transferred") or 0),
            files_transferred=int(payload.get("files_transferred") or 0),
            errors_count=int(payload.get("errors_count") or 0),
            short_summary=str(payload.get("short_summary") or ""),
            log_excerpt=str(payload.get("log_excerpt") or ""),
        )


@dataclass(frozen=True)
class ProgressSnapshot:
    bytes_transferred: int
    files_transferred: int
    errors_count: int
    short_summary: str
    rate_limit_hits: int = 0


@dataclass(frozen=True)
class RunOutcome:
    status: str
    bytes_transferred: int = 0
    files_transferred: int = 0
    errors_count: int = 0
    short_summary: str = ""
    log_excerpt: str = ""


@dataclass(frozen=True)
class NotificationEvent:
    job_name: str
    status: str
    run_kind: str
    bytes_transferred: int
    files_transferred: int
    errors_count: int
    duration_seconds: int
    summary: str
    metadata: Dict[str, Any] = field(default_factory=dict)


def _parse_utc(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)
