"""
YAML configuration: engine settings, notification settings and job definitions.
"""

from __future__ import annotations

import json
import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Union

import yaml

from courier.errors import ConfigError
from courier.models import SYNC_KINDS, Job

DEFAULT_CONFIG = "courier.yaml"
DEFAULT_RCLONE_CONFIG = "/etc/rclone/rclone.conf"
DEFAULT_SYNC_COMMAND = "rclone"
DEFAULT_HISTORY_FILE = ".courier/runs.jsonl"
DEFAULT_POLL_SECONDS = 60
DEFAULT_STARTUP_DELAY_SECONDS = 30
DEFAULT_DEBOUNCE_MINUTES = 10
DEFAULT_TELEGRAM_TIMEOUT_MS = 5000


@dataclass(frozen=True)
class TelegramSettings:
    enabled: bool = False
    bot_token: str = ""
    chat_id: str = ""
    notify_on_success: bool = False
    notify_on_failure: bool = True
    timeout_ms: int = DEFAULT_TELEGRAM_TIMEOUT_MS


@dataclass(frozen=True)
class Settings:
    timezone: str = ""
    max_bandwidth: str = ""
    rclone_config: str = ""
    sync_command: List[str] = field(default_factory=lambda: [DEFAULT_SYNC_COMMAND])
    max_concurrent_jobs: int = 0
    history_file: Optional[Path] = None
    poll_seconds: int = DEFAULT_POLL_SECONDS
    startup_delay_seconds: int = DEFAULT_STARTUP_DELAY_SECONDS
    debounce_minutes: int = DEFAULT_DEBOUNCE_MINUTES
    telegram: TelegramSettings = field(default_factory=TelegramSettings)

    def effective_rclone_config(self) -> str:
        return os.environ.get("RCLONE_CONFIG") or self.rclone_config or DEFAULT_RCLONE_CONFIG


@dataclass(frozen=True)
class CourierConfig:
    settings: Settings
    jobs: List[Job]
    path: Optional[Path] = None

    def job(self, job_id: str) -> Optional[Job]:
        return next((job for job in self.jobs if job.id == job_id), None)


def ensure_bool(value: Any, field_path: str, default: bool) -> bool:
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ConfigError(f"Error: {field_path} must be true or false.")
    return value


def ensure_int(value: Any, field_path: str, default: int, minimum: int = 1) -> int:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"Error: {field_path} must be an integer.")
    if value < minimum:
        raise ConfigError(f"Error: {field_path} must be >= {minimum}.")
    return value


def ensure_str(value: Any, field_path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"Error: {field_path} must be a non-empty string.")
    return value.strip()


def optional_str(value: Any, field_path: str, default: str = "") -> str:
    if value is None:
        return default
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    if not isinstance(value, str):
        raise ConfigError(f"Error: {field_path} must be a string.")
    return value.strip()


def ensure_mapping(value: Any, field_path: str, allowed: Set[str]) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"Error: {field_path} must be a mapping.")
    unknown = set(value.keys()) - allowed
    if unknown:
        raise ConfigError(f"Error: Unknown keys in {field_path}: {sorted(unknown)}.")
    return value


def split_flags(flags: Union[str, List[str], None]) -> List[str]:
    """Turn a job's extra arguments into an argument list.

    Accepts a list, a JSON array string, or a shell-style string.
    """
    if flags is None:
        return []
    if isinstance(flags, list):
        return [str(flag) for flag in flags]
    text = flags.strip()
    if not text:
        return []
    if text.startswith("["):
        try:
            parsed = json.loads(text)
        except ValueError:
            parsed = None
        if isinstance(parsed, list):
            return [str(flag) for flag in parsed]
    try:
        return shlex.split(text)
    except ValueError:
        # Unbalanced quotes: plain whitespace tokenization.
        return text.split()


def _parse_flags(value: Any, field_path: str) -> Union[str, List[str]]:
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, list):
        out: List[str] = []
        for idx, item in enumerate(value):
            if not isinstance(item, (str, int, float)) or isinstance(item, bool):
                raise ConfigError(f"Error: {field_path}[{idx}] must be a scalar value convertible to string.")
            out.append(str(item))
        return out
    raise ConfigError(f"Error: {field_path} must be a list or shell-style string.")


def parse_telegram_settings(raw: Any, field_path: str) -> TelegramSettings:
    data = ensure_mapping(
        raw,
        field_path,
        {"enabled", "bot_token", "chat_id", "notify_on_success", "notify_on_failure", "timeout_ms"},
    )
    return TelegramSettings(
        enabled=ensure_bool(data.get("enabled"), f"{field_path}.enabled", False),
        bot_token=optional_str(data.get("bot_token"), f"{field_path}.bot_token"),
        chat_id=optional_str(data.get("chat_id"), f"{field_path}.chat_id"),
        notify_on_success=ensure_bool(data.get("notify_on_success"), f"{field_path}.notify_on_success", False),
        notify_on_failure=ensure_bool(data.get("notify_on_failure"), f"{field_path}.notify_on_failure", True),
        timeout_ms=ensure_int(data.get("timeout_ms"), f"{field_path}.timeout_ms", DEFAULT_TELEGRAM_TIMEOUT_MS, 1),
    )


def parse_settings(raw: Any, notifications_raw: Any, config_dir: Path) -> Settings:
    data = ensure_mapping(
        raw,
        "settings",
        {
            "timezone",
            "max_bandwidth",
            "rclone_config",
            "sync_command",
            "max_concurrent_jobs",
            "history_file",
            "poll_seconds",
            "startup_delay_seconds",
            "debounce_minutes",
        },
    )
    notifications = ensure_mapping(notifications_raw, "notifications", {"telegram"})

    sync_command_raw = data.get("sync_command", DEFAULT_SYNC_COMMAND)
    if isinstance(sync_command_raw, list):
        sync_command = [ensure_str(part, "settings.sync_command[]") for part in sync_command_raw]
    else:
        sync_command = shlex.split(ensure_str(sync_command_raw, "settings.sync_command"))
    if not sync_command:
        raise ConfigError("Error: settings.sync_command cannot be empty.")

    history_raw = optional_str(data.get("history_file"), "settings.history_file", DEFAULT_HISTORY_FILE)
    history_file: Optional[Path] = None
    if history_raw:
        history_file = Path(history_raw)
        if not history_file.is_absolute():
            history_file = (config_dir / history_file).resolve()

    return Settings(
        timezone=optional_str(data.get("timezone"), "settings.timezone"),
        max_bandwidth=optional_str(data.get("max_bandwidth"), "settings.max_bandwidth"),
        rclone_config=optional_str(data.get("rclone_config"), "settings.rclone_config"),
        sync_command=sync_command,
        max_concurrent_jobs=ensure_int(data.get("max_concurrent_jobs"), "settings.max_concurrent_jobs", 0, 0),
        history_file=history_file,
        poll_seconds=ensure_int(data.get("poll_seconds"), "settings.poll_seconds", DEFAULT_POLL_SECONDS, 1),
        startup_delay_seconds=ensure_int(
            data.get("startup_delay_seconds"),
            "settings.startup_delay_seconds",
            DEFAULT_STARTUP_DELAY_SECONDS,
            0,
        ),
        debounce_minutes=ensure_int(
            data.get("debounce_minutes"), "settings.debounce_minutes", DEFAULT_DEBOUNCE_MINUTES, 1
        ),
        telegram=parse_telegram_settings(notifications.get("telegram"), "notifications.telegram"),
    )


def parse_job(raw: Any, field_path: str) -> Job:
    data = ensure_mapping(
        raw,
        field_path,
        {"id", "name", "kind", "enabled", "source", "destination", "schedule", "flags", "description"},
    )
    if not data:
        raise ConfigError(f"Error: {field_path} must be a non-empty mapping.")

    job_id = ensure_str(
        str(data["id"]) if isinstance(data.get("id"), int) else data.get("id"),
        f"{field_path}.id",
    )
    kind = ensure_str(data.get("kind", "copy"), f"{field_path}.kind").lower()
    if kind not in SYNC_KINDS:
        raise ConfigError(f'Error: {field_path}.kind must be one of {sorted(SYNC_KINDS)}, got "{kind}".')

    return Job(
        id=job_id,
        name=optional_str(data.get("name"), f"{field_path}.name", job_id) or job_id,
        kind=kind,
        enabled=ensure_bool(data.get("enabled"), f"{field_path}.enabled", True),
        source=optional_str(data.get("source"), f"{field_path}.source"),
        destination=optional_str(data.get("destination"), f"{field_path}.destination"),
        schedule=optional_str(data.get("schedule"), f"{field_path}.schedule"),
        flags=_parse_flags(data.get("flags"), f"{field_path}.flags"),
        description=optional_str(data.get("description"), f"{field_path}.description"),
    )


def parse_config_payload(payload: Any, config_dir: Path, path: Optional[Path] = None) -> CourierConfig:
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ConfigError("Error: Top-level config must be a mapping.")

    unknown_top = set(payload.keys()) - {"version", "settings", "notifications", "jobs"}
    if unknown_top:
        raise ConfigError(f"Error: Unknown top-level keys: {sorted(unknown_top)}.")

    settings = parse_settings(payload.get("settings"), payload.get("notifications"), config_dir)

    jobs_raw = payload.get("jobs", []) or []
    if not isinstance(jobs_raw, list):
        raise ConfigError("Error: jobs must be a list.")

    seen_ids: Set[str] = set()
    jobs: List[Job] = []
    for idx, job_raw in enumerate(jobs_raw):
        job = parse_job(job_raw, f"jobs[{idx}]")
        if job.id in seen_ids:
            raise ConfigError(f'Error: Duplicate job id "{job.id}".')
        seen_ids.add(job.id)
        jobs.append(job)

    return CourierConfig(settings=settings, jobs=jobs, path=path)


def load_config(config_path: Path) -> CourierConfig:
    if not config_path.exists():
        raise ConfigError(f"Error: Config file not found: {config_path}")
    try:
        payload = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"Error: Failed to parse YAML in {config_path}: {exc}") from exc
    return parse_config_payload(payload, config_path.parent, path=config_path)
