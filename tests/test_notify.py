from __future__ import annotations

import logging

import pytest

from courier.config import TelegramSettings
from courier.models import RUN_BACKUP, RUN_VERIFY, STATUS_FAILURE, STATUS_SUCCESS, NotificationEvent
from courier.notify import (
    CompositeNotifier,
    LogNotifier,
    ReloadingNotifier,
    TelegramNotifier,
    build_notifier,
    escape_markdown,
    format_message,
    safe_notify,
)


def _event(**overrides: object) -> NotificationEvent:
    fields = {
        "job_name": "photos_offsite",
        "status": STATUS_SUCCESS,
        "run_kind": RUN_BACKUP,
        "bytes_transferred": 5 * 1024**2,
        "files_transferred": 12,
        "errors_count": 0,
        "duration_seconds": 125,
        "summary": "Transferred 5.0 MB in 12 files",
    }
    fields.update(overrides)
    return NotificationEvent(**fields)  # type: ignore[arg-type]


class BrokenNotifier:
    def notify(self, event: NotificationEvent) -> None:
        raise RuntimeError("no network")


class CountingNotifier:
    def __init__(self) -> None:
        self.count = 0

    def notify(self, event: NotificationEvent) -> None:
        self.count += 1


def test_format_message_for_backup_and_verify() -> None:
    text = format_message(_event())
    assert text == (
        "✅ *Backup Success*: photos\\_offsite\n\n"
        "📊 5.0 MB transferred, 12 files\n"
        "⏱ Duration: 2m 5s\n\n"
        "Transferred 5.0 MB in 12 files"
    )

    failed = format_message(_event(status=STATUS_FAILURE, errors_count=2))
    assert failed.startswith("❌ *Backup Failed*")
    assert "Errors: 2" in failed

    verify = format_message(_event(run_kind=RUN_VERIFY, status=STATUS_FAILURE, errors_count=3))
    assert "Verification Failed" in verify
    assert "3 differences found" in verify


def test_escape_markdown() -> None:
    assert escape_markdown("a_b*c[d].") == "a\\_b\\*c\\[d]."


def test_safe_notify_swallows_errors(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.WARNING, logger="courier"):
        safe_notify(BrokenNotifier(), _event())
        safe_notify(None, _event())
    assert "Notifier failed for photos_offsite" in caplog.text


def test_composite_notifier_isolates_failures() -> None:
    counter = CountingNotifier()
    composite = CompositeNotifier([BrokenNotifier(), counter, LogNotifier()])
    composite.notify(_event())
    assert counter.count == 1
    composite.close()


def test_telegram_preferences() -> None:
    unconfigured = TelegramNotifier(TelegramSettings(enabled=True))
    assert not unconfigured.configured
    assert not unconfigured.wants(_event(status=STATUS_FAILURE))

    settings = TelegramSettings(enabled=True, bot_token="123:abc", chat_id="42", timeout_ms=200)
    notifier = TelegramNotifier(settings, api_base="http://127.0.0.1:9")
    try:
        assert notifier.wants(_event(status=STATUS_FAILURE))
        assert not notifier.wants(_event(status=STATUS_SUCCESS))
    finally:
        notifier.close(timeout_seconds=2)


def test_telegram_send_failure_returns_false() -> None:
    settings = TelegramSettings(enabled=False, bot_token="123:abc", chat_id="42", timeout_ms=200)
    notifier = TelegramNotifier(settings, api_base="http://127.0.0.1:9")
    assert notifier.send("hello") is False


def test_build_notifier_adds_telegram_only_when_enabled() -> None:
    assert len(build_notifier(TelegramSettings()).notifiers) == 1
    enabled = build_notifier(TelegramSettings(enabled=True, bot_token="t", chat_id="c"))
    try:
        assert isinstance(enabled.notifiers[1], TelegramNotifier)
    finally:
        enabled.close()


def test_reloading_notifier_follows_telegram_settings() -> None:
    current = {"telegram": TelegramSettings()}
    notifier = ReloadingNotifier(lambda: current["telegram"])
    notifier.notify(_event())
    assert len(notifier.current.notifiers) == 1

    current["telegram"] = TelegramSettings(enabled=True, bot_token="t", chat_id="c")
    notifier.notify(_event())
    try:
        assert isinstance(notifier.current.notifiers[1], TelegramNotifier)
    finally:
        notifier.close()
