"""
Run completion notifications.

Delivery is best-effort: ``notify`` never blocks on the network and never
raises into the runner.
"""

from __future__ import annotations

import json
import logging
import re
import threading
from queue import Empty, Full, Queue
from typing import Callable, List, Optional, Protocol, Sequence
from urllib import error as urllib_error
from urllib import request as urllib_request

from courier.config import TelegramSettings
from courier.models import RUN_VERIFY, STATUS_SUCCESS, NotificationEvent
from courier.progress import format_bytes, format_duration

logger = logging.getLogger("courier.notify")

TELEGRAM_API = "https://api.telegram.org"
MARKDOWN_SPECIAL_RE = re.compile(r"([_*`\[])")


class Notifier(Protocol):
    def notify(self, event: NotificationEvent) -> None: ...


def safe_notify(notifier: Optional[Notifier], event: NotificationEvent) -> None:
    if notifier is None:
        return
    try:
        notifier.notify(event)
    except Exception as exc:
        logger.warning("Notifier failed for %s: %s", event.job_name, str(exc))


class LogNotifier:
    def notify(self, event: NotificationEvent) -> None:
        level = logging.INFO if event.status == STATUS_SUCCESS else logging.ERROR
        logger.log(level, "Job %s finished with status=%s: %s", event.job_name, event.status, event.summary)


class CompositeNotifier:
    def __init__(self, notifiers: Sequence[Notifier]):
        self.notifiers: List[Notifier] = list(notifiers)

    def notify(self, event: NotificationEvent) -> None:
        for notifier in self.notifiers:
            safe_notify(notifier, event)

    def close(self) -> None:
        for notifier in self.notifiers:
            close = getattr(notifier, "close", None)
            if close is not None:
                close()


def escape_markdown(text: str) -> str:
    return MARKDOWN_SPECIAL_RE.sub(r"\\\1", text)


def format_message(event: NotificationEvent) -> str:
    success = event.status == STATUS_SUCCESS
    emoji = "✅" if success else "❌"
    if event.run_kind == RUN_VERIFY:
        status_text = "Verified" if success else "Verification Failed"
        details = [
            f"🔍 {event.files_transferred} files checked",
            f"⚠️ {event.errors_count} differences found" if event.errors_count > 0 else "✅ All files match",
            f"⏱ Duration: {format_duration(event.duration_seconds)}",
        ]
    else:
        status_text = "Success" if success else "Failed"
        details = [
            f"📊 {format_bytes(event.bytes_transferred)} transferred, {event.files_transferred} files",
            f"⏱ Duration: {format_duration(event.duration_seconds)}",
        ]
        if event.errors_count > 0:
            details.append(f"⚠️ Errors: {event.errors_count}")
    sections = [f"{emoji} *Backup {status_text}*: {escape_markdown(event.job_name)}", "\n".join(details)]
    if event.summary:
        sections.append(escape_markdown(event.summary))
    return "\n\n".join(sections)


class TelegramNotifier:
    """Sends messages through the Telegram Bot API from a background thread."""

    def __init__(
        self,
        settings: TelegramSettings,
        api_base: str = TELEGRAM_API,
        max_queue: int = 100,
    ):
        self.settings = settings
        self.api_base = api_base.rstrip("/")
        self._queue: "Queue[NotificationEvent]" = Queue(maxsize=max_queue)
        self._stop_event = threading.Event()
        self._dropped_events = 0
        self._thread: Optional[threading.Thread] = None
        if self.configured:
            self._thread = threading.Thread(target=self._run, daemon=True, name="courier-telegram")
            self._thread.start()
        elif settings.enabled:
            logger.warning("Telegram notifications enabled but bot_token/chat_id missing; disabled.")

    @property
    def configured(self) -> bool:
        return self.settings.enabled and bool(self.settings.bot_token) and bool(self.settings.chat_id)

    def wants(self, event: NotificationEvent) -> bool:
        if not self.configured:
            return False
        if event.status == STATUS_SUCCESS:
            return self.settings.notify_on_success
        return self.settings.notify_on_failure

    def notify(self, event: NotificationEvent) -> None:
        if not self.wants(event):
            return
        try:
            self._queue.put_nowait(event)
        except Full:
            self._dropped_events += 1
            logger.warning(
                "Telegram queue is full; dropping notification for %s (dropped=%s).",
                event.job_name,
                self._dropped_events,
            )

    def close(self, timeout_seconds: float = 5.0) -> None:
        if self._thread is None:
            return
        self._stop_event.set()
        self._thread.join(timeout=timeout_seconds)
        # Final best-effort flush.
        while True:
            try:
                event = self._queue.get_nowait()
            except Empty:
                break
            self.send(format_message(event))

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                event = self._queue.get(timeout=0.5)
            except Empty:
                continue
            self.send(format_message(event))

    def send(self, text: str) -> bool:
        body = json.dumps(
            {"chat_id": self.settings.chat_id, "text": text, "parse_mode": "Markdown"}
        ).encode("utf-8")
        url = f"{self.api_base}/bot{self.settings.bot_token}/sendMessage"
        req = urllib_request.Request(
            url=url,
            data=body,
            method="POST",
            headers={"Content-Type": "application/json"},
        )
        try:
            with urllib_request.urlopen(req, timeout=max(0.1, self.settings.timeout_ms / 1000.0)) as response:
                payload = json.loads(response.read().decode("utf-8") or "{}")
        except urllib_error.URLError as exc:
            logger.warning("Telegram delivery failed: %s", str(exc))
            return False
        except ValueError as exc:
            logger.warning("Telegram returned a malformed response: %s", str(exc))
            return False
        if not payload.get("ok"):
            logger.warning("Telegram API error: %s", payload.get("description"))
            return False
        return True


def build_notifier(settings: TelegramSettings) -> CompositeNotifier:
    notifiers: List[Notifier] = [LogNotifier()]
    if settings.enabled:
        notifiers.append(TelegramNotifier(settings))
    return CompositeNotifier(notifiers)


class ReloadingNotifier:
    """Rebuilds the notifier chain whenever the Telegram settings change."""

    def __init__(self, settings_source: Callable[[], TelegramSettings]):
        self._settings_source = settings_source
        self._lock = threading.Lock()
        self._settings = settings_source()
        self._current = build_notifier(self._settings)

    @property
    def current(self) -> CompositeNotifier:
        with self._lock:
            return self._current

    def notify(self, event: NotificationEvent) -> None:
        self._refresh().notify(event)

    def close(self) -> None:
        self.current.close()

    def _refresh(self) -> CompositeNotifier:
        settings = self._settings_source()
        with self._lock:
            if settings == self._settings:
                return self._current
            logger.info("Telegram settings changed; rebuilding notifiers")
            previous = self._current
            self._current = build_notifier(settings)
            self._settings = settings
            current = self._current
        previous.close()
        return current
