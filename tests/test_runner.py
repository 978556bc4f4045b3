from __future__ import annotations

import json
import os
import subprocess
import sys
import time
from pathlib import Path
from typing import List, Optional

import pytest

from courier.config import Settings
from courier.errors import CourierError, RunNotFoundError
from courier.models import (
    RUN_BACKUP,
    RUN_VERIFY,
    STATUS_CANCELLED,
    STATUS_FAILURE,
    STATUS_RUNNING,
    STATUS_SUCCESS,
    Job,
    NotificationEvent,
    RunOutcome,
)
from courier.progress import TransferProgressParser
from courier.registry import ProcessRegistry
from courier.runner import FORCE_STOPPED_SUMMARY, JobRunner, build_command, verify_filter_args
from courier.store import MemoryJobStore


class RecordingNotifier:
    def __init__(self) -> None:
        self.events: List[NotificationEvent] = []

    def notify(self, event: NotificationEvent) -> None:
        self.events.append(event)


class ExplodingNotifier:
    def notify(self, event: NotificationEvent) -> None:
        raise RuntimeError("telegram is down")


def _write_script(path: Path, body: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(body, encoding="utf-8")


def _fake_rclone(
    tmp_path: Path,
    lines: List[str],
    exit_code: int = 0,
    sleep_seconds: float = 0.0,
    capture: Optional[Path] = None,
) -> Path:
    script = tmp_path / "fake_rclone.py"
    body = [
        "import json",
        "import os",
        "import sys",
        "import time",
        f"lines = {lines!r}",
    ]
    if capture is not None:
        body.append(
            f"open({str(capture)!r}, 'w', encoding='utf-8').write(json.dumps("
            "{'argv': sys.argv[1:], 'rclone_config': os.environ.get('RCLONE_CONFIG')}))"
        )
    body += [
        "for line in lines:",
        "    print(line, flush=True)",
    ]
    if sleep_seconds:
        body.append(f"time.sleep({sleep_seconds})")
    body.append(f"sys.exit({exit_code})")
    _write_script(script, "\n".join(body) + "\n")
    return script


def _stats_line(**stats: object) -> str:
    return json.dumps({"level": "info", "msg": "stats", "stats": stats})


def _job(**overrides: object) -> Job:
    fields = {
        "id": "photos",
        "name": "Photos offsite",
        "kind": "copy",
        "enabled": True,
        "source": "/mnt/photos",
        "destination": "gdrive:backup/photos",
        "schedule": "daily 02:00",
        "flags": "",
    }
    fields.update(overrides)
    return Job(**fields)  # type: ignore[arg-type]


def _runner(tmp_path: Path, sync_command: List[str], **settings: object):
    job = settings.pop("job", None) or _job()
    store = MemoryJobStore([job])
    notifier = RecordingNotifier()
    resolved = Settings(sync_command=sync_command, rclone_config=str(tmp_path / "rclone.conf"), **settings)
    runner = JobRunner(
        store,
        ProcessRegistry(kill_grace_seconds=2.0),
        notifier,
        settings_source=lambda: resolved,
        progress_interval=0.0,
    )
    return job, store, notifier, runner


def _wait_for(predicate, timeout: float = 10.0) -> None:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        time.sleep(0.05)
    raise AssertionError("condition not reached in time")


def test_build_command_for_copy_mirror_and_verify(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("RCLONE_CONFIG", raising=False)
    settings = Settings(sync_command=["rclone"], rclone_config="/cfg/rclone.conf", max_bandwidth="10M")
    job = _job(flags='--exclude "*.tmp" --transfers 8 --min-size=10k')

    copy_cmd = build_command(job, RUN_BACKUP, settings)
    assert copy_cmd[:4] == ["rclone", "copy", "/mnt/photos", "gdrive:backup/photos"]
    assert copy_cmd[4:6] == ["--config", "/cfg/rclone.conf"]
    assert "--use-json-log" in copy_cmd
    assert copy_cmd[copy_cmd.index("--bwlimit") + 1] == "10M"
    assert copy_cmd[-5:] == ["--exclude", "*.tmp", "--transfers", "8", "--min-size=10k"]

    mirror_cmd = build_command(_job(kind="mirror"), RUN_BACKUP, settings)
    assert mirror_cmd[1] == "sync"

    verify_cmd = build_command(job, RUN_VERIFY, settings, checksum=True)
    assert verify_cmd[1] == "check"
    assert "--one-way" in verify_cmd
    assert "--checksum" in verify_cmd
    assert "--transfers" not in verify_cmd
    assert verify_cmd[-3:] == ["--exclude", "*.tmp", "--min-size=10k"]


def test_build_command_accepts_json_array_flags(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("RCLONE_CONFIG", raising=False)
    job = _job(flags='["--exclude", "cache dir/**"]')
    command = build_command(job, RUN_BACKUP, Settings())
    assert command[-2:] == ["--exclude", "cache dir/**"]
    assert command[command.index("--config") + 1] == "/etc/rclone/rclone.conf"
    assert "--bwlimit" not in command


def test_verify_filter_args_keeps_values() -> None:
    args = ["--exclude", "*.iso", "--fast-list", "--max-size", "2G", "--exclude=tmp/**", "--min-size"]
    assert verify_filter_args(args) == ["--exclude", "*.iso", "--max-size", "2G", "--exclude=tmp/**", "--min-size"]


def test_exit_zero_with_errors_is_success(tmp_path: Path) -> None:
    script = _fake_rclone(
        tmp_path,
        [
            "2024/01/01 NOTICE: starting",
            _stats_line(bytes=2048, transfers=2, errors=3, totalBytes=2048, totalTransfers=2, speed=1024.0),
        ],
    )
    job, store, notifier, runner = _runner(tmp_path, [sys.executable, str(script)])

    run = runner.run_now(job, RUN_BACKUP)

    assert run is not None
    assert run.status == STATUS_SUCCESS
    assert run.bytes_transferred == 2048
    assert run.files_transferred == 2
    assert run.errors_count == 3
    assert "3 errors" in run.short_summary
    assert run.finished_at is not None
    assert "NOTICE: starting" in run.log_excerpt
    assert len(notifier.events) == 1
    assert notifier.events[0].status == STATUS_SUCCESS
    assert notifier.events[0].job_name == "Photos offsite"
    assert store.progress_history(run.id)
    assert runner.active_count() == 0


def test_nonzero_exit_is_failure_with_at_least_one_error(tmp_path: Path) -> None:
    script = _fake_rclone(tmp_path, [_stats_line(bytes=10, transfers=0, errors=0)], exit_code=2)
    job, store, notifier, runner = _runner(tmp_path, [sys.executable, str(script)])

    run = runner.run_now(job, RUN_BACKUP)

    assert run is not None
    assert run.status == STATUS_FAILURE
    assert run.errors_count == 1
    assert "exit code 2" in run.short_summary
    assert [event.status for event in notifier.events] == [STATUS_FAILURE]


def test_child_receives_config_path_and_arguments(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("RCLONE_CONFIG", raising=False)
    capture = tmp_path / "capture.json"
    script = _fake_rclone(tmp_path, [], capture=capture)
    job, store, notifier, runner = _runner(tmp_path, [sys.executable, str(script)], max_bandwidth="5M")

    runner.run_now(job, RUN_BACKUP)

    payload = json.loads(capture.read_text(encoding="utf-8"))
    assert payload["rclone_config"] == str(tmp_path / "rclone.conf")
    assert payload["argv"][:3] == ["copy", "/mnt/photos", "gdrive:backup/photos"]
    assert "--bwlimit" in payload["argv"]


def test_launch_failure_is_recorded_and_notified(tmp_path: Path) -> None:
    job, store, notifier, runner = _runner(tmp_path, [str(tmp_path / "no-such-rclone")])

    run = runner.run_now(job, RUN_BACKUP)

    assert run is not None
    assert run.status == STATUS_FAILURE
    assert run.errors_count == 1
    assert "Failed to start" in run.short_summary
    assert len(notifier.events) == 1


def test_missing_endpoints_fail_without_spawning(tmp_path: Path) -> None:
    marker = tmp_path / "spawned.json"
    script = _fake_rclone(tmp_path, [], capture=marker)
    job, store, notifier, runner = _runner(tmp_path, [sys.executable, str(script)], job=_job(destination=""))

    run = runner.run_now(job, RUN_BACKUP)

    assert run is not None
    assert run.status == STATUS_FAILURE
    assert "source and destination" in run.short_summary
    assert not marker.exists()


def test_stop_mid_flight_cancels_without_notification(tmp_path: Path) -> None:
    script = _fake_rclone(tmp_path, [_stats_line(bytes=100, transfers=1, errors=0)], sleep_seconds=30)
    job, store, notifier, runner = _runner(tmp_path, [sys.executable, str(script)])

    run = runner.launch(job, RUN_BACKUP)
    _wait_for(lambda: bool(store.progress_history(run.id)))
    assert runner.registry.is_running(run.id)

    assert runner.stop(run.id) is True
    runner.wait(timeout=15)

    final = store.get_run(run.id)
    assert final is not None
    assert final.status == STATUS_CANCELLED
    assert final.bytes_transferred == 100
    assert notifier.events == []
    assert not runner.registry.is_running(run.id)


def test_external_signal_without_stop_is_failure(tmp_path: Path) -> None:
    script = tmp_path / "self_terminate.py"
    _write_script(
        script,
        "import os\nimport signal\nimport time\nprint('working', flush=True)\n"
        "os.kill(os.getpid(), signal.SIGTERM)\ntime.sleep(30)\n",
    )
    job, store, notifier, runner = _runner(tmp_path, [sys.executable, str(script)])

    final = runner.run_now(job, RUN_BACKUP)

    assert final is not None
    assert final.status == STATUS_FAILURE
    assert "SIGTERM" in final.short_summary
    assert len(notifier.events) == 1


def test_stop_without_registered_process_marks_cancelled(tmp_path: Path) -> None:
    job, store, notifier, runner = _runner(tmp_path, ["rclone"])
    run = store.create_run(job.id, RUN_BACKUP)

    assert runner.stop(run.id) is True

    final = store.get_run(run.id)
    assert final is not None
    assert final.status == STATUS_CANCELLED
    assert final.short_summary == FORCE_STOPPED_SUMMARY
    assert runner.stop(run.id) is False


def test_stop_unknown_run_raises(tmp_path: Path) -> None:
    job, store, notifier, runner = _runner(tmp_path, ["rclone"])
    with pytest.raises(RunNotFoundError):
        runner.stop(999)


def test_cancelled_before_start_is_not_spawned(tmp_path: Path) -> None:
    marker = tmp_path / "spawned.json"
    script = _fake_rclone(tmp_path, [], capture=marker)
    job, store, notifier, runner = _runner(tmp_path, [sys.executable, str(script)])
    run = store.create_run(job.id, RUN_BACKUP)
    runner.stop(run.id)

    final = runner.execute(job, run)

    assert final is not None
    assert final.status == STATUS_CANCELLED
    assert not marker.exists()
    assert notifier.events == []


def test_verify_with_differences_fails(tmp_path: Path) -> None:
    script = _fake_rclone(
        tmp_path,
        [
            json.dumps({"level": "error", "msg": "File not in gdrive:backup/photos", "object": "a.jpg"}),
            _stats_line(checks=9, totalChecks=10, errors=1, transfers=0),
        ],
        exit_code=1,
    )
    job, store, notifier, runner = _runner(tmp_path, [sys.executable, str(script)])

    run = runner.run_now(job, RUN_VERIFY)

    assert run is not None
    assert run.kind == RUN_VERIFY
    assert run.status == STATUS_FAILURE
    assert run.files_transferred == 9
    assert run.errors_count == 1
    assert "1 missing" in run.short_summary
    assert notifier.events[0].run_kind == RUN_VERIFY


def test_verify_with_zero_differences_succeeds(tmp_path: Path) -> None:
    script = _fake_rclone(tmp_path, [_stats_line(checks=10, totalChecks=10, errors=0)])
    job, store, notifier, runner = _runner(tmp_path, [sys.executable, str(script)])

    run = runner.run_now(job, RUN_VERIFY)

    assert run is not None
    assert run.status == STATUS_SUCCESS
    assert run.errors_count == 0
    assert "Verified 10 files" in run.short_summary


def test_verify_exit_zero_but_differences_is_failure(tmp_path: Path) -> None:
    script = _fake_rclone(tmp_path, [_stats_line(checks=8, totalChecks=10, errors=2)])
    job, store, notifier, runner = _runner(tmp_path, [sys.executable, str(script)])

    run = runner.run_now(job, RUN_VERIFY)

    assert run is not None
    assert run.status == STATUS_FAILURE
    assert run.errors_count == 2


def test_notifier_failure_does_not_break_run(tmp_path: Path) -> None:
    script = _fake_rclone(tmp_path, [_stats_line(bytes=1, transfers=1, errors=0)])
    job = _job()
    store = MemoryJobStore([job])
    settings = Settings(sync_command=[sys.executable, str(script)])
    runner = JobRunner(store, notifier=ExplodingNotifier(), settings_source=lambda: settings)

    run = runner.run_now(job, RUN_BACKUP)

    assert run is not None
    assert run.status == STATUS_SUCCESS


def test_launch_runs_in_background_and_counts_active(tmp_path: Path) -> None:
    script = _fake_rclone(tmp_path, ["tick"], sleep_seconds=1.0)
    job, store, notifier, runner = _runner(tmp_path, [sys.executable, str(script)])

    run = runner.launch(job, RUN_BACKUP)
    assert run.status == STATUS_RUNNING
    assert runner.active_count() == 1

    runner.wait(timeout=15)
    assert runner.active_count() == 0
    final = store.get_run(run.id)
    assert final is not None
    assert final.status == STATUS_SUCCESS


def test_shutdown_stops_active_runs(tmp_path: Path) -> None:
    script = _fake_rclone(tmp_path, ["tick"], sleep_seconds=30)
    job, store, notifier, runner = _runner(tmp_path, [sys.executable, str(script)])

    run = runner.launch(job, RUN_BACKUP)
    _wait_for(lambda: runner.registry.is_running(run.id))

    assert runner.shutdown(wait=True, timeout=15) == [run.id]
    final = store.get_run(run.id)
    assert final is not None
    assert final.status == STATUS_CANCELLED
    assert "shutdown" in final.short_summary


def test_unsupported_run_kind_is_rejected() -> None:
    store = MemoryJobStore()
    runner = JobRunner(store)
    with pytest.raises(CourierError, match="Unsupported run kind"):
        runner.run_now(_job(), "restore")
    assert store.list_runs() == []


def test_stop_while_process_exiting_leaves_outcome_to_exit_handler(tmp_path: Path) -> None:
    job, store, notifier, runner = _runner(tmp_path, ["rclone"])
    run = store.create_run(job.id, RUN_BACKUP)
    process = subprocess.Popen([sys.executable, "-c", "pass"])
    process.wait(timeout=10)
    runner.registry.register(run.id, process)

    assert runner.stop(run.id) is True

    current = store.get_run(run.id)
    assert current is not None
    assert current.status == STATUS_RUNNING
    assert runner.registry.unregister(run.id) is None
    assert store.finalize_run(run.id, RunOutcome(status=STATUS_SUCCESS)) is True


def test_internal_error_reaps_child_that_ignores_sigterm(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    pid_file = tmp_path / "child.pid"
    script = tmp_path / "stubborn.py"
    _write_script(
        script,
        "import os\nimport signal\nimport time\n"
        "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
        f"open({str(pid_file)!r}, 'w', encoding='utf-8').write(str(os.getpid()))\n"
        "print('working', flush=True)\ntime.sleep(30)\n",
    )
    job, store, notifier, runner = _runner(tmp_path, [sys.executable, str(script)])
    runner.registry.kill_grace_seconds = 0.2

    def explode(self: TransferProgressParser, text: str) -> None:
        raise RuntimeError("parser bug")

    monkeypatch.setattr(TransferProgressParser, "feed", explode)

    final = runner.run_now(job, RUN_BACKUP)

    assert final is not None
    assert final.status == STATUS_FAILURE
    assert final.short_summary == "Internal error: parser bug"
    assert not runner.registry.is_registered(final.id)
    with pytest.raises(ProcessLookupError):
        os.kill(int(pid_file.read_text(encoding="utf-8")), 0)
