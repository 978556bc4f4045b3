from __future__ import annotations

import argparse
import logging
import signal
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional

from courier.config import DEFAULT_CONFIG, load_config
from courier.errors import CourierError
from courier.log import setup_logging
from courier.models import RUN_VERIFY, STATUS_SUCCESS, Job, Run
from courier.notify import ReloadingNotifier
from courier.progress import format_bytes
from courier.registry import ProcessRegistry
from courier.runner import JobRunner, build_command
from courier.schedule import Unrecognized, describe, next_due_after, parse_schedule, resolve_timezone
from courier.scheduler import SchedulerLoop, TriggerDebounce
from courier.store import FileJobStore

logger = logging.getLogger("courier.cli")
UTC = timezone.utc
DEFAULT_PREVIEW_COUNT = 5


def select_job(store: FileJobStore, job_id: str) -> Job:
    job = store.get_job(job_id)
    if job is None:
        raise CourierError(f'Unknown job "{job_id}".')
    return job


def command_validate(config_path: Path) -> int:
    config = load_config(config_path)
    enabled_count = sum(1 for job in config.jobs if job.enabled)
    print(f"Config valid: {config_path}")
    print(f"Total jobs: {len(config.jobs)}")
    print(f"Enabled jobs: {enabled_count}")
    tz = resolve_timezone(config.settings.timezone)
    if tz.fell_back:
        print(f'Warning: unknown timezone "{tz.requested}"; schedules will use UTC.')

    problems = 0
    for job in config.jobs:
        spec = parse_schedule(job.schedule)
        print(f"- {job.id}: {job.kind} {job.source or '?'} -> {job.destination or '?'} | {describe(spec)}")
        if isinstance(spec, Unrecognized):
            logger.error('Job %s: unrecognized schedule "%s".', job.id, spec.raw)
            problems += 1
        if job.enabled and not job.has_endpoints:
            logger.error("Job %s: source and destination are required.", job.id)
            problems += 1
    return 1 if problems else 0


def command_preview(config_path: Path, job_id: Optional[str], count: int) -> int:
    store = FileJobStore(config_path)
    settings = store.settings()
    tz = resolve_timezone(settings.timezone)
    jobs = [select_job(store, job_id)] if job_id else store.list_jobs()
    now_local = datetime.now(tz=UTC).astimezone(tz.zone)

    for job in jobs:
        spec = parse_schedule(job.schedule)
        print("=" * 80)
        print(f"Job: {job.name} [{job.id}] (enabled={job.enabled}, kind={job.kind})")
        if job.description:
            print(job.description)
        print(f"Schedule: {describe(spec)} ({tz.name})")
        print(f"Command: {' '.join(build_command(job, job.scheduled_run_kind, settings))}")
        last_run = store.last_run_start_time(job.id)
        last_local = last_run.astimezone(tz.zone) if last_run is not None else None
        print(f"Last run: {last_local.isoformat() if last_local else 'never'}")
        print(f"Next {count} run(s):")
        after = now_local
        listed = 0
        while listed < count:
            nxt = next_due_after(spec, after, last_local)
            if nxt is None:
                break
            print(f"- {nxt.isoformat()}")
            listed += 1
            last_local = nxt
            after = nxt + timedelta(minutes=1)
        if listed == 0:
            print("- none")
    print("=" * 80)
    return 0


def _print_run(run: Optional[Run]) -> None:
    if run is None:
        return
    print(f"Run {run.id}: {run.status}")
    print(f"Transferred: {format_bytes(run.bytes_transferred)}, {run.files_transferred} files, {run.errors_count} errors")
    print(run.short_summary)


def _run_foreground(config_path: Path, job_id: str, kind: Optional[str], checksum: bool) -> int:
    store = FileJobStore(config_path)
    job = select_job(store, job_id)
    if store.is_running(job.id):
        raise CourierError(f"Job {job.id} already has a run in progress.")
    if not job.enabled:
        logger.info("Job %s is disabled; running it anyway.", job.id)
    notifier = ReloadingNotifier(lambda: store.settings().telegram)
    runner = JobRunner(store, ProcessRegistry(), notifier, settings_source=store.settings)
    run = runner.launch(job, kind or job.scheduled_run_kind, checksum=checksum)
    try:
        runner.wait()
    except KeyboardInterrupt:
        logger.info("[run %s] Interrupted by user; stopping.", run.id)
        runner.shutdown(wait=True)
    finally:
        notifier.close()
    final = store.get_run(run.id)
    _print_run(final)
    return 0 if final is not None and final.status == STATUS_SUCCESS else 1


def command_run(config_path: Path, job_id: str) -> int:
    return _run_foreground(config_path, job_id, kind=None, checksum=False)


def command_verify(config_path: Path, job_id: str, checksum: bool) -> int:
    return _run_foreground(config_path, job_id, kind=RUN_VERIFY, checksum=checksum)


def command_daemon(config_path: Path, poll_seconds: Optional[int]) -> int:
    store = FileJobStore(config_path)
    settings = store.settings()
    notifier = ReloadingNotifier(lambda: store.settings().telegram)
    runner = JobRunner(store, ProcessRegistry(), notifier, settings_source=store.settings)
    loop = SchedulerLoop(
        store,
        runner,
        settings_source=store.settings,
        debounce=TriggerDebounce(timedelta(minutes=settings.debounce_minutes)),
        poll_seconds=poll_seconds,
    )
    stop_event = threading.Event()

    def handle_sigterm(signum: int, _frame: object) -> None:
        logger.info("Received signal %s; shutting down.", signum)
        stop_event.set()

    signal.signal(signal.SIGTERM, handle_sigterm)
    logger.info("Starting daemon with %s enabled job(s)", len(store.list_enabled_jobs()))
    exit_code = 0
    try:
        loop.run_forever(stop_event)
    except KeyboardInterrupt:
        logger.info("Daemon interrupted by user.")
        exit_code = 130
    finally:
        runner.shutdown(wait=True)
        notifier.close()
    return exit_code


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="courier: scheduled rclone backups and verifications",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config",
        default=DEFAULT_CONFIG,
        help=f"Path to courier YAML config (default: {DEFAULT_CONFIG})",
    )
    parser.add_argument("--log-file", help="Also write logs to this file")
    subparsers = parser.add_subparsers(dest="command", required=True)

    validate_parser = subparsers.add_parser("validate", help="Validate config and schedules")
    validate_parser.add_argument(
        "--config",
        default=argparse.SUPPRESS,
        help=f"Path to config (default: {DEFAULT_CONFIG})",
    )

    preview_parser = subparsers.add_parser("preview", help="Show upcoming trigger times")
    preview_parser.add_argument(
        "--config",
        default=argparse.SUPPRESS,
        help=f"Path to config (default: {DEFAULT_CONFIG})",
    )
    preview_parser.add_argument("--job", help="Preview a single job by id")
    preview_parser.add_argument("--count", type=int, default=DEFAULT_PREVIEW_COUNT, help="Next run count")

    run_parser = subparsers.add_parser("run", help="Run one job now")
    run_parser.add_argument(
        "--config",
        default=argparse.SUPPRESS,
        help=f"Path to config (default: {DEFAULT_CONFIG})",
    )
    run_parser.add_argument("--job", required=True, help="Job id")

    verify_parser = subparsers.add_parser("verify", help="Run a one-way verification now")
    verify_parser.add_argument(
        "--config",
        default=argparse.SUPPRESS,
        help=f"Path to config (default: {DEFAULT_CONFIG})",
    )
    verify_parser.add_argument("--job", required=True, help="Job id")
    verify_parser.add_argument("--checksum", action="store_true", help="Compare checksums instead of sizes")

    daemon_parser = subparsers.add_parser("daemon", help="Run the scheduler loop")
    daemon_parser.add_argument(
        "--config",
        default=argparse.SUPPRESS,
        help=f"Path to config (default: {DEFAULT_CONFIG})",
    )
    daemon_parser.add_argument(
        "--poll-seconds",
        type=int,
        help="Polling interval in seconds (default: settings.poll_seconds)",
    )

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging(Path(args.log_file) if args.log_file else None)
    config_path = Path(args.config or DEFAULT_CONFIG).resolve()

    try:
        if args.command == "validate":
            return command_validate(config_path)
        if args.command == "preview":
            if args.count <= 0:
                raise CourierError("--count must be >= 1")
            return command_preview(config_path, job_id=args.job, count=args.count)
        if args.command == "run":
            return command_run(config_path, job_id=args.job)
        if args.command == "verify":
            return command_verify(config_path, job_id=args.job, checksum=args.checksum)
        if args.command == "daemon":
            if args.poll_seconds is not None and args.poll_seconds <= 0:
                raise CourierError("--poll-seconds must be >= 1")
            return command_daemon(config_path, poll_seconds=args.poll_seconds)
        raise CourierError(f"Unsupported command: {args.command}")
    except CourierError as exc:
        logger.error(str(exc))
        return 1
    except Exception as exc:  # pragma: no cover - defensive
        logger.exception("Unexpected error: %s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
