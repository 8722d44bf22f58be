"""
foreman command line: validate, preview, run and daemon.
"""

from __future__ import annotations

import argparse
import logging
import time
import uuid
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from .clock import UTC
from .config import DEFAULT_CONFIG, build_job, build_scheduler, build_trigger, load_config, parse_timezone, select_jobs
from .errors import ForemanError
from .execution import ExecutionOutcome
from .jobs import JobExecutionContext
from .listeners import SchedulerListener
from .log import LOG_FILE, setup_logging
from .scheduler import Scheduler
from .triggers import CronTrigger, IntervalTrigger, OneShotTrigger, TriggerKey, next_fire_times


logger = logging.getLogger("foreman.cli")

DEFAULT_PREVIEW_COUNT = 5
DEFAULT_POLL_SECONDS = 10


class OutcomeCollector(SchedulerListener):
    def __init__(self) -> None:
        self.outcomes: List[ExecutionOutcome] = []

    def job_was_executed(self, context: JobExecutionContext, outcome: ExecutionOutcome) -> None:
        self.outcomes.append(outcome)


def command_validate(config_path: Path) -> int:
    config = load_config(config_path)
    enabled_count = sum(1 for spec in config.jobs if spec.enabled)
    print(f"Config valid: {config_path}")
    print(f"Total jobs: {len(config.jobs)}")
    print(f"Enabled jobs: {enabled_count}")
    for spec in config.jobs:
        kinds = ", ".join(t.type for t in spec.triggers) or "durable, no triggers"
        print(f"- {spec.key}: {kinds} (retry={spec.retry.strategy})")
    return 0


def command_preview(config_path: Path, job_name: Optional[str], count: int) -> int:
    config = load_config(config_path)
    selected = select_jobs(config, job_name, include_disabled=True)
    display_tz = parse_timezone(config.settings.timezone_name, "scheduler.timezone")
    now_utc = datetime.now(tz=UTC)

    for spec in selected:
        print("=" * 80)
        print(f"Job: {spec.key} (enabled={spec.enabled}, durable={spec.durable})")
        print(f"Target: {spec.job_ref}")
        if spec.description:
            print(spec.description)
        print(f"Retry: {spec.retry.strategy}")
        for trigger_spec in spec.triggers:
            trigger = build_trigger(trigger_spec)
            print(f"Trigger: {trigger.key}")
            if isinstance(trigger, CronTrigger):
                print(f"  Cron: {trigger.expression} ({trigger.timezone_name})")
            elif isinstance(trigger, IntervalTrigger):
                repeat = "forever" if trigger.repeat_count < 0 else f"{trigger.repeat_count} repeat(s)"
                print(f"  Every {trigger_spec.every_text}, {repeat}")
            else:
                print("  Once")
            if trigger.start_time:
                print(f"  Start bound: {trigger.start_time.astimezone(display_tz).isoformat()}")
            if trigger.end_time:
                print(f"  End bound: {trigger.end_time.astimezone(display_tz).isoformat()}")
            print(f"  Next {count} run(s):")
            runs = next_fire_times(trigger, count, now=now_utc)
            if not runs:
                print("  - none")
            for run_dt in runs:
                print(f"  - {run_dt.astimezone(display_tz).isoformat()}")
    print("=" * 80)
    return 0


def command_run(config_path: Path, job_name: Optional[str]) -> int:
    config = load_config(config_path)
    selected = select_jobs(config, job_name, include_disabled=False)
    scheduler = Scheduler(config.settings)
    collector = OutcomeCollector()
    scheduler.add_listener(collector)
    search_dir = config.path.parent.resolve()

    try:
        for spec in selected:
            job = build_job(spec, search_dir)
            key = TriggerKey(f"{spec.name}.run-{uuid.uuid4().hex[:8]}", spec.group)
            scheduler.schedule(job, OneShotTrigger(key, start_time=scheduler.clock.now()))
        scheduler.run_pending()
        scheduler.wait_for_idle()
        scheduler.run_pending()
    finally:
        scheduler.shutdown(wait_for_running_jobs=True)

    exit_code = 0
    for outcome in collector.outcomes:
        status = "ok" if outcome.success else f"failed: {outcome.error}"
        print(f"- {outcome.job.key}: {status} ({(outcome.ended_at - outcome.started_at).total_seconds():.2f}s)")
        if not outcome.success:
            exit_code = 1
    return exit_code


def command_daemon(config_path: Path, poll_seconds: int) -> int:
    config = load_config(config_path)
    scheduler = build_scheduler(config)
    logger.info(
        "Starting daemon with %s job(s) and %s trigger(s), poll_seconds=%s",
        len(scheduler.get_job_keys()),
        len(scheduler.get_trigger_keys()),
        poll_seconds,
    )
    scheduler.start()
    try:
        while True:
            time.sleep(poll_seconds)
            logger.debug("Daemon heartbeat: %s trigger(s) registered.", len(scheduler.get_trigger_keys()))
    except KeyboardInterrupt:
        logger.info("Daemon interrupted by user.")
        return 130
    finally:
        scheduler.shutdown(wait_for_running_jobs=True)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="foreman",
        description="foreman in-process job scheduler",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config",
        default=DEFAULT_CONFIG,
        help=f"Path to foreman YAML config (default: {DEFAULT_CONFIG})",
    )
    parser.add_argument(
        "--log-file",
        default=LOG_FILE,
        help=f"Log file path; empty string disables file logging (default: {LOG_FILE})",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("validate", help="Validate config and compile triggers")

    preview_parser = subparsers.add_parser("preview", help="Show upcoming fire times")
    preview_parser.add_argument("--job", help="Preview a single job by name")
    preview_parser.add_argument("--count", type=int, default=DEFAULT_PREVIEW_COUNT, help="Next run count")

    run_parser = subparsers.add_parser("run", help="Fire jobs once, now")
    run_parser.add_argument("--job", help="Run one job by name")

    daemon_parser = subparsers.add_parser("daemon", help="Run the scheduler until interrupted")
    daemon_parser.add_argument(
        "--poll-seconds",
        type=int,
        default=DEFAULT_POLL_SECONDS,
        help=f"Heartbeat interval in seconds (default: {DEFAULT_POLL_SECONDS})",
    )

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_file or None)
    config_path = Path(args.config or DEFAULT_CONFIG).resolve()

    try:
        if args.command == "validate":
            return command_validate(config_path)
        if args.command == "preview":
            if args.count <= 0:
                raise ForemanError("--count must be >= 1")
            return command_preview(config_path, job_name=args.job, count=args.count)
        if args.command == "run":
            return command_run(config_path, job_name=args.job)
        if args.command == "daemon":
            if args.poll_seconds <= 0:
                raise ForemanError("--poll-seconds must be >= 1")
            return command_daemon(config_path, poll_seconds=args.poll_seconds)
        raise ForemanError(f"Unsupported command: {args.command}")
    except ForemanError as exc:
        logger.error(str(exc))
        return 1
    except Exception as exc:  # pragma: no cover - defensive
        logger.exception("Unexpected error: %s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
