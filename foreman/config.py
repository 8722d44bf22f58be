"""
YAML configuration: scheduler settings plus jobs and their triggers.

Example::

    version: 1
    scheduler:
      thread_count: 4
      misfire_threshold_seconds: 60
      timezone: Europe/London
    jobs:
      - name: nightly-extract
        job: workers.sample.extract_demo:ExtractJob
        retry: {strategy: recurring, max_attempts: 3, cool_down_seconds: 30}
        triggers:
          - {type: cron, expression: "0 30 2 * * ?"}
"""

from __future__ import annotations

import importlib
import os
import re
import sys
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from .clock import Clock
from .errors import ConfigError, InvalidScheduleError
from .jobs import DEFAULT_GROUP, JobDataMap, JobDetail, JobKey
from .retry import DEFAULT_COOL_DOWN_SECONDS, DEFAULT_MAX_ATTEMPTS, VALID_STRATEGIES, build_retry_strategy
from .scheduler import Scheduler, SchedulerSettings
from .triggers import REPEAT_INDEFINITELY, CronTrigger, IntervalTrigger, OneShotTrigger, Trigger, TriggerKey


DEFAULT_CONFIG = "foreman.yaml"
INTERVAL_RE = re.compile(r"^(\d+)([smhd])$")
JOB_REF_RE = re.compile(r"^[A-Za-z_][\w.]*:[A-Za-z_][\w.]*$")
TRIGGER_TYPES = {"once", "interval", "cron"}

TOP_LEVEL_KEYS = {"version", "scheduler", "jobs"}
SCHEDULER_KEYS = {"thread_count", "misfire_threshold_seconds", "idle_wait_seconds", "timezone"}
JOB_KEYS = {"name", "group", "job", "description", "durable", "enabled", "data", "retry", "triggers"}
RETRY_KEYS = {"strategy", "max_attempts", "cool_down_seconds"}
TRIGGER_KEYS = {
    "once": {"name", "group", "type", "at", "description"},
    "interval": {"name", "group", "type", "every", "repeat_count", "forever", "start", "end", "description"},
    "cron": {"name", "group", "type", "expression", "timezone", "start", "end", "description"},
}


@dataclass(frozen=True)
class RetrySpec:
    strategy: str = "none"
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    cool_down_seconds: float = DEFAULT_COOL_DOWN_SECONDS


@dataclass(frozen=True)
class TriggerSpec:
    name: str
    group: str
    type: str
    field_path: str
    description: Optional[str] = None
    at: Optional[datetime] = None
    every: Optional[timedelta] = None
    every_text: Optional[str] = None
    repeat_count: int = REPEAT_INDEFINITELY
    expression: Optional[str] = None
    timezone: str = "UTC"
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    @property
    def key(self) -> TriggerKey:
        return TriggerKey(self.name, self.group)


@dataclass(frozen=True)
class JobSpec:
    name: str
    group: str
    job_ref: str
    field_path: str
    description: Optional[str] = None
    durable: bool = False
    enabled: bool = True
    data: Dict[str, Any] = field(default_factory=dict)
    retry: RetrySpec = field(default_factory=RetrySpec)
    triggers: List[TriggerSpec] = field(default_factory=list)

    @property
    def key(self) -> JobKey:
        return JobKey(self.name, self.group)


@dataclass(frozen=True)
class ForemanConfig:
    path: Path
    settings: SchedulerSettings
    jobs: List[JobSpec]


def system_timezone() -> Tuple[ZoneInfo, str]:
    local_tz = datetime.now().astimezone().tzinfo
    if isinstance(local_tz, ZoneInfo):
        return local_tz, local_tz.key
    tz_name = os.environ.get("TZ")
    if tz_name:
        try:
            zone = ZoneInfo(tz_name)
            return zone, tz_name
        except ZoneInfoNotFoundError:
            pass
    return ZoneInfo("UTC"), "UTC"


def parse_timezone(name: Any, field_path: str) -> ZoneInfo:
    if not isinstance(name, str) or not name.strip():
        raise ConfigError(f"Error: {field_path} must be a timezone string.")
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f'Error: Invalid timezone "{name}" at {field_path}.') from exc


def parse_iso_datetime(value: Any, tz: ZoneInfo, field_path: str) -> datetime:
    # PyYAML already turns unquoted timestamps into datetime objects.
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError as exc:
            raise ConfigError(f'Error: {field_path} must be ISO datetime, got "{value}".') from exc
    else:
        raise ConfigError(f"Error: {field_path} must be an ISO datetime string.")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=tz)
    return parsed


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


def ensure_number(value: Any, field_path: str, default: float, minimum: float = 0) -> float:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"Error: {field_path} must be a number.")
    if value < minimum:
        raise ConfigError(f"Error: {field_path} must be >= {minimum}.")
    return float(value)


def ensure_str(value: Any, field_path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"Error: {field_path} must be a non-empty string.")
    return value.strip()


def ensure_mapping(value: Any, field_path: str) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"Error: {field_path} must be a mapping.")
    return value


def check_unknown_keys(raw: Dict[str, Any], allowed: Set[str], field_path: str) -> None:
    unknown = set(raw.keys()) - allowed
    if unknown:
        raise ConfigError(f"Error: Unknown keys in {field_path}: {sorted(unknown)}.")


def parse_interval(value: Any, field_path: str) -> timedelta:
    if not isinstance(value, str):
        raise ConfigError(f"Error: {field_path} must be interval string like 30s, 5m, 2h, 1d.")
    match = INTERVAL_RE.match(value.strip().lower())
    if not match:
        raise ConfigError(f'Error: {field_path} must be in format <number><s|m|h|d>, got "{value}".')
    amount = int(match.group(1))
    unit = match.group(2)
    if amount <= 0:
        raise ConfigError(f"Error: {field_path} must be > 0.")
    if unit == "s":
        return timedelta(seconds=amount)
    if unit == "m":
        return timedelta(minutes=amount)
    if unit == "h":
        return timedelta(hours=amount)
    return timedelta(days=amount)


def _load_config_payload(config_path: Path) -> Dict[str, Any]:
    if not config_path.exists():
        raise ConfigError(f"Error: Config file not found: {config_path}")

    try:
        payload = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Error: Failed to parse YAML in {config_path}: {exc}") from exc

    if not isinstance(payload, dict):
        raise ConfigError("Error: Top-level config must be a mapping.")
    return payload


def parse_scheduler_settings(raw: Any, field_path: str) -> SchedulerSettings:
    raw = ensure_mapping(raw, field_path)
    check_unknown_keys(raw, SCHEDULER_KEYS, field_path)
    _, system_tz_name = system_timezone()
    timezone_name = raw.get("timezone", system_tz_name)
    parse_timezone(timezone_name, f"{field_path}.timezone")
    idle_wait = ensure_number(raw.get("idle_wait_seconds"), f"{field_path}.idle_wait_seconds", 1.0)
    if idle_wait <= 0:
        raise ConfigError(f"Error: {field_path}.idle_wait_seconds must be > 0.")
    return SchedulerSettings(
        thread_count=ensure_int(raw.get("thread_count"), f"{field_path}.thread_count", 4),
        misfire_threshold=timedelta(
            seconds=ensure_number(
                raw.get("misfire_threshold_seconds"), f"{field_path}.misfire_threshold_seconds", 60
            )
        ),
        idle_wait_seconds=idle_wait,
        timezone_name=timezone_name,
    )


def parse_retry(raw: Any, field_path: str) -> RetrySpec:
    raw = ensure_mapping(raw, field_path)
    check_unknown_keys(raw, RETRY_KEYS, field_path)
    strategy = raw.get("strategy", "none")
    if strategy not in VALID_STRATEGIES:
        raise ConfigError(
            f"Error: {field_path}.strategy must be one of {sorted(VALID_STRATEGIES)}, got {strategy!r}."
        )
    return RetrySpec(
        strategy=strategy,
        max_attempts=ensure_int(raw.get("max_attempts"), f"{field_path}.max_attempts", DEFAULT_MAX_ATTEMPTS),
        cool_down_seconds=ensure_number(
            raw.get("cool_down_seconds"), f"{field_path}.cool_down_seconds", DEFAULT_COOL_DOWN_SECONDS
        ),
    )


def parse_trigger(
    raw: Any,
    field_path: str,
    job_name: str,
    index: int,
    default_group: str,
    timezone_name: str,
) -> TriggerSpec:
    if not isinstance(raw, dict):
        raise ConfigError(f"Error: {field_path} must be a mapping.")
    trigger_type = raw.get("type")
    if trigger_type not in TRIGGER_TYPES:
        raise ConfigError(f"Error: {field_path}.type must be one of {sorted(TRIGGER_TYPES)}.")
    check_unknown_keys(raw, TRIGGER_KEYS[trigger_type], field_path)

    zone_name = raw.get("timezone", timezone_name) if trigger_type == "cron" else timezone_name
    tz = parse_timezone(zone_name, f"{field_path}.timezone" if "timezone" in raw else "scheduler.timezone")
    name = ensure_str(raw["name"], f"{field_path}.name") if "name" in raw else f"{job_name}.{trigger_type}-{index}"
    group = ensure_str(raw["group"], f"{field_path}.group") if "group" in raw else default_group
    description = ensure_str(raw["description"], f"{field_path}.description") if "description" in raw else None

    def optional_time(key: str) -> Optional[datetime]:
        if raw.get(key) is None:
            return None
        return parse_iso_datetime(raw[key], tz, f"{field_path}.{key}")

    if trigger_type == "once":
        return TriggerSpec(
            name=name,
            group=group,
            type="once",
            field_path=field_path,
            description=description,
            at=optional_time("at"),
        )

    start = optional_time("start")
    end = optional_time("end")
    if start is not None and end is not None and end < start:
        raise ConfigError(f"Error: {field_path}.end must not precede {field_path}.start.")

    if trigger_type == "interval":
        every = parse_interval(raw.get("every"), f"{field_path}.every")
        if "repeat_count" in raw and ensure_bool(raw.get("forever"), f"{field_path}.forever", False):
            raise ConfigError(f"Error: {field_path} cannot set both repeat_count and forever: true.")
        repeat_count = ensure_int(raw.get("repeat_count"), f"{field_path}.repeat_count", REPEAT_INDEFINITELY, minimum=0)
        return TriggerSpec(
            name=name,
            group=group,
            type="interval",
            field_path=field_path,
            description=description,
            every=every,
            every_text=raw["every"],
            repeat_count=repeat_count,
            start=start,
            end=end,
        )

    return TriggerSpec(
        name=name,
        group=group,
        type="cron",
        field_path=field_path,
        description=description,
        expression=ensure_str(raw.get("expression"), f"{field_path}.expression"),
        timezone=zone_name,
        start=start,
        end=end,
    )


def load_config(config_path: Path) -> ForemanConfig:
    payload = _load_config_payload(config_path)
    check_unknown_keys(payload, TOP_LEVEL_KEYS, "top-level config")

    version = payload.get("version", 1)
    if version != 1:
        raise ConfigError(f"Error: Unsupported config version {version!r}; expected 1.")

    settings = parse_scheduler_settings(payload.get("scheduler"), "scheduler")

    jobs_raw = payload.get("jobs")
    if not isinstance(jobs_raw, list) or not jobs_raw:
        raise ConfigError("Error: jobs must be a non-empty list.")

    seen_jobs: Set[JobKey] = set()
    seen_triggers: Set[TriggerKey] = set()
    jobs: List[JobSpec] = []

    for idx, job_raw in enumerate(jobs_raw):
        path = f"jobs[{idx}]"
        if not isinstance(job_raw, dict):
            raise ConfigError(f"Error: {path} must be a mapping.")
        check_unknown_keys(job_raw, JOB_KEYS, path)

        name = ensure_str(job_raw.get("name"), f"{path}.name")
        group = ensure_str(job_raw["group"], f"{path}.group") if "group" in job_raw else DEFAULT_GROUP
        key = JobKey(name, group)
        if key in seen_jobs:
            raise ConfigError(f'Error: Duplicate job name "{key}".')
        seen_jobs.add(key)

        job_ref = ensure_str(job_raw.get("job"), f"{path}.job")
        if not JOB_REF_RE.match(job_ref):
            raise ConfigError(f'Error: {path}.job must look like "package.module:attribute", got "{job_ref}".')

        data = ensure_mapping(job_raw.get("data"), f"{path}.data")
        for data_key in data:
            if not isinstance(data_key, str):
                raise ConfigError(f"Error: {path}.data keys must be strings, got {data_key!r}.")

        durable = ensure_bool(job_raw.get("durable"), f"{path}.durable", False)
        triggers_raw = job_raw.get("triggers") or []
        if not isinstance(triggers_raw, list):
            raise ConfigError(f"Error: {path}.triggers must be a list.")
        if not triggers_raw and not durable:
            raise ConfigError(f"Error: {path}.triggers must be non-empty unless durable: true.")

        triggers: List[TriggerSpec] = []
        for t_idx, trigger_raw in enumerate(triggers_raw):
            trigger = parse_trigger(
                trigger_raw,
                f"{path}.triggers[{t_idx}]",
                name,
                t_idx,
                group,
                settings.timezone_name,
            )
            if trigger.key in seen_triggers:
                raise ConfigError(f'Error: Duplicate trigger name "{trigger.key}" at {trigger.field_path}.')
            seen_triggers.add(trigger.key)
            triggers.append(trigger)

        jobs.append(
            JobSpec(
                name=name,
                group=group,
                job_ref=job_ref,
                field_path=path,
                description=(
                    ensure_str(job_raw["description"], f"{path}.description") if "description" in job_raw else None
                ),
                durable=durable,
                enabled=ensure_bool(job_raw.get("enabled"), f"{path}.enabled", True),
                data=dict(data),
                retry=parse_retry(job_raw.get("retry"), f"{path}.retry"),
                triggers=triggers,
            )
        )

    config = ForemanConfig(path=config_path, settings=settings, jobs=jobs)
    # Compile every trigger once so cron errors surface at load time.
    for spec in jobs:
        for trigger_spec in spec.triggers:
            build_trigger(trigger_spec)
    return config


def resolve_job_reference(job_ref: str, field_path: str, search_dir: Optional[Path] = None) -> Any:
    module_name, _, attr_path = job_ref.partition(":")
    if search_dir is not None and str(search_dir) not in sys.path:
        sys.path.insert(0, str(search_dir))
    try:
        target: Any = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigError(f'Error: Cannot import module "{module_name}" at {field_path}: {exc}') from exc
    for part in attr_path.split("."):
        try:
            target = getattr(target, part)
        except AttributeError as exc:
            raise ConfigError(f'Error: "{job_ref}" has no attribute "{part}" at {field_path}.') from exc
    if not callable(target) and not callable(getattr(target, "execute", None)):
        raise ConfigError(f'Error: "{job_ref}" at {field_path} is not callable and has no execute().')
    return target


def build_job(spec: JobSpec, search_dir: Optional[Path] = None) -> JobDetail:
    body = resolve_job_reference(spec.job_ref, f"{spec.field_path}.job", search_dir)
    try:
        strategy = build_retry_strategy(
            spec.retry.strategy,
            max_attempts=spec.retry.max_attempts,
            cool_down_seconds=spec.retry.cool_down_seconds,
        )
    except ValueError as exc:
        raise ConfigError(f"Error: {spec.field_path}.retry: {exc}") from exc
    return JobDetail(
        key=spec.key,
        job=body,
        job_data_map=JobDataMap(spec.data),
        durable=spec.durable,
        description=spec.description,
        retry_strategy=strategy,
    )


def build_trigger(spec: TriggerSpec, job: Optional[JobDetail] = None) -> Trigger:
    try:
        if spec.type == "once":
            return OneShotTrigger(spec.key, job=job, start_time=spec.at, description=spec.description)
        if spec.type == "interval":
            return IntervalTrigger(
                spec.key,
                spec.every,
                repeat_count=spec.repeat_count,
                job=job,
                start_time=spec.start,
                end_time=spec.end,
                description=spec.description,
            )
        return CronTrigger(
            spec.key,
            spec.expression,
            timezone=spec.timezone,
            job=job,
            start_time=spec.start,
            end_time=spec.end,
            description=spec.description,
        )
    except InvalidScheduleError as exc:
        raise ConfigError(f"Error: {spec.field_path}: {exc}") from exc


def select_jobs(config: ForemanConfig, job_name: Optional[str], include_disabled: bool = False) -> List[JobSpec]:
    selected = config.jobs
    if job_name:
        selected = [spec for spec in selected if spec.name == job_name or str(spec.key) == job_name]
        if not selected:
            raise ConfigError(f'Error: Unknown job "{job_name}".')
    if include_disabled:
        return selected
    selected = [spec for spec in selected if spec.enabled]
    if not selected:
        raise ConfigError("Error: No enabled jobs selected.")
    return selected


def build_scheduler(
    config: ForemanConfig,
    clock: Optional[Clock] = None,
    job_name: Optional[str] = None,
) -> Scheduler:
    """Create a scheduler and register every enabled job with its triggers."""
    scheduler = Scheduler(config.settings, clock=clock)
    search_dir = config.path.parent.resolve()
    for spec in select_jobs(config, job_name):
        job = build_job(spec, search_dir)
        if job.durable:
            scheduler.add_job(job)
        for trigger_spec in spec.triggers:
            try:
                scheduler.schedule(job, build_trigger(trigger_spec))
            except InvalidScheduleError as exc:
                raise ConfigError(f"Error: {trigger_spec.field_path}: {exc}") from exc
    return scheduler
