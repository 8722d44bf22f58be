"""
Trigger variants and cron calendar evaluation.

A trigger owns its own firing state (next/previous fire time, fire count); the
scheduler's coordinator is the only thing that advances it once admitted.
"""

from __future__ import annotations

import copy
import re
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Dict, FrozenSet, List, Optional, Set
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import CroniterBadDateError, croniter

from .clock import UTC, ensure_aware_utc
from .errors import InvalidScheduleError
from .jobs import DEFAULT_GROUP

if TYPE_CHECKING:
    from .jobs import JobDetail


REPEAT_INDEFINITELY = -1
MAX_CRON_SEARCH = 10000
ONE_MICROSECOND = timedelta(microseconds=1)

MONTH_NAME_TO_NUM = {
    "jan": 1,
    "feb": 2,
    "mar": 3,
    "apr": 4,
    "may": 5,
    "jun": 6,
    "jul": 7,
    "aug": 8,
    "sep": 9,
    "oct": 10,
    "nov": 11,
    "dec": 12,
}
DAY_NAME_TO_CRON = {
    "sun": 0,
    "mon": 1,
    "tue": 2,
    "wed": 3,
    "thu": 4,
    "fri": 5,
    "sat": 6,
}
CRON_FIELD_RE = re.compile(r"^[0-9*,/\-]+$")
WILDCARDS = {"*", "?"}


@dataclass(frozen=True, order=True)
class TriggerKey:
    name: str
    group: str = DEFAULT_GROUP

    def __str__(self) -> str:
        return f"{self.group}.{self.name}"


class Trigger(ABC):
    """Rule computing when a job next fires."""

    def __init__(
        self,
        key: TriggerKey,
        job: Optional["JobDetail"] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        description: Optional[str] = None,
    ) -> None:
        self.key = key
        self.job = job
        self.start_time = ensure_aware_utc(start_time) if start_time is not None else None
        self.end_time = ensure_aware_utc(end_time) if end_time is not None else None
        self.description = description
        self.next_fire_time: Optional[datetime] = None
        self.previous_fire_time: Optional[datetime] = None
        self.times_triggered = 0

    @abstractmethod
    def compute_next_fire_time(self, after: datetime) -> Optional[datetime]:
        """Smallest fire time strictly after ``after``, or None when exhausted."""
        ...

    def compute_first_fire_time(self) -> Optional[datetime]:
        if self.start_time is None:
            raise InvalidScheduleError(f"Trigger {self.key} has no start time.")
        return self.compute_next_fire_time(self.start_time - ONE_MICROSECOND)

    def validate(self) -> None:
        if self.start_time is not None and self.end_time is not None and self.end_time < self.start_time:
            raise InvalidScheduleError(
                f"Trigger {self.key}: end time {self.end_time.isoformat()} "
                f"precedes start time {self.start_time.isoformat()}."
            )

    def triggered(self, fire_time: datetime) -> None:
        self.previous_fire_time = fire_time
        self.times_triggered += 1
        self.next_fire_time = self.compute_next_fire_time(fire_time)

    def is_misfired(self, now: datetime, threshold: timedelta) -> bool:
        return self.next_fire_time is not None and now - self.next_fire_time > threshold

    def _clip(self, candidate: Optional[datetime]) -> Optional[datetime]:
        if candidate is None:
            return None
        if self.end_time is not None and candidate > self.end_time:
            return None
        return candidate

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.key}, next_fire_time={self.next_fire_time})"


class OneShotTrigger(Trigger):
    def compute_next_fire_time(self, after: datetime) -> Optional[datetime]:
        if self.times_triggered > 0 or self.start_time is None:
            return None
        if ensure_aware_utc(after) >= self.start_time:
            return None
        return self._clip(self.start_time)


class IntervalTrigger(Trigger):
    """
    Fires at ``start_time + k * interval`` for ``k = 0..repeat_count``.

    Slots are counted from ``start_time``, so slots skipped by a misfire are
    consumed rather than replayed.
    """

    def __init__(
        self,
        key: TriggerKey,
        interval: timedelta,
        repeat_count: int = REPEAT_INDEFINITELY,
        job: Optional["JobDetail"] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        description: Optional[str] = None,
    ) -> None:
        if interval <= timedelta(0):
            raise InvalidScheduleError(f"Trigger {key}: interval must be positive.")
        if repeat_count < REPEAT_INDEFINITELY:
            raise InvalidScheduleError(
                f"Trigger {key}: repeat_count must be >= 0 or REPEAT_INDEFINITELY."
            )
        super().__init__(key, job=job, start_time=start_time, end_time=end_time, description=description)
        self.interval = interval
        self.repeat_count = repeat_count

    def compute_next_fire_time(self, after: datetime) -> Optional[datetime]:
        if self.start_time is None:
            return None
        after = ensure_aware_utc(after)
        if after < self.start_time:
            slot = 0
        else:
            slot = (after - self.start_time) // self.interval + 1
        if self.repeat_count != REPEAT_INDEFINITELY and slot > self.repeat_count:
            return None
        return self._clip(self.start_time + self.interval * slot)


@dataclass(frozen=True)
class CronFields:
    second: str
    minute: str
    hour: str
    day_of_month: str
    month: str
    day_of_week: str
    year: Optional[str]


class CronTrigger(Trigger):
    """
    Calendar trigger with a Quartz-ordered expression:
    ``sec min hour day-of-month month day-of-week [year]``.

    Numeric day-of-week follows Unix cron, not Quartz: 0-7 with 0 and 7 both
    Sunday, so ``1`` is Monday. SUN-SAT names are accepted as well.

    Evaluation happens in ``timezone``; returned fire times are UTC.
    """

    def __init__(
        self,
        key: TriggerKey,
        expression: str,
        timezone: str = "UTC",
        job: Optional["JobDetail"] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        description: Optional[str] = None,
    ) -> None:
        super().__init__(key, job=job, start_time=start_time, end_time=end_time, description=description)
        self.expression = expression
        self.timezone_name = timezone
        self.timezone = parse_timezone(timezone, f"trigger {key}")
        self.fields = parse_cron_expression(expression)
        self.cron_expr = to_croniter_expression(self.fields)
        self.years: Optional[FrozenSet[int]] = (
            frozenset(expand_token(self.fields.year, 1970, 2099)) if self.fields.year is not None else None
        )

    def compute_next_fire_time(self, after: datetime) -> Optional[datetime]:
        after = ensure_aware_utc(after)
        if self.start_time is not None and after < self.start_time - ONE_MICROSECOND:
            after = self.start_time - ONE_MICROSECOND
        return self._next_match(after)

    def _next_match(self, after_utc: datetime) -> Optional[datetime]:
        # croniter walks naive wall-clock time; zone offsets are applied here.
        local_after = after_utc.astimezone(self.timezone).replace(microsecond=0, tzinfo=None)
        iterator = croniter(self.cron_expr, local_after)
        for _ in range(MAX_CRON_SEARCH):
            try:
                naive = iterator.get_next(datetime).replace(tzinfo=None)
            except CroniterBadDateError:
                return None
            if self.years is not None and naive.year not in self.years:
                later = [year for year in self.years if year > naive.year]
                if not later:
                    return None
                iterator = croniter(self.cron_expr, datetime(min(later), 1, 1) - timedelta(seconds=1))
                continue
            if _is_nonexistent_local(naive, self.timezone):
                continue
            # fold=0 picks the first occurrence of an ambiguous wall time.
            candidate = naive.replace(tzinfo=self.timezone, fold=0).astimezone(UTC)
            if candidate <= after_utc:
                continue
            if self.end_time is not None and candidate > self.end_time:
                return None
            return candidate
        return None

    def __repr__(self) -> str:
        return (
            f"CronTrigger({self.key}, expression={self.expression!r}, "
            f"timezone={self.timezone_name}, next_fire_time={self.next_fire_time})"
        )


def parse_timezone(name: str, field_path: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise InvalidScheduleError(f'Invalid timezone "{name}" at {field_path}.') from exc


def parse_cron_expression(expression: str) -> CronFields:
    if not isinstance(expression, str):
        raise InvalidScheduleError("Cron expression must be a string.")
    parts = expression.split()
    if len(parts) not in (6, 7):
        raise InvalidScheduleError(
            f'Cron expression "{expression}" must have 6 or 7 fields '
            "(sec min hour day-of-month month day-of-week [year])."
        )

    second = validate_cron_token(parts[0], "second", 0, 59)
    minute = validate_cron_token(parts[1], "minute", 0, 59)
    hour = validate_cron_token(parts[2], "hour", 0, 23)

    day_of_month = parts[3].strip().upper()
    if day_of_month not in ("?", "L"):
        day_of_month = validate_cron_token(day_of_month, "day-of-month", 1, 31)

    month = validate_cron_token(
        replace_named_tokens(parts[4], MONTH_NAME_TO_NUM, "month"), "month", 1, 12
    )

    day_of_week = parts[5].strip()
    if day_of_week != "?":
        day_of_week = validate_cron_token(
            replace_named_tokens(day_of_week, DAY_NAME_TO_CRON, "day-of-week"), "day-of-week", 0, 7
        )

    year = validate_cron_token(parts[6], "year", 1970, 2099) if len(parts) == 7 else None

    if day_of_month not in WILDCARDS and day_of_week not in WILDCARDS:
        raise InvalidScheduleError(
            f'Cron expression "{expression}": day-of-month and day-of-week cannot both be '
            'specified; use "?" or "*" for one of them.'
        )

    return CronFields(
        second=second,
        minute=minute,
        hour=hour,
        day_of_month=day_of_month,
        month=month,
        day_of_week=day_of_week,
        year=year,
    )


def to_croniter_expression(fields: CronFields) -> str:
    day_of_month = "*" if fields.day_of_month == "?" else fields.day_of_month
    day_of_week = "*" if fields.day_of_week == "?" else fields.day_of_week
    expr = " ".join(
        [
            _normalize_steps(fields.minute, 59),
            _normalize_steps(fields.hour, 23),
            day_of_month if day_of_month == "L" else _normalize_steps(day_of_month, 31),
            _normalize_steps(fields.month, 12),
            _normalize_steps(day_of_week, 7),
            _normalize_steps(fields.second, 59),
        ]
    )
    if not croniter.is_valid(expr):
        raise InvalidScheduleError(f'Cron expression rejected by evaluator: "{expr}".')
    return expr


def _normalize_steps(token: str, max_value: int) -> str:
    parts: List[str] = []
    for part in token.split(","):
        if "/" in part:
            base, step = part.split("/", 1)
            if base != "*" and "-" not in base:
                part = f"{base}-{max_value}/{step}"
        parts.append(part)
    return ",".join(parts)


def replace_named_tokens(raw: str, mapping: Dict[str, int], field_path: str) -> str:
    def repl(match: re.Match[str]) -> str:
        token = match.group(0).lower()
        if token not in mapping:
            raise InvalidScheduleError(f'Invalid token "{match.group(0)}" at {field_path}.')
        return str(mapping[token])

    return re.sub(r"[A-Za-z]+", repl, raw.strip())


def validate_cron_token(raw: str, field_path: str, min_value: int, max_value: int) -> str:
    token = raw.strip()
    if not token:
        raise InvalidScheduleError(f"Cron field {field_path} cannot be empty.")
    if token == "?":
        raise InvalidScheduleError(f'"?" is only allowed in day-of-month and day-of-week, not {field_path}.')
    if not CRON_FIELD_RE.match(token):
        raise InvalidScheduleError(f'Invalid cron token "{token}" at {field_path}.')

    for part in token.split(","):
        if not part:
            raise InvalidScheduleError(f'Invalid cron token "{token}" at {field_path}.')
        if "/" in part:
            base, step_str = part.split("/", 1)
            if not step_str.isdigit() or int(step_str) <= 0:
                raise InvalidScheduleError(f'Invalid step "{part}" at {field_path}.')
            step = int(step_str)
            if base == "*":
                continue
            _validate_range_or_single(base, field_path, min_value, max_value)
            if step > (max_value - min_value + 1):
                raise InvalidScheduleError(f'Step "{step}" too large at {field_path}.')
            continue
        _validate_range_or_single(part, field_path, min_value, max_value)
    return token


def _validate_range_or_single(token: str, field_path: str, min_value: int, max_value: int) -> None:
    if token == "*":
        return
    if "-" in token:
        left, right = token.split("-", 1)
        if not left.isdigit() or not right.isdigit():
            raise InvalidScheduleError(f'Invalid range "{token}" at {field_path}.')
        start = int(left)
        end = int(right)
        if start > end:
            raise InvalidScheduleError(f'Invalid range "{token}" at {field_path}.')
        if start < min_value or end > max_value:
            raise InvalidScheduleError(
                f'Range "{token}" out of bounds {min_value}-{max_value} at {field_path}.'
            )
        return
    if not token.isdigit():
        raise InvalidScheduleError(f'Invalid token "{token}" at {field_path}.')
    value = int(token)
    if value < min_value or value > max_value:
        raise InvalidScheduleError(
            f'Value "{value}" out of bounds {min_value}-{max_value} at {field_path}.'
        )


def expand_token(token: str, min_value: int, max_value: int) -> Set[int]:
    values: Set[int] = set()
    for part in token.split(","):
        step = 1
        if "/" in part:
            part, step_str = part.split("/", 1)
            step = int(step_str)
            if part != "*" and "-" not in part:
                part = f"{part}-{max_value}"
        if part == "*":
            start, end = min_value, max_value
        elif "-" in part:
            left, right = part.split("-", 1)
            start, end = int(left), int(right)
        else:
            start = end = int(part)
        values.update(range(start, end + 1, step))
    return values


def _is_nonexistent_local(local_dt: datetime, tz: ZoneInfo) -> bool:
    naive = local_dt.replace(tzinfo=None)
    assumed = naive.replace(tzinfo=tz, fold=0)
    roundtrip = assumed.astimezone(UTC).astimezone(tz).replace(tzinfo=None)
    return roundtrip != naive


def next_fire_times(trigger: Trigger, count: int, now: Optional[datetime] = None) -> List[datetime]:
    """Preview the next ``count`` fire times after ``now`` without touching the trigger."""
    cursor = ensure_aware_utc(now or datetime.now(tz=UTC))
    probe = copy.copy(trigger)
    if probe.start_time is None:
        probe.start_time = cursor
        cursor = cursor - ONE_MICROSECOND
    runs: List[datetime] = []
    nxt = probe.compute_next_fire_time(cursor)
    while nxt is not None and len(runs) < count:
        runs.append(nxt)
        nxt = probe.compute_next_fire_time(nxt)
    return runs


class TriggerBuilder:
    """Fluent construction of a Trigger; one-shot unless a schedule is chosen."""

    def __init__(self) -> None:
        self._name: Optional[str] = None
        self._group = DEFAULT_GROUP
        self._job: Optional["JobDetail"] = None
        self._start: Optional[datetime] = None
        self._end: Optional[datetime] = None
        self._description: Optional[str] = None
        self._interval: Optional[timedelta] = None
        self._repeat_count = REPEAT_INDEFINITELY
        self._cron: Optional[str] = None
        self._timezone = "UTC"

    @classmethod
    def new_trigger(cls) -> "TriggerBuilder":
        return cls()

    def with_identity(self, name: str, group: str = DEFAULT_GROUP) -> "TriggerBuilder":
        self._name = name
        self._group = group
        return self

    def for_job(self, job: "JobDetail") -> "TriggerBuilder":
        self._job = job
        return self

    def start_at(self, start: datetime) -> "TriggerBuilder":
        self._start = start
        return self

    def start_now(self) -> "TriggerBuilder":
        self._start = None
        return self

    def end_at(self, end: datetime) -> "TriggerBuilder":
        self._end = end
        return self

    def with_description(self, description: str) -> "TriggerBuilder":
        self._description = description
        return self

    def with_interval(
        self,
        interval: Optional[timedelta] = None,
        repeat_count: int = REPEAT_INDEFINITELY,
        **kwargs: float,
    ) -> "TriggerBuilder":
        self._interval = interval if interval is not None else timedelta(**kwargs)
        self._repeat_count = repeat_count
        self._cron = None
        return self

    def repeat_forever(self) -> "TriggerBuilder":
        self._repeat_count = REPEAT_INDEFINITELY
        return self

    def with_cron(self, expression: str, timezone: str = "UTC") -> "TriggerBuilder":
        self._cron = expression
        self._timezone = timezone
        self._interval = None
        return self

    def build(self) -> Trigger:
        key = TriggerKey(self._name or uuid.uuid4().hex, self._group)
        common = dict(job=self._job, start_time=self._start, end_time=self._end, description=self._description)
        if self._cron is not None:
            return CronTrigger(key, self._cron, timezone=self._timezone, **common)
        if self._interval is not None:
            return IntervalTrigger(key, self._interval, repeat_count=self._repeat_count, **common)
        return OneShotTrigger(key, **common)
