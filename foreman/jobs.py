"""
Job data model: keys, JobDataMap, JobDetail, JobExecutionContext and JobBuilder.
"""

from __future__ import annotations

import logging
from collections.abc import MutableMapping
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterator, Mapping, Optional, Union

from .retry import DefaultRetryStrategy, RetryStrategy

if TYPE_CHECKING:
    from .scheduler import Scheduler
    from .triggers import Trigger


logger = logging.getLogger(__name__)

DEFAULT_GROUP = "DEFAULT"
ATTEMPT_COUNT_KEY = "foreman.attempt_count"


@dataclass(frozen=True, order=True)
class JobKey:
    name: str
    group: str = DEFAULT_GROUP

    def __str__(self) -> str:
        return f"{self.group}.{self.name}"


class JobDataMap(MutableMapping):
    """
    String-keyed state bag carried by a JobDetail across executions.

    The attempt count lives under ``ATTEMPT_COUNT_KEY``; it is validated every
    time it is read and treated as 0 when missing or malformed.
    """

    def __init__(self, initial: Optional[Mapping[str, Any]] = None) -> None:
        self._data: Dict[str, Any] = {}
        if initial:
            for key, value in initial.items():
                self[key] = value

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __setitem__(self, key: str, value: Any) -> None:
        if not isinstance(key, str):
            raise TypeError(f"JobDataMap keys must be strings, got {type(key).__name__}.")
        self._data[key] = value

    def __delitem__(self, key: str) -> None:
        del self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"JobDataMap({self._data!r})"

    def get_int(self, key: str, default: int = 0) -> int:
        value = self._data.get(key, default)
        if isinstance(value, bool) or not isinstance(value, int):
            raise TypeError(f'JobDataMap value for "{key}" is not an integer.')
        return value

    def get_str(self, key: str, default: str = "") -> str:
        value = self._data.get(key, default)
        if not isinstance(value, str):
            raise TypeError(f'JobDataMap value for "{key}" is not a string.')
        return value

    def get_bool(self, key: str, default: bool = False) -> bool:
        value = self._data.get(key, default)
        if not isinstance(value, bool):
            raise TypeError(f'JobDataMap value for "{key}" is not a boolean.')
        return value

    @property
    def attempt_count(self) -> int:
        raw = self._data.get(ATTEMPT_COUNT_KEY)
        if raw is None:
            return 0
        if isinstance(raw, bool) or not isinstance(raw, int) or raw < 0:
            logger.warning("Ignoring malformed attempt count %r; treating as 0.", raw)
            return 0
        return raw

    @attempt_count.setter
    def attempt_count(self, value: int) -> None:
        self._data[ATTEMPT_COUNT_KEY] = int(value)

    def copy(self) -> "JobDataMap":
        return JobDataMap(self._data)


JobBody = Union[Callable[["JobExecutionContext"], Any], Any]


class JobDetail:
    """
    Identity, configuration and state of one schedulable unit of work.

    ``job`` is either a callable taking the execution context, an object with
    an ``execute(context)`` method, or a class with such a method; classes are
    instantiated fresh for every firing.
    """

    def __init__(
        self,
        key: JobKey,
        job: JobBody,
        job_data_map: Optional[JobDataMap] = None,
        durable: bool = False,
        description: Optional[str] = None,
        retry_strategy: Optional[RetryStrategy] = None,
    ) -> None:
        if not callable(job) and not callable(getattr(job, "execute", None)):
            raise TypeError(f"Job body for {key} must be callable or define execute(context).")
        self._key = key
        self.job = job
        self.job_data_map = job_data_map if job_data_map is not None else JobDataMap()
        self.durable = durable
        self.description = description
        self.retry_strategy = retry_strategy or DefaultRetryStrategy()

    @property
    def key(self) -> JobKey:
        return self._key

    def execute(self, context: "JobExecutionContext") -> Any:
        target = self.job
        if isinstance(target, type):
            target = target()
        execute = getattr(target, "execute", None)
        if callable(execute):
            return execute(context)
        return target(context)

    def copy(self) -> "JobDetail":
        return JobDetail(
            key=self._key,
            job=self.job,
            job_data_map=self.job_data_map.copy(),
            durable=self.durable,
            description=self.description,
            retry_strategy=self.retry_strategy,
        )

    def __repr__(self) -> str:
        return f"JobDetail({self._key}, durable={self.durable})"


@dataclass
class JobExecutionContext:
    scheduler: Optional["Scheduler"]
    trigger: "Trigger"
    job_detail: JobDetail
    attempt: int
    scheduled_fire_time: datetime
    fire_time: datetime
    previous_fire_time: Optional[datetime] = None
    next_fire_time: Optional[datetime] = None
    run_id: str = ""
    result: Any = None

    @property
    def job_data_map(self) -> JobDataMap:
        return self.job_detail.job_data_map


class JobBuilder:
    """Fluent construction of a JobDetail."""

    def __init__(self, job: JobBody) -> None:
        self._job = job
        self._name: Optional[str] = None
        self._group = DEFAULT_GROUP
        self._data = JobDataMap()
        self._durable = False
        self._description: Optional[str] = None
        self._retry_strategy: Optional[RetryStrategy] = None

    @classmethod
    def new_job(cls, job: JobBody) -> "JobBuilder":
        return cls(job)

    def with_identity(self, name: str, group: str = DEFAULT_GROUP) -> "JobBuilder":
        self._name = name
        self._group = group
        return self

    def using_job_data(self, key: str, value: Any) -> "JobBuilder":
        self._data[key] = value
        return self

    def using_job_data_map(self, data: Mapping[str, Any]) -> "JobBuilder":
        for key, value in data.items():
            self._data[key] = value
        return self

    def store_durably(self, durable: bool = True) -> "JobBuilder":
        self._durable = durable
        return self

    def with_description(self, description: str) -> "JobBuilder":
        self._description = description
        return self

    def with_retry_strategy(self, strategy: RetryStrategy) -> "JobBuilder":
        self._retry_strategy = strategy
        return self

    def build(self) -> JobDetail:
        name = self._name or getattr(self._job, "__name__", None) or type(self._job).__name__
        return JobDetail(
            key=JobKey(name, self._group),
            job=self._job,
            job_data_map=self._data.copy(),
            durable=self._durable,
            description=self._description,
            retry_strategy=self._retry_strategy,
        )
