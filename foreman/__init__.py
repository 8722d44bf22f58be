"""
foreman: an in-process job scheduler with one-shot, interval and cron
triggers, a bounded worker pool and attempt-aware retries.
"""

from .clock import Clock, ManualClock, SystemClock
from .errors import (
    ConfigError,
    ForemanError,
    InvalidScheduleError,
    JobExecutionError,
    NotFoundError,
    SchedulerFatalError,
    SchedulerShutdownError,
)
from .execution import ExecutionOutcome, JobAttempt
from .jobs import JobBuilder, JobDataMap, JobDetail, JobExecutionContext, JobKey
from .listeners import SchedulerListener
from .retry import (
    DefaultRetryStrategy,
    RecurringRetryStrategy,
    RetryDecision,
    RetryOnceStrategy,
    RetryStrategy,
)
from .scheduler import Scheduler, SchedulerSettings, SchedulerState
from .triggers import (
    REPEAT_INDEFINITELY,
    CronTrigger,
    IntervalTrigger,
    OneShotTrigger,
    Trigger,
    TriggerBuilder,
    TriggerKey,
    next_fire_times,
)

__version__ = "0.1.0"

__all__ = [
    "Clock",
    "ConfigError",
    "CronTrigger",
    "DefaultRetryStrategy",
    "ExecutionOutcome",
    "ForemanError",
    "IntervalTrigger",
    "InvalidScheduleError",
    "JobAttempt",
    "JobBuilder",
    "JobDataMap",
    "JobDetail",
    "JobExecutionContext",
    "JobExecutionError",
    "JobKey",
    "ManualClock",
    "NotFoundError",
    "OneShotTrigger",
    "REPEAT_INDEFINITELY",
    "RecurringRetryStrategy",
    "RetryDecision",
    "RetryOnceStrategy",
    "RetryStrategy",
    "Scheduler",
    "SchedulerFatalError",
    "SchedulerListener",
    "SchedulerSettings",
    "SchedulerShutdownError",
    "SchedulerState",
    "SystemClock",
    "Trigger",
    "TriggerBuilder",
    "TriggerKey",
    "next_fire_times",
]
