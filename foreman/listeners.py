"""
Scheduler listener hooks.

Listeners are observers only: whatever they raise is logged and dropped so a
broken listener can never stall the coordinator or fail a job.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Iterable

if TYPE_CHECKING:
    from .execution import ExecutionOutcome
    from .jobs import JobDetail, JobExecutionContext
    from .retry import RetryDecision
    from .triggers import Trigger


logger = logging.getLogger(__name__)


class SchedulerListener:
    """Base class with no-op hooks; override the ones you care about."""

    def job_to_be_executed(self, context: "JobExecutionContext") -> None:
        pass

    def job_was_executed(self, context: "JobExecutionContext", outcome: "ExecutionOutcome") -> None:
        pass

    def job_retry_scheduled(self, job: "JobDetail", retry_trigger: "Trigger", decision: "RetryDecision") -> None:
        pass

    def job_gave_up(self, job: "JobDetail", trigger: "Trigger", outcome: "ExecutionOutcome") -> None:
        pass

    def trigger_misfired(self, trigger: "Trigger") -> None:
        pass

    def trigger_finalized(self, trigger: "Trigger") -> None:
        pass


def notify(listeners: Iterable[SchedulerListener], hook: str, *args: Any) -> None:
    for listener in list(listeners):
        callback = getattr(listener, hook, None)
        if callback is None:
            continue
        try:
            callback(*args)
        except Exception as exc:
            logger.warning("Listener %r failed in %s: %s", listener, hook, exc)
