"""
Attempt bookkeeping around a single job firing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Iterable, Optional

from .clock import Clock
from .errors import JobExecutionError
from .jobs import JobDetail, JobExecutionContext
from .listeners import SchedulerListener, notify
from .retry import RetryDecision
from .triggers import Trigger

if TYPE_CHECKING:
    from .scheduler import Scheduler


logger = logging.getLogger(__name__)


@dataclass
class ExecutionOutcome:
    job: JobDetail
    trigger: Trigger
    attempt: int
    success: bool
    run_id: str
    started_at: datetime
    ended_at: datetime
    scheduled_fire_time: datetime
    fire_time: datetime
    error: Optional[BaseException] = None
    decision: Optional[RetryDecision] = None
    result: Any = None
    retry_job: Optional[JobDetail] = None

    @property
    def wants_retry(self) -> bool:
        return self.decision is not None and not self.decision.give_up


def build_run_id(job: JobDetail, started: datetime) -> str:
    return f"{job.key}:{started.strftime('%Y%m%d%H%M%S')}-{started.microsecond:06d}"


class JobAttempt:
    """
    Runs one firing of a job and records the attempt in its data map.

    The count is incremented before the body runs, so the body always sees the
    number of the attempt in progress. Success resets it to 0; failure leaves it
    for the retry strategy and for a retry-derived copy of the job.
    """

    def __init__(
        self,
        job: JobDetail,
        trigger: Trigger,
        scheduled_fire_time: datetime,
        clock: Clock,
        scheduler: Optional["Scheduler"] = None,
        listeners: Iterable[SchedulerListener] = (),
    ) -> None:
        self.job = job
        self.trigger = trigger
        self.scheduled_fire_time = scheduled_fire_time
        self.clock = clock
        self.scheduler = scheduler
        self.listeners = list(listeners)

    def run(self) -> ExecutionOutcome:
        job = self.job
        data = job.job_data_map
        attempt = data.attempt_count + 1
        data.attempt_count = attempt

        started = self.clock.now()
        run_id = build_run_id(job, started)
        context = JobExecutionContext(
            scheduler=self.scheduler,
            trigger=self.trigger,
            job_detail=job,
            attempt=attempt,
            scheduled_fire_time=self.scheduled_fire_time,
            fire_time=started,
            previous_fire_time=self.trigger.previous_fire_time,
            next_fire_time=self.trigger.next_fire_time,
            run_id=run_id,
        )
        logger.info(
            "[%s] Starting job %s (trigger=%s, attempt=%s, scheduled_for=%s)",
            run_id,
            job.key,
            self.trigger.key,
            attempt,
            self.scheduled_fire_time.isoformat(),
        )
        notify(self.listeners, "job_to_be_executed", context)

        error: Optional[BaseException] = None
        result: Any = None
        try:
            result = job.execute(context)
            if result is not None:
                context.result = result
        except JobExecutionError as exc:
            error = exc
        except Exception as exc:
            error = JobExecutionError(f"Job {job.key} raised {type(exc).__name__}: {exc}", cause=exc)
            error.__cause__ = exc

        ended = self.clock.now()
        decision: Optional[RetryDecision] = None
        retry_job: Optional[JobDetail] = None
        if error is None:
            data.attempt_count = 0
            logger.info("[%s] Job %s succeeded in %.2fs", run_id, job.key, (ended - started).total_seconds())
        else:
            logger.error("[%s] Job %s failed on attempt %s: %s", run_id, job.key, attempt, error)
            decision = self._decide(attempt, run_id)
            if not decision.give_up:
                # snapshot now; other triggers of this job share the live map
                retry_job = job.copy()
                retry_job.job_data_map.attempt_count = attempt

        outcome = ExecutionOutcome(
            job=job,
            trigger=self.trigger,
            attempt=attempt,
            success=error is None,
            run_id=run_id,
            started_at=started,
            ended_at=ended,
            scheduled_fire_time=self.scheduled_fire_time,
            fire_time=started,
            error=error,
            decision=decision,
            result=context.result,
            retry_job=retry_job,
        )
        notify(self.listeners, "job_was_executed", context, outcome)
        return outcome

    def _decide(self, attempt: int, run_id: str) -> RetryDecision:
        strategy = self.job.retry_strategy
        if not strategy.supports_retry:
            logger.info("[%s] No retry for %s: %r does not retry", run_id, self.job.key, strategy)
            return RetryDecision.stop("retries not supported")
        try:
            decision = strategy.on_failure(attempt, self.job, self.trigger, self.clock.now())
        except Exception as exc:
            logger.error("[%s] Retry strategy %r failed: %s; giving up.", run_id, strategy, exc)
            return RetryDecision.stop(f"retry strategy failed: {exc}")
        if decision.give_up:
            logger.info("[%s] No retry for %s: %s", run_id, self.job.key, decision.reason)
        else:
            logger.info(
                "[%s] Retry for %s at %s (cool_down=%s)",
                run_id,
                self.job.key,
                decision.retry_at.isoformat(),
                decision.cool_down,
            )
        return decision
