"""
Retry strategies.

Strategies are stateless: the attempt count is read from the job's data map by
the attempt wrapper and handed in, so a strategy can be rebuilt at any time
without losing track of where a job is in its retry chain.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable, Optional

if TYPE_CHECKING:
    from .jobs import JobDetail
    from .triggers import Trigger


DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_COOL_DOWN_SECONDS = 60
VALID_STRATEGIES = {"none", "once", "recurring"}


@dataclass(frozen=True)
class RetryDecision:
    retry_at: Optional[datetime] = None
    cool_down: Optional[timedelta] = None
    reason: str = ""

    @property
    def give_up(self) -> bool:
        return self.retry_at is None

    @classmethod
    def stop(cls, reason: str) -> "RetryDecision":
        return cls(reason=reason)

    @classmethod
    def retry(cls, now: datetime, cool_down: timedelta) -> "RetryDecision":
        return cls(retry_at=now + cool_down, cool_down=cool_down, reason="retry scheduled")


def linear_escalation(attempt_count: int) -> float:
    return float(attempt_count)


class RetryStrategy(ABC):
    supports_retry = True

    @abstractmethod
    def on_failure(
        self,
        attempt_count: int,
        job: "JobDetail",
        trigger: "Trigger",
        now: datetime,
    ) -> RetryDecision:
        """
        Decide what happens after a failed attempt.

        Args:
            attempt_count: Number of the attempt that just failed (1-based)
            job: The job that failed
            trigger: The trigger that fired it
            now: Current time from the scheduler's clock

        Returns:
            A give-up decision or a decision carrying the re-fire time
        """
        ...


class DefaultRetryStrategy(RetryStrategy):
    """No retries: the failure is surfaced and the job is dropped."""

    supports_retry = False

    def on_failure(self, attempt_count, job, trigger, now) -> RetryDecision:
        return RetryDecision.stop("retries not supported")

    def __repr__(self) -> str:
        return "DefaultRetryStrategy()"


class RetryOnceStrategy(RetryStrategy):
    """One more attempt after ``cool_down_seconds``."""

    def __init__(self, cool_down_seconds: float = DEFAULT_COOL_DOWN_SECONDS) -> None:
        if cool_down_seconds < 0:
            raise ValueError("cool_down_seconds must be >= 0")
        self.cool_down_seconds = cool_down_seconds

    def on_failure(self, attempt_count, job, trigger, now) -> RetryDecision:
        if attempt_count > 1:
            return RetryDecision.stop(f"attempt {attempt_count} exceeds single retry")
        return RetryDecision.retry(now, timedelta(seconds=self.cool_down_seconds))

    def __repr__(self) -> str:
        return f"RetryOnceStrategy(cool_down_seconds={self.cool_down_seconds})"


class RecurringRetryStrategy(RetryStrategy):
    """
    Retries up to ``maximum_attempts`` times with escalating cool-down.

    The cool-down before the next attempt is
    ``cool_down_seconds * escalation(attempt_count)``; the default escalation
    is linear, so with a 10s base the waits are 10s, 20s, 30s...
    """

    def __init__(
        self,
        maximum_attempts: int = DEFAULT_MAX_ATTEMPTS,
        cool_down_seconds: float = DEFAULT_COOL_DOWN_SECONDS,
        escalation: Callable[[int], float] = linear_escalation,
    ) -> None:
        if maximum_attempts < 1:
            raise ValueError("maximum_attempts must be >= 1")
        if cool_down_seconds < 0:
            raise ValueError("cool_down_seconds must be >= 0")
        self.maximum_attempts = maximum_attempts
        self.cool_down_seconds = cool_down_seconds
        self.escalation = escalation

    def on_failure(self, attempt_count, job, trigger, now) -> RetryDecision:
        if attempt_count > self.maximum_attempts:
            return RetryDecision.stop(
                f"attempt {attempt_count} exceeds maximum_attempts={self.maximum_attempts}"
            )
        seconds = self.cool_down_seconds * self.escalation(attempt_count)
        return RetryDecision.retry(now, timedelta(seconds=seconds))

    def __repr__(self) -> str:
        return (
            f"RecurringRetryStrategy(maximum_attempts={self.maximum_attempts}, "
            f"cool_down_seconds={self.cool_down_seconds})"
        )


def build_retry_strategy(
    name: str,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    cool_down_seconds: float = DEFAULT_COOL_DOWN_SECONDS,
) -> RetryStrategy:
    if name == "none":
        return DefaultRetryStrategy()
    if name == "once":
        return RetryOnceStrategy(cool_down_seconds=cool_down_seconds)
    if name == "recurring":
        return RecurringRetryStrategy(maximum_attempts=max_attempts, cool_down_seconds=cool_down_seconds)
    raise ValueError(f'Unknown retry strategy "{name}"; expected one of {sorted(VALID_STRATEGIES)}.')
