"""
Exception hierarchy for the foreman scheduler.
"""

from __future__ import annotations

from typing import Any, Optional


class ForemanError(Exception):
    """Base error for foreman."""


class ConfigError(ForemanError):
    """Config validation error."""


class InvalidScheduleError(ForemanError):
    """A trigger or job cannot be admitted (bad bounds, bad cron fields, duplicate identity)."""


class NotFoundError(ForemanError):
    """Lookup or removal of an unknown job or trigger key."""

    def __init__(self, key: Any, kind: str = "Trigger"):
        self.key = key
        self.kind = kind
        super().__init__(f"{kind} not found: {key}")


class JobExecutionError(ForemanError):
    """
    Raised by (or on behalf of) a job body when an execution attempt fails.

    Any other exception escaping a job body is wrapped in one of these by the
    attempt wrapper, with the original kept as ``__cause__``.
    """

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class SchedulerFatalError(ForemanError):
    """Internal invariant violation tied to one trigger; the trigger is retired."""


class SchedulerShutdownError(ForemanError):
    """Operation attempted on a scheduler that has been shut down."""
