"""
Time sources.

Everything inside the scheduler works on timezone-aware UTC datetimes.
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Protocol


UTC = timezone.utc


def ensure_aware_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class Clock(Protocol):
    def now(self) -> datetime:
        ...


class SystemClock:
    """Wall clock."""

    def now(self) -> datetime:
        return datetime.now(tz=UTC)


class ManualClock:
    """
    Clock that only moves when told to.

    Subscribers (a running Scheduler registers itself) are called after every
    change so a sleeping coordinator re-evaluates what is due.
    """

    def __init__(self, start: Optional[datetime] = None) -> None:
        self._now = ensure_aware_utc(start or datetime(2026, 1, 1, tzinfo=UTC))
        self._lock = threading.Lock()
        self._subscribers: List[Callable[[], None]] = []

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def set(self, value: datetime) -> datetime:
        with self._lock:
            self._now = ensure_aware_utc(value)
            current = self._now
        self._notify()
        return current

    def advance(self, delta: Optional[timedelta] = None, **kwargs: float) -> datetime:
        step = delta if delta is not None else timedelta(**kwargs)
        with self._lock:
            self._now = self._now + step
            current = self._now
        self._notify()
        return current

    def subscribe(self, callback: Callable[[], None]) -> None:
        self._subscribers.append(callback)

    def _notify(self) -> None:
        for callback in list(self._subscribers):
            callback()
