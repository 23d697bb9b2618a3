# reservation_scheduler/core/clock.py
"""
Time source for every component.

Nothing in the scheduler calls ``datetime.now`` directly; the lifecycle
manager, the queue engine and the sweep all receive a clock. Production code
uses ``SystemClock``; tests use ``ManualClock`` and advance it explicitly.
"""

import abc
import threading
from datetime import datetime, timedelta, timezone


class Clock(abc.ABC):
    """Returns timezone-aware UTC datetimes."""

    @abc.abstractmethod
    def now(self) -> datetime:
        pass


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class ManualClock(Clock):
    """A clock that only moves when told to."""

    def __init__(self, start: datetime):
        if start.tzinfo is None:
            start = start.replace(tzinfo=timezone.utc)
        self._now = start
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, delta: timedelta = None, **kwargs) -> datetime:
        """Move forward by ``delta`` or by ``timedelta(**kwargs)``."""
        step = delta if delta is not None else timedelta(**kwargs)
        if step < timedelta(0):
            raise ValueError("ManualClock cannot move backwards")
        with self._lock:
            self._now = self._now + step
            return self._now

    def set(self, moment: datetime) -> None:
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        with self._lock:
            self._now = moment
