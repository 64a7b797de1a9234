"""
Clock Module

Injectable time source. Every date-relative computation in the engine asks a
Clock for "today" instead of reading the system clock.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime, time, timedelta, timezone
from threading import RLock


class Clock(ABC):
    """Source of the current date and time"""

    @abstractmethod
    def today(self) -> date:
        pass

    @abstractmethod
    def now(self) -> datetime:
        pass


class SystemClock(Clock):
    """Clock backed by the system time (UTC)"""

    def today(self) -> date:
        return self.now().date()

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock(Clock):
    """Clock frozen at a given date; tests move it explicitly"""

    def __init__(self, current: date):
        self._current = current
        self._lock = RLock()

    def today(self) -> date:
        with self._lock:
            return self._current

    def now(self) -> datetime:
        with self._lock:
            return datetime.combine(self._current, time(12, 0), tzinfo=timezone.utc)

    def set(self, current: date) -> None:
        with self._lock:
            self._current = current

    def advance(self, days: int = 1) -> date:
        with self._lock:
            self._current = self._current + timedelta(days=days)
            return self._current
