from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from threading import Lock


class Clock(ABC):
    """
    Source of UTC-aware time for windows, backoff and record timestamps.
    """

    @abstractmethod
    def now(self) -> datetime:
        pass


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FrozenClock(Clock):
    """
    Test clock. Only moves when told to.
    """

    def __init__(self, start: datetime):
        if start.tzinfo is None:
            raise ValueError("FrozenClock requires a timezone-aware datetime")
        self._current = start
        self._lock = Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._current

    def advance(self, delta: timedelta = timedelta(0), **kwargs: float) -> datetime:
        step = delta + timedelta(**kwargs)
        with self._lock:
            self._current = self._current + step
            return self._current


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
