from __future__ import annotations

import threading
import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Protocol


class Clock(Protocol):
    """Source of server-assigned timestamps and record identifiers."""

    def now(self) -> datetime: ...

    def today(self) -> date: ...

    def new_id(self) -> str: ...


class SystemClock:
    """Wall clock that never hands out the same or an earlier timestamp twice."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._last: datetime | None = None

    def now(self) -> datetime:
        with self._lock:
            current = datetime.now(timezone.utc)
            if self._last is not None and current <= self._last:
                current = self._last + timedelta(microseconds=1)
            self._last = current
            return current

    def today(self) -> date:
        return datetime.now(timezone.utc).date()

    def new_id(self) -> str:
        return uuid.uuid4().hex


class FixedClock(SystemClock):
    """Clock pinned to a start instant; each call advances it by one second."""

    def __init__(self, start: datetime) -> None:
        super().__init__()
        self._current = start if start.tzinfo else start.replace(tzinfo=timezone.utc)
        self._counter = 0

    def now(self) -> datetime:
        with self._lock:
            self._current += timedelta(seconds=1)
            return self._current

    def today(self) -> date:
        return self._current.date()

    def new_id(self) -> str:
        with self._lock:
            self._counter += 1
            return f"id-{self._counter:05d}"
