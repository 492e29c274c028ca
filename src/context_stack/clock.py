# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Clocks for ingestion and creation timestamps.

All timestamps handed out by this package are timezone-aware UTC datetimes.
The system clock never returns the same instant twice, so that ingestion
times within one process are strictly ordered.
"""

import threading
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol, runtime_checkable

_TICK = timedelta(microseconds=1)


@runtime_checkable
class Clock(Protocol):
    """Protocol for timestamp sources."""

    def now(self) -> datetime:
        """Return the current instant (timezone-aware)."""
        ...


class SystemClock:
    """Wall clock that is strictly monotonic within the process.

    If the wall clock stalls or steps backwards, the next timestamp is
    the previous one plus one microsecond.
    """

    def __init__(self) -> None:
        self._last: Optional[datetime] = None
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            current = datetime.now(timezone.utc)
            if self._last is not None and current <= self._last:
                current = self._last + _TICK
            self._last = current
            return current


class ManualClock:
    """Deterministic clock for tests and replays.

    Each call to ``now`` advances the clock by ``step`` after returning
    the current value, unless ``step`` is zero.

    Example:
        >>> clock = ManualClock(datetime(2025, 1, 1, tzinfo=timezone.utc))
        >>> clock.advance(seconds=5)
    """

    def __init__(
        self,
        start: Optional[datetime] = None,
        step: timedelta = timedelta(seconds=1),
    ) -> None:
        self._current = start or datetime(2025, 1, 1, tzinfo=timezone.utc)
        if self._current.tzinfo is None:
            self._current = self._current.replace(tzinfo=timezone.utc)
        self.step = step

    def now(self) -> datetime:
        value = self._current
        self._current = self._current + self.step
        return value

    def peek(self) -> datetime:
        """Return the value the next ``now`` call will produce."""
        return self._current

    def advance(self, **kwargs: float) -> datetime:
        """Move the clock forward by a ``timedelta(**kwargs)``."""
        self._current = self._current + timedelta(**kwargs)
        return self._current

    def set(self, value: datetime) -> None:
        """Jump to an absolute instant."""
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        self._current = value
