"""Hybrid logical clock producing monotonically increasing 64-bit timestamps.

A timestamp packs 54 bits of microseconds since 1 January 2025 (UTC) above a
10-bit logical counter, so that timestamps generated within the same
microsecond still order strictly.
"""

from __future__ import annotations

import threading
import time as _time
from datetime import datetime, timedelta, timezone
from typing import Callable

__all__ = [
    "TIME_BITS",
    "COUNTER_BITS",
    "TIME_MASK",
    "COUNTER_MASK",
    "EPOCH_UNIX_MICRO",
    "Timestamp",
    "Clock",
    "now",
]

TIME_BITS = 54
COUNTER_BITS = 10
TIME_MASK = ((1 << TIME_BITS) - 1) << COUNTER_BITS
COUNTER_MASK = (1 << COUNTER_BITS) - 1

# 1 January 2025 00:00:00 UTC, in microseconds since the Unix epoch.
EPOCH_UNIX_MICRO = 1735689600000000

_UINT64_MASK = (1 << 64) - 1
_UNIX_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class Timestamp(int):
    """A hybrid logical clock timestamp (an unsigned 64-bit integer)."""

    __slots__ = ()

    def __new__(cls, value: int = 0) -> "Timestamp":
        value = int(value)
        if not 0 <= value <= _UINT64_MASK:
            raise ValueError(f"timestamp {value} does not fit in 64 bits")
        return super().__new__(cls, value)

    def before(self, other: int) -> bool:
        """Return True if this timestamp is before ``other``."""
        return int(self) < int(other)

    def after(self, other: int) -> bool:
        """Return True if this timestamp is after ``other``."""
        return int(self) > int(other)

    def equal(self, other: int) -> bool:
        """Return True if this timestamp equals ``other``."""
        return int(self) == int(other)

    def time(self) -> datetime:
        """Return the physical time component as an aware UTC datetime."""
        relative_micro = int(self) >> COUNTER_BITS
        return _UNIX_EPOCH + timedelta(microseconds=relative_micro + EPOCH_UNIX_MICRO)

    def counter(self) -> int:
        """Return the logical counter component."""
        return int(self) & COUNTER_MASK

    def __repr__(self) -> str:
        return f"Timestamp({int(self)})"


class Clock:
    """Thread-safe hybrid logical clock.

    ``source`` returns the current wall-clock time in nanoseconds since the
    Unix epoch; it defaults to :func:`time.time_ns`.
    """

    def __init__(self, source: Callable[[], int] = _time.time_ns) -> None:
        self._source = source
        self._last = 0
        self._lock = threading.Lock()

    def now(self) -> Timestamp:
        """Return a new timestamp strictly after the previous one."""
        relative_now = (self._source() // 1000 - EPOCH_UNIX_MICRO) & _UINT64_MASK
        with self._lock:
            last_time = self._last >> COUNTER_BITS
            last_counter = self._last & COUNTER_MASK
            if relative_now > last_time:
                stamp = (relative_now << COUNTER_BITS) & _UINT64_MASK
            else:
                stamp = (last_time << COUNTER_BITS) | ((last_counter + 1) & COUNTER_MASK)
            self._last = stamp
        return Timestamp(stamp)


_default_clock = Clock()


def now() -> Timestamp:
    """Return a new timestamp from the process-wide clock."""
    return _default_clock.now()