"""Clock abstraction for calendaralarm.

Every component that needs "now" receives a Clock instead of reading the
system time itself. A process-wide default is available through get_clock()
and can be swapped with set_clock() (or the use_clock() context manager) in
tests.
"""

from __future__ import annotations

import datetime
import logging
import os
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)

TEST_TIME_ENV = "CALENDARALARM_TEST_TIME"


@runtime_checkable
class Clock(Protocol):
    """Source of the current instant."""

    def now(self) -> datetime.datetime:
        """Return the current time as a timezone-aware UTC datetime."""
        ...


class SystemClock:
    """Wall clock with test time override support."""

    def now(self) -> datetime.datetime:
        """Return current UTC time with tzinfo.

        Can be overridden for testing via the CALENDARALARM_TEST_TIME
        environment variable (ISO 8601, e.g. "2025-10-01T08:00:00+07:00").
        Naive values are taken as UTC.

        Returns:
            Current time in UTC with timezone info
        """
        test_time = os.environ.get(TEST_TIME_ENV)
        if test_time:
            try:
                from dateutil import parser as date_parser

                dt = date_parser.isoparse(test_time)
                if dt.tzinfo is not None:
                    return dt.astimezone(datetime.UTC)
                return dt.replace(tzinfo=datetime.UTC)
            except Exception as e:
                logger.warning("Failed to parse %s=%r: %s", TEST_TIME_ENV, test_time, e)

        return datetime.datetime.now(datetime.UTC)


class FixedClock:
    """Deterministic clock for tests and replays.

    The instant only moves when set() or advance() is called.
    """

    def __init__(self, instant: datetime.datetime) -> None:
        self._lock = threading.Lock()
        self._instant = _as_utc(instant)

    def now(self) -> datetime.datetime:
        with self._lock:
            return self._instant

    def set(self, instant: datetime.datetime) -> None:
        with self._lock:
            self._instant = _as_utc(instant)

    def advance(self, delta: datetime.timedelta) -> datetime.datetime:
        """Move the clock forward by delta and return the new instant."""
        with self._lock:
            self._instant = self._instant + delta
            return self._instant

    def __repr__(self) -> str:
        return f"FixedClock({self._instant.isoformat()})"


def _as_utc(instant: datetime.datetime) -> datetime.datetime:
    if instant.tzinfo is None:
        return instant.replace(tzinfo=datetime.UTC)
    return instant.astimezone(datetime.UTC)


# Process-wide default, replaceable for tests
_default_clock: Clock = SystemClock()
_default_lock = threading.Lock()


def get_clock() -> Clock:
    """Return the process-wide clock."""
    return _default_clock


def set_clock(clock: Clock) -> Clock:
    """Replace the process-wide clock and return the previous one."""
    global _default_clock
    with _default_lock:
        previous = _default_clock
        _default_clock = clock
    logger.debug("Process clock replaced: %r -> %r", previous, clock)
    return previous


@contextmanager
def use_clock(clock: Clock) -> Iterator[Clock]:
    """Temporarily install clock as the process-wide clock."""
    previous = set_clock(clock)
    try:
        yield clock
    finally:
        set_clock(previous)


def now_utc() -> datetime.datetime:
    """Get current UTC time from the process-wide clock (convenience function)."""
    return _default_clock.now()
