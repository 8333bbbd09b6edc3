"""Alarm store contract and the in-memory implementation.

Stores are mappings keyed by (event_uid, recipient): ``upsert`` replaces,
``delete`` is idempotent, and there are no cross-key transactions.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import AsyncIterator, Iterable
from datetime import datetime
from typing import Optional, Protocol, runtime_checkable

from calendaralarm.calendar.datetime_utils import ensure_utc

from .models import AlarmEvent, AlarmKey, alarm_key

logger = logging.getLogger(__name__)


@runtime_checkable
class AlarmStore(Protocol):
    """Persistence contract for AlarmEvent records.

    Implementations raise AlarmStoreError when the backing storage fails.
    """

    async def find(self, event_uid: str, recipient: str) -> Optional[AlarmEvent]:
        """Return the alarm held for (event_uid, recipient), if any."""
        ...

    async def upsert(self, alarm_event: AlarmEvent) -> None:
        """Insert or fully replace the alarm for its (event_uid, recipient)."""
        ...

    async def delete(self, event_uid: str, recipient: str) -> None:
        """Remove the alarm for (event_uid, recipient); absent keys are fine."""
        ...

    def find_due_before(
        self, instant: datetime, *, only_unstarted: bool = False
    ) -> AsyncIterator[AlarmEvent]:
        """Alarms with alarm_time <= instant, each at most once, unordered.

        With only_unstarted, alarms whose event already started are skipped.
        """
        ...

    def find_by_event(self, event_uid: str) -> AsyncIterator[AlarmEvent]:
        """Every alarm held for event_uid, one per recipient."""
        ...


def is_due(alarm: AlarmEvent, instant: datetime, only_unstarted: bool) -> bool:
    if alarm.alarm_time > instant:
        return False
    return not (only_unstarted and alarm.event_start_time <= instant)


class InMemoryAlarmStore:
    """Dict-backed AlarmStore for tests and single-process deployments."""

    def __init__(self, alarms: Iterable[AlarmEvent] = ()) -> None:
        self._lock = threading.Lock()
        self._alarms: dict[AlarmKey, AlarmEvent] = {a.key: a for a in alarms}

    async def find(self, event_uid: str, recipient: str) -> Optional[AlarmEvent]:
        with self._lock:
            return self._alarms.get(alarm_key(event_uid, recipient))

    async def upsert(self, alarm_event: AlarmEvent) -> None:
        with self._lock:
            self._alarms[alarm_event.key] = alarm_event
        logger.debug("Upserted %s", alarm_event.to_short_string())

    async def delete(self, event_uid: str, recipient: str) -> None:
        with self._lock:
            removed = self._alarms.pop(alarm_key(event_uid, recipient), None)
        if removed is not None:
            logger.debug("Deleted %s", removed.to_short_string())

    async def find_due_before(
        self, instant: datetime, *, only_unstarted: bool = False
    ) -> AsyncIterator[AlarmEvent]:
        instant = ensure_utc(instant)
        with self._lock:
            due = [a for a in self._alarms.values() if is_due(a, instant, only_unstarted)]
        for alarm in due:
            yield alarm

    async def find_by_event(self, event_uid: str) -> AsyncIterator[AlarmEvent]:
        with self._lock:
            matches = [a for (uid, _), a in self._alarms.items() if uid == event_uid]
        for alarm in matches:
            yield alarm

    def snapshot(self) -> dict[AlarmKey, AlarmEvent]:
        """Copy of the current contents."""
        with self._lock:
            return dict(self._alarms)

    def __len__(self) -> int:
        with self._lock:
            return len(self._alarms)
