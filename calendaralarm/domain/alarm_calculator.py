"""Next-alarm computation for one recipient of one calendar event.

Pure functions of (event model, recipient, now): no I/O, no clock reads.
The reconciler supplies ``now`` from its injected Clock.
"""

from __future__ import annotations

import heapq
import logging
from collections.abc import Iterable, Iterator, Mapping
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Optional, Union

from calendaralarm.calendar.datetime_utils import ensure_utc, format_recurrence_id
from calendaralarm.calendar.models import (
    AlarmDecision,
    AlarmDefinition,
    AlarmRelated,
    ExpandedOccurrence,
    MasterOccurrence,
    OverrideOccurrence,
)
from calendaralarm.calendar.rrule_expander import ExpansionConfig, OccurrenceExpander, first_slot
from calendaralarm.core.config import DEFAULT_ALLOWED_ACTIONS

if TYPE_CHECKING:
    from calendaralarm.calendar.event_adapter import CalendarEventAdapter
    from calendaralarm.core.config import AlarmConfig

logger = logging.getLogger(__name__)

Instance = Union[MasterOccurrence, OverrideOccurrence, ExpandedOccurrence]


def alarm_instant(occurrence: Instance, alarm: AlarmDefinition) -> datetime:
    """Absolute firing instant of a relative VALARM on an occurrence."""
    base = occurrence.end if alarm.related == AlarmRelated.END else occurrence.start
    return base + alarm.trigger


def _choose_alarm(
    occurrence: Instance, now: datetime, actions: frozenset[str]
) -> Optional[tuple[datetime, AlarmDefinition]]:
    """Earliest alarm time at or after now among the usable VALARMs.

    When every alarm time has already elapsed the alarm fires at now.
    """
    usable = [alarm for alarm in occurrence.alarms if alarm.action in actions]
    if not usable:
        return None

    timed = sorted(((alarm_instant(occurrence, a), a) for a in usable), key=lambda t: t[0])
    for when, alarm in timed:
        if when >= now:
            return when, alarm
    # All elapsed; the most recent one stands for the reminder
    return now, timed[-1][1]


def evaluate_occurrence(
    occurrence: Instance,
    recipient: str,
    now: datetime,
    actions: frozenset[str],
    after: Optional[datetime] = None,
) -> Optional[tuple[datetime, AlarmDefinition]]:
    """Alarm (time, definition) for recipient on one occurrence, or None.

    None when the occurrence is cancelled, not strictly after ``after``
    (default now), the recipient is neither organizer nor ACCEPTED
    attendee, or no VALARM is usable. Alarm times are always measured
    against now.
    """
    if occurrence.cancelled:
        return None
    if occurrence.start <= max(now, after or now):
        return None
    if not occurrence.is_eligible(recipient):
        return None
    return _choose_alarm(occurrence, now, actions)


def _candidates(
    master: Optional[MasterOccurrence],
    overrides: Mapping[datetime, OverrideOccurrence],
    after: datetime,
    expander: OccurrenceExpander,
    lookahead: Optional[timedelta],
) -> Iterator[Instance]:
    """Instances of a series starting after ``after``, ordered by actual start.

    Generated slots that have an override are replaced by it. Overrides moved
    out of the past into the future are included even though their slot is
    not generated. Overrides whose RECURRENCE-ID is not a slot of the series
    are dropped.
    """
    recurrence = master.recurrence if master is not None else None

    if recurrence is not None:
        members: dict[datetime, OverrideOccurrence] = {}
        for rid, override in overrides.items():
            if expander.is_slot(recurrence, rid):
                members[rid] = override
            else:
                logger.debug(
                    "Ignoring override %s of %s: not an occurrence of the series",
                    format_recurrence_id(rid),
                    override.uid,
                )
        overrides = members

    upcoming_overrides = sorted(
        (o for o in overrides.values() if o.start > after),
        key=lambda o: (o.start, o.recurrence_id),
    )

    if master is None or recurrence is None:
        yield from upcoming_overrides
        return

    def generated() -> Iterator[ExpandedOccurrence]:
        for slot in expander.iter_slots(recurrence, after, lookahead=lookahead):
            if slot in overrides:
                continue
            yield ExpandedOccurrence.from_master(master, slot, recurrence.duration)

    yield from heapq.merge(generated(), upcoming_overrides, key=lambda o: o.start)


def compute_next_alarm(
    master: Optional[MasterOccurrence],
    overrides: Optional[Mapping[datetime, OverrideOccurrence]],
    recipient: str,
    now: datetime,
    *,
    expander: Optional[OccurrenceExpander] = None,
    allowed_actions: Optional[Iterable[str]] = None,
    lookahead: Optional[timedelta] = None,
    after: Optional[datetime] = None,
) -> Optional[AlarmDecision]:
    """Compute the next alarm for recipient, or None when no alarm is due.

    Args:
        master: Master occurrence (None when the payload only has overrides)
        overrides: Override occurrences keyed by UTC RECURRENCE-ID
        recipient: Calendar user address
        now: Current instant; alarm times are measured against it
        expander: Occurrence expander (defaults: 365 days, 1000 slots)
        allowed_actions: VALARM actions that produce alarms (default EMAIL)
        lookahead: Horizon override for unbounded series
        after: Only occurrences starting strictly after this instant (and
            after now) are considered, e.g. the start of an alarm that fired

    Returns:
        AlarmDecision or None
    """
    now = ensure_utc(now)
    after = max(now, ensure_utc(after)) if after is not None else now
    overrides = overrides or {}
    actions = frozenset(a.upper() for a in (allowed_actions or DEFAULT_ALLOWED_ACTIONS))

    if master is None and not overrides:
        return None

    if master is not None and master.recurrence is None:
        if overrides:
            logger.debug("Ignoring %d overrides of non-recurring %s", len(overrides), master.uid)
        chosen = evaluate_occurrence(master, recipient, now, actions, after)
        if chosen is None:
            return None
        alarm_time, alarm = chosen
        return AlarmDecision(
            alarm_time=alarm_time,
            occurrence_start=master.start,
            recurring=False,
            action=alarm.action,
        )

    if master is not None and master.cancelled:
        logger.debug("Series %s is cancelled", master.uid)
        return None

    expander = expander or OccurrenceExpander()
    series_start = (
        first_slot(master.recurrence, expander.config)
        if master is not None and master.recurrence is not None
        else None
    )

    for occurrence in _candidates(master, overrides, after, expander, lookahead):
        chosen = evaluate_occurrence(occurrence, recipient, now, actions, after)
        if chosen is None:
            continue
        alarm_time, alarm = chosen
        recurrence_id: Optional[str] = format_recurrence_id(occurrence.recurrence_id)
        if isinstance(occurrence, ExpandedOccurrence) and occurrence.recurrence_id == series_start:
            recurrence_id = None
        return AlarmDecision(
            alarm_time=alarm_time,
            occurrence_start=occurrence.start,
            recurring=True,
            recurrence_id=recurrence_id,
            action=alarm.action,
        )

    return None


class NextAlarmCalculator:
    """Configured entry point for the next-alarm computation."""

    def __init__(self, config: Optional[AlarmConfig] = None):
        self.config = config
        expansion = ExpansionConfig.from_settings(config) if config else ExpansionConfig()
        self.expander = OccurrenceExpander(expansion)
        self.allowed_actions = (
            tuple(config.allowed_actions) if config else DEFAULT_ALLOWED_ACTIONS
        )

    def compute(
        self,
        event: CalendarEventAdapter,
        recipient: str,
        now: datetime,
        *,
        after: Optional[datetime] = None,
    ) -> Optional[AlarmDecision]:
        return compute_next_alarm(
            event.master_occurrence(),
            event.override_instances(),
            recipient,
            now,
            expander=self.expander,
            allowed_actions=self.allowed_actions,
            after=after,
        )
