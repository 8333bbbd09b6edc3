"""Event model adapter over a parsed iCalendar object - calendaralarm.

Gives the rest of the system a typed view of one calendar event: the master
VEVENT, the overridden instances keyed by RECURRENCE-ID, attendees,
organizer and usable VALARMs.
"""

import logging
from datetime import UTC, date, datetime, timedelta, tzinfo
from typing import Any, Optional, Union

from icalendar import Calendar
from icalendar import Event as ICalEvent

from calendaralarm.exceptions import CalendarParseError

from .attendee_parser import AttendeeParser
from .datetime_utils import resolve_property
from .ics_parser import parse_calendar
from .models import (
    AlarmDefinition,
    Attendee,
    MasterOccurrence,
    OverrideOccurrence,
    Person,
    RecurrenceSpec,
)
from .valarm_parser import ValarmParser

logger = logging.getLogger(__name__)

_EPOCH = datetime.min.replace(tzinfo=UTC)


class CalendarEventAdapter:
    """Typed read-only view over the VEVENTs of one calendar object."""

    def __init__(
        self,
        calendar: Calendar,
        *,
        default_timezone: Optional[tzinfo] = None,
        attendee_parser: Optional[AttendeeParser] = None,
        valarm_parser: Optional[ValarmParser] = None,
    ):
        """Initialize the adapter.

        Args:
            calendar: Parsed icalendar Calendar
            default_timezone: Zone for floating times and DATE values (UTC if None)
            attendee_parser: Parser for ATTENDEE/ORGANIZER properties
            valarm_parser: Parser for VALARM subcomponents

        Raises:
            CalendarParseError: If there is no VEVENT, no UID, or the master
                has no DTSTART
        """
        self._calendar = calendar
        self.default_timezone = default_timezone or UTC
        self.attendee_parser = attendee_parser or AttendeeParser()
        self.valarm_parser = valarm_parser or ValarmParser()

        vevents = list(calendar.walk("VEVENT"))
        if not vevents:
            raise CalendarParseError("Calendar contains no VEVENT")

        uids = [str(v.get("UID")).strip() for v in vevents if v.get("UID")]
        uids = [u for u in uids if u]
        if not uids:
            raise CalendarParseError("VEVENT has no UID")
        self._uid = uids[0]
        if len(set(uids)) > 1:
            logger.warning(
                "Calendar carries %d UIDs; only %s is considered", len(set(uids)), self._uid
            )

        components = [v for v in vevents if str(v.get("UID", "")).strip() == self._uid]
        self._master_component = self._select_master(
            [c for c in components if c.get("RECURRENCE-ID") is None]
        )
        self._master = (
            self._build_master(self._master_component)
            if self._master_component is not None
            else None
        )
        self._overrides = self._build_overrides(
            [c for c in components if c.get("RECURRENCE-ID") is not None]
        )

    # Construction helpers

    @classmethod
    def from_ics(
        cls, data: Union[str, bytes], *, default_timezone: Optional[tzinfo] = None
    ) -> "CalendarEventAdapter":
        """Parse ICS text and wrap it.

        Raises:
            CalendarParseError: If the text cannot be parsed or has no usable VEVENT
        """
        return cls(parse_calendar(data), default_timezone=default_timezone)

    @classmethod
    def from_calendar(
        cls, calendar: Calendar, *, default_timezone: Optional[tzinfo] = None
    ) -> "CalendarEventAdapter":
        return cls(calendar, default_timezone=default_timezone)

    # Public view

    @property
    def uid(self) -> str:
        return self._uid

    @property
    def calendar(self) -> Calendar:
        return self._calendar

    def organizer(self) -> Optional[Person]:
        return self._master.organizer if self._master else None

    def attendees(self) -> list[Attendee]:
        return list(self._master.attendees) if self._master else []

    def valarms(self) -> list[AlarmDefinition]:
        return list(self._master.alarms) if self._master else []

    def is_recurring_master(self) -> bool:
        return self._master is not None and self._master.recurrence is not None

    def recurrence_rule(self) -> Optional[str]:
        if self._master is None or self._master.recurrence is None:
            return None
        return self._master.recurrence.rule

    def master_occurrence(self) -> Optional[MasterOccurrence]:
        """The master VEVENT, or None when the payload only carries overrides."""
        return self._master

    def override_instances(self) -> dict[datetime, OverrideOccurrence]:
        """Overridden instances keyed by UTC RECURRENCE-ID."""
        return dict(self._overrides)

    def participants(self) -> set[str]:
        """Organizer and attendee addresses of the master and every override."""
        addresses: set[str] = set()
        if self._master is not None:
            addresses |= self._master.participants()
        for override in self._overrides.values():
            addresses |= override.participants()
        return addresses

    def is_cancelled(self) -> bool:
        """True when the master is cancelled (or every override is, without master)."""
        if self._master is not None:
            return self._master.cancelled
        return bool(self._overrides) and all(o.cancelled for o in self._overrides.values())

    def to_ics(self) -> str:
        return self._calendar.to_ical().decode("utf-8")

    # Parsing internals

    def _select_master(self, candidates: list[ICalEvent]) -> Optional[ICalEvent]:
        """Pick the master among VEVENTs without RECURRENCE-ID.

        Several non-recurring versions can share one UID; the most recent one
        wins by SEQUENCE, then LAST-MODIFIED, then DTSTAMP. A recurring
        version is always preferred over a non-recurring one.
        """
        if not candidates:
            return None
        if len(candidates) > 1:
            logger.debug("%d master versions for %s; picking most recent", len(candidates), self._uid)
        return max(candidates, key=lambda c: (self._is_recurring(c), *self._version_key(c)))

    def _version_key(self, component: ICalEvent) -> tuple[int, datetime, datetime]:
        sequence_raw = component.get("SEQUENCE", 0)
        try:
            sequence = int(sequence_raw)
        except (TypeError, ValueError):
            logger.debug("Ignoring non-numeric SEQUENCE %r", sequence_raw)
            sequence = 0
        last_modified = resolve_property(component.get("LAST-MODIFIED"), self.default_timezone)
        dtstamp = resolve_property(component.get("DTSTAMP"), self.default_timezone)
        return sequence, last_modified or _EPOCH, dtstamp or _EPOCH

    @staticmethod
    def _is_recurring(component: ICalEvent) -> bool:
        return component.get("RRULE") is not None or component.get("RDATE") is not None

    def _times(self, component: ICalEvent) -> tuple[datetime, datetime]:
        """Resolve (start, end) of a VEVENT.

        DTEND missing: DURATION, else one day for DATE events, else zero length.
        """
        dtstart_prop = component.get("DTSTART")
        start = resolve_property(dtstart_prop, self.default_timezone)
        if start is None:
            raise CalendarParseError(f"VEVENT {self._uid} has no usable DTSTART")

        end = resolve_property(component.get("DTEND"), self.default_timezone)
        if end is None:
            duration = self._duration(component)
            if duration is not None:
                end = start + duration
            elif not isinstance(dtstart_prop.dt, datetime):
                end = start + timedelta(days=1)
            else:
                end = start
        if end < start:
            logger.debug("VEVENT %s ends before it starts; using zero length", self._uid)
            end = start
        return start, end

    @staticmethod
    def _duration(component: ICalEvent) -> Optional[timedelta]:
        prop = component.get("DURATION")
        if prop is None:
            return None
        try:
            value = prop.dt
        except (AttributeError, ValueError):
            return None
        return value if isinstance(value, timedelta) else None

    def _is_component_cancelled(self, component: ICalEvent) -> bool:
        return str(component.get("STATUS", "")).strip().upper() == "CANCELLED"

    def _common_fields(self, component: ICalEvent) -> dict[str, Any]:
        start, end = self._times(component)
        return {
            "uid": self._uid,
            "start": start,
            "end": end,
            "organizer": self.attendee_parser.parse_organizer(component),
            "attendees": self.attendee_parser.parse_attendees(component),
            "alarms": self.valarm_parser.parse_alarms(component),
            "cancelled": self._is_component_cancelled(component),
        }

    def _build_master(self, component: ICalEvent) -> MasterOccurrence:
        fields = self._common_fields(component)
        recurrence = None
        if self._is_recurring(component):
            recurrence = self._build_recurrence(component, fields["end"] - fields["start"])
        return MasterOccurrence(recurrence=recurrence, **fields)

    def _build_recurrence(self, component: ICalEvent, duration: timedelta) -> RecurrenceSpec:
        dtstart: Union[datetime, date] = component.get("DTSTART").dt
        return RecurrenceSpec(
            rule=self._rule_text(component, "RRULE"),
            exrule=self._rule_text(component, "EXRULE"),
            dtstart=dtstart,
            exdates=self._collect_dates(component, "EXDATE"),
            rdates=self._collect_dates(component, "RDATE"),
            duration=duration,
        )

    def _rule_text(self, component: ICalEvent, name: str) -> Optional[str]:
        prop = component.get(name)
        if prop is None:
            return None
        if isinstance(prop, list):
            if len(prop) > 1:
                logger.warning("%s has %d %s properties; using the first", self._uid, len(prop), name)
            prop = prop[0]
        try:
            return prop.to_ical().decode("utf-8")
        except (AttributeError, ValueError) as e:
            logger.warning("Unreadable %s on %s: %s", name, self._uid, e)
            return None

    def _collect_dates(self, component: ICalEvent, name: str) -> list[datetime]:
        """Collect EXDATE/RDATE values as UTC instants.

        A property may appear several times and each occurrence may hold a
        comma-separated list; icalendar exposes both as vDDDLists.
        """
        props = component.get(name)
        if props is None:
            return []
        if not isinstance(props, list):
            props = [props]

        instants: list[datetime] = []
        for prop in props:
            try:
                values = prop.dts
            except (AttributeError, ValueError) as e:
                logger.warning("Unreadable %s on %s: %s", name, self._uid, e)
                continue
            for value in values:
                instant = resolve_property(value, self.default_timezone)
                if instant is not None:
                    instants.append(instant)
        return instants

    def _build_overrides(self, components: list[ICalEvent]) -> dict[datetime, OverrideOccurrence]:
        overrides: dict[datetime, OverrideOccurrence] = {}
        versions: dict[datetime, tuple[int, datetime, datetime]] = {}
        inherited_organizer = self._master.organizer if self._master else None

        for component in components:
            recurrence_id = resolve_property(component.get("RECURRENCE-ID"), self.default_timezone)
            if recurrence_id is None:
                logger.warning("Override of %s has unreadable RECURRENCE-ID; ignored", self._uid)
                continue
            try:
                fields = self._common_fields(component)
            except CalendarParseError as e:
                logger.warning("Override %s of %s ignored: %s", recurrence_id, self._uid, e)
                continue
            if fields["organizer"] is None:
                fields["organizer"] = inherited_organizer

            version = self._version_key(component)
            if recurrence_id in versions and versions[recurrence_id] >= version:
                continue
            versions[recurrence_id] = version
            overrides[recurrence_id] = OverrideOccurrence(recurrence_id=recurrence_id, **fields)

        return overrides
