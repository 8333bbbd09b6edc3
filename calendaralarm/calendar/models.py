"""Data models for calendar events and alarm decisions - calendaralarm."""

from __future__ import annotations

from datetime import date, datetime, timedelta
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator


def normalize_address(value: str) -> str:
    """Lower-case an address and strip a leading mailto: scheme."""
    address = value.strip()
    if address[:7].lower() == "mailto:":
        address = address[7:]
    return address.strip().lower()


class ParticipationStatus(str, Enum):
    """PARTSTAT values an attendee can hold on an event."""

    NEEDS_ACTION = "NEEDS-ACTION"
    ACCEPTED = "ACCEPTED"
    DECLINED = "DECLINED"
    TENTATIVE = "TENTATIVE"
    DELEGATED = "DELEGATED"

    @classmethod
    def from_ical(cls, value: object) -> ParticipationStatus:
        """Map a raw PARTSTAT parameter; missing or unknown values are NEEDS-ACTION."""
        if value is None:
            return cls.NEEDS_ACTION
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            return cls.NEEDS_ACTION


class AlarmRelated(str, Enum):
    """Which edge of the occurrence a relative VALARM trigger is measured from."""

    START = "START"
    END = "END"


class Person(BaseModel):
    """Calendar user address with optional display name."""

    model_config = ConfigDict(frozen=True)

    email: str = Field(..., description="Lower-cased address without mailto:")
    common_name: Optional[str] = Field(default=None, description="CN parameter")

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        address = normalize_address(value)
        if not address:
            raise ValueError("email must not be empty")
        return address

    def matches(self, address: str) -> bool:
        return self.email == normalize_address(address)


class Attendee(BaseModel):
    """Attendee of an event instance together with their participation."""

    model_config = ConfigDict(frozen=True)

    person: Person
    status: ParticipationStatus = ParticipationStatus.NEEDS_ACTION

    @property
    def email(self) -> str:
        return self.person.email


class AlarmDefinition(BaseModel):
    """A usable VALARM: relative trigger plus action."""

    model_config = ConfigDict(frozen=True)

    action: str = Field(..., description="Upper-cased VALARM ACTION")
    trigger: timedelta = Field(..., description="Offset from the related edge; negative is before")
    related: AlarmRelated = AlarmRelated.START

    @field_validator("action")
    @classmethod
    def _upper_action(cls, value: str) -> str:
        return value.strip().upper()


class RecurrenceSpec(BaseModel):
    """Recurrence data carried by a master event.

    ``dtstart`` is kept as authored (aware datetime, floating datetime or
    date) so that RRULE arithmetic happens in the event's own wall time.
    ``exdates`` and ``rdates`` are UTC instants.
    """

    model_config = ConfigDict(frozen=True)

    rule: Optional[str] = Field(default=None, description="RRULE text, e.g. FREQ=DAILY;COUNT=3")
    exrule: Optional[str] = Field(default=None, description="Deprecated EXRULE text")
    dtstart: Union[datetime, date]
    exdates: list[datetime] = Field(default_factory=list)
    rdates: list[datetime] = Field(default_factory=list)
    duration: timedelta = timedelta(0)

    @property
    def is_bounded(self) -> bool:
        """True when the rule ends on its own (COUNT or UNTIL) or there is no rule."""
        if not self.rule:
            return True
        upper = self.rule.upper()
        return "COUNT=" in upper or "UNTIL=" in upper


class _OccurrenceBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    uid: str
    start: datetime
    end: datetime
    organizer: Optional[Person] = None
    attendees: list[Attendee] = Field(default_factory=list)
    alarms: list[AlarmDefinition] = Field(default_factory=list)
    cancelled: bool = False

    def attendee_status(self, address: str) -> Optional[ParticipationStatus]:
        """PARTSTAT of address on this instance, or None when not invited."""
        target = normalize_address(address)
        for attendee in self.attendees:
            if attendee.email == target:
                return attendee.status
        return None

    def is_eligible(self, recipient: str) -> bool:
        """Organizer, or an attendee who has ACCEPTED this instance."""
        if self.organizer is not None and self.organizer.matches(recipient):
            return True
        return self.attendee_status(recipient) == ParticipationStatus.ACCEPTED

    def participants(self) -> set[str]:
        addresses = {attendee.email for attendee in self.attendees}
        if self.organizer is not None:
            addresses.add(self.organizer.email)
        return addresses


class MasterOccurrence(_OccurrenceBase):
    """The master VEVENT (the only instance of a non-recurring event)."""

    kind: Literal["master"] = "master"
    recurrence: Optional[RecurrenceSpec] = None

    @property
    def is_recurring(self) -> bool:
        return self.recurrence is not None


class OverrideOccurrence(_OccurrenceBase):
    """A VEVENT with RECURRENCE-ID replacing one generated slot."""

    kind: Literal["override"] = "override"
    recurrence_id: datetime


class ExpandedOccurrence(_OccurrenceBase):
    """An instance generated from the master's recurrence."""

    kind: Literal["expanded"] = "expanded"
    recurrence_id: datetime

    @classmethod
    def from_master(
        cls, master: MasterOccurrence, slot: datetime, duration: timedelta
    ) -> ExpandedOccurrence:
        return cls(
            uid=master.uid,
            start=slot,
            end=slot + duration,
            organizer=master.organizer,
            attendees=master.attendees,
            alarms=master.alarms,
            cancelled=master.cancelled,
            recurrence_id=slot,
        )


Occurrence = Annotated[
    Union[MasterOccurrence, OverrideOccurrence, ExpandedOccurrence],
    Field(discriminator="kind"),
]


class AlarmDecision(BaseModel):
    """Outcome of the next-alarm computation for one recipient."""

    model_config = ConfigDict(frozen=True)

    alarm_time: datetime
    occurrence_start: datetime
    recurring: bool = False
    recurrence_id: Optional[str] = Field(
        default=None, description="UTC instance id, YYYY-MM-DDTHH:MM:SSZ"
    )
    action: str = "EMAIL"

    @field_serializer("alarm_time", "occurrence_start")
    def serialize_datetime(self, dt: datetime) -> str:
        """Serialize datetime to ISO format."""
        return dt.isoformat()
