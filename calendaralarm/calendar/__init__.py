"""iCalendar parsing: VEVENT/VALARM/attendee adapters and recurrence expansion."""

from .event_adapter import CalendarEventAdapter
from .models import (
    AlarmDecision,
    AlarmDefinition,
    Attendee,
    ExpandedOccurrence,
    MasterOccurrence,
    Occurrence,
    OverrideOccurrence,
    ParticipationStatus,
    Person,
)
from .rrule_expander import ExpansionConfig, OccurrenceExpander

__all__ = [
    "AlarmDecision",
    "AlarmDefinition",
    "Attendee",
    "CalendarEventAdapter",
    "ExpandedOccurrence",
    "ExpansionConfig",
    "MasterOccurrence",
    "Occurrence",
    "OccurrenceExpander",
    "OverrideOccurrence",
    "ParticipationStatus",
    "Person",
]
