"""Exception hierarchy for the calendaralarm scheduling core.

Parse errors are logged and the offending notification dropped; store errors
propagate to the transport layer; per-recipient computation faults are
collected and surfaced once the rest of the batch has been reconciled.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from calendaralarm.domain.reconciler import ReconciliationResult


class CalendarAlarmError(Exception):
    """Base exception for all calendaralarm errors."""


class CalendarParseError(CalendarAlarmError):
    """A calendar payload could not be turned into a calendar model.

    Raised when:
    - The iCalendar text is not parseable
    - The payload carries no VEVENT
    - The VEVENT has no UID or no DTSTART
    """


class NotificationDecodeError(CalendarParseError):
    """A transport message body could not be decoded into a notification.

    Raised when:
    - The body is not valid JSON
    - Required fields (eventPath, event payload) are missing
    - The event path does not follow /calendars/{base}/{calendar}/{event}.ics
    """


class RecurrenceExpansionError(CalendarAlarmError):
    """An RRULE could not be expanded into occurrences."""


class AlarmStoreError(CalendarAlarmError):
    """The alarm store failed to read or persist state."""


class ReconciliationError(CalendarAlarmError):
    """One or more recipients could not be reconciled.

    The remaining recipients of the notification were still reconciled; the
    partial result is attached so the transport layer can log it before
    deciding whether to redeliver.
    """

    def __init__(
        self,
        message: str,
        failures: dict[str, BaseException],
        result: ReconciliationResult | None = None,
    ) -> None:
        super().__init__(message)
        self.failures = failures
        self.result = result
