"""Calendar change notifications consumed by the reconciler.

The transport delivers a JSON body per change::

    {"eventPath": "/calendars/{base}/{calendar}/{event}.ics",
     "event": <jCal>, "rawEvent": "<ICS text>", "import": false,
     "oldEvent": <jCal>, "rawOldEvent": "<ICS text>"}

``decode_notification`` turns such a body into one of the typed shapes
below. ICS text wins over jCal when both are present.
"""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Mapping
from enum import Enum
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from calendaralarm.calendar.jcal import jcal_to_ics
from calendaralarm.exceptions import CalendarParseError, NotificationDecodeError

logger = logging.getLogger(__name__)


class NotificationKind(str, Enum):
    """Kinds of calendar change the transport reports."""

    CREATED = "created"
    UPDATED = "updated"
    REQUEST = "request"
    DELETED = "deleted"
    CANCEL = "cancel"

    @property
    def is_removal(self) -> bool:
        return self in (NotificationKind.DELETED, NotificationKind.CANCEL)


class CalendarURL(BaseModel):
    """Calendar an event lives in, extracted from its event path."""

    model_config = ConfigDict(frozen=True)

    base_id: str
    calendar_id: str

    def as_path(self) -> str:
        return f"/calendars/{self.base_id}/{self.calendar_id}"


def parse_event_path(event_path: str) -> CalendarURL:
    """Extract the calendar from ``/calendars/{base}/{calendar}/{event}.ics``.

    Raises:
        NotificationDecodeError: If the path does not have exactly that shape
    """
    segments = [s for s in str(event_path).split("/") if s]
    if len(segments) != 4 or segments[0] != "calendars":
        raise NotificationDecodeError(f"Invalid event path: {event_path}")
    return CalendarURL(base_id=segments[1], calendar_id=segments[2])


def _new_notification_id() -> str:
    return uuid.uuid4().hex[:12]


class _NotificationBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_path: str = Field(..., description="/calendars/{base}/{calendar}/{event}.ics")
    calendar_payload: str = Field(..., description="iCalendar text of the event")
    notification_id: str = Field(default_factory=_new_notification_id)

    @field_validator("event_path")
    @classmethod
    def _check_event_path(cls, value: str) -> str:
        try:
            parse_event_path(value)
        except NotificationDecodeError as e:
            raise ValueError(str(e)) from e
        return value

    @property
    def calendar_url(self) -> CalendarURL:
        return parse_event_path(self.event_path)


class EventUpsertNotification(_NotificationBase):
    """An event was created or updated (including invitation requests)."""

    kind: Literal[NotificationKind.CREATED, NotificationKind.UPDATED, NotificationKind.REQUEST] = (
        NotificationKind.UPDATED
    )
    is_import: bool = False
    previous_calendar_payload: Optional[str] = None


class EventDeletedNotification(_NotificationBase):
    """An event was deleted or cancelled; payload is its last known version."""

    kind: Literal[NotificationKind.DELETED, NotificationKind.CANCEL] = NotificationKind.DELETED


Notification = Union[EventUpsertNotification, EventDeletedNotification]


def _payload_text(data: Mapping[str, Any], raw_key: str, jcal_key: str) -> Optional[str]:
    raw = data.get(raw_key)
    if isinstance(raw, str) and raw.strip():
        return raw
    jcal = data.get(jcal_key)
    if jcal in (None, "", []):
        return None
    try:
        return jcal_to_ics(jcal)
    except CalendarParseError as e:
        raise NotificationDecodeError(f"Field {jcal_key!r} is not valid jCal: {e}") from e


def decode_notification(
    kind: Union[str, NotificationKind], body: Union[str, bytes, Mapping[str, Any]]
) -> Notification:
    """Decode a transport message body into a typed notification.

    Args:
        kind: Notification kind (created, updated, request, deleted, cancel)
        body: JSON text/bytes or an already decoded mapping

    Raises:
        NotificationDecodeError: If the body cannot be decoded
    """
    try:
        kind = NotificationKind(str(getattr(kind, "value", kind)).strip().lower())
    except ValueError as e:
        raise NotificationDecodeError(f"Unknown notification kind: {kind!r}") from e

    if isinstance(body, Mapping):
        data: Any = body
    else:
        try:
            data = json.loads(body)
        except (TypeError, ValueError) as e:
            raise NotificationDecodeError(f"Notification body is not valid JSON: {e}") from e
    if not isinstance(data, Mapping):
        raise NotificationDecodeError("Notification body must be a JSON object")

    event_path = data.get("eventPath")
    if not isinstance(event_path, str) or not event_path:
        raise NotificationDecodeError("Notification is missing eventPath")

    payload = _payload_text(data, "rawEvent", "event")
    if payload is None:
        raise NotificationDecodeError(f"Notification for {event_path} carries no event")

    try:
        if kind.is_removal:
            return EventDeletedNotification(
                kind=kind, event_path=event_path, calendar_payload=payload
            )
        return EventUpsertNotification(
            kind=kind,
            event_path=event_path,
            calendar_payload=payload,
            is_import=bool(data.get("import", False)),
            previous_calendar_payload=_payload_text(data, "rawOldEvent", "oldEvent"),
        )
    except ValidationError as e:
        raise NotificationDecodeError(f"Invalid notification for {event_path}: {e}") from e
