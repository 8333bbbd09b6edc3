"""Persisted alarm record."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from calendaralarm.calendar.datetime_utils import ensure_utc, serialize_datetime_utc
from calendaralarm.calendar.models import AlarmDecision, normalize_address

AlarmKey = tuple[str, str]


def alarm_key(event_uid: str, recipient: str) -> AlarmKey:
    """Store key for (event uid, recipient); recipients compare case-insensitively."""
    return event_uid, normalize_address(recipient)


class AlarmEvent(BaseModel):
    """One scheduled reminder for one recipient of one event.

    There is at most one AlarmEvent per (event_uid, recipient). It is never
    patched: every recomputation replaces it wholesale.
    """

    model_config = ConfigDict(frozen=True)

    event_uid: str = Field(..., min_length=1)
    recipient: str = Field(..., description="Lower-cased address without mailto:")
    alarm_time: datetime
    event_start_time: datetime
    recurring: bool = False
    recurrence_id: Optional[str] = None
    ics: str = Field(..., description="Calendar snapshot the alarm was computed from")
    event_path: Optional[str] = None
    action: Optional[str] = None

    @field_validator("recipient")
    @classmethod
    def _normalize_recipient(cls, value: str) -> str:
        address = normalize_address(value)
        if not address:
            raise ValueError("recipient must not be empty")
        return address

    @field_validator("alarm_time", "event_start_time")
    @classmethod
    def _to_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @field_serializer("alarm_time", "event_start_time")
    def serialize_datetime(self, dt: datetime) -> str:
        """Serialize datetime to ISO format with Z suffix."""
        return serialize_datetime_utc(dt)

    @property
    def key(self) -> AlarmKey:
        return alarm_key(self.event_uid, self.recipient)

    @classmethod
    def from_decision(
        cls,
        event_uid: str,
        recipient: str,
        decision: AlarmDecision,
        ics: str,
        event_path: Optional[str] = None,
    ) -> AlarmEvent:
        return cls(
            event_uid=event_uid,
            recipient=recipient,
            alarm_time=decision.alarm_time,
            event_start_time=decision.occurrence_start,
            recurring=decision.recurring,
            recurrence_id=decision.recurrence_id,
            ics=ics,
            event_path=event_path,
            action=decision.action,
        )

    def with_next_occurrence(self, decision: AlarmDecision) -> AlarmEvent:
        """Copy pointing at the occurrence described by decision."""
        return self.model_copy(
            update={
                "alarm_time": ensure_utc(decision.alarm_time),
                "event_start_time": ensure_utc(decision.occurrence_start),
                "recurrence_id": decision.recurrence_id,
                "action": decision.action,
            }
        )

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    def to_short_string(self) -> str:
        return (
            f"AlarmEvent(event_uid={self.event_uid}, recipient={self.recipient}, "
            f"alarm_time={serialize_datetime_utc(self.alarm_time)})"
        )
