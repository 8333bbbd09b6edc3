"""Alarm persistence."""

from .alarm_store import AlarmStore, InMemoryAlarmStore
from .json_alarm_store import JsonFileAlarmStore, open_alarm_store
from .models import AlarmEvent, AlarmKey, alarm_key

__all__ = [
    "AlarmEvent",
    "AlarmKey",
    "AlarmStore",
    "InMemoryAlarmStore",
    "JsonFileAlarmStore",
    "alarm_key",
    "open_alarm_store",
]
