"""calendaralarm - alarm scheduling core for a calendaring service.

Decides, per recipient, whether and when a calendar event reminder must fire
and keeps a persisted alarm record in step with calendar change notifications.
"""

__version__ = "1.0.0"

from calendaralarm.core.clock import FixedClock, SystemClock, get_clock, set_clock
from calendaralarm.core.config import AlarmConfig, load_config
from calendaralarm.domain.alarm_calculator import NextAlarmCalculator, compute_next_alarm
from calendaralarm.domain.notifications import (
    EventDeletedNotification,
    EventUpsertNotification,
    NotificationKind,
    decode_notification,
)
from calendaralarm.domain.reconciler import AlarmReconciler, ReconciliationResult
from calendaralarm.storage.alarm_store import AlarmStore, InMemoryAlarmStore
from calendaralarm.storage.json_alarm_store import JsonFileAlarmStore
from calendaralarm.storage.models import AlarmEvent

__all__ = [
    "AlarmConfig",
    "AlarmEvent",
    "AlarmReconciler",
    "AlarmStore",
    "EventDeletedNotification",
    "EventUpsertNotification",
    "FixedClock",
    "InMemoryAlarmStore",
    "JsonFileAlarmStore",
    "NextAlarmCalculator",
    "NotificationKind",
    "ReconciliationResult",
    "SystemClock",
    "compute_next_alarm",
    "decode_notification",
    "get_clock",
    "load_config",
    "set_clock",
]
