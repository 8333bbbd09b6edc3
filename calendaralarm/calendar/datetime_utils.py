"""DateTime helpers for iCalendar values - calendaralarm.

All instants leaving this module are timezone-aware UTC datetimes.
"""

from __future__ import annotations

import logging
from datetime import UTC, date, datetime, time, tzinfo
from typing import Any, Optional, Union

logger = logging.getLogger(__name__)

RECURRENCE_ID_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def ensure_utc(dt: datetime, default_tz: Optional[tzinfo] = None) -> datetime:
    """Return dt as an aware UTC datetime.

    Naive (floating) values are interpreted in default_tz, or UTC when no
    default is given.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=default_tz or UTC)
    return dt.astimezone(UTC)


def resolve_value(value: Union[datetime, date], default_tz: Optional[tzinfo] = None) -> datetime:
    """Resolve a DATE or DATE-TIME value to a UTC instant.

    DATE values become midnight in default_tz.

    Examples:
        >>> resolve_value(date(2025, 10, 1))
        datetime.datetime(2025, 10, 1, 0, 0, tzinfo=datetime.timezone.utc)
    """
    if isinstance(value, datetime):
        return ensure_utc(value, default_tz)
    return datetime.combine(value, time.min, tzinfo=default_tz or UTC).astimezone(UTC)


def resolve_property(prop: Any, default_tz: Optional[tzinfo] = None) -> Optional[datetime]:
    """Resolve an icalendar date/date-time property (anything with ``.dt``).

    Returns None when the property is missing or carries something that is
    not a date (a broken value, a duration, a period).
    """
    if prop is None:
        return None
    try:
        value = prop.dt
    except (AttributeError, ValueError) as e:
        logger.debug("Unreadable date property %r: %s", prop, e)
        return None
    if isinstance(value, tuple):
        # PERIOD values carry (start, end|duration)
        value = value[0]
    if isinstance(value, (datetime, date)):
        return resolve_value(value, default_tz)
    return None


def format_recurrence_id(dt: datetime) -> str:
    """Format an instance identifier as ``YYYY-MM-DDTHH:MM:SSZ``.

    Examples:
        >>> format_recurrence_id(datetime(2025, 10, 2, 4, 0, tzinfo=UTC))
        '2025-10-02T04:00:00Z'
    """
    return ensure_utc(dt).strftime(RECURRENCE_ID_FORMAT)


def parse_recurrence_id(value: str) -> datetime:
    """Inverse of format_recurrence_id.

    Raises:
        ValueError: If value is not in ``YYYY-MM-DDTHH:MM:SSZ`` form
    """
    return datetime.strptime(value, RECURRENCE_ID_FORMAT).replace(tzinfo=UTC)


def serialize_datetime_utc(dt: datetime) -> str:
    """Serialize datetime to ISO 8601 UTC string with Z suffix.

    Examples:
        >>> serialize_datetime_utc(datetime(2024, 11, 4, 16, 30, tzinfo=UTC))
        '2024-11-04T16:30:00Z'
    """
    if dt is None:
        raise ValueError("Cannot serialize None datetime")
    return ensure_utc(dt).isoformat().replace("+00:00", "Z")
