"""jCal (RFC 7265) support - calendaralarm.

Calendar notifications may carry the event as a jCal document instead of
iCalendar text. icalendar parses jCal natively; this module maps its
failures onto CalendarParseError.
"""

import logging
from typing import Any, Union

from icalendar import Calendar

from calendaralarm.exceptions import CalendarParseError

logger = logging.getLogger(__name__)


def jcal_to_calendar(jcal: Union[str, list[Any]]) -> Calendar:
    """Build an icalendar Calendar from a jCal list (or its JSON text).

    A bare ``vevent`` document is wrapped into a calendar.

    Raises:
        CalendarParseError: If the document is not valid jCal
    """
    if isinstance(jcal, list) and jcal and isinstance(jcal[0], str) and jcal[0].lower() == "vevent":
        jcal = ["vcalendar", [], [jcal]]
    try:
        component = Calendar.from_jcal(jcal)
    except (ValueError, TypeError, IndexError, KeyError) as e:
        raise CalendarParseError(f"Invalid jCal document: {e}") from e

    if getattr(component, "name", "") != "VCALENDAR":
        wrapper = Calendar()
        wrapper.add_component(component)
        component = wrapper
    return component


def jcal_to_ics(jcal: Union[str, list[Any]]) -> str:
    """Convert a jCal document into iCalendar text.

    Raises:
        CalendarParseError: If the document is not valid jCal
    """
    calendar = jcal_to_calendar(jcal)
    text = calendar.to_ical().decode("utf-8")
    logger.debug("Converted jCal document to %d bytes of iCalendar", len(text))
    return text
