"""iCalendar text parsing - calendaralarm.

Wraps ``icalendar.Calendar.from_ical``. icalendar tolerates broken property
values inside VEVENT but raises on any broken value inside VALARM, which
would reject a whole event because of one unusable reminder. Such VALARM
blocks are dropped and the text is parsed again.
"""

import logging
import re
from typing import Union

from icalendar import Alarm, Calendar

from calendaralarm.exceptions import CalendarParseError

logger = logging.getLogger(__name__)

_FOLD_RE = re.compile(r"\r?\n[ \t]")


def unfold_lines(text: str) -> list[str]:
    """Unfold RFC 5545 content lines and split them."""
    return [line for line in _FOLD_RE.sub("", text).splitlines() if line.strip()]


def drop_broken_valarms(text: str) -> tuple[str, int]:
    """Remove VALARM blocks that icalendar cannot parse.

    Returns:
        Tuple of (sanitized text, number of dropped blocks)
    """
    output: list[str] = []
    block: list[str] = []
    in_alarm = False
    dropped = 0

    for line in unfold_lines(text):
        upper = line.strip().upper()
        if not in_alarm and upper == "BEGIN:VALARM":
            in_alarm = True
            block = [line]
            continue
        if in_alarm:
            block.append(line)
            if upper == "END:VALARM":
                in_alarm = False
                block_text = "\r\n".join(block) + "\r\n"
                try:
                    Alarm.from_ical(block_text)
                except (ValueError, TypeError) as e:
                    dropped += 1
                    logger.warning("Dropping unparseable VALARM: %s", e)
                else:
                    output.extend(block)
            continue
        output.append(line)

    if in_alarm:
        # Unterminated VALARM; let the parser report the structure error
        output.extend(block)

    return "\r\n".join(output) + "\r\n", dropped


def parse_calendar(data: Union[str, bytes]) -> Calendar:
    """Parse iCalendar text into an icalendar Calendar.

    A bare VEVENT (without VCALENDAR wrapper) is wrapped into a calendar.

    Args:
        data: iCalendar text or bytes

    Returns:
        icalendar Calendar

    Raises:
        CalendarParseError: If the text is empty or cannot be parsed
    """
    if isinstance(data, bytes):
        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise CalendarParseError(f"Calendar payload is not UTF-8: {e}") from e
    else:
        text = data

    if not text or not text.strip():
        raise CalendarParseError("Calendar payload is empty")
    if "\n" not in text:
        # icalendar may treat single-line strings as file paths
        text = text + "\r\n"

    try:
        component = Calendar.from_ical(text)
    except (ValueError, TypeError, IndexError) as first_error:
        if "BEGIN:VALARM" not in text.upper():
            raise CalendarParseError(f"Unparseable calendar: {first_error}") from first_error
        sanitized, dropped = drop_broken_valarms(text)
        if not dropped:
            raise CalendarParseError(f"Unparseable calendar: {first_error}") from first_error
        try:
            component = Calendar.from_ical(sanitized)
        except (ValueError, TypeError, IndexError) as e:
            raise CalendarParseError(f"Unparseable calendar: {e}") from e
        logger.info("Parsed calendar after dropping %d broken VALARM block(s)", dropped)

    if getattr(component, "name", "") != "VCALENDAR":
        wrapper = Calendar()
        wrapper.add_component(component)
        component = wrapper

    return component
