"""Attendee and organizer parsing for iCalendar components - calendaralarm.

This module turns ATTENDEE / ORGANIZER properties into Person and Attendee
models.
"""

import logging
from typing import Any, Optional

from pydantic import ValidationError

from .models import Attendee, ParticipationStatus, Person, normalize_address

logger = logging.getLogger(__name__)


class AttendeeParser:
    """Parser for iCalendar ATTENDEE and ORGANIZER properties."""

    def parse_person(self, prop: Any) -> Optional[Person]:
        """Parse a calendar user address property.

        Args:
            prop: iCalendar ATTENDEE or ORGANIZER property

        Returns:
            Person, or None when the property has no usable address
        """
        if prop is None:
            return None

        email = normalize_address(str(prop))
        if not email:
            logger.debug("Skipping calendar user without address: %r", prop)
            return None

        params = getattr(prop, "params", {}) or {}
        common_name = params.get("CN")

        try:
            return Person(email=email, common_name=str(common_name) if common_name else None)
        except ValidationError as e:
            logger.debug("Failed to parse calendar user %r: %s", prop, e)
            return None

    def parse_attendee(self, attendee_prop: Any) -> Optional[Attendee]:
        """Parse attendee from iCalendar property.

        Args:
            attendee_prop: iCalendar ATTENDEE property

        Returns:
            Parsed Attendee or None
        """
        person = self.parse_person(attendee_prop)
        if person is None:
            return None

        params = getattr(attendee_prop, "params", {}) or {}
        status = ParticipationStatus.from_ical(params.get("PARTSTAT"))
        return Attendee(person=person, status=status)

    def parse_attendees(self, component: Any) -> list[Attendee]:
        """Parse all attendees from an iCalendar component.

        When an address is listed more than once the last entry wins.

        Args:
            component: iCalendar component (e.g., VEVENT)

        Returns:
            List of parsed Attendee objects
        """
        attendee_props = component.get("ATTENDEE", [])

        # A single ATTENDEE is returned bare, several as a list
        if not isinstance(attendee_props, list):
            attendee_props = [attendee_props] if attendee_props else []

        by_email: dict[str, Attendee] = {}
        for attendee_prop in attendee_props:
            attendee = self.parse_attendee(attendee_prop)
            if attendee:
                by_email[attendee.email] = attendee

        return list(by_email.values())

    def parse_organizer(self, component: Any) -> Optional[Person]:
        organizer = component.get("ORGANIZER")
        if isinstance(organizer, list):
            organizer = organizer[0] if organizer else None
        return self.parse_person(organizer)
