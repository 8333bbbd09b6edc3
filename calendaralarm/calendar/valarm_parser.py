"""VALARM parsing for VEVENT components - calendaralarm.

Only relative triggers produce an AlarmDefinition. Absolute triggers,
missing ACTION/TRIGGER and unreadable values yield no definition; they are
never an error for the caller.
"""

import logging
from datetime import date, timedelta
from typing import Any, Optional

from .models import AlarmDefinition, AlarmRelated

logger = logging.getLogger(__name__)


class ValarmParser:
    """Parser for VALARM subcomponents."""

    def parse_alarm(self, valarm: Any) -> Optional[AlarmDefinition]:
        """Parse a single VALARM subcomponent.

        Args:
            valarm: icalendar Alarm component

        Returns:
            AlarmDefinition, or None when the block is unusable
        """
        action = valarm.get("ACTION")
        if action is None or not str(action).strip():
            logger.debug("VALARM without ACTION ignored")
            return None

        trigger_prop = valarm.get("TRIGGER")
        if trigger_prop is None:
            logger.debug("VALARM without TRIGGER ignored")
            return None

        try:
            trigger = trigger_prop.dt
        except (AttributeError, ValueError) as e:
            logger.debug("VALARM with unreadable TRIGGER %r ignored: %s", trigger_prop, e)
            return None

        if isinstance(trigger, date):
            logger.debug("VALARM with absolute TRIGGER %s ignored", trigger)
            return None
        if not isinstance(trigger, timedelta):
            logger.debug("VALARM with unsupported TRIGGER value %r ignored", trigger)
            return None

        params = getattr(trigger_prop, "params", {}) or {}
        related = (
            AlarmRelated.END
            if str(params.get("RELATED", "START")).upper() == "END"
            else AlarmRelated.START
        )

        return AlarmDefinition(action=str(action), trigger=trigger, related=related)

    def parse_alarms(self, component: Any) -> list[AlarmDefinition]:
        """Parse every usable VALARM directly under component.

        Args:
            component: iCalendar VEVENT component

        Returns:
            List of AlarmDefinition objects, in authoring order
        """
        alarms = []
        for sub in getattr(component, "subcomponents", []):
            if getattr(sub, "name", "") != "VALARM":
                continue
            alarm = self.parse_alarm(sub)
            if alarm is not None:
                alarms.append(alarm)
        return alarms
