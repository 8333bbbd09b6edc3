"""RRULE expansion for recurring calendar events - calendaralarm.

The recurrence arithmetic is delegated to python-dateutil; this module
feeds it the master's DTSTART in the event's own wall time, applies
EXDATE/RDATE in UTC and bounds unbounded series by a lookahead horizon.
"""

import heapq
import logging
import re
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta, tzinfo
from typing import Any, Optional, Union

from dateutil.rrule import rruleset, rrulestr

from calendaralarm.exceptions import RecurrenceExpansionError

from .models import RecurrenceSpec

logger = logging.getLogger(__name__)

_UNTIL_RE = re.compile(r"(UNTIL=)([0-9]{8}(?:T[0-9]{6}Z?)?)", re.IGNORECASE)


@dataclass
class ExpansionConfig:
    """Configuration for occurrence expansion.

    Unbounded series (no COUNT or UNTIL) stop ``lookahead_days`` after the
    reference instant; every series stops after ``max_occurrences`` slots.
    """

    lookahead_days: int = 365
    max_occurrences: int = 1000
    default_timezone: tzinfo = UTC

    @classmethod
    def from_settings(cls, settings: Any) -> "ExpansionConfig":
        """Extract expansion configuration from a settings object.

        Args:
            settings: Object with lookahead_days / max_occurrences /
                default_timezone attributes (AlarmConfig or similar)

        Returns:
            ExpansionConfig with values from settings or defaults
        """
        tz = getattr(settings, "tzinfo", None) or UTC
        return cls(
            lookahead_days=getattr(settings, "lookahead_days", 365),
            max_occurrences=getattr(settings, "max_occurrences", 1000),
            default_timezone=tz,
        )


class OccurrenceExpander:
    """Expands a RecurrenceSpec into UTC occurrence slots."""

    def __init__(self, config: Optional[ExpansionConfig] = None):
        self.config = config or ExpansionConfig()

    def iter_slots(
        self,
        recurrence: RecurrenceSpec,
        after: datetime,
        *,
        lookahead: Optional[timedelta] = None,
    ) -> Iterator[datetime]:
        """Yield occurrence slots strictly after ``after``, oldest first.

        Slots are the RECURRENCE-ID values of the series as UTC datetimes:
        RRULE instances plus RDATEs plus DTSTART, minus EXDATEs.

        Args:
            recurrence: Recurrence data of the master event
            after: Exclusive lower bound (aware)
            lookahead: Override of the configured horizon for unbounded series

        Raises:
            RecurrenceExpansionError: If dateutil rejects the rule
        """
        after = after.astimezone(UTC)
        horizon: Optional[datetime] = None
        if not recurrence.is_bounded:
            horizon = after + (lookahead or timedelta(days=self.config.lookahead_days))

        excluded = {ex.astimezone(UTC) for ex in recurrence.exdates}
        extra = sorted({rd.astimezone(UTC) for rd in recurrence.rdates if rd.astimezone(UTC) > after})

        generated = 0
        last: Optional[datetime] = None
        for slot in heapq.merge(self._rule_slots(recurrence, after), extra):
            if horizon is not None and slot > horizon:
                logger.debug("Expansion reached lookahead horizon %s", horizon)
                return
            generated += 1
            if generated > self.config.max_occurrences:
                logger.debug(
                    "Expansion limited to %d occurrences", self.config.max_occurrences
                )
                return
            if slot == last:
                continue
            last = slot
            if slot in excluded:
                continue
            yield slot

    def expand(
        self,
        recurrence: RecurrenceSpec,
        after: datetime,
        *,
        lookahead: Optional[timedelta] = None,
    ) -> list[datetime]:
        """List form of iter_slots."""
        return list(self.iter_slots(recurrence, after, lookahead=lookahead))

    def is_slot(self, recurrence: RecurrenceSpec, instant: datetime) -> bool:
        """Whether instant is one of the series' own slots.

        Used to validate RECURRENCE-IDs of overrides. Neither the horizon
        nor the occurrence cap applies; EXDATEs are not slots.
        """
        instant = instant.astimezone(UTC)
        if instant in {ex.astimezone(UTC) for ex in recurrence.exdates}:
            return False
        if instant in {rd.astimezone(UTC) for rd in recurrence.rdates}:
            return True
        for slot in self._rule_slots(recurrence, instant - timedelta(seconds=1)):
            return slot == instant
        return False

    def _rule_slots(self, recurrence: RecurrenceSpec, after: datetime) -> Iterator[datetime]:
        seed = self._generation_start(recurrence.dtstart)
        local_after = self._to_generation_domain(after, seed)

        rule_set = rruleset()
        rule_set.rdate(seed)
        try:
            if recurrence.rule:
                rule_text = self._align_until(recurrence.rule, seed)
                parsed_rule = rrulestr(rule_text, dtstart=seed)
                if isinstance(parsed_rule, rruleset):
                    rule_set = parsed_rule
                    rule_set.rdate(seed)
                else:
                    rule_set.rrule(parsed_rule)
            if recurrence.exrule:
                rule_set.exrule(rrulestr(self._align_until(recurrence.exrule, seed), dtstart=seed))
        except (ValueError, TypeError) as e:
            raise RecurrenceExpansionError(f"Invalid recurrence rule {recurrence.rule!r}: {e}") from e

        try:
            for occurrence in rule_set.xafter(local_after, inc=False):
                yield self._to_utc(occurrence)
        except (ValueError, TypeError) as e:
            raise RecurrenceExpansionError(f"Failed to expand {recurrence.rule!r}: {e}") from e

    @staticmethod
    def _generation_start(dtstart: Union[datetime, date]) -> datetime:
        if isinstance(dtstart, datetime):
            return dtstart
        return datetime.combine(dtstart, time.min)

    def _to_generation_domain(self, instant: datetime, seed: datetime) -> datetime:
        """Express an aware instant the way the seed is expressed (aware or floating)."""
        if seed.tzinfo is not None:
            return instant
        return instant.astimezone(self.config.default_timezone).replace(tzinfo=None)

    def _to_utc(self, occurrence: datetime) -> datetime:
        if occurrence.tzinfo is None:
            occurrence = occurrence.replace(tzinfo=self.config.default_timezone)
        return occurrence.astimezone(UTC)

    def _align_until(self, rule: str, seed: datetime) -> str:
        """Rewrite UNTIL so its awareness matches DTSTART.

        dateutil refuses a UTC UNTIL with a floating DTSTART and a floating
        UNTIL with an aware DTSTART; authoring tools emit both.
        """
        match = _UNTIL_RE.search(rule)
        if not match:
            return rule

        raw = match.group(2).upper()
        is_utc = raw.endswith("Z")

        if seed.tzinfo is not None and not is_utc:
            if "T" in raw:
                local = datetime.strptime(raw, "%Y%m%dT%H%M%S")
            else:
                # DATE UNTIL is inclusive of the whole day
                local = datetime.strptime(raw, "%Y%m%d") + timedelta(days=1, seconds=-1)
            until = local.replace(tzinfo=seed.tzinfo).astimezone(UTC)
            replacement = until.strftime("%Y%m%dT%H%M%SZ")
        elif seed.tzinfo is None and is_utc:
            until = datetime.strptime(raw, "%Y%m%dT%H%M%SZ").replace(tzinfo=UTC)
            replacement = (
                until.astimezone(self.config.default_timezone)
                .replace(tzinfo=None)
                .strftime("%Y%m%dT%H%M%S")
            )
        else:
            return rule

        logger.debug("Aligned UNTIL %s -> %s", raw, replacement)
        return rule[: match.start(2)] + replacement + rule[match.end(2) :]


def first_slot(recurrence: RecurrenceSpec, config: Optional[ExpansionConfig] = None) -> datetime:
    """UTC identifier of the first instance of a series (its DTSTART)."""
    tz = (config or ExpansionConfig()).default_timezone
    dtstart = recurrence.dtstart
    if isinstance(dtstart, datetime):
        if dtstart.tzinfo is None:
            dtstart = dtstart.replace(tzinfo=tz)
        return dtstart.astimezone(UTC)
    return datetime.combine(dtstart, time.min, tzinfo=tz).astimezone(UTC)
