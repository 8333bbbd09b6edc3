"""Shared fixtures for calendaralarm tests: ICS builders, clocks and stores."""

from collections.abc import Callable, Generator, Iterable, Sequence
from datetime import datetime, timezone
from typing import Any, Optional

import pytest

from calendaralarm.core.clock import FixedClock, set_clock
from calendaralarm.storage.alarm_store import InMemoryAlarmStore

ORGANIZER = "organizer@example.com"
ALICE = "alice@example.com"
BOB = "bob@example.com"


def pytest_configure(config: Any) -> None:
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Fast unit tests")
    config.addinivalue_line("markers", "integration: Tests crossing several modules")


def build_vevent(
    uid: str = "event-1@example.com",
    dtstart: str = "DTSTART;TZID=Asia/Bangkok:20251001T110000",
    dtend: Optional[str] = "DTEND;TZID=Asia/Bangkok:20251001T120000",
    rrule: Optional[str] = None,
    organizer: Optional[str] = ORGANIZER,
    attendees: Iterable[tuple[str, str]] = ((ALICE, "ACCEPTED"),),
    triggers: Sequence[str] = ("-PT10M",),
    action: str = "EMAIL",
    recurrence_id: Optional[str] = None,
    extra: Sequence[str] = (),
) -> str:
    """Return the text of one VEVENT block.

    Triggers are raw TRIGGER property tails, e.g. ``-PT10M`` or
    ``;RELATED=END:PT5M``; a tail starting with ``;`` carries parameters.
    """
    lines = ["BEGIN:VEVENT", f"UID:{uid}", "DTSTAMP:20250901T000000Z", dtstart]
    if dtend:
        lines.append(dtend)
    if recurrence_id:
        lines.append(recurrence_id)
    if rrule:
        lines.append(f"RRULE:{rrule}")
    lines.append("SUMMARY:Planning")
    if organizer:
        lines.append(f"ORGANIZER;CN=Organizer:mailto:{organizer}")
    for address, partstat in attendees:
        lines.append(f"ATTENDEE;PARTSTAT={partstat};CN={address.split('@')[0]}:mailto:{address}")
    lines.extend(extra)
    for trigger in triggers:
        trigger_line = f"TRIGGER{trigger}" if trigger.startswith(";") else f"TRIGGER:{trigger}"
        lines.extend(["BEGIN:VALARM", f"ACTION:{action}", trigger_line, "END:VALARM"])
    lines.append("END:VEVENT")
    return "\r\n".join(lines)


def build_calendar(*vevents: str) -> str:
    """Wrap VEVENT blocks into a VCALENDAR."""
    return "\r\n".join(
        ["BEGIN:VCALENDAR", "VERSION:2.0", "PRODID:-//calendaralarm tests//EN", *vevents, "END:VCALENDAR"]
    ) + "\r\n"


@pytest.fixture
def make_vevent() -> Callable[..., str]:
    """Builder for VEVENT text; see build_vevent for the parameters."""
    return build_vevent


@pytest.fixture
def make_calendar() -> Callable[..., str]:
    """Builder wrapping VEVENT blocks into a calendar."""
    return build_calendar


@pytest.fixture
def daily_series_ics() -> str:
    """Three daily occurrences at 11:00 Asia/Bangkok from 2025-10-01, -PT10M EMAIL alarm.

    Slots (UTC): 2025-10-01T04:00Z, 2025-10-02T04:00Z, 2025-10-03T04:00Z.
    Organizer plus ALICE (ACCEPTED).
    """
    return build_calendar(build_vevent(rrule="FREQ=DAILY;COUNT=3"))


@pytest.fixture
def single_event_ics() -> str:
    """Non-recurring event 2025-10-01 11:00-12:00 Asia/Bangkok with a -PT10M alarm."""
    return build_calendar(build_vevent())


@pytest.fixture
def before_series() -> datetime:
    """2025-10-01T07:00+07:00, well before the first occurrence."""
    return datetime(2025, 10, 1, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def after_first_occurrence() -> datetime:
    """2025-10-01T12:00+07:00, after the first occurrence started."""
    return datetime(2025, 10, 1, 5, 0, tzinfo=timezone.utc)


@pytest.fixture
def fixed_clock(before_series: datetime) -> Generator[FixedClock, Any, None]:
    """FixedClock installed as the process clock for the duration of a test."""
    clock = FixedClock(before_series)
    previous = set_clock(clock)
    yield clock
    set_clock(previous)


@pytest.fixture
def memory_store() -> InMemoryAlarmStore:
    return InMemoryAlarmStore()


@pytest.fixture(autouse=True)
def clean_test_environment(monkeypatch: Any) -> Generator[None, Any, None]:
    """Ensure calendaralarm environment variables do not leak into tests."""
    for name in (
        "CALENDARALARM_TEST_TIME",
        "CALENDARALARM_DEBUG",
        "CALENDARALARM_LOG_LEVEL",
        "CALENDARALARM_LOOKAHEAD_DAYS",
        "CALENDARALARM_MAX_OCCURRENCES",
        "CALENDARALARM_ALLOWED_ACTIONS",
        "CALENDARALARM_RECIPIENT_WHITELIST",
        "CALENDARALARM_ALLOWED_DOMAINS",
        "CALENDARALARM_DEFAULT_TIMEZONE",
        "CALENDARALARM_STORE_PATH",
    ):
        monkeypatch.delenv(name, raising=False)
    yield
