"""Unit tests for calendaralarm.domain.reconciler."""

import json
from datetime import datetime, timedelta, timezone

import pytest

from calendaralarm.core.clock import FixedClock
from calendaralarm.core.config import AlarmConfig
from calendaralarm.domain.notifications import (
    EventDeletedNotification,
    EventUpsertNotification,
    NotificationKind,
)
from calendaralarm.domain.recipient_policy import WhitelistRecipientPolicy
from calendaralarm.domain.reconciler import AlarmReconciler, ReconciliationResult, fire_due_alarms
from calendaralarm.exceptions import AlarmStoreError, ReconciliationError
from calendaralarm.storage.alarm_store import InMemoryAlarmStore
from calendaralarm.storage.json_alarm_store import JsonFileAlarmStore
from calendaralarm.storage.models import AlarmEvent

pytestmark = pytest.mark.unit

UTC = timezone.utc
EVENT_PATH = "/calendars/base-1/cal-1/event-1.ics"
UID = "event-1@example.com"
ORGANIZER = "organizer@example.com"
ALICE = "alice@example.com"
BOB = "bob@example.com"


def _utc(day: int, hour: int = 4, minute: int = 0) -> datetime:
    return datetime(2025, 10, day, hour, minute, tzinfo=UTC)


def _upsert(payload, previous=None, kind=NotificationKind.UPDATED):
    return EventUpsertNotification(
        event_path=EVENT_PATH,
        calendar_payload=payload,
        previous_calendar_payload=previous,
        kind=kind,
    )


def _deleted(payload):
    return EventDeletedNotification(event_path=EVENT_PATH, calendar_payload=payload)


@pytest.fixture
def clock(before_series):
    return FixedClock(before_series)


@pytest.fixture
def reconciler(memory_store, clock):
    return AlarmReconciler(memory_store, clock=clock)


class FailingStore(InMemoryAlarmStore):
    """In-memory store whose writes fail."""

    async def upsert(self, alarm_event):
        raise AlarmStoreError("store offline")


class TestReconciliationResult:
    """Tests for the ReconciliationResult bookkeeping."""

    def test_defaults(self):
        result = ReconciliationResult()
        assert result.success
        assert not result.changed

    def test_drop_marks_failure(self):
        result = ReconciliationResult(event_uid=UID)
        result.drop("bad payload")

        assert result.dropped
        assert not result.success
        assert result.warnings == ["Dropped: bad payload"]

    def test_summary_counts(self):
        result = ReconciliationResult(event_uid=UID, created=[ALICE], deleted=[BOB])
        result.failures[ORGANIZER] = "boom"

        summary = result.summary()

        assert summary["created"] == 1
        assert summary["deleted"] == 1
        assert summary["failed"] == 1
        assert result.changed
        assert not result.success


class TestUpsert:
    """Tests for created/updated/request notifications."""

    @pytest.mark.asyncio
    async def test_creates_alarm_per_participant(self, reconciler, memory_store, daily_series_ics):
        result = await reconciler.handle(_upsert(daily_series_ics, kind=NotificationKind.CREATED))

        assert result.event_uid == UID
        assert sorted(result.created) == [ALICE, ORGANIZER]
        assert result.success

        alarm = await memory_store.find(UID, ALICE)
        assert alarm.alarm_time == _utc(1, hour=3, minute=50)
        assert alarm.event_start_time == _utc(1)
        assert alarm.recurring is True
        assert alarm.recurrence_id is None
        assert alarm.ics == daily_series_ics
        assert alarm.event_path == EVENT_PATH
        assert alarm.action == "EMAIL"

    @pytest.mark.asyncio
    async def test_redelivery_is_a_no_op(self, reconciler, memory_store, daily_series_ics):
        await reconciler.handle(_upsert(daily_series_ics))
        before = memory_store.snapshot()

        result = await reconciler.handle(_upsert(daily_series_ics))

        assert sorted(result.unchanged) == [ALICE, ORGANIZER]
        assert not result.changed
        assert memory_store.snapshot() == before

    @pytest.mark.asyncio
    async def test_rescheduled_event_updates(self, reconciler, memory_store, make_vevent, make_calendar):
        await reconciler.handle(_upsert(make_calendar(make_vevent())))
        before = await memory_store.find(UID, ORGANIZER)
        moved = make_calendar(make_vevent(dtstart="DTSTART;TZID=Asia/Bangkok:20251001T150000", dtend=None))

        result = await reconciler.handle(_upsert(moved))

        assert sorted(result.updated) == [ALICE, ORGANIZER]
        alarm = await memory_store.find(UID, ORGANIZER)
        assert alarm.event_start_time == _utc(1, hour=8)
        assert alarm.recurring is False
        # The alarm moves with the event and keeps its trigger offset
        assert alarm.alarm_time - before.alarm_time == timedelta(hours=4)
        assert alarm.event_start_time - alarm.alarm_time == timedelta(minutes=10)

    @pytest.mark.asyncio
    async def test_rescheduled_series_updates(self, reconciler, memory_store, daily_series_ics, make_vevent, make_calendar):
        await reconciler.handle(_upsert(daily_series_ics))
        before = await memory_store.find(UID, ALICE)
        moved = make_calendar(
            make_vevent(
                dtstart="DTSTART;TZID=Asia/Bangkok:20251001T150000",
                dtend="DTEND;TZID=Asia/Bangkok:20251001T160000",
                rrule="FREQ=DAILY;COUNT=3",
            )
        )

        result = await reconciler.handle(_upsert(moved, previous=daily_series_ics))

        assert sorted(result.updated) == [ALICE, ORGANIZER]
        alarm = await memory_store.find(UID, ALICE)
        assert alarm.recurring is True
        assert alarm.recurrence_id is None
        assert alarm.event_start_time == _utc(1, hour=8)
        assert alarm.event_start_time - before.event_start_time == timedelta(hours=4)
        assert alarm.alarm_time - before.alarm_time == timedelta(hours=4)
        assert alarm.event_start_time - alarm.alarm_time == timedelta(minutes=10)

    @pytest.mark.asyncio
    async def test_decline_removes_and_accept_restores(
        self, reconciler, memory_store, make_vevent, make_calendar
    ):
        series = "FREQ=DAILY;COUNT=3"
        await reconciler.handle(_upsert(make_calendar(make_vevent(rrule=series))))

        declined = make_calendar(make_vevent(rrule=series, attendees=((ALICE, "DECLINED"),)))
        result = await reconciler.handle(_upsert(declined))
        assert result.deleted == [ALICE]
        # New snapshot, same alarm time
        assert result.updated == [ORGANIZER]
        assert await memory_store.find(UID, ALICE) is None

        accepted = make_calendar(make_vevent(rrule=series, attendees=((ALICE, "ACCEPTED"),)))
        result = await reconciler.handle(_upsert(accepted))
        assert result.created == [ALICE]
        assert await memory_store.find(UID, ALICE) is not None

    @pytest.mark.asyncio
    async def test_removed_attendee_is_deleted(self, reconciler, memory_store, make_vevent, make_calendar):
        with_bob = make_calendar(make_vevent(attendees=((ALICE, "ACCEPTED"), (BOB, "ACCEPTED"))))
        await reconciler.handle(_upsert(with_bob))
        assert await memory_store.find(UID, BOB) is not None

        result = await reconciler.handle(_upsert(make_calendar(make_vevent())))

        assert result.deleted == [BOB]
        assert await memory_store.find(UID, BOB) is None
        assert await memory_store.find(UID, ALICE) is not None

    @pytest.mark.asyncio
    async def test_new_attendee_keeps_existing_alarm_times(
        self, reconciler, memory_store, make_vevent, make_calendar
    ):
        """Test adding an attendee leaves the other alarms at the same instant."""
        await reconciler.handle(_upsert(make_calendar(make_vevent())))
        organizer_alarm = await memory_store.find(UID, ORGANIZER)

        with_bob = make_calendar(make_vevent(attendees=((ALICE, "ACCEPTED"), (BOB, "ACCEPTED"))))
        result = await reconciler.handle(_upsert(with_bob))

        assert result.created == [BOB]
        assert result.deleted == []
        refreshed = await memory_store.find(UID, ORGANIZER)
        assert refreshed.alarm_time == organizer_alarm.alarm_time
        assert refreshed.ics == with_bob

    @pytest.mark.asyncio
    async def test_previous_payload_participants_are_cleared(
        self, reconciler, memory_store, make_vevent, make_calendar
    ):
        old = make_calendar(make_vevent(attendees=((ALICE, "ACCEPTED"), (BOB, "ACCEPTED"))))
        new = make_calendar(make_vevent())
        await reconciler.handle(_upsert(old))

        result = await reconciler.handle(_upsert(new, previous=old))

        assert result.deleted == [BOB]

    @pytest.mark.asyncio
    async def test_unparseable_previous_payload_warns(self, reconciler, single_event_ics):
        empty = "BEGIN:VCALENDAR\r\nEND:VCALENDAR\r\n"
        result = await reconciler.handle(_upsert(single_event_ics, previous=empty))

        assert sorted(result.created) == [ALICE, ORGANIZER]
        assert any("Previous payload" in w for w in result.warnings)

    @pytest.mark.asyncio
    async def test_past_event_clears_alarms(
        self, reconciler, memory_store, clock, single_event_ics, after_first_occurrence
    ):
        await reconciler.handle(_upsert(single_event_ics))
        clock.set(after_first_occurrence)

        result = await reconciler.handle(_upsert(single_event_ics))

        assert sorted(result.deleted) == [ALICE, ORGANIZER]
        assert len(memory_store) == 0

    @pytest.mark.asyncio
    async def test_cancelled_series_clears_alarms(self, reconciler, memory_store, make_vevent, make_calendar):
        series = "FREQ=DAILY;COUNT=3"
        await reconciler.handle(_upsert(make_calendar(make_vevent(rrule=series))))

        cancelled = make_calendar(make_vevent(rrule=series, extra=["STATUS:CANCELLED"]))
        result = await reconciler.handle(_upsert(cancelled))

        assert sorted(result.deleted) == [ALICE, ORGANIZER]
        assert len(memory_store) == 0

    @pytest.mark.asyncio
    async def test_policy_denial_deletes(self, memory_store, clock, single_event_ics):
        await AlarmReconciler(memory_store, clock=clock).handle(_upsert(single_event_ics))
        reconciler = AlarmReconciler(memory_store, clock=clock, policy=WhitelistRecipientPolicy([ALICE]))

        result = await reconciler.handle(_upsert(single_event_ics))

        assert result.deleted == [ORGANIZER]
        assert result.unchanged == [ALICE]
        assert await memory_store.find(UID, ORGANIZER) is None

    @pytest.mark.asyncio
    async def test_config_whitelist_is_applied(self, memory_store, clock, single_event_ics):
        config = AlarmConfig.from_dict({"recipient_whitelist": [ORGANIZER]})
        reconciler = AlarmReconciler(memory_store, clock=clock, config=config)

        result = await reconciler.handle(_upsert(single_event_ics))

        assert result.created == [ORGANIZER]
        assert await memory_store.find(UID, ALICE) is None

    @pytest.mark.asyncio
    async def test_unparseable_payload_is_dropped(self, reconciler, memory_store, single_event_ics):
        await reconciler.handle(_upsert(single_event_ics))
        before = memory_store.snapshot()

        result = await reconciler.handle(_upsert("BEGIN:VCALENDAR\r\nEND:VCALENDAR\r\n"))

        assert result.dropped
        assert result.event_uid is None
        assert memory_store.snapshot() == before

    @pytest.mark.asyncio
    async def test_recipient_fault_is_isolated(self, reconciler, memory_store, single_event_ics, monkeypatch):
        compute = reconciler.calculator.compute

        def flaky_compute(event, recipient, now):
            if recipient == ALICE:
                raise RuntimeError("unexpected")
            return compute(event, recipient, now)

        monkeypatch.setattr(reconciler.calculator, "compute", flaky_compute)

        with pytest.raises(ReconciliationError) as excinfo:
            await reconciler.handle(_upsert(single_event_ics))

        error = excinfo.value
        assert list(error.failures) == [ALICE]
        assert isinstance(error.failures[ALICE], RuntimeError)
        assert error.result.created == [ORGANIZER]
        assert error.result.failures == {ALICE: "unexpected"}
        assert await memory_store.find(UID, ORGANIZER) is not None
        assert await memory_store.find(UID, ALICE) is None

    @pytest.mark.asyncio
    async def test_store_error_propagates(self, clock, single_event_ics):
        reconciler = AlarmReconciler(FailingStore(), clock=clock)
        with pytest.raises(AlarmStoreError, match="store offline"):
            await reconciler.handle(_upsert(single_event_ics))


class TestDeleted:
    """Tests for deleted/cancel notifications."""

    @pytest.mark.asyncio
    async def test_deletes_every_participant(self, reconciler, memory_store, daily_series_ics):
        await reconciler.handle(_upsert(daily_series_ics))

        result = await reconciler.handle(_deleted(daily_series_ics))

        assert sorted(result.deleted) == [ALICE, ORGANIZER]
        assert len(memory_store) == 0

    @pytest.mark.asyncio
    async def test_deletes_recipients_only_held_in_store(
        self, reconciler, memory_store, daily_series_ics, single_event_ics
    ):
        await reconciler.handle(_upsert(daily_series_ics))
        stray = AlarmEvent(
            event_uid=UID,
            recipient=BOB,
            alarm_time=_utc(1, hour=3),
            event_start_time=_utc(1),
            ics=single_event_ics,
        )
        await memory_store.upsert(stray)

        result = await reconciler.handle(_deleted(single_event_ics))

        assert sorted(result.deleted) == [ALICE, BOB, ORGANIZER]
        assert len(memory_store) == 0

    @pytest.mark.asyncio
    async def test_delete_is_idempotent(self, reconciler, single_event_ics):
        result = await reconciler.handle(_deleted(single_event_ics))
        assert result.deleted == []
        assert result.success

    @pytest.mark.asyncio
    async def test_unparseable_payload_is_dropped(self, reconciler, memory_store, single_event_ics):
        await reconciler.handle(_upsert(single_event_ics))

        result = await reconciler.handle(_deleted("BEGIN:VCALENDAR\r\nEND:VCALENDAR\r\n"))

        assert result.dropped
        assert len(memory_store) == 2


class TestHandleRaw:
    """Tests for decoding plus reconciling transport bodies."""

    @pytest.mark.asyncio
    async def test_valid_body(self, reconciler, memory_store, single_event_ics):
        body = json.dumps({"eventPath": EVENT_PATH, "rawEvent": single_event_ics})

        result = await reconciler.handle_raw("created", body)

        assert sorted(result.created) == [ALICE, ORGANIZER]
        assert len(memory_store) == 2

    @pytest.mark.asyncio
    async def test_undecodable_body_is_dropped(self, reconciler, memory_store):
        result = await reconciler.handle_raw("created", "{not json")

        assert result.dropped
        assert not result.success
        assert len(memory_store) == 0


class TestHandleFired:
    """Tests for advancing alarms after they fired."""

    @pytest.mark.asyncio
    async def test_recurring_alarm_advances(self, reconciler, memory_store, clock, daily_series_ics):
        await reconciler.handle(_upsert(daily_series_ics))
        fired = await memory_store.find(UID, ALICE)
        clock.set(fired.alarm_time)

        result = await reconciler.handle_fired(fired)

        assert result.updated == [ALICE]
        advanced = await memory_store.find(UID, ALICE)
        assert advanced.event_start_time == _utc(2)
        assert advanced.alarm_time == _utc(2, hour=3, minute=50)
        assert advanced.recurrence_id == "2025-10-02T04:00:00Z"
        assert advanced.ics == fired.ics

    @pytest.mark.asyncio
    async def test_long_trigger_keeps_its_offset(self, reconciler, memory_store, clock, make_vevent, make_calendar):
        """Test a trigger longer than the series interval is not clamped to the fired start."""
        ics = make_calendar(make_vevent(rrule="FREQ=DAILY;COUNT=5", triggers=("-PT25H",)))
        await reconciler.handle(_upsert(ics))
        fired = await memory_store.find(UID, ALICE)
        # First alarm (2025-09-30T03:00Z) already elapsed when the event arrived
        assert fired.alarm_time == _utc(1, hour=0)
        assert fired.event_start_time == _utc(1)

        await reconciler.handle_fired(fired)

        advanced = await memory_store.find(UID, ALICE)
        assert advanced.event_start_time == _utc(2)
        assert advanced.alarm_time == _utc(1, hour=3)
        assert advanced.event_start_time - advanced.alarm_time == timedelta(hours=25)

        clock.set(advanced.alarm_time)
        await reconciler.handle_fired(advanced)

        again = await memory_store.find(UID, ALICE)
        assert again.event_start_time == _utc(3)
        assert again.alarm_time == _utc(2, hour=3)

    @pytest.mark.asyncio
    async def test_exhausted_series_is_deleted(self, reconciler, memory_store, clock, daily_series_ics):
        clock.set(_utc(3, hour=0))
        await reconciler.handle(_upsert(daily_series_ics))
        fired = await memory_store.find(UID, ALICE)
        assert fired.recurrence_id == "2025-10-03T04:00:00Z"

        result = await reconciler.handle_fired(fired)

        assert result.deleted == [ALICE]
        assert await memory_store.find(UID, ALICE) is None

    @pytest.mark.asyncio
    async def test_single_alarm_is_deleted(self, reconciler, memory_store, single_event_ics):
        await reconciler.handle(_upsert(single_event_ics))
        fired = await memory_store.find(UID, ORGANIZER)

        result = await reconciler.handle_fired(fired)

        assert result.deleted == [ORGANIZER]
        assert await memory_store.find(UID, ORGANIZER) is None
        assert await memory_store.find(UID, ALICE) is not None

    @pytest.mark.asyncio
    async def test_superseded_alarm_is_left_alone(self, reconciler, memory_store, single_event_ics):
        await reconciler.handle(_upsert(single_event_ics))
        stored = await memory_store.find(UID, ALICE)
        stale = stored.model_copy(update={"alarm_time": stored.alarm_time - timedelta(hours=1)})

        result = await reconciler.handle_fired(stale)

        assert result.unchanged == [ALICE]
        assert not result.changed
        assert await memory_store.find(UID, ALICE) == stored

    @pytest.mark.asyncio
    async def test_missing_alarm_is_ignored(self, reconciler, single_event_ics):
        ghost = AlarmEvent(
            event_uid=UID,
            recipient=ALICE,
            alarm_time=_utc(1, hour=3, minute=50),
            event_start_time=_utc(1),
            ics=single_event_ics,
        )
        result = await reconciler.handle_fired(ghost)
        assert not result.changed
        assert result.unchanged == []

    @pytest.mark.asyncio
    async def test_unparseable_snapshot_is_deleted(self, reconciler, memory_store):
        broken = AlarmEvent(
            event_uid=UID,
            recipient=ALICE,
            alarm_time=_utc(1, hour=3, minute=50),
            event_start_time=_utc(1),
            recurring=True,
            ics="BEGIN:VCALENDAR\r\nEND:VCALENDAR\r\n",
        )
        await memory_store.upsert(broken)

        result = await reconciler.handle_fired(broken)

        assert result.deleted == [ALICE]
        assert result.warnings
        assert len(memory_store) == 0


class TestFireDueAlarms:
    """Tests for the fire_due_alarms sweep."""

    @pytest.mark.asyncio
    async def test_sweep_advances_due_alarms(self, reconciler, memory_store, clock, daily_series_ics):
        await reconciler.handle(_upsert(daily_series_ics))
        clock.set(_utc(1, hour=3, minute=55))

        due = await fire_due_alarms(reconciler)

        assert sorted(a.recipient for a in due) == [ALICE, ORGANIZER]
        assert all(a.event_start_time == _utc(1) for a in due)
        for recipient in (ALICE, ORGANIZER):
            advanced = await memory_store.find(UID, recipient)
            assert advanced.event_start_time == _utc(2)

    @pytest.mark.asyncio
    async def test_nothing_due(self, reconciler, memory_store, daily_series_ics):
        await reconciler.handle(_upsert(daily_series_ics))
        before = memory_store.snapshot()

        assert await fire_due_alarms(reconciler) == []
        assert memory_store.snapshot() == before


@pytest.mark.integration
class TestWithJsonStore:
    """Reconciling against the JSON file store."""

    @pytest.mark.asyncio
    async def test_alarms_survive_restart(self, tmp_path, clock, daily_series_ics):
        path = tmp_path / "alarms.json"
        reconciler = AlarmReconciler(JsonFileAlarmStore(path), clock=clock)
        await reconciler.handle(_upsert(daily_series_ics))

        restarted = AlarmReconciler(JsonFileAlarmStore(path), clock=clock)
        result = await restarted.handle(_upsert(daily_series_ics))

        assert sorted(result.unchanged) == [ALICE, ORGANIZER]
        assert len(restarted.store) == 2

        await restarted.handle(_deleted(daily_series_ics))
        assert json.loads(path.read_text()) == []
