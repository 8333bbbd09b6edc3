"""Reconciliation engine: drives the alarm store from calendar notifications.

Every notification fully recomputes the desired alarm of each affected
recipient and applies it as an idempotent upsert or delete, so redelivered or
reordered notifications converge on the same store contents.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Union

from calendaralarm.calendar.event_adapter import CalendarEventAdapter
from calendaralarm.calendar.models import normalize_address
from calendaralarm.core.clock import Clock, get_clock
from calendaralarm.core.config import AlarmConfig
from calendaralarm.core.logging_config import notification_context
from calendaralarm.exceptions import (
    AlarmStoreError,
    CalendarParseError,
    NotificationDecodeError,
    ReconciliationError,
)
from calendaralarm.storage.alarm_store import AlarmStore
from calendaralarm.storage.models import AlarmEvent

from .alarm_calculator import NextAlarmCalculator
from .notifications import (
    EventDeletedNotification,
    EventUpsertNotification,
    Notification,
    NotificationKind,
    decode_notification,
)
from .recipient_policy import RecipientPolicy, build_recipient_policy

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationResult:
    """Outcome of reconciling one notification (or one fired alarm).

    Recipient lists hold normalized addresses.
    """

    event_uid: Optional[str] = None
    notification_id: Optional[str] = None
    created: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)
    dropped: bool = False
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.dropped and not self.failures and not self.errors

    @property
    def changed(self) -> bool:
        return bool(self.created or self.updated or self.deleted)

    def add_warning(self, message: str) -> None:
        """Add a warning message."""
        self.warnings.append(message)
        logger.warning("[%s] %s", self.event_uid or "-", message)

    def add_error(self, message: str) -> None:
        """Add an error message."""
        self.errors.append(message)
        logger.error("[%s] %s", self.event_uid or "-", message)

    def drop(self, reason: str) -> None:
        """Mark the notification as dropped without any store mutation."""
        self.dropped = True
        self.add_warning(f"Dropped: {reason}")

    def summary(self) -> dict[str, Any]:
        return {
            "event_uid": self.event_uid,
            "notification_id": self.notification_id,
            "created": len(self.created),
            "updated": len(self.updated),
            "unchanged": len(self.unchanged),
            "deleted": len(self.deleted),
            "failed": len(self.failures),
            "dropped": self.dropped,
        }


class AlarmReconciler:
    """Keeps the alarm store in step with calendar change notifications.

    Collaborators are injected: the store, a Clock (process default when
    omitted), a recipient policy (built from config when omitted) and the
    configuration driving expansion limits and allowed VALARM actions.
    """

    def __init__(
        self,
        store: AlarmStore,
        clock: Optional[Clock] = None,
        policy: Optional[RecipientPolicy] = None,
        config: Optional[AlarmConfig] = None,
    ):
        self.store = store
        self.config = config or AlarmConfig()
        self.clock = clock or get_clock()
        self.policy = policy or build_recipient_policy(self.config)
        self.calculator = NextAlarmCalculator(self.config)

    # Entry points

    async def handle(self, notification: Notification) -> ReconciliationResult:
        """Reconcile the store with one notification.

        Raises:
            AlarmStoreError: If the store fails (propagated immediately)
            ReconciliationError: If some recipients hit unexpected faults;
                all other recipients were reconciled first
        """
        with notification_context(notification.notification_id):
            if isinstance(notification, EventDeletedNotification):
                return await self._handle_deleted(notification)
            if isinstance(notification, EventUpsertNotification):
                return await self._handle_upsert(notification)
            raise TypeError(f"Unsupported notification type: {type(notification).__name__}")

    async def handle_raw(
        self,
        kind: Union[str, NotificationKind],
        body: Union[str, bytes, Mapping[str, Any]],
    ) -> ReconciliationResult:
        """Decode a transport message body and reconcile it.

        Undecodable bodies are dropped with a warning.
        """
        try:
            notification = decode_notification(kind, body)
        except NotificationDecodeError as e:
            result = ReconciliationResult()
            result.drop(f"undecodable {kind} notification: {e}")
            return result
        return await self.handle(notification)

    async def handle_fired(self, alarm_event: AlarmEvent) -> ReconciliationResult:
        """Advance or remove an alarm after the firing consumer sent it.

        Recurring alarms are recomputed from their ICS snapshot for the
        occurrences after the one just fired; the alarm is replaced with the
        next one or deleted when the series is exhausted. Non-recurring alarms
        are deleted. If the stored alarm no longer equals alarm_event a newer
        notification already replaced it and nothing is done.
        """
        result = ReconciliationResult(event_uid=alarm_event.event_uid)
        recipient = alarm_event.recipient

        stored = await self.store.find(alarm_event.event_uid, recipient)
        if stored is None:
            logger.debug("Fired alarm already gone: %s", alarm_event.to_short_string())
            return result
        if stored != alarm_event:
            logger.debug("Fired alarm superseded: %s", alarm_event.to_short_string())
            result.unchanged.append(recipient)
            return result

        if not alarm_event.recurring:
            await self._delete_if_present(alarm_event.event_uid, recipient, result)
            return result

        try:
            event = CalendarEventAdapter.from_ics(
                alarm_event.ics, default_timezone=self.config.tzinfo
            )
        except CalendarParseError as e:
            result.add_warning(f"Stored snapshot unparseable, removing alarm: {e}")
            await self._delete_if_present(alarm_event.event_uid, recipient, result)
            return result

        # Occurrences starting at or before the fired one are behind us
        decision = self.calculator.compute(
            event, recipient, self.clock.now(), after=alarm_event.event_start_time
        )
        if decision is None or not self.policy.allows(recipient):
            await self._delete_if_present(alarm_event.event_uid, recipient, result)
            return result

        next_alarm = alarm_event.with_next_occurrence(decision)
        await self.store.upsert(next_alarm)
        result.updated.append(recipient)
        logger.info("Advanced recurring alarm: %s", next_alarm.to_short_string())
        return result

    # Notification paths

    async def _handle_upsert(self, notification: EventUpsertNotification) -> ReconciliationResult:
        result = ReconciliationResult(notification_id=notification.notification_id)
        if notification.is_import:
            logger.info("Import notification for %s", notification.event_path)

        try:
            event = self._parse(notification.calendar_payload)
        except CalendarParseError as e:
            result.drop(f"unparseable payload for {notification.event_path}: {e}")
            return result

        uid = event.uid
        result.event_uid = uid
        now = self.clock.now()
        current = event.participants()

        stale: set[str] = set()
        if notification.previous_calendar_payload:
            try:
                previous = self._parse(notification.previous_calendar_payload)
            except CalendarParseError as e:
                result.add_warning(f"Previous payload unparseable: {e}")
            else:
                if previous.uid == uid:
                    stale |= previous.participants()
        stale |= await self._stored_recipients(uid)
        stale -= current

        failures: dict[str, BaseException] = {}
        for recipient in sorted(current):
            try:
                await self._reconcile_recipient(event, recipient, now, notification, result)
            except AlarmStoreError:
                raise
            except Exception as e:
                logger.exception("Failed to reconcile %s for event %s", recipient, uid)
                failures[recipient] = e
                result.failures[recipient] = str(e)

        for recipient in sorted(stale):
            await self._delete_if_present(uid, recipient, result)

        logger.info("Reconciled %s %s: %s", notification.kind.value, uid, result.summary())
        if failures:
            raise ReconciliationError(
                f"{len(failures)} recipient(s) of {uid} could not be reconciled",
                failures,
                result,
            )
        return result

    async def _handle_deleted(self, notification: EventDeletedNotification) -> ReconciliationResult:
        result = ReconciliationResult(notification_id=notification.notification_id)

        recipients: set[str] = set()
        try:
            event = self._parse(notification.calendar_payload)
        except CalendarParseError as e:
            result.drop(f"unparseable payload for {notification.event_path}: {e}")
            return result

        uid = event.uid
        result.event_uid = uid
        recipients |= event.participants()
        recipients |= await self._stored_recipients(uid)

        for recipient in sorted(recipients):
            await self._delete_if_present(uid, recipient, result)

        logger.info("Reconciled %s %s: %s", notification.kind.value, uid, result.summary())
        return result

    async def _reconcile_recipient(
        self,
        event: CalendarEventAdapter,
        recipient: str,
        now: datetime,
        notification: EventUpsertNotification,
        result: ReconciliationResult,
    ) -> None:
        decision = self.calculator.compute(event, recipient, now)
        if decision is None:
            await self._delete_if_present(event.uid, recipient, result)
            return
        if not self.policy.allows(recipient):
            logger.debug("Recipient %s denied by %r", recipient, self.policy)
            await self._delete_if_present(event.uid, recipient, result)
            return

        desired = AlarmEvent.from_decision(
            event.uid,
            recipient,
            decision,
            ics=notification.calendar_payload,
            event_path=notification.event_path,
        )
        stored = await self.store.find(event.uid, recipient)
        if stored == desired:
            result.unchanged.append(desired.recipient)
            return

        await self.store.upsert(desired)
        if stored is None:
            result.created.append(desired.recipient)
        else:
            result.updated.append(desired.recipient)
        logger.debug("Scheduled %s", desired.to_short_string())

    # Helpers

    def _parse(self, payload: str) -> CalendarEventAdapter:
        return CalendarEventAdapter.from_ics(payload, default_timezone=self.config.tzinfo)

    async def _stored_recipients(self, event_uid: str) -> set[str]:
        return {alarm.recipient async for alarm in self.store.find_by_event(event_uid)}

    async def _delete_if_present(
        self, event_uid: str, recipient: str, result: ReconciliationResult
    ) -> None:
        if await self.store.find(event_uid, recipient) is None:
            return
        await self.store.delete(event_uid, recipient)
        result.deleted.append(normalize_address(recipient))


async def fire_due_alarms(
    reconciler: AlarmReconciler,
    instant: Optional[datetime] = None,
    *,
    only_unstarted: bool = False,
) -> list[AlarmEvent]:
    """Collect alarms due at instant and advance each through handle_fired.

    Returns the alarms that were due, as they were before advancing. Sending
    them is left to the caller.
    """
    instant = instant or reconciler.clock.now()
    due = [
        alarm
        async for alarm in reconciler.store.find_due_before(instant, only_unstarted=only_unstarted)
    ]
    for alarm in due:
        await reconciler.handle_fired(alarm)
    return due

