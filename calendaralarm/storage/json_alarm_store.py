"""JSON-file backed alarm store with atomic writes."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import tempfile
import threading
from collections.abc import AsyncIterator
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from pydantic import ValidationError

from calendaralarm.calendar.datetime_utils import ensure_utc
from calendaralarm.exceptions import AlarmStoreError

from .alarm_store import AlarmStore, InMemoryAlarmStore, is_due
from .models import AlarmEvent, AlarmKey, alarm_key

if TYPE_CHECKING:
    from calendaralarm.core.config import AlarmConfig

logger = logging.getLogger(__name__)


class JsonFileAlarmStore:
    """Persistent AlarmStore kept in a single JSON file.

    The on-disk format is a JSON array of AlarmEvent objects. Every mutation
    rewrites the file through a temporary file in the same directory and
    ``Path.replace``; when that fails the in-memory state is rolled back and
    AlarmStoreError is raised. File writes run in a worker thread and are
    serialized by a separate write lock, so readers on the event loop only
    ever wait for the map lock.
    """

    def __init__(self, path: str | os.PathLike[str]) -> None:
        """Create a JsonFileAlarmStore.

        Args:
            path: Location of the JSON file; created on first write.

        Raises:
            AlarmStoreError: If an existing file cannot be read
        """
        self._path = Path(path)
        self._lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._alarms: dict[AlarmKey, AlarmEvent] = {}
        self.load()

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> None:
        """Load the JSON file (if it exists) into memory.

        Malformed entries are skipped with a warning; an unreadable file or a
        non-array root raises AlarmStoreError.
        """
        with self._lock:
            if not self._path.exists():
                logger.debug("Alarm store file not found; starting empty: %s", self._path)
                self._alarms = {}
                return

            try:
                with self._path.open("r", encoding="utf-8") as fh:
                    data = json.load(fh)
            except (OSError, ValueError) as exc:
                raise AlarmStoreError(f"Failed to read alarm store {self._path}: {exc}") from exc
            if not isinstance(data, list):
                raise AlarmStoreError(f"Alarm store {self._path} root must be a JSON array")

            alarms: dict[AlarmKey, AlarmEvent] = {}
            for entry in data:
                try:
                    alarm = AlarmEvent.model_validate(entry)
                except ValidationError as exc:
                    logger.warning("Skipping malformed alarm entry in %s: %s", self._path, exc)
                    continue
                alarms[alarm.key] = alarm

            self._alarms = alarms
            logger.debug("Loaded alarm store %s (%d alarms)", self._path, len(self._alarms))

    def _persist(self, data: list[dict]) -> None:
        """Write a snapshot of the map to disk atomically. Blocking."""
        tmp_path: Optional[Path] = None
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w", dir=self._path.parent, delete=False, encoding="utf-8", suffix=".tmp"
            ) as tf:
                tmp_path = Path(tf.name)
                json.dump(data, tf, ensure_ascii=False)
                tf.flush()
                os.fsync(tf.fileno())
            tmp_path.replace(self._path)
        except OSError as exc:
            if tmp_path is not None:
                with contextlib.suppress(OSError):
                    tmp_path.unlink()
            raise AlarmStoreError(f"Failed to persist alarm store to {self._path}: {exc}") from exc

    def _snapshot(self) -> list[dict]:
        """JSON form of the map. Called with lock held."""
        return [alarm.to_json_dict() for alarm in self._alarms.values()]

    def _write_upsert(self, alarm_event: AlarmEvent) -> None:
        key = alarm_event.key
        with self._write_lock:
            with self._lock:
                previous = self._alarms.get(key)
                self._alarms[key] = alarm_event
                data = self._snapshot()
            try:
                self._persist(data)
            except AlarmStoreError:
                # Roll back so memory matches disk
                with self._lock:
                    if previous is None:
                        self._alarms.pop(key, None)
                    else:
                        self._alarms[key] = previous
                raise

    def _write_delete(self, key: AlarmKey) -> Optional[AlarmEvent]:
        with self._write_lock:
            with self._lock:
                previous = self._alarms.pop(key, None)
                if previous is None:
                    return None
                data = self._snapshot()
            try:
                self._persist(data)
            except AlarmStoreError:
                with self._lock:
                    self._alarms[key] = previous
                raise
        return previous

    async def find(self, event_uid: str, recipient: str) -> Optional[AlarmEvent]:
        with self._lock:
            return self._alarms.get(alarm_key(event_uid, recipient))

    async def upsert(self, alarm_event: AlarmEvent) -> None:
        await asyncio.to_thread(self._write_upsert, alarm_event)
        logger.debug("Upserted %s", alarm_event.to_short_string())

    async def delete(self, event_uid: str, recipient: str) -> None:
        previous = await asyncio.to_thread(self._write_delete, alarm_key(event_uid, recipient))
        if previous is not None:
            logger.debug("Deleted %s", previous.to_short_string())

    async def find_due_before(
        self, instant: datetime, *, only_unstarted: bool = False
    ) -> AsyncIterator[AlarmEvent]:
        instant = ensure_utc(instant)
        with self._lock:
            due = [a for a in self._alarms.values() if is_due(a, instant, only_unstarted)]
        for alarm in due:
            yield alarm

    async def find_by_event(self, event_uid: str) -> AsyncIterator[AlarmEvent]:
        with self._lock:
            matches = [a for (uid, _), a in self._alarms.items() if uid == event_uid]
        for alarm in matches:
            yield alarm

    def __len__(self) -> int:
        with self._lock:
            return len(self._alarms)


def open_alarm_store(config: Optional[AlarmConfig] = None) -> AlarmStore:
    """Store described by the configuration.

    A JsonFileAlarmStore when ``store_path`` is set, otherwise an empty
    InMemoryAlarmStore.
    """
    if config is not None and config.store_path:
        logger.info("Using JSON alarm store at %s", config.store_path)
        return JsonFileAlarmStore(config.store_path)
    logger.info("Using in-memory alarm store")
    return InMemoryAlarmStore()
