"""JSON file persistence for schedule records."""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path

from pydantic import ValidationError

from tempo.config.constants import SCHEDULES_FILE
from tempo.core.errors import StorageError
from tempo.scheduler.models import ScheduleKind, ScheduleRecord

logger = logging.getLogger("tempo.scheduler.store")


class ScheduleStore:
    """Load/save schedule records from a JSON file.

    Uses atomic writes (write to .tmp, then replace) to prevent corruption.
    Records are handed out as copies; callers read-modify-write through
    ``put``/``update`` so every write is a whole-record replacement. Keyed
    operations run under one re-entrant lock, which makes ``claim`` a real
    compare-and-set within the process.
    """

    def __init__(self, path: Path | None = None) -> None:
        self._path = path or SCHEDULES_FILE
        self._records: dict[str, ScheduleRecord] = {}
        self._lock = threading.RLock()
        self.skipped = 0
        self.load()

    # -- Persistence -----------------------------------------------------------

    def load(self) -> None:
        """Load records from disk, skipping any that fail validation."""
        with self._lock:
            self._records.clear()
            self.skipped = 0
            if not self._path.exists():
                return
            try:
                data = json.loads(self._path.read_text(encoding="utf-8"))
            except (json.JSONDecodeError, OSError) as exc:
                logger.warning("Failed to load schedules from %s: %s", self._path, exc)
                return
            if not isinstance(data, list):
                logger.warning("Ignoring %s: expected a list of records", self._path)
                return

            for raw in data:
                try:
                    record = ScheduleRecord.model_validate(raw)
                except ValidationError as exc:
                    self.skipped += 1
                    record_id = raw.get("id", "?") if isinstance(raw, dict) else "?"
                    logger.warning("Skipping corrupt schedule %s: %s", record_id, exc)
                    continue
                self._records[record.id] = record
            logger.debug("Loaded %d schedules from %s", len(self._records), self._path)

    def save(self) -> None:
        """Persist all records to disk atomically."""
        with self._lock:
            data = [r.model_dump(mode="json") for r in self._records.values()]
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                tmp = self._path.with_suffix(".tmp")
                tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
                tmp.replace(self._path)
            except OSError as exc:
                logger.error("Failed to write schedules to %s: %s", self._path, exc)
                raise StorageError(f"Could not save schedules: {exc}") from exc

    def _commit(self, record: ScheduleRecord) -> ScheduleRecord:
        previous = self._records.get(record.id)
        self._records[record.id] = record
        try:
            self.save()
        except StorageError:
            if previous is None:
                self._records.pop(record.id, None)
            else:
                self._records[record.id] = previous
            raise
        return record.model_copy(deep=True)

    # -- Keyed access ----------------------------------------------------------

    def get(self, record_id: str) -> ScheduleRecord | None:
        """Retrieve a copy of a record by ID."""
        with self._lock:
            record = self._records.get(record_id)
            return record.model_copy(deep=True) if record else None

    def put(self, record: ScheduleRecord) -> ScheduleRecord:
        """Insert or replace a whole record and persist."""
        with self._lock:
            return self._commit(record.model_copy(deep=True))

    def discard(self, record_id: str) -> None:
        """Drop a record outright and persist.

        Only used to undo a creation that could not be scheduled. The record
        is gone from memory even if the write fails; the next successful save
        removes it from disk.
        """
        with self._lock:
            if self._records.pop(record_id, None) is not None:
                self.save()

    def update(
        self, record_id: str, mutate: Callable[[ScheduleRecord], None]
    ) -> ScheduleRecord | None:
        """Read-modify-write one record atomically. Returns None if missing."""
        with self._lock:
            current = self._records.get(record_id)
            if current is None:
                return None
            record = current.model_copy(deep=True)
            mutate(record)
            return self._commit(record)

    def claim(self, record_id: str, now: datetime, lease: timedelta) -> ScheduleRecord | None:
        """Acquire the execution lease if the record is due and unlocked.

        The check and the write happen under the store lock, so of two
        concurrent claimants exactly one gets the record; the other gets None.
        """
        with self._lock:
            current = self._records.get(record_id)
            if current is None or not current.is_due(now):
                return None
            record = current.model_copy(deep=True)
            record.locked_until = now + lease
            return self._commit(record)

    # -- Enumeration -----------------------------------------------------------

    def all(self, active_only: bool = False) -> list[ScheduleRecord]:
        """Return copies of all records, oldest first."""
        with self._lock:
            records = [
                r.model_copy(deep=True)
                for r in self._records.values()
                if r.active or not active_only
            ]
        return sorted(records, key=lambda r: r.created_at)

    def list_for_group(
        self,
        group_id: int,
        kind: ScheduleKind | None = None,
        active_only: bool = True,
    ) -> list[ScheduleRecord]:
        """Records owned by a group, optionally filtered by kind.

        With ``active_only=False`` paused records are included; soft-deleted
        and finished one-shots never are.
        """
        return [
            r
            for r in self.all(active_only=active_only)
            if r.group_id == group_id
            and not r.is_deleted
            and not r.is_finished
            and (kind is None or r.kind == kind)
        ]

    def count_active(self, group_id: int, kind: ScheduleKind) -> int:
        return len(self.list_for_group(group_id, kind, active_only=True))
