"""Scheduler engine — APScheduler bridge that runs schedule records through payload executors."""

from __future__ import annotations

import contextlib
import logging
import random
import secrets
from collections.abc import Callable, Mapping
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger

from tempo.core.errors import (
    AuthorizationError,
    ConflictError,
    ExecutionError,
    QuotaExceededError,
    ScheduleNotFoundError,
    StorageError,
)
from tempo.scheduler.executors import ExecutionResult, PayloadExecutor
from tempo.scheduler.models import AttemptStatus, ScheduleKind, ScheduleRecord
from tempo.scheduler.recurrence import initial_run, next_occurrence
from tempo.scheduler.store import ScheduleStore

if TYPE_CHECKING:
    from tempo.config.settings import Settings

logger = logging.getLogger("tempo.scheduler.engine")

_MAX_ERROR_LENGTH = 500


def _utcnow() -> datetime:
    return datetime.now(UTC)


class SchedulerEngine:
    """Registers schedule records as one-shot APScheduler jobs and runs them.

    Every registration is a single ``DateTrigger`` job whose id is the
    record's ``external_job_handle``. When it fires, the runner claims the
    record's lease in the store, executes the payload, books the outcome and
    registers a fresh job for the next occurrence. The store is the only
    source of truth; jobs carry nothing but the record id.
    """

    def __init__(
        self,
        settings: Settings,
        store: ScheduleStore,
        executors: Mapping[ScheduleKind, PayloadExecutor] | None = None,
        scheduler: AsyncIOScheduler | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._settings = settings
        self._store = store
        self._executors: dict[ScheduleKind, PayloadExecutor] = dict(executors or {})
        self._scheduler = scheduler or AsyncIOScheduler(timezone=UTC)
        self._clock = clock

    @property
    def store(self) -> ScheduleStore:
        return self._store

    @property
    def running(self) -> bool:
        return self._scheduler.running

    @property
    def job_count(self) -> int:
        """Number of live timers across all records."""
        return len(self._scheduler.get_jobs())

    # -- Lifecycle -------------------------------------------------------------

    async def start(self) -> None:
        """Re-register every active record, then start the scheduler.

        Overdue records get a random delay of up to
        ``bootstrap_jitter_seconds`` so a restart does not fire them all at
        once. A record that fails to register is logged and skipped.
        """
        now = self._clock()
        jitter = self._settings.scheduler.bootstrap_jitter_seconds
        registered = failed = 0

        for record in self._store.all(active_only=True):
            overdue = record.next_run_at is None or record.next_run_at <= now
            delay = random.uniform(0, jitter) if overdue and jitter else 0.0
            try:
                self.register(record, delay_seconds=delay)
                registered += 1
            except Exception:
                failed += 1
                logger.exception("Failed to register schedule %s at startup", record.id)

        self._scheduler.start()
        logger.info("Scheduler started with %d schedules (%d failed)", registered, failed)

    async def stop(self) -> None:
        """Shut down the scheduler without waiting for running jobs."""
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")

    # -- Registration ----------------------------------------------------------

    def register(self, record: ScheduleRecord, delay_seconds: float = 0.0) -> ScheduleRecord:
        """Replace any live job for the record with one at its next run.

        Fills in ``next_run_at`` from anchor/repeat when it is missing and
        persists the new job handle. A record still under an unexpired lease
        is scheduled for when the lease runs out.
        """
        now = self._clock()
        self.cancel(record.id)

        next_run = record.next_run_at or initial_run(record.anchor, record.repeat, now)
        if next_run is None:
            self._deactivate(record.id)
            raise ConflictError(f"Schedule {record.id} has no future runs")

        run_date = max(next_run, now)
        if record.locked_until is not None and record.locked_until > run_date:
            run_date = record.locked_until
        run_date += timedelta(seconds=delay_seconds)

        handle = f"{record.kind}:{record.id}:{secrets.token_hex(4)}"
        self._scheduler.add_job(
            self._execute_job,
            trigger=DateTrigger(run_date=run_date, timezone=UTC),
            args=[record.id],
            id=handle,
            name=f"{record.kind} schedule {record.id}",
            replace_existing=True,
            misfire_grace_time=None,
        )

        def _apply(r: ScheduleRecord) -> None:
            r.next_run_at = next_run
            r.external_job_handle = handle

        try:
            updated = self._store.update(record.id, _apply)
        except StorageError:
            self._remove_job(handle)
            raise
        if updated is None:
            self._remove_job(handle)
            raise ScheduleNotFoundError(record.id)

        logger.info("Registered schedule %s for %s (job %s)", record.id, run_date, handle)
        return updated

    def cancel(self, record_id: str) -> None:
        """Remove every live job for a record."""
        for handle in self.live_handles(record_id):
            self._remove_job(handle)

    def live_handles(self, record_id: str) -> list[str]:
        """Ids of the APScheduler jobs currently registered for a record."""
        return [
            job.id for job in self._scheduler.get_jobs() if job.args and job.args[0] == record_id
        ]

    def _remove_job(self, handle: str) -> None:
        with contextlib.suppress(JobLookupError):
            self._scheduler.remove_job(handle)

    def _deactivate(self, record_id: str) -> None:
        def _apply(r: ScheduleRecord) -> None:
            r.active = False
            r.next_run_at = None
            r.external_job_handle = None

        self._store.update(record_id, _apply)

    # -- Owner actions ---------------------------------------------------------

    def quota_for(self, kind: ScheduleKind) -> int:
        cfg = self._settings.scheduler
        return cfg.message_quota if kind == ScheduleKind.MESSAGE else cfg.payment_quota

    def _check_quota(self, group_id: int, kind: ScheduleKind) -> None:
        limit = self.quota_for(kind)
        if self._store.count_active(group_id, kind) >= limit:
            raise QuotaExceededError(kind.value, limit, {"group_id": group_id})

    def owned(self, record_id: str, actor_id: int) -> ScheduleRecord:
        """The live record if ``actor_id`` created it; raises otherwise."""
        record = self._store.get(record_id)
        if record is None or record.is_deleted:
            raise ScheduleNotFoundError(record_id)
        if record.creator_id != actor_id:
            raise AuthorizationError(
                "Only the creator can change this schedule",
                {"record_id": record_id, "actor_id": actor_id},
            )
        return record

    def create(self, record: ScheduleRecord) -> ScheduleRecord:
        """Persist and register a new record, enforcing the group's quota."""
        self._check_quota(record.group_id, record.kind)
        now = self._clock()
        record.active = True
        record.created_at = record.updated_at = now
        record.next_run_at = initial_run(record.anchor, record.repeat, now)
        record.external_job_handle = None
        self._store.put(record)
        logger.info(
            "Created %s schedule %s in group %s (%s)",
            record.kind,
            record.id,
            record.group_id,
            record.repeat.label,
        )
        try:
            return self.register(record)
        except Exception:
            with contextlib.suppress(StorageError):
                self._store.discard(record.id)
            raise

    def replace(
        self,
        record: ScheduleRecord,
        actor_id: int,
        base_revision: int | None = None,
    ) -> ScheduleRecord:
        """Apply an edited copy of an existing record and re-register it.

        ``base_revision`` is the revision the edit started from; if an owner
        action has changed the record since, the edit is rejected.
        """
        current = self.owned(record.id, actor_id)
        if base_revision is not None and current.revision != base_revision:
            raise ConflictError(
                "Schedule was changed while you were editing it",
                {"expected": base_revision, "actual": current.revision},
            )
        now = self._clock()

        def _apply(r: ScheduleRecord) -> None:
            r.payload = record.payload
            r.anchor = record.anchor
            r.repeat = record.repeat
            r.thread_id = record.thread_id
            r.next_run_at = initial_run(record.anchor, record.repeat, now)
            r.updated_at = now
            r.revision += 1

        updated = self._store.update(record.id, _apply)
        if updated is None:
            raise ScheduleNotFoundError(record.id)
        logger.info("Updated schedule %s (revision %d)", updated.id, updated.revision)
        if not updated.active:
            return updated
        return self.register(updated)

    def pause(self, record_id: str, actor_id: int) -> ScheduleRecord:
        record = self.owned(record_id, actor_id)
        if not record.active:
            return record
        self.cancel(record_id)

        def _apply(r: ScheduleRecord) -> None:
            r.active = False
            r.external_job_handle = None
            r.updated_at = self._clock()
            r.revision += 1

        updated = self._store.update(record_id, _apply)
        logger.info("Paused schedule %s", record_id)
        return updated or record

    def resume(self, record_id: str, actor_id: int) -> ScheduleRecord:
        """Reactivate a paused record; counts toward the quota like creation."""
        record = self.owned(record_id, actor_id)
        if record.active:
            return record
        self._check_quota(record.group_id, record.kind)
        now = self._clock()
        if record.last_run_at is None:
            next_run = initial_run(record.anchor, record.repeat, now)
        else:
            next_run = next_occurrence(record.anchor, record.repeat, now, record.last_run_at)
        if next_run is None:
            raise ConflictError("This schedule has nothing left to run")

        def _apply(r: ScheduleRecord) -> None:
            r.active = True
            r.next_run_at = next_run
            r.updated_at = now
            r.revision += 1

        updated = self._store.update(record_id, _apply)
        if updated is None:
            raise ScheduleNotFoundError(record_id)
        logger.info("Resumed schedule %s", record_id)
        return self.register(updated)

    def toggle(self, record_id: str, actor_id: int) -> ScheduleRecord:
        record = self.owned(record_id, actor_id)
        if record.active:
            return self.pause(record_id, actor_id)
        return self.resume(record_id, actor_id)

    def delete(self, record_id: str, actor_id: int) -> ScheduleRecord:
        """Soft-delete: deactivate, mark deleted and cancel the live job."""
        self.owned(record_id, actor_id)
        self.cancel(record_id)
        now = self._clock()

        def _apply(r: ScheduleRecord) -> None:
            r.active = False
            r.deleted_at = now
            r.external_job_handle = None
            r.updated_at = now
            r.revision += 1

        updated = self._store.update(record_id, _apply)
        if updated is None:
            raise ScheduleNotFoundError(record_id)
        logger.info("Deleted schedule %s", record_id)
        return updated

    def run_now(self, record_id: str, actor_id: int) -> ScheduleRecord:
        """Make the record due immediately.

        The run still goes through the normal claim, so it cannot overlap an
        execution that already holds the lease.
        """
        record = self.owned(record_id, actor_id)
        if not record.active:
            raise ConflictError("Resume the schedule before running it")
        now = self._clock()

        def _apply(r: ScheduleRecord) -> None:
            r.next_run_at = now

        updated = self._store.update(record_id, _apply)
        if updated is None:
            raise ScheduleNotFoundError(record_id)
        logger.info("Run-now requested for schedule %s", record_id)
        return self.register(updated)

    # -- Execution callback ----------------------------------------------------

    async def _execute_job(self, record_id: str) -> None:
        """Called by APScheduler when a record's job fires."""
        now = self._clock()
        lease = timedelta(seconds=self._settings.scheduler.lease_seconds)
        try:
            record = self._store.claim(record_id, now, lease)
        except StorageError:
            logger.exception("Could not claim schedule %s", record_id)
            return
        if record is None:
            logger.debug("Schedule %s not eligible at %s, skipping", record_id, now)
            return

        logger.info(
            "Executing %s schedule %s (run %d)", record.kind, record.id, record.run_count + 1
        )
        result = await self._run_payload(record)
        await self._finish_run(record.id, record, now, result)

    async def _finish_run(
        self,
        record_id: str,
        claimed: ScheduleRecord,
        ran_at: datetime,
        result: ExecutionResult,
    ) -> None:
        """Book a finished run and register the next occurrence.

        If the store cannot be written, a retry of this step is scheduled for
        when the lease runs out, so the record keeps a live job and the
        payload is not executed a second time.
        """
        next_run = next_occurrence(claimed.anchor, claimed.repeat, ran_at, last_run=ran_at)
        claimed_revision = claimed.revision

        def _apply(r: ScheduleRecord) -> None:
            r.last_run_at = ran_at
            r.run_count += 1
            r.locked_until = None
            if result.success:
                r.last_attempt_status = AttemptStatus.SUCCESS
                r.last_error = None
            else:
                r.last_attempt_status = AttemptStatus.FAILED
                r.last_error = (result.error or "failed")[:_MAX_ERROR_LENGTH]
            if r.revision != claimed_revision or not r.active:
                # Changed by its owner mid-run; their registration stands.
                return
            if next_run is None:
                r.active = False
                r.next_run_at = None
                r.external_job_handle = None
            else:
                r.next_run_at = next_run

        try:
            updated = self._store.update(record_id, _apply)
        except StorageError:
            logger.exception("Could not record run of schedule %s", record_id)
            self._schedule_retry(claimed, ran_at, result)
            return
        if updated is None:
            return

        if not updated.active:
            if next_run is None and updated.revision == claimed_revision:
                self.cancel(record_id)
                logger.info("One-shot schedule %s finished and was deactivated", record_id)
            return
        if updated.revision == claimed_revision or not self.live_handles(record_id):
            try:
                self.register(updated)
            except Exception:
                logger.exception("Failed to re-register schedule %s", record_id)

    def _schedule_retry(
        self, record: ScheduleRecord, ran_at: datetime, result: ExecutionResult
    ) -> None:
        now = self._clock()
        retry_at = record.locked_until
        if retry_at is None or retry_at <= now:
            retry_at = now + timedelta(seconds=self._settings.scheduler.lease_seconds)
        handle = f"{record.kind}:{record.id}:{secrets.token_hex(4)}"
        self._scheduler.add_job(
            self._finish_run,
            trigger=DateTrigger(run_date=retry_at, timezone=UTC),
            args=[record.id, record, ran_at, result],
            id=handle,
            name=f"{record.kind} schedule {record.id} bookkeeping retry",
            replace_existing=True,
            misfire_grace_time=None,
        )
        logger.warning("Retrying bookkeeping of schedule %s at %s", record.id, retry_at)

    async def _run_payload(self, record: ScheduleRecord) -> ExecutionResult:
        executor = self._executors.get(record.kind)
        try:
            if executor is None:
                raise ExecutionError(f"No executor for {record.kind} schedules")
            result = await executor.execute(record)
        except Exception as exc:
            logger.warning("Schedule %s failed: %s", record.id, exc, exc_info=True)
            return ExecutionResult(success=False, error=str(exc) or exc.__class__.__name__)
        if not result.success:
            logger.warning("Schedule %s reported failure: %s", record.id, result.error)
        return result
