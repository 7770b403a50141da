"""Tests for the SchedulerEngine."""

from __future__ import annotations

from datetime import UTC, timedelta
from unittest.mock import patch

import pytest
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from tempo.core.errors import (
    AuthorizationError,
    ConflictError,
    QuotaExceededError,
    ScheduleNotFoundError,
    StorageError,
)
from tempo.scheduler.engine import SchedulerEngine
from tempo.scheduler.executors import ExecutionResult
from tempo.scheduler.models import (
    AttemptStatus,
    MessagePayload,
    PaymentPayload,
    RepeatPolicy,
    ScheduleKind,
    ScheduleRecord,
)
from tests.conftest import ADMIN_ID, GROUP_ID, OTHER_ADMIN_ID


def _message(clock, repeat=None, group_id=GROUP_ID, **overrides) -> ScheduleRecord:
    data = dict(
        group_id=group_id,
        creator_id=ADMIN_ID,
        payload=MessagePayload(prompt="Daily digest"),
        anchor=clock.now + timedelta(hours=1),
        repeat=repeat or RepeatPolicy.none(),
    )
    data.update(overrides)
    return ScheduleRecord(**data)


def _payment(clock) -> ScheduleRecord:
    return ScheduleRecord(
        group_id=GROUP_ID,
        creator_id=ADMIN_ID,
        payload=PaymentPayload(
            recipient_username="alice",
            recipient_address="0xa11ce",
            symbol="APT",
            token_type="0x1::aptos_coin::AptosCoin",
            decimals=8,
            amount_smallest_units=100,
        ),
        anchor=clock.now + timedelta(hours=1),
        repeat=RepeatPolicy.weekly(),
    )


class TestCreate:
    def test_create_registers_one_job(self, engine: SchedulerEngine, clock):
        record = engine.create(_message(clock))
        handles = engine.live_handles(record.id)
        assert handles == [record.external_job_handle]
        assert record.next_run_at == clock.now + timedelta(hours=1)
        assert handles[0].startswith(f"message:{record.id}:")

    def test_job_runs_at_next_run(self, engine: SchedulerEngine, clock):
        record = engine.create(_message(clock))
        job = engine._scheduler.get_job(record.external_job_handle)
        assert job.trigger.run_date == clock.now + timedelta(hours=1)

    def test_past_recurring_anchor_advances(self, engine: SchedulerEngine, clock):
        record = engine.create(
            _message(clock, RepeatPolicy.daily(), anchor=clock.now - timedelta(hours=2))
        )
        assert record.next_run_at == clock.now + timedelta(hours=22)

    def test_failed_registration_discards_record(self, engine: SchedulerEngine, clock):
        """A record that cannot be scheduled is not left behind active and timerless."""
        record = _message(clock, RepeatPolicy.daily())
        failing_save = [None, StorageError("disk full"), None]
        with (
            patch.object(engine.store, "save", side_effect=failing_save),
            pytest.raises(StorageError),
        ):
            engine.create(record)

        assert engine.store.get(record.id) is None
        assert engine.store.count_active(GROUP_ID, ScheduleKind.MESSAGE) == 0
        assert engine.live_handles(record.id) == []

    def test_quota(self, engine: SchedulerEngine, clock):
        """The eleventh active prompt in a group is rejected."""
        for _ in range(10):
            engine.create(_message(clock))
        with pytest.raises(QuotaExceededError) as exc_info:
            engine.create(_message(clock))
        assert exc_info.value.limit == 10
        assert "10 active scheduled prompts" in exc_info.value.user_message
        assert engine.store.count_active(GROUP_ID, ScheduleKind.MESSAGE) == 10

        # Other groups and other kinds have their own budgets
        engine.create(_message(clock, group_id=GROUP_ID - 1))
        engine.create(_payment(clock))

    def test_paused_records_do_not_count(self, engine: SchedulerEngine, clock):
        records = [engine.create(_message(clock)) for _ in range(10)]
        engine.pause(records[0].id, ADMIN_ID)
        engine.create(_message(clock))


class TestExecution:
    @pytest.mark.asyncio
    async def test_one_shot_runs_once_and_deactivates(
        self, engine: SchedulerEngine, clock, message_executor
    ):
        record = engine.create(_message(clock))
        clock.advance(hours=1)

        await engine._execute_job(record.id)

        stored = engine.store.get(record.id)
        assert message_executor.calls == [record.id]
        assert stored.run_count == 1
        assert stored.active is False
        assert stored.next_run_at is None
        assert stored.locked_until is None
        assert stored.last_attempt_status == AttemptStatus.SUCCESS
        assert engine.live_handles(record.id) == []

        # A stray second fire does nothing
        await engine._execute_job(record.id)
        assert engine.store.get(record.id).run_count == 1

    @pytest.mark.asyncio
    async def test_recurring_reschedules(self, engine: SchedulerEngine, clock):
        record = engine.create(_message(clock, RepeatPolicy.every(30)))
        fired_at = clock.advance(hours=1)

        await engine._execute_job(record.id)

        stored = engine.store.get(record.id)
        assert stored.active is True
        assert stored.last_run_at == fired_at
        assert stored.next_run_at == fired_at + timedelta(minutes=30)
        assert engine.live_handles(record.id) == [stored.external_job_handle]
        assert stored.external_job_handle != record.external_job_handle

    @pytest.mark.asyncio
    async def test_not_yet_due_is_noop(self, engine: SchedulerEngine, clock, message_executor):
        record = engine.create(_message(clock))
        await engine._execute_job(record.id)
        assert message_executor.calls == []
        assert engine.store.get(record.id).run_count == 0

    @pytest.mark.asyncio
    async def test_paused_fire_is_noop(self, engine: SchedulerEngine, clock, message_executor):
        record = engine.create(_message(clock, RepeatPolicy.daily()))
        engine.pause(record.id, ADMIN_ID)
        clock.advance(hours=1)

        await engine._execute_job(record.id)

        stored = engine.store.get(record.id)
        assert message_executor.calls == []
        assert stored.run_count == 0
        assert stored.last_run_at is None

    @pytest.mark.asyncio
    async def test_locked_record_is_skipped(
        self, engine: SchedulerEngine, clock, message_executor
    ):
        """An unexpired lease blocks a second execution of the same occurrence."""
        record = engine.create(_message(clock, RepeatPolicy.daily()))
        clock.advance(hours=1)
        engine.store.claim(record.id, clock.now, timedelta(minutes=5))

        await engine._execute_job(record.id)

        assert message_executor.calls == []

    @pytest.mark.asyncio
    async def test_failure_consumes_occurrence(
        self, engine: SchedulerEngine, clock, message_executor
    ):
        message_executor.result = ExecutionResult(success=False, error="model offline")
        record = engine.create(_message(clock, RepeatPolicy.daily()))
        fired_at = clock.advance(hours=1)

        await engine._execute_job(record.id)

        stored = engine.store.get(record.id)
        assert stored.run_count == 1
        assert stored.last_attempt_status == AttemptStatus.FAILED
        assert stored.last_error == "model offline"
        assert stored.next_run_at == fired_at + timedelta(days=1)
        assert stored.active is True

    @pytest.mark.asyncio
    async def test_executor_exception_is_recorded(
        self, engine: SchedulerEngine, clock, message_executor
    ):
        async def _boom(record):
            raise RuntimeError("kaboom")

        message_executor.side_effect = _boom
        record = engine.create(_message(clock, RepeatPolicy.daily()))
        clock.advance(hours=1)

        await engine._execute_job(record.id)

        stored = engine.store.get(record.id)
        assert stored.last_attempt_status == AttemptStatus.FAILED
        assert stored.last_error == "kaboom"
        assert stored.locked_until is None
        assert len(engine.live_handles(record.id)) == 1

    @pytest.mark.asyncio
    async def test_pause_during_execution_is_respected(
        self, engine: SchedulerEngine, clock, message_executor
    ):
        record = engine.create(_message(clock, RepeatPolicy.daily()))

        async def _pause_midway(r):
            engine.pause(r.id, ADMIN_ID)
            return ExecutionResult(success=True)

        message_executor.side_effect = _pause_midway
        clock.advance(hours=1)

        await engine._execute_job(record.id)

        stored = engine.store.get(record.id)
        assert stored.active is False
        assert stored.run_count == 1
        assert engine.live_handles(record.id) == []

    @pytest.mark.asyncio
    async def test_edit_during_execution_keeps_edit(
        self, engine: SchedulerEngine, clock, message_executor
    ):
        record = engine.create(_message(clock, RepeatPolicy.daily()))
        new_anchor = clock.now + timedelta(days=3)

        async def _edit_midway(r):
            edited = r.model_copy(update={"anchor": new_anchor})
            engine.replace(edited, ADMIN_ID)
            return ExecutionResult(success=True)

        message_executor.side_effect = _edit_midway
        clock.advance(hours=1)

        await engine._execute_job(record.id)

        stored = engine.store.get(record.id)
        assert stored.anchor == new_anchor
        assert stored.next_run_at == new_anchor
        assert stored.run_count == 1
        assert engine.live_handles(record.id) == [stored.external_job_handle]

    @pytest.mark.asyncio
    async def test_bookkeeping_write_failure_keeps_a_live_job(
        self, engine: SchedulerEngine, clock, message_executor
    ):
        record = engine.create(_message(clock, RepeatPolicy.daily()))
        fired_at = clock.advance(hours=1)
        # A fired DateTrigger job is gone from APScheduler by the time it runs
        engine.cancel(record.id)
        disk_full = patch("pathlib.Path.write_text", side_effect=OSError("disk full"))

        async def _fill_disk(r):
            disk_full.start()
            return ExecutionResult(success=True)

        message_executor.side_effect = _fill_disk
        try:
            await engine._execute_job(record.id)
        finally:
            disk_full.stop()

        handles = engine.live_handles(record.id)
        assert len(handles) == 1
        retry = engine._scheduler.get_job(handles[0])
        lease = timedelta(seconds=engine._settings.scheduler.lease_seconds)
        assert retry.trigger.run_date == fired_at + lease
        assert engine.store.get(record.id).run_count == 0

        clock.advance(seconds=lease.total_seconds())
        await retry.func(*retry.args)

        stored = engine.store.get(record.id)
        assert message_executor.calls == [record.id]
        assert stored.run_count == 1
        assert stored.last_run_at == fired_at
        assert stored.locked_until is None
        assert stored.next_run_at == fired_at + timedelta(days=1)
        assert engine.live_handles(record.id) == [stored.external_job_handle]

    @pytest.mark.asyncio
    async def test_missing_executor_fails_run(self, test_settings, schedule_store, clock):
        engine = SchedulerEngine(test_settings, schedule_store, clock=clock)
        record = engine.create(_message(clock, RepeatPolicy.daily()))
        clock.advance(hours=1)

        await engine._execute_job(record.id)

        stored = engine.store.get(record.id)
        assert stored.last_attempt_status == AttemptStatus.FAILED
        assert "No executor" in stored.last_error


class TestOwnerActions:
    def test_only_creator_can_act(self, engine: SchedulerEngine, clock):
        record = engine.create(_message(clock))
        for action in (engine.pause, engine.resume, engine.delete, engine.run_now):
            with pytest.raises(AuthorizationError):
                action(record.id, OTHER_ADMIN_ID)
        assert engine.store.get(record.id).revision == 0

    def test_unknown_record(self, engine: SchedulerEngine):
        with pytest.raises(ScheduleNotFoundError):
            engine.pause("missing", ADMIN_ID)

    def test_pause_and_resume(self, engine: SchedulerEngine, clock):
        record = engine.create(_message(clock, RepeatPolicy.every(15)))
        paused = engine.pause(record.id, ADMIN_ID)
        assert paused.active is False
        assert engine.live_handles(record.id) == []

        clock.advance(hours=3, minutes=5)
        resumed = engine.resume(record.id, ADMIN_ID)
        assert resumed.active is True
        assert resumed.next_run_at == clock.now + timedelta(minutes=10)
        assert engine.live_handles(record.id) == [resumed.external_job_handle]
        assert resumed.revision == 2

    def test_toggle(self, engine: SchedulerEngine, clock):
        record = engine.create(_message(clock, RepeatPolicy.daily()))
        assert engine.toggle(record.id, ADMIN_ID).active is False
        assert engine.toggle(record.id, ADMIN_ID).active is True

    def test_resume_checks_quota(self, engine: SchedulerEngine, clock):
        first = engine.create(_message(clock))
        engine.pause(first.id, ADMIN_ID)
        for _ in range(10):
            engine.create(_message(clock))
        with pytest.raises(QuotaExceededError):
            engine.resume(first.id, ADMIN_ID)

    def test_delete_is_soft(self, engine: SchedulerEngine, clock):
        record = engine.create(_message(clock, RepeatPolicy.daily()))
        deleted = engine.delete(record.id, ADMIN_ID)
        assert deleted.is_deleted
        assert deleted.active is False
        assert engine.live_handles(record.id) == []
        assert engine.store.list_for_group(GROUP_ID, active_only=False) == []
        with pytest.raises(ScheduleNotFoundError):
            engine.resume(record.id, ADMIN_ID)

    def test_run_now_makes_record_due(self, engine: SchedulerEngine, clock):
        record = engine.create(_message(clock, RepeatPolicy.daily()))
        updated = engine.run_now(record.id, ADMIN_ID)
        assert updated.next_run_at == clock.now
        job = engine._scheduler.get_job(updated.external_job_handle)
        assert job.trigger.run_date == clock.now
        assert len(engine.live_handles(record.id)) == 1

    @pytest.mark.asyncio
    async def test_run_now_waits_for_lease(
        self, engine: SchedulerEngine, clock, message_executor
    ):
        record = engine.create(_message(clock, RepeatPolicy.daily()))
        clock.advance(hours=1)
        engine.store.claim(record.id, clock.now, timedelta(minutes=5))

        updated = engine.run_now(record.id, ADMIN_ID)
        job = engine._scheduler.get_job(updated.external_job_handle)
        assert job.trigger.run_date == clock.now + timedelta(minutes=5)

        await engine._execute_job(record.id)
        assert message_executor.calls == []

    def test_run_now_requires_active(self, engine: SchedulerEngine, clock):
        record = engine.create(_message(clock, RepeatPolicy.daily()))
        engine.pause(record.id, ADMIN_ID)
        with pytest.raises(ConflictError):
            engine.run_now(record.id, ADMIN_ID)

    def test_edit_leaves_one_live_handle(self, engine: SchedulerEngine, clock):
        record = engine.create(_message(clock, RepeatPolicy.daily()))
        edited = record.model_copy(
            update={"anchor": clock.now + timedelta(hours=5), "repeat": RepeatPolicy.weekly()}
        )
        updated = engine.replace(edited, ADMIN_ID, base_revision=record.revision)

        assert updated.id == record.id
        assert updated.revision == 1
        assert updated.next_run_at == clock.now + timedelta(hours=5)
        assert engine.live_handles(record.id) == [updated.external_job_handle]

    def test_stale_edit_is_rejected(self, engine: SchedulerEngine, clock):
        record = engine.create(_message(clock, RepeatPolicy.daily()))
        engine.pause(record.id, ADMIN_ID)
        engine.resume(record.id, ADMIN_ID)
        with pytest.raises(ConflictError, match="changed while you were editing"):
            engine.replace(record, ADMIN_ID, base_revision=0)


class TestBootstrap:
    @pytest.mark.asyncio
    async def test_start_registers_active_records(self, test_settings, schedule_store, clock):
        future = _message(clock, RepeatPolicy.daily(), next_run_at=clock.now + timedelta(hours=1))
        overdue = _message(clock, RepeatPolicy.daily(), next_run_at=clock.now - timedelta(hours=1))
        paused = _message(clock, RepeatPolicy.daily(), active=False)
        for record in (future, overdue, paused):
            schedule_store.put(record)

        test_settings.scheduler.bootstrap_jitter_seconds = 30
        scheduler = AsyncIOScheduler(timezone=UTC)
        engine = SchedulerEngine(test_settings, schedule_store, scheduler=scheduler, clock=clock)

        with (
            patch.object(scheduler, "start") as start,
            patch("tempo.scheduler.engine.random.uniform", return_value=12.0),
        ):
            await engine.start()

        start.assert_called_once()
        assert engine.live_handles(paused.id) == []

        future_job = scheduler.get_job(schedule_store.get(future.id).external_job_handle)
        assert future_job.trigger.run_date == clock.now + timedelta(hours=1)

        overdue_job = scheduler.get_job(schedule_store.get(overdue.id).external_job_handle)
        assert overdue_job.trigger.run_date == clock.now + timedelta(seconds=12)

    @pytest.mark.asyncio
    async def test_one_bad_record_does_not_abort(self, engine: SchedulerEngine, clock):
        good = engine.store.put(_message(clock, RepeatPolicy.daily()))
        bad = engine.store.put(_message(clock, RepeatPolicy.daily()))
        original = engine.register

        def _register(record, delay_seconds=0.0):
            if record.id == bad.id:
                raise RuntimeError("broken")
            return original(record, delay_seconds)

        with (
            patch.object(engine, "register", side_effect=_register),
            patch.object(engine._scheduler, "start"),
        ):
            await engine.start()

        assert len(engine.live_handles(good.id)) == 1
        assert engine.live_handles(bad.id) == []
