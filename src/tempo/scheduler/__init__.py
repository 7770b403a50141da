"""Scheduler subsystem — schedule records, recurrence, store and engine."""

from tempo.scheduler.models import RepeatPolicy, ScheduleKind, ScheduleRecord
from tempo.scheduler.store import ScheduleStore

__all__ = ["RepeatPolicy", "ScheduleKind", "ScheduleRecord", "ScheduleStore"]
