"""Payload executor interface used by the scheduler runner."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from tempo.scheduler.models import ScheduleRecord


@dataclass
class ExecutionResult:
    """Outcome of one scheduled run."""

    success: bool
    detail: str = ""  # human-readable summary (reply excerpt, transfer hash)
    error: str | None = None
    usage_tokens: int = 0


class PayloadExecutor(Protocol):
    """Carries out a schedule's payload. May raise; the runner records the failure."""

    async def execute(self, record: ScheduleRecord) -> ExecutionResult: ...
