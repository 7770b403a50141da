"""Health and status endpoints."""

from __future__ import annotations

from datetime import UTC, datetime

from fastapi import APIRouter, Request
from pydantic import BaseModel

from tempo import __version__
from tempo.scheduler.models import ScheduleKind

health_router = APIRouter(tags=["Health"])


class HealthResponse(BaseModel):
    status: str
    bot_name: str
    version: str
    uptime_seconds: float


class StatusResponse(BaseModel):
    bot_name: str
    model_provider: str
    model_id: str
    telegram_mode: str
    payments_enabled: bool
    scheduler_running: bool
    active_schedules: dict[str, int]
    paused_schedules: int
    live_timers: int
    pending_wizards: int
    server_host: str
    server_port: int
    started_at: str
    version: str


@health_router.get("/health", response_model=HealthResponse)
async def health_check(request: Request) -> HealthResponse:
    settings = request.app.state.settings
    started_at = getattr(request.app.state, "started_at", datetime.now(UTC))
    uptime = (datetime.now(UTC) - started_at).total_seconds()
    return HealthResponse(
        status="ok",
        bot_name=settings.bot_name,
        version=__version__,
        uptime_seconds=round(uptime, 1),
    )


@health_router.get("/status", response_model=StatusResponse)
async def status(request: Request) -> StatusResponse:
    state = request.app.state
    settings = state.settings
    started_at = getattr(state, "started_at", datetime.now(UTC))

    active = {kind.value: 0 for kind in ScheduleKind}
    paused = 0
    store = getattr(state, "schedule_store", None)
    if store is not None:
        for record in store.all():
            if record.is_deleted or record.is_finished:
                continue
            if record.active:
                active[record.kind.value] += 1
            else:
                paused += 1

    engine = getattr(state, "scheduler_engine", None)
    live_timers = 0
    if engine is not None:
        live_timers = engine.job_count

    wizard_store = getattr(state, "wizard_store", None)
    adapter = getattr(state, "telegram_adapter", None)

    return StatusResponse(
        bot_name=settings.bot_name,
        model_provider=settings.model.provider,
        model_id=settings.model.model_id,
        telegram_mode=adapter.mode if adapter is not None else "not_configured",
        payments_enabled=settings.payments.enabled,
        scheduler_running=engine.running if engine is not None else False,
        active_schedules=active,
        paused_schedules=paused,
        live_timers=live_timers,
        pending_wizards=len(wizard_store.all()) if wizard_store is not None else 0,
        server_host=settings.server.host,
        server_port=settings.server.port,
        started_at=started_at.isoformat(),
        version=__version__,
    )
