"""Application lifespan management."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import UTC, datetime

from fastapi import FastAPI

logger = logging.getLogger("tempo.server")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown hooks for tempo."""
    settings = app.state.settings

    # --- Startup ---
    logger.info(
        "Tempo server starting: bot=%s, host=%s, port=%d",
        settings.bot_name,
        settings.server.host,
        settings.server.port,
    )

    # Recover persisted schedules before accepting updates
    scheduler_engine = getattr(app.state, "scheduler_engine", None)
    if scheduler_engine is not None:
        await scheduler_engine.start()

    adapter = getattr(app.state, "telegram_adapter", None)
    if adapter is not None:
        await adapter.start()

    app.state.started_at = datetime.now(UTC)

    yield

    # --- Shutdown ---
    if adapter is not None:
        await adapter.stop()

    if scheduler_engine is not None:
        await scheduler_engine.stop()

    logger.info("Tempo server shutting down.")
