"""FastAPI application factory — wires stores, engine, executors and the Telegram bot."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from fastapi import FastAPI

from tempo import __version__
from tempo.bot.dispatcher import BotDispatcher
from tempo.channels.telegram import TelegramAdapter
from tempo.executors.completion import CompletionExecutor
from tempo.executors.guard import ScheduleGuard
from tempo.executors.payments import IdentityDirectory, PaymentExecutor, TokenRegistry
from tempo.scheduler.engine import SchedulerEngine
from tempo.scheduler.models import ScheduleKind
from tempo.scheduler.store import ScheduleStore
from tempo.server.lifespan import lifespan
from tempo.server.routes.health import health_router
from tempo.server.routes.telegram import telegram_router
from tempo.wizard.service import ConfigurationWizard
from tempo.wizard.store import WizardStore

if TYPE_CHECKING:
    from tempo.config.settings import Settings

logger = logging.getLogger("tempo.server")


def create_app(settings: Settings) -> FastAPI:
    """Build the FastAPI application.

    1. Opens the schedule and wizard stores under ``settings.data_dir``
    2. Creates the Telegram adapter (the transport every component talks to)
    3. Creates the scheduler engine with one executor per schedule kind
    4. Creates the wizard and the dispatcher, and hands the dispatcher to the adapter
    5. Stores everything on app.state and registers the routes

    The lifespan starts the engine before the adapter, so recovered
    schedules are registered before any new update is processed.
    """
    app = FastAPI(
        title=f"Tempo ({settings.bot_name})",
        version=__version__,
        description="Scheduled prompts and payments for Telegram groups",
        lifespan=lifespan,
    )

    schedule_store = ScheduleStore(settings.schedules_path)
    wizard_store = WizardStore(settings.wizard_path)
    if schedule_store.skipped:
        logger.warning("%d corrupt schedules were skipped on load", schedule_store.skipped)

    adapter = TelegramAdapter(
        bot_token=settings.telegram.bot_token,
        webhook_url=settings.telegram.webhook_url,
        webhook_secret=settings.telegram.webhook_secret,
    )

    executors = {ScheduleKind.MESSAGE: CompletionExecutor(settings, adapter)}
    identities = tokens = None
    if settings.payments.enabled:
        executors[ScheduleKind.PAYMENT] = PaymentExecutor(settings.payments, adapter)
        identities = IdentityDirectory(settings.payments)
        tokens = TokenRegistry(settings.payments)

    engine = SchedulerEngine(settings, schedule_store, executors)
    wizard = ConfigurationWizard(
        settings,
        wizard_store,
        engine,
        adapter,
        identities=identities,
        tokens=tokens,
        guard=ScheduleGuard(settings) if settings.scheduler.prompt_guard else None,
    )
    dispatcher = BotDispatcher(settings, adapter, engine, wizard)
    adapter.dispatcher = dispatcher

    app.state.settings = settings
    app.state.schedule_store = schedule_store
    app.state.wizard_store = wizard_store
    app.state.scheduler_engine = engine
    app.state.wizard = wizard
    app.state.dispatcher = dispatcher

    if settings.telegram.enabled and settings.telegram.bot_token:
        app.state.telegram_adapter = adapter
        logger.info("Telegram channel enabled")
    elif settings.telegram.enabled:
        logger.warning("Telegram enabled but no bot token configured — skipping")

    app.include_router(health_router)
    app.include_router(telegram_router)
    return app
