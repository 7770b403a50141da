"""Telegram webhook route and channel status."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Header, Request, Response

logger = logging.getLogger("tempo.server.telegram")

telegram_router = APIRouter(prefix="/telegram", tags=["Telegram"])

SECRET_HEADER = "X-Telegram-Bot-Api-Secret-Token"


@telegram_router.post("/webhook")
async def telegram_webhook(
    request: Request,
    secret_token: Annotated[str | None, Header(alias=SECRET_HEADER)] = None,
) -> Response:
    """Accept one Update pushed by Telegram and hand it to the adapter.

    Handler failures are logged; the response is 200 either way.
    """
    adapter = getattr(request.app.state, "telegram_adapter", None)
    if adapter is None:
        return Response(content="Telegram not configured", status_code=503)
    if not adapter.verify_secret(secret_token):
        logger.warning("Rejected webhook call with a bad secret token from %s", request.client)
        return Response(content="Forbidden", status_code=403)

    try:
        update = await request.json()
    except ValueError:
        return Response(content="Invalid JSON", status_code=400)
    if not isinstance(update, dict):
        return Response(content="Expected an Update object", status_code=400)

    try:
        await adapter.handle_update(update)
    except Exception:
        logger.exception("Failed to handle Telegram update %s", update.get("update_id"))
    return Response(status_code=200)


@telegram_router.get("/status")
async def telegram_status(request: Request) -> dict:
    adapter = getattr(request.app.state, "telegram_adapter", None)
    if adapter is None:
        return {"status": "not_configured"}
    return {
        "status": "active",
        "mode": adapter.mode,
        "bot_username": adapter.bot_username or "unknown",
        "webhook_protected": bool(adapter.webhook_secret),
    }
