"""Telegram transport — Bot API over httpx, polling (local) or webhooks (public URL)."""

from __future__ import annotations

import asyncio
import contextlib
import hmac
import json
import logging
from typing import TYPE_CHECKING, Any

import httpx

from tempo.channels.base import CallbackQuery, ChatTransport, IncomingMessage, Keyboard

if TYPE_CHECKING:
    from tempo.bot.dispatcher import BotDispatcher

logger = logging.getLogger("tempo.channels.telegram")

TELEGRAM_API = "https://api.telegram.org"
MAX_MESSAGE_LENGTH = 4096


def _reply_markup(buttons: Keyboard | None) -> dict:
    rows = buttons or []
    return {
        "inline_keyboard": [
            [{"text": b.text, "callback_data": b.callback_data} for b in row] for row in rows
        ]
    }


def parse_update(update: dict[str, Any]) -> IncomingMessage | CallbackQuery | None:
    """Turn a raw Telegram Update into a normalized message or button press."""
    if query := update.get("callback_query"):
        user = query.get("from", {})
        message = query.get("message") or {}
        chat = message.get("chat", {})
        if not chat:
            return None
        return CallbackQuery(
            id=str(query["id"]),
            data=query.get("data", ""),
            user_id=int(user.get("id", 0)),
            chat_id=int(chat["id"]),
            message_id=message.get("message_id"),
            chat_type=chat.get("type", "private"),
            thread_id=message.get("message_thread_id"),
            username=user.get("username"),
            first_name=user.get("first_name", ""),
            raw=update,
        )

    message = update.get("message")
    if not message or "from" not in message:
        return None

    user = message["from"]
    chat = message["chat"]
    photo_file_id = None
    if message.get("photo"):
        # Telegram sends multiple sizes; use the largest (last)
        photo_file_id = message["photo"][-1]["file_id"]

    return IncomingMessage(
        chat_id=int(chat["id"]),
        message_id=int(message.get("message_id", 0)),
        user_id=int(user["id"]),
        text=message.get("text") or message.get("caption") or "",
        chat_type=chat.get("type", "private"),
        thread_id=message.get("message_thread_id") if message.get("is_topic_message") else None,
        username=user.get("username"),
        first_name=user.get("first_name", ""),
        photo_file_id=photo_file_id,
        raw=update,
    )


class TelegramAdapter(ChatTransport):
    """Telegram bot transport with auto-detection: polling or webhooks.

    - No webhook_url configured → uses long-polling (works locally)
    - webhook_url configured → registers webhook with Telegram (needs public HTTPS)

    Parsed updates are handed to the dispatcher assigned to ``dispatcher``.
    """

    channel_name = "telegram"

    def __init__(
        self,
        bot_token: str,
        webhook_url: str = "",
        webhook_secret: str = "",
        dispatcher: BotDispatcher | None = None,
    ) -> None:
        self.bot_token = bot_token
        self.webhook_url = webhook_url
        self.webhook_secret = webhook_secret
        self.dispatcher = dispatcher
        self._bot_username: str | None = None
        self._polling_task: asyncio.Task | None = None
        self._stop_event = asyncio.Event()

    def _url(self, method: str) -> str:
        return f"{TELEGRAM_API}/bot{self.bot_token}/{method}"

    async def _call(self, method: str, payload: dict[str, Any] | None = None) -> Any:
        """POST a Bot API method; returns ``result`` or None on any failure."""
        try:
            async with httpx.AsyncClient() as client:
                resp = await client.post(self._url(method), json=payload or {})
                data = resp.json()
        except Exception as exc:
            logger.error("Telegram %s failed: %s", method, exc)
            return None
        if not data.get("ok"):
            logger.warning("Telegram %s error: %s", method, data.get("description", data))
            return None
        return data.get("result")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the Telegram adapter — polling or webhook mode."""
        me = await self._call("getMe")
        if not me:
            logger.error("Could not connect to Telegram; channel not started")
            return
        self._bot_username = me.get("username")
        logger.info("Telegram bot: @%s", self._bot_username)

        if self.webhook_url:
            await self._set_webhook(self.webhook_url)
            logger.info("Telegram running in webhook mode")
        else:
            await self._delete_webhook()
            self._stop_event.clear()
            self._polling_task = asyncio.create_task(self._poll_loop(), name="telegram-polling")
            logger.info("Telegram running in polling mode")

    async def stop(self) -> None:
        """Stop the adapter — cancel polling or remove webhook."""
        if self._polling_task and not self._polling_task.done():
            self._stop_event.set()
            self._polling_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._polling_task
            self._polling_task = None
            logger.info("Telegram polling stopped")

        if self.webhook_url:
            await self._delete_webhook()

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    async def _poll_loop(self) -> None:
        """Long-poll Telegram's getUpdates endpoint."""
        offset = 0
        timeout = 30  # seconds, Telegram long-poll timeout

        async with httpx.AsyncClient(timeout=httpx.Timeout(timeout + 10)) as client:
            while not self._stop_event.is_set():
                try:
                    resp = await client.get(
                        self._url("getUpdates"),
                        params={
                            "offset": offset,
                            "timeout": timeout,
                            "allowed_updates": json.dumps(["message", "callback_query"]),
                        },
                    )
                    data = resp.json()

                    if not data.get("ok"):
                        logger.error("Telegram getUpdates error: %s", data)
                        await asyncio.sleep(5)
                        continue

                    for update in data.get("result", []):
                        offset = update["update_id"] + 1
                        try:
                            await self.handle_update(update)
                        except Exception as exc:
                            logger.error("Error handling Telegram update: %s", exc, exc_info=True)

                except asyncio.CancelledError:
                    raise
                except httpx.ReadTimeout:
                    # Long poll timed out with no updates
                    continue
                except Exception as exc:
                    logger.error("Telegram poll error: %s", exc)
                    await asyncio.sleep(5)

    # ------------------------------------------------------------------
    # Inbound (called from webhook route or polling loop)
    # ------------------------------------------------------------------

    async def handle_update(self, update_data: dict[str, Any]) -> None:
        """Parse a Telegram Update and route it to the dispatcher."""
        event = parse_update(update_data)
        if event is None or self.dispatcher is None:
            return
        if isinstance(event, CallbackQuery):
            await self.dispatcher.handle_callback(event)
        else:
            await self.dispatcher.handle_message(event)

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def send_message(
        self,
        chat_id: int,
        text: str,
        *,
        thread_id: int | None = None,
        buttons: Keyboard | None = None,
    ) -> int | None:
        """Send text (chunked at 4096 chars); the keyboard goes on the last chunk."""
        chunks = [text[i : i + MAX_MESSAGE_LENGTH] for i in range(0, len(text), MAX_MESSAGE_LENGTH)]
        message_id = None
        for index, chunk in enumerate(chunks or [""]):
            payload: dict[str, Any] = {"chat_id": chat_id, "text": chunk}
            if thread_id is not None:
                payload["message_thread_id"] = thread_id
            if buttons and index == len(chunks) - 1:
                payload["reply_markup"] = _reply_markup(buttons)
            result = await self._call("sendMessage", payload)
            if result:
                message_id = result.get("message_id")
        return message_id

    async def send_photo(
        self,
        chat_id: int,
        photo: bytes | str,
        *,
        caption: str = "",
        thread_id: int | None = None,
    ) -> int | None:
        data: dict[str, Any] = {"chat_id": str(chat_id)}
        if caption:
            data["caption"] = caption[:1024]
        if thread_id is not None:
            data["message_thread_id"] = str(thread_id)

        if isinstance(photo, str):
            result = await self._call("sendPhoto", {**data, "photo": photo})
            return result.get("message_id") if result else None

        try:
            async with httpx.AsyncClient() as client:
                resp = await client.post(
                    self._url("sendPhoto"),
                    data=data,
                    files={"photo": ("image.png", photo)},
                )
                body = resp.json()
        except Exception as exc:
            logger.error("Telegram sendPhoto failed: %s", exc)
            return None
        if not body.get("ok"):
            logger.warning("Telegram sendPhoto error: %s", body.get("description", body))
            return None
        return body["result"].get("message_id")

    async def edit_message(
        self,
        chat_id: int,
        message_id: int,
        text: str,
        *,
        buttons: Keyboard | None = None,
    ) -> None:
        payload: dict[str, Any] = {
            "chat_id": chat_id,
            "message_id": message_id,
            "text": text[:MAX_MESSAGE_LENGTH],
        }
        if buttons:
            payload["reply_markup"] = _reply_markup(buttons)
        await self._call("editMessageText", payload)

    async def clear_keyboard(self, chat_id: int, message_id: int) -> None:
        await self._call(
            "editMessageReplyMarkup",
            {"chat_id": chat_id, "message_id": message_id, "reply_markup": _reply_markup(None)},
        )

    async def delete_message(self, chat_id: int, message_id: int) -> bool:
        result = await self._call("deleteMessage", {"chat_id": chat_id, "message_id": message_id})
        return bool(result)

    async def answer_callback(self, callback_id: str, text: str = "") -> None:
        payload: dict[str, Any] = {"callback_query_id": callback_id}
        if text:
            payload["text"] = text[:200]
        await self._call("answerCallbackQuery", payload)

    async def get_chat_administrators(self, chat_id: int) -> list[int]:
        result = await self._call("getChatAdministrators", {"chat_id": chat_id})
        if not result:
            return []
        return [int(member["user"]["id"]) for member in result if "user" in member]

    # ------------------------------------------------------------------
    # File downloads
    # ------------------------------------------------------------------

    async def download_file(self, file_id: str) -> bytes | None:
        """Download a file from Telegram by file_id. Returns raw bytes."""
        info = await self._call("getFile", {"file_id": file_id})
        file_path = info.get("file_path") if info else None
        if not file_path:
            return None
        try:
            async with httpx.AsyncClient() as client:
                resp = await client.get(f"{TELEGRAM_API}/file/bot{self.bot_token}/{file_path}")
                resp.raise_for_status()
                return resp.content
        except Exception as exc:
            logger.error("Error downloading file %s: %s", file_id, exc)
        return None

    # ------------------------------------------------------------------
    # Webhook helpers
    # ------------------------------------------------------------------

    async def _set_webhook(self, url: str) -> None:
        """Register the webhook URL (and secret token, if any) with Telegram."""
        payload: dict[str, Any] = {"url": url, "allowed_updates": ["message", "callback_query"]}
        if self.webhook_secret:
            payload["secret_token"] = self.webhook_secret
        if await self._call("setWebhook", payload):
            logger.info("Telegram webhook set to %s", url)

    def verify_secret(self, token: str | None) -> bool:
        """Check the secret header Telegram sends with every webhook request."""
        if not self.webhook_secret:
            return True
        return hmac.compare_digest((token or "").encode(), self.webhook_secret.encode())

    async def _delete_webhook(self) -> None:
        """Remove any existing webhook."""
        if await self._call("deleteWebhook"):
            logger.debug("Telegram webhook cleared")

    @property
    def bot_username(self) -> str | None:
        return self._bot_username

    @property
    def mode(self) -> str:
        """Current operating mode."""
        if self.webhook_url:
            return "webhook"
        if self._polling_task and not self._polling_task.done():
            return "polling"
        return "stopped"
