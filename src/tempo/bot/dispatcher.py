"""Owner-facing command surface — slash commands, list controls and wizard routing.

Every entry point re-checks authorization against live chat state: group
chats only, administrators only, and record actions only by the record's
creator (enforced by the engine). Nothing the client displayed is trusted.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from tempo.channels.base import CallbackQuery, IncomingMessage, InlineButton, Keyboard
from tempo.core.errors import ScheduleNotFoundError, StorageError, TempoError
from tempo.scheduler.models import AttemptStatus, MessagePayload, ScheduleKind, ScheduleRecord
from tempo.wizard import flows

if TYPE_CHECKING:
    from tempo.channels.base import ChatTransport
    from tempo.config.settings import Settings
    from tempo.scheduler.engine import SchedulerEngine
    from tempo.wizard.service import ConfigurationWizard

logger = logging.getLogger("tempo.bot.dispatcher")

RECORD_PREFIX = "rec"

GROUP_ONLY = "❌ This command is only available in groups."
ADMIN_ONLY = "❌ Only administrators can use this command."
PAYMENTS_DISABLED = "❌ Scheduled payments are not enabled for this bot."

# command → (action, kind)
COMMANDS: dict[str, tuple[str, ScheduleKind]] = {
    "scheduleprompt": ("schedule", ScheduleKind.MESSAGE),
    "schedulepayment": ("schedule", ScheduleKind.PAYMENT),
    "listscheduled": ("list", ScheduleKind.MESSAGE),
    "listscheduledpayments": ("list", ScheduleKind.PAYMENT),
}

_EMPTY_LIST = {
    ScheduleKind.MESSAGE: "📭 No active scheduled prompts in this group.",
    ScheduleKind.PAYMENT: "📭 No active scheduled payments in this group.",
}


def record_data(action: str, record_id: str, field: str | None = None) -> str:
    """Callback data for a per-record control: ``rec:<action>:<id>[:<field>]``."""
    data = f"{RECORD_PREFIX}:{action}:{record_id}"
    return f"{data}:{field}" if field else data


def parse_record_data(data: str) -> tuple[str, str, str | None]:
    parts = data.split(":", 3)
    if len(parts) < 3 or parts[0] != RECORD_PREFIX:
        raise ValueError(f"Not a record callback: {data!r}")
    field = parts[3] if len(parts) == 4 else None
    return parts[1], parts[2], field


def parse_command(text: str, bot_username: str | None = None) -> tuple[str, str] | None:
    """``/listscheduled@TempoBot extra`` → ("listscheduled", "extra").

    Returns None for plain text and for commands addressed to another bot.
    """
    if not text.startswith("/"):
        return None
    head, _, rest = text.strip().partition(" ")
    name, _, target = head[1:].partition("@")
    if target and bot_username and target.lower() != bot_username.lower():
        return None
    return name.lower(), rest.strip()


def record_title(record: ScheduleRecord) -> str:
    """Text of one entry in a schedule listing."""
    if record.next_run_at and record.active:
        when = record.next_run_at.strftime("%Y-%m-%d %H:%M") + " UTC"
    else:
        when = "-"
    status = "▶️ Active" if record.active else "⏸ Paused"
    lines: list[str] = []

    payload = record.payload
    if isinstance(payload, MessagePayload):
        prompt = payload.prompt if len(payload.prompt) <= 120 else payload.prompt[:119] + "…"
        lines.append(f"🗓️ {prompt}")
        if payload.image_file_id:
            lines.append("🖼️ With image")
    else:
        lines.append(f"💸 {payload.display_amount} → @{payload.recipient_username}")

    lines += [
        f"🔁 {record.repeat.label} • Next: {when}",
        f"👤 {record.creator_display_name or record.creator_id} • {status}",
    ]
    if record.last_attempt_status == AttemptStatus.FAILED and record.last_error:
        lines.append(f"⚠️ Last run failed: {record.last_error[:120]}")
    return "\n".join(lines)


def record_keyboard(record: ScheduleRecord) -> Keyboard:
    toggle = "⏸ Pause" if record.active else "▶️ Resume"
    return [
        [
            InlineButton("✏️ Edit", record_data("edit", record.id)),
            InlineButton(toggle, record_data("toggle", record.id)),
        ],
        [
            InlineButton("⚡ Run now", record_data("runnow", record.id)),
            InlineButton("🗑 Delete", record_data("delete", record.id)),
        ],
        [InlineButton("✖️ Close", record_data("close", record.id))],
    ]


def edit_keyboard(record: ScheduleRecord) -> Keyboard:
    buttons = [
        InlineButton(label, record_data("field", record.id, name))
        for name, (label, _) in flows.EDIT_FIELDS[record.kind].items()
    ]
    rows = [buttons[i : i + 2] for i in range(0, len(buttons), 2)]
    rows.append([InlineButton("↩️ Back", record_data("menu", record.id))])
    return rows


class BotDispatcher:
    """Routes normalized chat updates to the wizard and the scheduler engine."""

    def __init__(
        self,
        settings: Settings,
        transport: ChatTransport,
        engine: SchedulerEngine,
        wizard: ConfigurationWizard,
    ) -> None:
        self._settings = settings
        self._transport = transport
        self._engine = engine
        self._wizard = wizard

    @property
    def payments_enabled(self) -> bool:
        return self._settings.payments.enabled

    async def is_admin(self, chat_id: int, user_id: int) -> bool:
        admins = await self._transport.get_chat_administrators(chat_id)
        return user_id in admins

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def handle_message(self, message: IncomingMessage) -> None:
        command = parse_command(message.text, getattr(self._transport, "bot_username", None))
        if command is not None:
            name, _ = command
            if name in COMMANDS:
                await self._handle_command(message, *COMMANDS[name])
            return

        if not message.is_group:
            return
        if self._wizard.pending(message.chat_id, message.user_id) is None:
            return
        if not await self.is_admin(message.chat_id, message.user_id):
            logger.warning(
                "Ignoring wizard input from non-admin %s in %s", message.user_id, message.chat_id
            )
            return

        handled = False
        if message.photo_file_id:
            handled = await self._wizard.handle_photo(message)
        if not handled and message.text:
            await self._wizard.handle_text(message)

    async def _handle_command(
        self, message: IncomingMessage, action: str, kind: ScheduleKind
    ) -> None:
        if not message.is_group:
            await self._reply(message, GROUP_ONLY)
            return
        if not await self.is_admin(message.chat_id, message.user_id):
            await self._reply(message, ADMIN_ONLY)
            return
        if kind == ScheduleKind.PAYMENT and not self.payments_enabled:
            await self._reply(message, PAYMENTS_DISABLED)
            return

        if action == "schedule":
            await self._wizard.start(
                kind,
                message.chat_id,
                message.user_id,
                display_name=message.display_name,
                thread_id=message.thread_id,
            )
        else:
            await self.list_records(message.chat_id, kind, thread_id=message.thread_id)

    async def list_records(
        self, group_id: int, kind: ScheduleKind, thread_id: int | None = None
    ) -> int:
        """Post one message with controls per listed record. Returns the count."""
        records = self._engine.store.list_for_group(group_id, kind, active_only=False)
        if not records:
            await self._transport.send_message(group_id, _EMPTY_LIST[kind], thread_id=thread_id)
            return 0
        for record in records:
            await self._transport.send_message(
                group_id,
                record_title(record),
                thread_id=thread_id,
                buttons=record_keyboard(record),
            )
        return len(records)

    async def _reply(self, message: IncomingMessage, text: str) -> None:
        await self._transport.send_message(message.chat_id, text, thread_id=message.thread_id)

    # ------------------------------------------------------------------
    # Button presses
    # ------------------------------------------------------------------

    async def handle_callback(self, query: CallbackQuery) -> None:
        notice = ""
        try:
            notice = await self._route_callback(query)
        except TempoError as exc:
            if isinstance(exc, StorageError):
                logger.error("Storage failure handling callback %s: %s", query.data, exc.message)
            else:
                logger.warning(
                    "Rejected callback %s from %s: %s", query.data, query.user_id, exc.message
                )
            notice = exc.user_message
        finally:
            await self._transport.answer_callback(query.id, notice)

    async def _route_callback(self, query: CallbackQuery) -> str:
        if not query.is_group:
            return GROUP_ONLY
        if not await self.is_admin(query.chat_id, query.user_id):
            return ADMIN_ONLY

        prefix = query.data.partition(":")[0]
        if prefix == flows.WIZARD_PREFIX:
            action, arg = flows.parse_wizard_data(query.data)
            return await self._wizard.handle_action(query.chat_id, query.user_id, action, arg)
        if prefix == RECORD_PREFIX:
            try:
                action, record_id, field = parse_record_data(query.data)
            except ValueError:
                return ""
            return await self._record_action(query, action, record_id, field)
        return ""

    async def _record_action(
        self, query: CallbackQuery, action: str, record_id: str, field: str | None
    ) -> str:
        engine = self._engine
        user_id = query.user_id

        if action == "close":
            if query.message_id is not None:
                await self._transport.clear_keyboard(query.chat_id, query.message_id)
            return ""

        if action == "toggle":
            record = engine.toggle(record_id, user_id)
            await self._refresh(query, record)
            return "▶️ Resumed" if record.active else "⏸ Paused"

        if action == "runnow":
            engine.run_now(record_id, user_id)
            return "⚡ Running now"

        if action == "delete":
            engine.delete(record_id, user_id)
            if query.message_id is not None:
                await self._transport.delete_message(query.chat_id, query.message_id)
            return "🗑 Deleted"

        if action == "edit":
            record = engine.owned(record_id, user_id)
            if query.message_id is not None:
                await self._transport.edit_message(
                    query.chat_id,
                    query.message_id,
                    f"{record_title(record)}\n\n✏️ What would you like to change?",
                    buttons=edit_keyboard(record),
                )
            return ""

        if action == "field" and field:
            record = engine.owned(record_id, user_id)
            await self._wizard.start_edit(record, field, user_id, query.display_name)
            await self._refresh(query, record)
            return "✏️ Editing"

        if action == "menu":
            record = engine.store.get(record_id)
            if record is None or record.is_deleted:
                raise ScheduleNotFoundError(record_id)
            await self._refresh(query, record)
            return ""

        return ""

    async def _refresh(self, query: CallbackQuery, record: ScheduleRecord) -> None:
        """Redraw a listing entry with its current state and controls."""
        if query.message_id is None:
            return
        await self._transport.edit_message(
            query.chat_id,
            query.message_id,
            record_title(record),
            buttons=record_keyboard(record),
        )
