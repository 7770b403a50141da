"""Configuration wizard — turns chat turns and button presses into schedule records."""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from datetime import UTC, date, datetime, time, timedelta
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Protocol

from tempo.core.errors import (
    GENERIC_RETRY,
    ExecutionError,
    InputValidationError,
    ScheduleNotFoundError,
    StorageError,
    TempoError,
)
from tempo.scheduler.models import (
    MessagePayload,
    PaymentPayload,
    RepeatPolicy,
    ScheduleKind,
    ScheduleRecord,
    format_units,
)
from tempo.scheduler.recurrence import initial_run
from tempo.wizard import flows
from tempo.wizard.models import PendingWizardState, WizardStep

if TYPE_CHECKING:
    from tempo.channels.base import ChatTransport, IncomingMessage
    from tempo.config.settings import Settings
    from tempo.executors.guard import GuardVerdict
    from tempo.executors.payments import Identity, TokenInfo
    from tempo.scheduler.engine import SchedulerEngine
    from tempo.wizard.store import WizardStore

logger = logging.getLogger("tempo.wizard.service")

_USERNAME_RE = re.compile(r"^@?[A-Za-z0-9_]{3,32}$")
_SYMBOL_RE = re.compile(r"^[A-Za-z0-9]{1,16}$")

# Edit targets that re-collect the start time; the others keep the anchor
_TIME_FIELDS = frozenset({"time", "schedule"})

EXPIRED = "ℹ️ That button has expired."
NO_PENDING = "ℹ️ No schedule in progress."
GUARD_FALLBACK_REASON = "Prompt requests a forbidden action for scheduled runs"


class IdentityResolver(Protocol):
    async def resolve(self, username: str) -> Identity | None: ...


class TokenResolver(Protocol):
    async def resolve(self, symbol: str) -> TokenInfo | None: ...


class PromptGuard(Protocol):
    async def check(self, prompt: str) -> GuardVerdict: ...


def _utcnow() -> datetime:
    return datetime.now(UTC)


def state_from_record(
    record: ScheduleRecord, user_id: int, display_name: str
) -> PendingWizardState:
    """A fully filled session that edits ``record`` in place."""
    state = PendingWizardState(
        group_id=record.group_id,
        user_id=user_id,
        user_display_name=display_name,
        kind=record.kind,
        step=WizardStep.AWAITING_CONFIRM,
        thread_id=record.thread_id,
        schedule_id=record.id,
        base_revision=record.revision,
        hour=record.anchor.hour,
        minute=record.anchor.minute,
        repeat=record.repeat.choice_code,
    )
    payload = record.payload
    if isinstance(payload, MessagePayload):
        state.prompt = payload.prompt
        state.image_file_id = payload.image_file_id
        state.media_done = True
    else:
        state.recipient_username = payload.recipient_username
        state.recipient_address = payload.recipient_address
        state.symbol = payload.symbol
        state.token_type = payload.token_type
        state.decimals = payload.decimals
        state.amount = format_units(payload.amount_smallest_units, payload.decimals)
        state.amount_smallest_units = payload.amount_smallest_units
        state.run_date = record.anchor.date()
    return state


class ConfigurationWizard:
    """Resumable, persisted state machine behind /scheduleprompt and /schedulepayment.

    Every turn reloads the session from the wizard store, applies one input,
    persists it and replaces the visible prompt. Invalid input re-prompts
    without advancing. Authorization happens in the dispatcher before any
    of these methods is called.
    """

    def __init__(
        self,
        settings: Settings,
        store: WizardStore,
        engine: SchedulerEngine,
        transport: ChatTransport,
        identities: IdentityResolver | None = None,
        tokens: TokenResolver | None = None,
        guard: PromptGuard | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._settings = settings
        self._store = store
        self._engine = engine
        self._transport = transport
        self._identities = identities
        self._tokens = tokens
        self._guard = guard
        self._clock = clock

    def pending(self, group_id: int, user_id: int) -> PendingWizardState | None:
        return self._store.get(group_id, user_id)

    # -- Entry points ----------------------------------------------------------

    async def start(
        self,
        kind: ScheduleKind,
        group_id: int,
        user_id: int,
        display_name: str = "",
        thread_id: int | None = None,
    ) -> PendingWizardState:
        """Begin a new session, superseding any the user already had in the group."""
        await self._supersede(group_id, user_id)
        state = PendingWizardState(
            group_id=group_id,
            user_id=user_id,
            user_display_name=display_name,
            kind=kind,
            step=flows.first_step(kind),
            thread_id=thread_id,
        )
        await self._show(state)
        logger.info("Started %s wizard for user %s in group %s", kind, user_id, group_id)
        return state

    async def start_edit(
        self,
        record: ScheduleRecord,
        field: str,
        user_id: int,
        display_name: str = "",
    ) -> PendingWizardState:
        """Re-enter the wizard at the first step of ``field`` for an existing record."""
        try:
            steps = flows.edit_steps(record.kind, field)
        except ValueError as exc:
            raise InputValidationError("❌ That field can't be edited.") from exc

        await self._supersede(record.group_id, user_id)
        state = state_from_record(record, user_id, display_name)
        state.edit_field = field
        flows.clear_steps(state, steps)
        state.step = steps[0]
        await self._show(state)
        logger.info("Editing %s of schedule %s by user %s", field, record.id, user_id)
        return state

    async def handle_text(self, message: IncomingMessage) -> bool:
        """Feed a text message to the user's session. Returns False if there is none."""
        state = self._store.get(message.chat_id, message.user_id)
        if state is None:
            return False
        if state.step == WizardStep.AWAITING_MEDIA:
            state.user_message_ids.append(message.message_id)
            await self._show(state, error="❌ Send a photo, or press Skip image.")
            return True
        if state.step not in flows.TEXT_STEPS:
            return False

        state.user_message_ids.append(message.message_id)
        try:
            await self._apply_text(state, message.text)
        except InputValidationError as exc:
            await self._show(state, error=exc.user_message)
            return True
        await self._advance(state)
        return True

    async def handle_photo(self, message: IncomingMessage) -> bool:
        state = self._store.get(message.chat_id, message.user_id)
        if state is None or state.step != WizardStep.AWAITING_MEDIA or not message.photo_file_id:
            return False
        state.user_message_ids.append(message.message_id)
        state.image_file_id = message.photo_file_id
        state.media_done = True
        await self._advance(state)
        return True

    async def handle_action(
        self, group_id: int, user_id: int, action: str, arg: str | None = None
    ) -> str:
        """Apply a wizard button press; returns the short callback notice."""
        state = self._store.get(group_id, user_id)
        if state is None:
            return NO_PENDING

        if action == "cancel":
            await self.cancel(group_id, user_id)
            return "❌ Cancelled"
        if action == "back":
            return await self._back(state)
        if action == "confirm":
            return await self._confirm(state)

        expected = {
            "hour": WizardStep.AWAITING_HOUR,
            "minute": WizardStep.AWAITING_MINUTE,
            "repeat": WizardStep.AWAITING_REPEAT,
            "skip": WizardStep.AWAITING_MEDIA,
        }
        if expected.get(action) != state.step:
            return EXPIRED

        try:
            if action == "skip":
                state.image_file_id = None
                state.media_done = True
            elif action == "repeat":
                state.repeat = self._parse_repeat(state, arg or "")
            elif action == "hour":
                state.hour = self._parse_hour(arg or "")
            else:
                state.minute = self._parse_minute(state, arg or "")
        except InputValidationError as exc:
            return exc.user_message
        await self._advance(state)
        return ""

    async def cancel(self, group_id: int, user_id: int) -> bool:
        """Drop the session without touching any schedule. Returns False if none."""
        state = self._store.get(group_id, user_id)
        if state is None:
            return False
        self._store.delete(group_id, user_id)
        await self._cleanup(state)
        logger.info("Wizard cancelled for user %s in group %s", user_id, group_id)
        return True

    # -- Navigation ------------------------------------------------------------

    async def _advance(self, state: PendingWizardState) -> None:
        if state.is_edit and state.edit_field:
            steps = flows.edit_steps(state.kind, state.edit_field)
            if state.step == steps[-1] and flows.is_complete(state):
                state.step = WizardStep.AWAITING_CONFIRM
                await self._show(state)
                return
        state.step = flows.next_step(state.kind, state.step)
        await self._show(state)

    async def _back(self, state: PendingWizardState) -> str:
        previous = flows.previous_step(state.kind, state.step)
        if previous is None:
            return "ℹ️ Already at first step"
        flows.reset_from_step(state, state.step)
        state.step = previous
        await self._show(state)
        return ""

    async def _confirm(self, state: PendingWizardState) -> str:
        if state.step != WizardStep.AWAITING_CONFIRM or not flows.is_complete(state):
            return EXPIRED

        try:
            record = self._commit(state)
        except StorageError:
            logger.exception("Could not save schedule for user %s", state.user_id)
            await self._show(state, error=GENERIC_RETRY)
            return GENERIC_RETRY
        except TempoError as exc:
            logger.info("Schedule rejected for user %s: %s", state.user_id, exc.message)
            await self._discard(state)
            await self._transport.send_message(
                state.group_id, exc.user_message, thread_id=state.thread_id
            )
            return exc.user_message

        await self._discard(state)
        verb = "updated" if state.is_edit else "created"
        noun = flows.KIND_NOUN[state.kind].capitalize()
        await self._transport.send_message(
            state.group_id,
            f"✅ {noun} {verb}.\n\n{flows.summarize(state, record.next_run_at)}",
            thread_id=state.thread_id,
        )
        return "✅ Saved"

    def _commit(self, state: PendingWizardState) -> ScheduleRecord:
        payload = self._build_payload(state)
        repeat = RepeatPolicy.from_choice(state.repeat or "none")
        now = self._clock()

        if state.is_edit:
            assert state.schedule_id is not None
            current = self._engine.store.get(state.schedule_id)
            if current is None or current.is_deleted:
                raise ScheduleNotFoundError(state.schedule_id)
            anchor = current.anchor
            if state.edit_field in _TIME_FIELDS or current.kind == ScheduleKind.PAYMENT:
                anchor = self.anchor_for(state, now)
            if isinstance(current.payload, PaymentPayload) and isinstance(payload, PaymentPayload):
                payload = payload.model_copy(
                    update={
                        "notify_on_success": current.payload.notify_on_success,
                        "notify_on_failure": current.payload.notify_on_failure,
                    }
                )
            edited = current.model_copy(
                update={"payload": payload, "anchor": anchor, "repeat": repeat}
            )
            return self._engine.replace(edited, state.user_id, base_revision=state.base_revision)

        record = ScheduleRecord(
            group_id=state.group_id,
            thread_id=state.thread_id,
            creator_id=state.user_id,
            creator_display_name=state.user_display_name,
            payload=payload,
            anchor=self.anchor_for(state, now),
            repeat=repeat,
        )
        return self._engine.create(record)

    # -- Field parsing ---------------------------------------------------------

    async def _apply_text(self, state: PendingWizardState, text: str) -> None:
        step = state.step
        if step == WizardStep.AWAITING_CONTENT:
            prompt = self._parse_prompt(text)
            await self._screen_prompt(prompt)
            state.prompt = prompt
        elif step == WizardStep.AWAITING_RECIPIENT:
            identity = await self._resolve_recipient(text)
            state.recipient_username = identity.username
            state.recipient_address = identity.address
        elif step == WizardStep.AWAITING_TOKEN:
            token = await self._resolve_token(text)
            state.symbol = token.symbol
            state.token_type = token.token_type
            state.decimals = token.decimals
        elif step == WizardStep.AWAITING_AMOUNT:
            state.amount, state.amount_smallest_units = self._parse_amount(state, text)
        elif step == WizardStep.AWAITING_DATE:
            state.run_date = self._parse_date(text)
        elif step == WizardStep.AWAITING_HOUR:
            state.hour = self._parse_hour(text)
        elif step == WizardStep.AWAITING_MINUTE:
            state.minute = self._parse_minute(state, text)

    def _parse_prompt(self, text: str) -> str:
        prompt = text.strip()
        if not prompt or prompt.startswith("/"):
            raise InputValidationError("❌ Please send the prompt as text.")
        limit = self._settings.scheduler.max_prompt_length
        if len(prompt) > limit:
            raise InputValidationError(f"❌ Prompt is too long (max {limit} characters).")
        return prompt

    async def _screen_prompt(self, prompt: str) -> None:
        """Reject prompts the guard fails; a guard outage lets the prompt through."""
        if self._guard is None:
            return
        try:
            verdict = await self._guard.check(prompt)
        except Exception:
            logger.warning("Prompt guard check failed, accepting the prompt", exc_info=True)
            return
        if not verdict.allowed:
            reason = verdict.reason or GUARD_FALLBACK_REASON
            raise InputValidationError(
                f"❌ This prompt can't be scheduled.\n\nReason: {reason}\n\n"
                "Scheduled prompts may ask for information (prices, news, weather) "
                "but never payments, withdrawals or actions on members. "
                "Please send a new prompt."
            )

    async def _resolve_recipient(self, text: str) -> Identity:
        handle = text.strip()
        if not _USERNAME_RE.match(handle):
            raise InputValidationError("❌ Unknown user. Please send a valid @username.")
        if self._identities is None:
            raise InputValidationError("❌ Payments are not available right now.")
        try:
            identity = await self._identities.resolve(handle.lstrip("@"))
        except ExecutionError as exc:
            logger.warning("Identity lookup for %s failed: %s", handle, exc.message)
            raise InputValidationError(
                "⚠️ Couldn't look up that user right now. Try again."
            ) from exc
        if identity is None:
            raise InputValidationError("❌ Unknown user. Please send a valid @username.")
        return identity

    async def _resolve_token(self, text: str) -> TokenInfo:
        symbol = text.strip().lstrip("$")
        not_found = "❌ Token not found. Try again (e.g., APT, USDC)"
        if not _SYMBOL_RE.match(symbol):
            raise InputValidationError(not_found)
        if self._tokens is None:
            raise InputValidationError("❌ Payments are not available right now.")
        try:
            token = await self._tokens.resolve(symbol)
        except ExecutionError as exc:
            logger.warning("Token lookup for %s failed: %s", symbol, exc.message)
            raise InputValidationError(
                "⚠️ Couldn't look up that token right now. Try again."
            ) from exc
        if token is None:
            raise InputValidationError(not_found)
        return token

    @staticmethod
    def _parse_amount(state: PendingWizardState, text: str) -> tuple[str, int]:
        invalid = "❌ Invalid amount. Please send a positive number."
        cleaned = text.strip().replace("_", "").replace(",", "")
        try:
            value = Decimal(cleaned)
        except InvalidOperation:
            raise InputValidationError(invalid) from None
        if not value.is_finite() or value <= 0:
            raise InputValidationError(invalid)

        decimals = state.decimals or 0
        units = value.scaleb(decimals)
        if units != units.to_integral_value():
            raise InputValidationError(
                f"❌ {state.symbol} supports at most {decimals} decimal places."
            )
        return format(value.normalize(), "f"), int(units)

    def _parse_date(self, text: str) -> date:
        try:
            parsed = datetime.strptime(text.strip(), "%Y-%m-%d").date()
        except ValueError:
            raise InputValidationError("❌ Invalid date. Use YYYY-MM-DD.") from None
        if parsed < self._clock().date():
            raise InputValidationError("❌ That date is in the past. Use today or later.")
        return parsed

    @staticmethod
    def _parse_hour(text: str) -> int:
        try:
            hour = int(text.strip())
        except ValueError:
            hour = -1
        if not 0 <= hour <= 23:
            raise InputValidationError("❌ Pick an hour between 00 and 23.")
        return hour

    def _parse_minute(self, state: PendingWizardState, text: str) -> int:
        try:
            minute = int(text.strip())
        except ValueError:
            minute = -1
        if not 0 <= minute <= 59:
            raise InputValidationError("❌ Pick a minute between 00 and 59.")
        if state.kind == ScheduleKind.PAYMENT and state.run_date and state.hour is not None:
            start = datetime.combine(state.run_date, time(state.hour, minute), tzinfo=UTC)
            if start <= self._clock():
                raise InputValidationError("❌ That time has already passed. Pick a later time.")
        return minute

    @staticmethod
    def _parse_repeat(state: PendingWizardState, code: str) -> str:
        if code not in flows.REPEAT_CHOICES[state.kind]:
            raise InputValidationError("❌ That repeat option isn't available here.")
        return code

    # -- Building --------------------------------------------------------------

    def anchor_for(self, state: PendingWizardState, now: datetime) -> datetime:
        """First UTC occurrence from the collected date/hour/minute.

        Payments use their explicit date. Prompts have no date step: the
        next moment at hour:minute, today or tomorrow.
        """
        at = time(state.hour or 0, state.minute or 0)
        if state.kind == ScheduleKind.PAYMENT and state.run_date is not None:
            return datetime.combine(state.run_date, at, tzinfo=UTC)
        candidate = datetime.combine(now.date(), at, tzinfo=UTC)
        if candidate <= now:
            candidate += timedelta(days=1)
        return candidate

    @staticmethod
    def _build_payload(state: PendingWizardState) -> MessagePayload | PaymentPayload:
        if state.kind == ScheduleKind.MESSAGE:
            return MessagePayload(prompt=state.prompt or "", image_file_id=state.image_file_id)
        return PaymentPayload(
            recipient_username=state.recipient_username or "",
            recipient_address=state.recipient_address or "",
            symbol=state.symbol or "",
            token_type=state.token_type or "",
            decimals=state.decimals or 0,
            amount_smallest_units=state.amount_smallest_units or 0,
        )

    def _preview_next_run(self, state: PendingWizardState) -> datetime | None:
        now = self._clock()
        anchor = self.anchor_for(state, now)
        keeps_anchor = state.kind == ScheduleKind.MESSAGE and state.edit_field not in _TIME_FIELDS
        if state.is_edit and keeps_anchor:
            current = self._engine.store.get(state.schedule_id or "")
            if current is not None:
                anchor = current.anchor
        repeat = RepeatPolicy.from_choice(state.repeat or "none")
        return initial_run(anchor, repeat, now)

    # -- Display ---------------------------------------------------------------

    async def _show(self, state: PendingWizardState, error: str | None = None) -> None:
        """Replace the visible prompt with the one for ``state.step`` and persist."""
        await self._cleanup(state)
        next_run = None
        if state.step == WizardStep.AWAITING_CONFIRM:
            next_run = self._preview_next_run(state)
        text = flows.prompt_for(state, next_run)
        if error:
            text = f"{error}\n\n{text}"

        state.current_prompt_id = await self._transport.send_message(
            state.group_id,
            text,
            thread_id=state.thread_id,
            buttons=flows.keyboard_for(state),
        )
        state.user_message_ids = []
        state.updated_at = self._clock()
        try:
            self._store.put(state)
        except StorageError:
            # The stored session still holds the previous step
            await self._transport.send_message(
                state.group_id, GENERIC_RETRY, thread_id=state.thread_id
            )

    async def _cleanup(self, state: PendingWizardState) -> None:
        """Best-effort removal of the old prompt and the user's raw replies."""
        ids = [*state.user_message_ids]
        if state.current_prompt_id is not None:
            ids.append(state.current_prompt_id)
        for message_id in ids:
            if not await self._transport.delete_message(state.group_id, message_id):
                logger.debug("Could not delete message %s in %s", message_id, state.group_id)

    async def _discard(self, state: PendingWizardState) -> None:
        try:
            self._store.delete(state.group_id, state.user_id)
        except StorageError:
            logger.exception("Could not remove wizard session %s", state.key)
        await self._cleanup(state)

    async def _supersede(self, group_id: int, user_id: int) -> None:
        existing = self._store.get(group_id, user_id)
        if existing is not None:
            await self._cleanup(existing)
