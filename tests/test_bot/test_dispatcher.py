"""Tests for the BotDispatcher command and callback surface."""

from __future__ import annotations

from datetime import timedelta

import pytest

from tempo.bot.dispatcher import (
    ADMIN_ONLY,
    GROUP_ONLY,
    PAYMENTS_DISABLED,
    BotDispatcher,
    parse_command,
    parse_record_data,
    record_data,
)
from tempo.channels.base import CallbackQuery, IncomingMessage
from tempo.scheduler.models import MessagePayload, RepeatPolicy, ScheduleKind, ScheduleRecord
from tempo.wizard.models import WizardStep
from tempo.wizard.service import ConfigurationWizard
from tests.conftest import ADMIN_ID, GROUP_ID, MEMBER_ID, OTHER_ADMIN_ID


@pytest.fixture
def wizard(test_settings, wizard_store, engine, transport, clock) -> ConfigurationWizard:
    return ConfigurationWizard(test_settings, wizard_store, engine, transport, clock=clock)


@pytest.fixture
def dispatcher(test_settings, transport, engine, wizard) -> BotDispatcher:
    return BotDispatcher(test_settings, transport, engine, wizard)


def _message(text: str, user_id: int = ADMIN_ID, chat_type: str = "supergroup", **kwargs):
    return IncomingMessage(
        chat_id=GROUP_ID,
        message_id=500,
        user_id=user_id,
        text=text,
        chat_type=chat_type,
        username="boss",
        **kwargs,
    )


def _press(data: str, user_id: int = ADMIN_ID, message_id: int | None = 900):
    return CallbackQuery(
        id="cb-1",
        data=data,
        user_id=user_id,
        chat_id=GROUP_ID,
        message_id=message_id,
        chat_type="supergroup",
        username="boss",
    )


def _create(engine, clock, creator_id=ADMIN_ID) -> ScheduleRecord:
    return engine.create(
        ScheduleRecord(
            group_id=GROUP_ID,
            creator_id=creator_id,
            creator_display_name="@boss",
            payload=MessagePayload(prompt="Morning summary"),
            anchor=clock.now + timedelta(hours=1),
            repeat=RepeatPolicy.daily(),
        )
    )


class TestParsing:
    def test_parse_command(self):
        assert parse_command("/listscheduled") == ("listscheduled", "")
        assert parse_command("/ListScheduled@TempoBot now", "tempobot") == ("listscheduled", "now")
        assert parse_command("/listscheduled@OtherBot", "TempoBot") is None
        assert parse_command("hello") is None

    def test_record_data(self):
        data = record_data("field", "abc123", "content")
        assert data == "rec:field:abc123:content"
        assert parse_record_data(data) == ("field", "abc123", "content")
        assert parse_record_data("rec:toggle:abc123") == ("toggle", "abc123", None)
        with pytest.raises(ValueError):
            parse_record_data("wiz:back")

    def test_record_data_fits_telegram_limit(self):
        data = record_data("field", "f" * 32, "recipient")
        assert len(data.encode()) <= 64


class TestCommands:
    @pytest.mark.asyncio
    async def test_schedule_starts_wizard(self, dispatcher, wizard, transport):
        await dispatcher.handle_message(_message("/scheduleprompt@TempoBot", thread_id=7))
        state = wizard.pending(GROUP_ID, ADMIN_ID)
        assert state.step == WizardStep.AWAITING_CONTENT
        assert state.thread_id == 7
        assert state.user_display_name == "@boss"
        assert transport.last.thread_id == 7

    @pytest.mark.asyncio
    async def test_private_chat_rejected(self, dispatcher, wizard, transport):
        await dispatcher.handle_message(_message("/scheduleprompt", chat_type="private"))
        assert transport.last.text == GROUP_ONLY
        assert wizard.pending(GROUP_ID, ADMIN_ID) is None

    @pytest.mark.asyncio
    async def test_non_admin_rejected(self, dispatcher, wizard, transport):
        await dispatcher.handle_message(_message("/listscheduled", user_id=MEMBER_ID))
        assert transport.last.text == ADMIN_ONLY

    @pytest.mark.asyncio
    async def test_payments_disabled(self, dispatcher, test_settings, transport):
        test_settings.payments.enabled = False
        await dispatcher.handle_message(_message("/schedulepayment"))
        assert transport.last.text == PAYMENTS_DISABLED

    @pytest.mark.asyncio
    async def test_unknown_command_ignored(self, dispatcher, transport):
        await dispatcher.handle_message(_message("/start"))
        assert transport.sent == []

    @pytest.mark.asyncio
    async def test_list_empty(self, dispatcher, transport):
        await dispatcher.handle_message(_message("/listscheduledpayments"))
        assert transport.last.text == "📭 No active scheduled payments in this group."

    @pytest.mark.asyncio
    async def test_list_shows_controls(self, dispatcher, engine, clock, transport):
        record = _create(engine, clock)
        paused = _create(engine, clock)
        engine.pause(paused.id, ADMIN_ID)

        await dispatcher.handle_message(_message("/listscheduled"))

        assert len(transport.sent) == 2
        first = transport.sent[0]
        assert "Morning summary" in first.text
        assert "Daily" in first.text
        assert transport.callback_data(first) == [
            f"rec:edit:{record.id}",
            f"rec:toggle:{record.id}",
            f"rec:runnow:{record.id}",
            f"rec:delete:{record.id}",
            f"rec:close:{record.id}",
        ]
        assert "⏸ Paused" in transport.sent[1].text
        assert transport.sent[1].buttons[0][1].text == "▶️ Resume"


class TestWizardRouting:
    @pytest.mark.asyncio
    async def test_text_goes_to_wizard(self, dispatcher, wizard):
        await dispatcher.handle_message(_message("/scheduleprompt"))
        await dispatcher.handle_message(_message("Say good morning"))
        state = wizard.pending(GROUP_ID, ADMIN_ID)
        assert state.prompt == "Say good morning"
        assert state.step == WizardStep.AWAITING_MEDIA

    @pytest.mark.asyncio
    async def test_photo_goes_to_wizard(self, dispatcher, wizard):
        await dispatcher.handle_message(_message("/scheduleprompt"))
        await dispatcher.handle_message(_message("Describe this"))
        await dispatcher.handle_message(_message("", photo_file_id="photo-9"))
        assert wizard.pending(GROUP_ID, ADMIN_ID).image_file_id == "photo-9"

    @pytest.mark.asyncio
    async def test_demoted_admin_input_ignored(self, dispatcher, wizard, transport):
        await dispatcher.handle_message(_message("/scheduleprompt"))
        transport.admins.discard(ADMIN_ID)
        await dispatcher.handle_message(_message("Say good morning"))
        assert wizard.pending(GROUP_ID, ADMIN_ID).prompt is None

    @pytest.mark.asyncio
    async def test_wizard_button(self, dispatcher, wizard, transport):
        await dispatcher.handle_message(_message("/scheduleprompt"))
        await dispatcher.handle_callback(_press("wiz:cancel"))
        assert wizard.pending(GROUP_ID, ADMIN_ID) is None
        assert transport.answers[-1] == ("cb-1", "❌ Cancelled")

    @pytest.mark.asyncio
    async def test_button_needs_admin(self, dispatcher, wizard, transport):
        await dispatcher.handle_message(_message("/scheduleprompt"))
        await dispatcher.handle_callback(_press("wiz:cancel", user_id=MEMBER_ID))
        assert wizard.pending(GROUP_ID, ADMIN_ID) is not None
        assert transport.answers[-1] == ("cb-1", ADMIN_ONLY)


class TestRecordActions:
    @pytest.mark.asyncio
    async def test_toggle(self, dispatcher, engine, clock, transport):
        record = _create(engine, clock)
        await dispatcher.handle_callback(_press(f"rec:toggle:{record.id}"))

        assert engine.store.get(record.id).active is False
        assert transport.answers[-1][1] == "⏸ Paused"
        assert transport.edited[-1].message_id == 900
        assert "⏸ Paused" in transport.edited[-1].text

    @pytest.mark.asyncio
    async def test_only_creator_may_act(self, dispatcher, engine, clock, transport):
        record = _create(engine, clock)
        await dispatcher.handle_callback(_press(f"rec:delete:{record.id}", OTHER_ADMIN_ID))

        assert engine.store.get(record.id).is_deleted is False
        assert transport.answers[-1][1] == "❌ Only the creator can change this schedule."

    @pytest.mark.asyncio
    async def test_delete(self, dispatcher, engine, clock, transport):
        record = _create(engine, clock)
        await dispatcher.handle_callback(_press(f"rec:delete:{record.id}"))

        assert engine.store.get(record.id).is_deleted
        assert (GROUP_ID, 900) in transport.deleted
        assert engine.live_handles(record.id) == []

    @pytest.mark.asyncio
    async def test_run_now(self, dispatcher, engine, clock, transport):
        record = _create(engine, clock)
        await dispatcher.handle_callback(_press(f"rec:runnow:{record.id}"))
        assert engine.store.get(record.id).next_run_at == clock.now
        assert transport.answers[-1][1] == "⚡ Running now"

    @pytest.mark.asyncio
    async def test_edit_menu_and_field(self, dispatcher, engine, clock, wizard, transport):
        record = _create(engine, clock)
        await dispatcher.handle_callback(_press(f"rec:edit:{record.id}"))

        menu = transport.edited[-1]
        assert f"rec:field:{record.id}:content" in [
            b.callback_data for row in menu.buttons for b in row
        ]

        await dispatcher.handle_callback(_press(f"rec:field:{record.id}:repeat"))
        state = wizard.pending(GROUP_ID, ADMIN_ID)
        assert state.schedule_id == record.id
        assert state.step == WizardStep.AWAITING_REPEAT

        await dispatcher.handle_callback(_press("wiz:repeat:1w"))
        await dispatcher.handle_callback(_press("wiz:confirm"))
        assert engine.store.get(record.id).repeat == RepeatPolicy.weekly()

    @pytest.mark.asyncio
    async def test_close(self, dispatcher, engine, clock, transport):
        record = _create(engine, clock)
        await dispatcher.handle_callback(_press(f"rec:close:{record.id}"))
        assert transport.cleared == [(GROUP_ID, 900)]

    @pytest.mark.asyncio
    async def test_missing_record(self, dispatcher, transport):
        await dispatcher.handle_callback(_press("rec:toggle:deadbeef"))
        assert transport.answers[-1][1] == "ℹ️ Schedule not found."

    @pytest.mark.asyncio
    async def test_kind_filter(self, dispatcher, engine, clock, transport):
        _create(engine, clock)
        count = await dispatcher.list_records(GROUP_ID, ScheduleKind.PAYMENT)
        assert count == 0
