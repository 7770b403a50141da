"""Shared test fixtures."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from tempo.channels.base import ChatTransport, Keyboard
from tempo.config.models import ModelConfig, PaymentsConfig, SchedulerConfig, TelegramConfig
from tempo.config.settings import Settings
from tempo.scheduler.engine import SchedulerEngine
from tempo.scheduler.executors import ExecutionResult
from tempo.scheduler.models import ScheduleKind
from tempo.scheduler.store import ScheduleStore
from tempo.wizard.store import WizardStore

GROUP_ID = -100123
ADMIN_ID = 111
OTHER_ADMIN_ID = 222
MEMBER_ID = 333


@dataclass
class SentMessage:
    chat_id: int
    text: str
    message_id: int
    thread_id: int | None = None
    buttons: Keyboard | None = None


@dataclass
class FakeTransport(ChatTransport):
    """In-memory transport that records everything the bot does."""

    admins: set[int] = field(default_factory=lambda: {ADMIN_ID, OTHER_ADMIN_ID})
    files: dict[str, bytes] = field(default_factory=dict)
    bot_username: str = "TempoBot"
    sent: list[SentMessage] = field(default_factory=list)
    photos: list[tuple[int, bytes | str]] = field(default_factory=list)
    edited: list[SentMessage] = field(default_factory=list)
    deleted: list[tuple[int, int]] = field(default_factory=list)
    cleared: list[tuple[int, int]] = field(default_factory=list)
    answers: list[tuple[str, str]] = field(default_factory=list)
    next_id: int = 1000

    channel_name = "fake"

    async def send_message(self, chat_id, text, *, thread_id=None, buttons=None):
        self.next_id += 1
        self.sent.append(SentMessage(chat_id, text, self.next_id, thread_id, buttons))
        return self.next_id

    async def send_photo(self, chat_id, photo, *, caption="", thread_id=None):
        self.next_id += 1
        self.photos.append((chat_id, photo))
        return self.next_id

    async def edit_message(self, chat_id, message_id, text, *, buttons=None):
        self.edited.append(SentMessage(chat_id, text, message_id, None, buttons))

    async def clear_keyboard(self, chat_id, message_id):
        self.cleared.append((chat_id, message_id))

    async def delete_message(self, chat_id, message_id):
        self.deleted.append((chat_id, message_id))
        return True

    async def answer_callback(self, callback_id, text=""):
        self.answers.append((callback_id, text))

    async def get_chat_administrators(self, chat_id):
        return sorted(self.admins)

    async def download_file(self, file_id):
        return self.files.get(file_id)

    @property
    def last(self) -> SentMessage:
        return self.sent[-1]

    def callback_data(self, message: SentMessage | None = None) -> list[str]:
        message = message or self.last
        return [b.callback_data for row in message.buttons or [] for b in row]


class FakeClock:
    """Settable clock injected wherever the code asks for "now"."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class StubExecutor:
    """Payload executor returning a canned result and recording every call."""

    def __init__(self, result: ExecutionResult | None = None) -> None:
        self.result = result or ExecutionResult(success=True, detail="ok")
        self.calls: list[str] = []
        self.side_effect = None

    async def execute(self, record):
        self.calls.append(record.id)
        if self.side_effect is not None:
            return await self.side_effect(record)
        return self.result


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Settings configured for testing (no real API calls)."""
    return Settings(
        bot_name="TestTempo",
        model=ModelConfig(provider="ollama", model_id="llama3.1"),
        telegram=TelegramConfig(enabled=False, bot_token="test-token"),
        scheduler=SchedulerConfig(bootstrap_jitter_seconds=0),
        payments=PaymentsConfig(api_url="http://payments.test", api_key="k"),
        data_dir=str(tmp_path / "data"),
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2025, 1, 10, 8, 0, tzinfo=UTC))


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def schedule_store(tmp_path: Path) -> ScheduleStore:
    return ScheduleStore(path=tmp_path / "schedules.json")


@pytest.fixture
def wizard_store(tmp_path: Path) -> WizardStore:
    return WizardStore(path=tmp_path / "wizard_sessions.json")


@pytest.fixture
def message_executor() -> StubExecutor:
    return StubExecutor()


@pytest.fixture
def payment_executor() -> StubExecutor:
    return StubExecutor()


@pytest.fixture
def engine(
    test_settings, schedule_store, clock, message_executor, payment_executor
) -> SchedulerEngine:
    """Engine whose APScheduler is never started; jobs stay pending and inspectable."""
    return SchedulerEngine(
        test_settings,
        schedule_store,
        executors={
            ScheduleKind.MESSAGE: message_executor,
            ScheduleKind.PAYMENT: payment_executor,
        },
        clock=clock,
    )
