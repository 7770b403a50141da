"""AI completion executor — answers a scheduled prompt with an Agno Agent and posts the reply."""

from __future__ import annotations

import logging
import os
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from agno.agent import Agent
from agno.db.sqlite import SqliteDb
from agno.media import Image

from tempo.config.env_utils import read_env_file
from tempo.core.errors import ConfigError, ExecutionError
from tempo.scheduler.executors import ExecutionResult
from tempo.scheduler.models import MessagePayload, ScheduleRecord

if TYPE_CHECKING:
    from tempo.channels.base import ChatTransport
    from tempo.config.models import ModelConfig
    from tempo.config.settings import Settings

logger = logging.getLogger("tempo.executors.completion")

INSTRUCTIONS = [
    "You are {bot_name}, posting a scheduled message into a Telegram group.",
    "Answer the prompt directly. Reply with the message text only, no preamble.",
    "Keep it under 3500 characters and avoid markdown formatting.",
]

# Earlier replies of the same schedule the model sees, so it does not repeat itself
HISTORY_RUNS = 5

# One SqliteDb per file; agno cannot define its tables twice in one process.
_db_cache: dict[str, SqliteDb] = {}


def _env(key: str) -> str | None:
    return os.environ.get(key) or read_env_file().get(key)


def build_model(config: ModelConfig):
    """Instantiate an Agno model class from provider/model_id."""
    provider = config.provider

    if provider == "anthropic":
        from agno.models.anthropic import Claude

        api_key = _env("ANTHROPIC_API_KEY")
        if api_key:
            return Claude(id=config.model_id, api_key=api_key)
        return Claude(id=config.model_id)

    if provider == "openai":
        from agno.models.openai import OpenAIChat

        api_key = _env("OPENAI_API_KEY")
        if api_key:
            return OpenAIChat(id=config.model_id, api_key=api_key)
        return OpenAIChat(id=config.model_id)

    if provider == "google":
        from agno.models.google import Gemini

        return Gemini(id=config.model_id)

    if provider == "ollama":
        from agno.models.ollama import Ollama

        return Ollama(id=config.model_id)

    if provider == "openrouter":
        from agno.models.openai import OpenAIChat

        return OpenAIChat(
            id=config.model_id,
            api_key=_env("OPENROUTER_API_KEY"),
            base_url="https://openrouter.ai/api/v1",
        )

    raise ConfigError(f"Unknown model provider: {provider}")


def create_db(settings: Settings) -> SqliteDb:
    """Session storage for the completion agent, cached per path."""
    path = settings.sessions_db_path
    path.parent.mkdir(parents=True, exist_ok=True)
    key = str(path)
    if key not in _db_cache:
        _db_cache[key] = SqliteDb(db_file=key)
    return _db_cache[key]


def create_agent(settings: Settings) -> Agent:
    """Build the agent that answers scheduled prompts.

    Runs are stored per session, and each schedule uses its own session, so
    a recurring prompt sees what it posted on its last few runs.
    """
    return Agent(
        name=settings.bot_name,
        model=build_model(settings.model),
        db=create_db(settings),
        add_history_to_context=True,
        num_history_runs=HISTORY_RUNS,
        instructions=[line.format(bot_name=settings.bot_name) for line in INSTRUCTIONS],
        markdown=False,
        add_datetime_to_context=True,
    )


def _usage_tokens(metrics: Any) -> int:
    if metrics is None:
        return 0
    total = getattr(metrics, "total_tokens", None)
    if total is None and isinstance(metrics, dict):
        total = metrics.get("total_tokens")
    if isinstance(total, list):
        total = sum(total)
    return int(total or 0)


def _reply_images(response: Any) -> list[bytes | str]:
    """Images the model produced, as raw bytes or a URL Telegram can fetch."""
    photos: list[bytes | str] = []
    for image in getattr(response, "images", None) or []:
        photo = getattr(image, "content", None) or getattr(image, "url", None)
        if photo:
            photos.append(photo)
    return photos


class CompletionExecutor:
    """Runs a message schedule: prompt (+ image) → model → reply in the group."""

    def __init__(
        self,
        settings: Settings,
        transport: ChatTransport,
        agent_factory: Callable[[Settings], Agent] = create_agent,
    ) -> None:
        self._settings = settings
        self._transport = transport
        self._agent_factory = agent_factory
        self._agent: Agent | None = None

    @property
    def agent(self) -> Agent:
        if self._agent is None:
            self._agent = self._agent_factory(self._settings)
        return self._agent

    async def execute(self, record: ScheduleRecord) -> ExecutionResult:
        payload = record.payload
        if not isinstance(payload, MessagePayload):
            raise ExecutionError(f"Schedule {record.id} is not a message")

        images: list[Image] = []
        if payload.image_file_id:
            data = await self._transport.download_file(payload.image_file_id)
            if data:
                images.append(Image(content=data))
            else:
                logger.warning("Image for schedule %s could not be downloaded", record.id)

        response = await self.agent.arun(
            payload.prompt,
            session_id=f"schedule-{record.id}",
            images=images or None,
        )
        content = (getattr(response, "content", None) or "").strip()
        photos = _reply_images(response)
        if not content and not photos:
            raise ExecutionError("The model returned an empty reply")

        if content:
            message_id = await self._transport.send_message(
                record.group_id, content, thread_id=record.thread_id
            )
            if message_id is None:
                raise ExecutionError("Reply could not be delivered to the group")

        delivered = 0
        for photo in photos:
            if await self._transport.send_photo(
                record.group_id, photo, thread_id=record.thread_id
            ):
                delivered += 1
            else:
                logger.warning("An image from schedule %s could not be posted", record.id)
        if photos and not content and not delivered:
            raise ExecutionError("Reply could not be delivered to the group")

        usage = _usage_tokens(getattr(response, "metrics", None))
        logger.info(
            "Scheduled prompt %s answered for group %s (%d tokens, %d images)",
            record.id,
            record.group_id,
            usage,
            delivered,
        )
        detail = content[:200] if content else f"{delivered} image(s)"
        return ExecutionResult(success=True, detail=detail, usage_tokens=usage)
