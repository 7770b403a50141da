"""Prompt guard: screens a prompt before it can be scheduled.

A scheduled prompt runs unattended in the group, so it must not ask the
model to move funds or act on behalf of users. A small classifier agent
answers with a verdict: ``P`` (pass) or ``F`` (fail, with a reason).
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Literal

from agno.agent import Agent
from pydantic import BaseModel, ValidationError

from tempo.core.errors import ExecutionError
from tempo.executors.completion import build_model

if TYPE_CHECKING:
    from tempo.config.settings import Settings

logger = logging.getLogger("tempo.executors.guard")

GUARD_INSTRUCTIONS = [
    "You review prompts that a Telegram group wants an AI to answer on a timer.",
    "Answer with verdict 'P' if the prompt only asks for information or writing:"
    " news, prices, weather, summaries, jokes, general knowledge.",
    "Answer with verdict 'F' if it asks to send or withdraw funds, make payments,"
    " create or vote in DAOs, or message, ban or otherwise act on group members.",
    "For 'F', give a one-sentence reason the group admin will read.",
]


class GuardVerdict(BaseModel):
    verdict: Literal["P", "F"]
    reason: str | None = None

    @property
    def allowed(self) -> bool:
        return self.verdict == "P"


def create_guard_agent(settings: Settings) -> Agent:
    return Agent(
        name="Schedule guard",
        model=build_model(settings.model),
        instructions=GUARD_INSTRUCTIONS,
        output_schema=GuardVerdict,
        markdown=False,
    )


class ScheduleGuard:
    """Classifies prompts with a stateless agent; see ``GuardVerdict``."""

    def __init__(
        self,
        settings: Settings,
        agent_factory: Callable[[Settings], Agent] = create_guard_agent,
    ) -> None:
        self._settings = settings
        self._agent_factory = agent_factory
        self._agent: Agent | None = None

    @property
    def agent(self) -> Agent:
        if self._agent is None:
            self._agent = self._agent_factory(self._settings)
        return self._agent

    async def check(self, prompt: str) -> GuardVerdict:
        response = await self.agent.arun(prompt)
        content = getattr(response, "content", None)
        if isinstance(content, GuardVerdict):
            verdict = content
        else:
            try:
                verdict = GuardVerdict.model_validate_json(str(content or ""))
            except ValidationError as exc:
                raise ExecutionError(f"Unreadable guard verdict: {content!r}") from exc
        logger.debug("Guard verdict %s for prompt %.40r", verdict.verdict, prompt)
        return verdict
