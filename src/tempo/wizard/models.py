"""Pydantic models for in-progress configuration sessions."""

from __future__ import annotations

from datetime import UTC, date, datetime
from enum import StrEnum

from pydantic import BaseModel, Field

from tempo.scheduler.models import ScheduleKind


class WizardStep(StrEnum):
    """Positions in the configuration dialogue.

    Each kind walks its own ordered subset; both end in repeat → confirm.
    """

    AWAITING_CONTENT = "awaiting_content"
    AWAITING_MEDIA = "awaiting_media"
    AWAITING_RECIPIENT = "awaiting_recipient"
    AWAITING_TOKEN = "awaiting_token"
    AWAITING_AMOUNT = "awaiting_amount"
    AWAITING_DATE = "awaiting_date"
    AWAITING_HOUR = "awaiting_hour"
    AWAITING_MINUTE = "awaiting_minute"
    AWAITING_REPEAT = "awaiting_repeat"
    AWAITING_CONFIRM = "awaiting_confirm"


def _now() -> datetime:
    return datetime.now(UTC)


class PendingWizardState(BaseModel):
    """One admin's half-finished schedule in one group.

    Reloaded from the wizard store on every message, so the dialogue
    survives restarts. ``schema_version`` guards the stored layout.
    """

    schema_version: int = 1
    group_id: int
    user_id: int
    user_display_name: str = ""
    kind: ScheduleKind
    step: WizardStep
    thread_id: int | None = None

    # Editing an existing record instead of creating one
    schedule_id: str | None = None
    base_revision: int | None = None
    edit_field: str | None = None

    # Message fields
    prompt: str | None = None
    image_file_id: str | None = None
    media_done: bool = False  # photo received or explicitly skipped

    # Payment fields
    recipient_username: str | None = None
    recipient_address: str | None = None
    symbol: str | None = None
    token_type: str | None = None
    decimals: int | None = None
    amount: str | None = None  # normalized decimal text, for display
    amount_smallest_units: int | None = None
    run_date: date | None = None

    # Shared timing
    hour: int | None = Field(default=None, ge=0, le=23)
    minute: int | None = Field(default=None, ge=0, le=59)
    repeat: str | None = None  # RepeatPolicy choice code

    # UI bookkeeping (cosmetic delete-and-replace)
    current_prompt_id: int | None = None
    user_message_ids: list[int] = Field(default_factory=list)

    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    @property
    def key(self) -> str:
        return state_key(self.group_id, self.user_id)

    @property
    def is_edit(self) -> bool:
        return self.schedule_id is not None


def state_key(group_id: int, user_id: int) -> str:
    return f"{group_id}:{user_id}"
