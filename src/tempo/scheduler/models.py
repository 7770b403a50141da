"""Pydantic models for scheduled tasks."""

from __future__ import annotations

import re
import uuid
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from enum import StrEnum
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ScheduleKind(StrEnum):
    """What a schedule does when it fires."""

    MESSAGE = "message"
    PAYMENT = "payment"


class RepeatKind(StrEnum):
    NONE = "none"
    INTERVAL = "interval"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class AttemptStatus(StrEnum):
    SUCCESS = "success"
    FAILED = "failed"


_CHOICE_RE = re.compile(r"^(\d+)(mo|m|h|d|w)$")


class RepeatPolicy(BaseModel):
    """Rule that yields the occurrences after the anchor.

    Button payloads use short choice codes: ``none``, ``15m``, ``3h``,
    ``1d``, ``2w``, ``1mo``.
    """

    model_config = ConfigDict(frozen=True)

    kind: RepeatKind = RepeatKind.NONE
    interval_minutes: int | None = None
    weeks: int | None = None

    @model_validator(mode="after")
    def validate_fields(self) -> RepeatPolicy:
        if self.kind == RepeatKind.INTERVAL:
            if not self.interval_minutes or self.interval_minutes <= 0:
                raise ValueError("interval repeat needs a positive interval_minutes")
        if self.weeks is not None and self.weeks <= 0:
            raise ValueError(f"weeks must be positive, got {self.weeks}")
        return self

    # -- Constructors ----------------------------------------------------------

    @classmethod
    def none(cls) -> RepeatPolicy:
        return cls(kind=RepeatKind.NONE)

    @classmethod
    def every(cls, minutes: int) -> RepeatPolicy:
        return cls(kind=RepeatKind.INTERVAL, interval_minutes=minutes)

    @classmethod
    def daily(cls) -> RepeatPolicy:
        return cls(kind=RepeatKind.DAILY)

    @classmethod
    def weekly(cls, weeks: int = 1) -> RepeatPolicy:
        return cls(kind=RepeatKind.WEEKLY, weeks=weeks)

    @classmethod
    def monthly(cls) -> RepeatPolicy:
        return cls(kind=RepeatKind.MONTHLY)

    @classmethod
    def from_choice(cls, code: str) -> RepeatPolicy:
        """Parse a button choice code. Raises ValueError for unknown codes."""
        code = code.strip().lower()
        if code == "none":
            return cls.none()
        match = _CHOICE_RE.match(code)
        if not match or int(match.group(1)) <= 0:
            raise ValueError(f"Unknown repeat option: {code}")
        amount, unit = int(match.group(1)), match.group(2)
        if unit == "m":
            return cls.every(amount)
        if unit == "h":
            return cls.every(amount * 60)
        if unit == "d":
            return cls.daily() if amount == 1 else cls.every(amount * 24 * 60)
        if unit == "w":
            return cls.weekly(amount)
        if amount != 1:
            raise ValueError(f"Unknown repeat option: {code}")
        return cls.monthly()

    # -- Derived ---------------------------------------------------------------

    @property
    def is_recurring(self) -> bool:
        return self.kind != RepeatKind.NONE

    @property
    def step(self) -> timedelta | None:
        """Fixed distance between occurrences, or None for none/monthly."""
        if self.kind == RepeatKind.INTERVAL:
            return timedelta(minutes=self.interval_minutes or 0)
        if self.kind == RepeatKind.DAILY:
            return timedelta(days=1)
        if self.kind == RepeatKind.WEEKLY:
            return timedelta(weeks=self.weeks or 1)
        return None

    @property
    def choice_code(self) -> str:
        if self.kind == RepeatKind.NONE:
            return "none"
        if self.kind == RepeatKind.DAILY:
            return "1d"
        if self.kind == RepeatKind.WEEKLY:
            return f"{self.weeks or 1}w"
        if self.kind == RepeatKind.MONTHLY:
            return "1mo"
        minutes = self.interval_minutes or 0
        if minutes % 60 == 0:
            return f"{minutes // 60}h"
        return f"{minutes}m"

    @property
    def label(self) -> str:
        if self.kind == RepeatKind.NONE:
            return "No repeat"
        if self.kind == RepeatKind.DAILY:
            return "Daily"
        if self.kind == RepeatKind.MONTHLY:
            return "Monthly"
        if self.kind == RepeatKind.WEEKLY:
            weeks = self.weeks or 1
            return "Weekly" if weeks == 1 else f"Every {weeks} weeks"
        minutes = self.interval_minutes or 0
        if minutes % 60 == 0:
            hours = minutes // 60
            return "Every hour" if hours == 1 else f"Every {hours} hours"
        return f"Every {minutes} minutes"


class MessagePayload(BaseModel):
    """An AI prompt whose answer is posted to the group."""

    kind: Literal["message"] = "message"
    prompt: str
    image_file_id: str | None = None  # Telegram file_id of an attached photo


def format_units(units: int, decimals: int) -> str:
    """Smallest units as a plain decimal string: (150000000, 8) → "1.5"."""
    return format(Decimal(units).scaleb(-decimals).normalize(), "f")


class PaymentPayload(BaseModel):
    """A token transfer to a resolved recipient."""

    kind: Literal["payment"] = "payment"
    recipient_username: str
    recipient_address: str
    symbol: str
    token_type: str
    decimals: int = Field(ge=0)
    amount_smallest_units: int = Field(gt=0)
    notify_on_success: bool = True
    notify_on_failure: bool = True

    @property
    def display_amount(self) -> str:
        return f"{format_units(self.amount_smallest_units, self.decimals)} {self.symbol}"


Payload = Annotated[MessagePayload | PaymentPayload, Field(discriminator="kind")]


def _generate_id() -> str:
    return uuid.uuid4().hex


def _now() -> datetime:
    return datetime.now(UTC)


class ScheduleRecord(BaseModel):
    """One recurring or one-shot automated action and its run state."""

    id: str = Field(default_factory=_generate_id)
    group_id: int
    thread_id: int | None = None  # forum topic to post into
    creator_id: int
    creator_display_name: str = ""
    payload: Payload
    anchor: datetime
    repeat: RepeatPolicy = Field(default_factory=RepeatPolicy.none)
    active: bool = True
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)
    last_run_at: datetime | None = None
    next_run_at: datetime | None = None
    run_count: int = 0
    locked_until: datetime | None = None
    external_job_handle: str | None = None
    last_error: str | None = None
    last_attempt_status: AttemptStatus | None = None
    deleted_at: datetime | None = None  # soft delete; paused records keep None
    revision: int = 0  # bumped by owner actions only, never by the runner

    @property
    def kind(self) -> ScheduleKind:
        return ScheduleKind(self.payload.kind)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def is_finished(self) -> bool:
        """A one-shot that has run and been deactivated."""
        return not self.active and not self.repeat.is_recurring and self.next_run_at is None

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now

    def is_due(self, now: datetime) -> bool:
        """Active, due and not held by an unexpired lease."""
        return (
            self.active
            and self.next_run_at is not None
            and self.next_run_at <= now
            and not self.is_locked(now)
        )
