"""Pydantic models for configuration sub-sections."""

from __future__ import annotations

from pydantic import BaseModel, Field, model_validator

from tempo.config.constants import (
    DEFAULT_BOOTSTRAP_JITTER_SECONDS,
    DEFAULT_HOST,
    DEFAULT_LEASE_SECONDS,
    DEFAULT_MAX_PROMPT_LENGTH,
    DEFAULT_MESSAGE_QUOTA,
    DEFAULT_PAYMENT_QUOTA,
    DEFAULT_PORT,
    NATIVE_DECIMALS,
    NATIVE_SYMBOL,
    NATIVE_TOKEN_TYPE,
)


class ModelConfig(BaseModel):
    """Which LLM provider and model answers scheduled prompts."""

    provider: str = "anthropic"
    model_id: str = "claude-sonnet-4-5-20250929"


class TelegramConfig(BaseModel):
    """Telegram Bot API settings."""

    enabled: bool = False
    bot_token: str = Field(default="", exclude=True)
    webhook_url: str = ""  # empty = long-polling
    webhook_secret: str = Field(default="", exclude=True)


class SchedulerConfig(BaseModel):
    """Timing, locking and quota settings for scheduled tasks."""

    lease_seconds: int = DEFAULT_LEASE_SECONDS
    bootstrap_jitter_seconds: int = DEFAULT_BOOTSTRAP_JITTER_SECONDS  # 0 = fire overdue at once
    message_quota: int = DEFAULT_MESSAGE_QUOTA
    payment_quota: int = DEFAULT_PAYMENT_QUOTA
    max_prompt_length: int = DEFAULT_MAX_PROMPT_LENGTH
    prompt_guard: bool = True  # screen prompts with the model before scheduling

    @model_validator(mode="after")
    def validate_limits(self) -> SchedulerConfig:
        if self.lease_seconds <= 0:
            raise ValueError(f"lease_seconds must be positive, got {self.lease_seconds}")
        if self.bootstrap_jitter_seconds < 0:
            raise ValueError(
                "bootstrap_jitter_seconds must not be negative, "
                f"got {self.bootstrap_jitter_seconds}"
            )
        for name in ("message_quota", "payment_quota", "max_prompt_length"):
            value = getattr(self, name)
            if value <= 0:
                raise ValueError(f"{name} must be positive, got {value}")
        return self


class PaymentsConfig(BaseModel):
    """Payment service used for transfers, identity and token lookups."""

    enabled: bool = True
    api_url: str = "http://localhost:8080"
    api_key: str = Field(default="", exclude=True)
    timeout_seconds: float = 30.0
    native_symbol: str = NATIVE_SYMBOL
    native_token_type: str = NATIVE_TOKEN_TYPE
    native_decimals: int = NATIVE_DECIMALS


class ServerConfig(BaseModel):
    """HTTP server settings."""

    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT


# Secret fields are never written to config.json; they come from the
# environment (or .env) only.
SECRET_FIELD_ENV_MAP: dict[tuple[str, str], str] = {
    ("telegram", "bot_token"): "TELEGRAM_BOT_TOKEN",
    ("telegram", "webhook_secret"): "TELEGRAM_WEBHOOK_SECRET",
    ("payments", "api_key"): "TEMPO_PAYMENTS_API_KEY",
}
