"""Tests for config sub-section models."""

import pytest
from pydantic import ValidationError

from tempo.config.models import PaymentsConfig, SchedulerConfig, TelegramConfig


class TestSchedulerConfig:
    def test_defaults(self):
        cfg = SchedulerConfig()
        assert cfg.lease_seconds == 300
        assert cfg.bootstrap_jitter_seconds == 30

    def test_zero_jitter_allowed(self):
        assert SchedulerConfig(bootstrap_jitter_seconds=0).bootstrap_jitter_seconds == 0

    @pytest.mark.parametrize(
        "field,value",
        [
            ("lease_seconds", 0),
            ("bootstrap_jitter_seconds", -1),
            ("message_quota", 0),
            ("payment_quota", -5),
            ("max_prompt_length", 0),
        ],
    )
    def test_rejects_bad_limits(self, field, value):
        with pytest.raises(ValidationError, match=field):
            SchedulerConfig(**{field: value})


class TestPaymentsConfig:
    def test_native_token_defaults(self):
        cfg = PaymentsConfig()
        assert cfg.native_symbol == "APT"
        assert cfg.native_decimals == 8

    def test_api_key_excluded_from_dump(self):
        assert "api_key" not in PaymentsConfig(api_key="s").model_dump()


def test_telegram_token_excluded_from_dump():
    dump = TelegramConfig(bot_token="t", webhook_url="https://x").model_dump()
    assert "bot_token" not in dump
    assert dump["webhook_url"] == "https://x"
