"""Central settings — loads from ~/.tempo/config.json + environment variables."""

from __future__ import annotations

import json
import logging
import os
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from tempo.config.constants import CONFIG_FILE, DATA_DIR, TEMPO_HOME
from tempo.config.env_utils import read_env_file
from tempo.config.models import (
    SECRET_FIELD_ENV_MAP,
    ModelConfig,
    PaymentsConfig,
    SchedulerConfig,
    ServerConfig,
    TelegramConfig,
)

logger = logging.getLogger("tempo.config.settings")


class Settings(BaseSettings):
    """All tempo configuration in one place.

    Priority (highest → lowest):
      1. Environment variables (TEMPO_ prefix, ``__`` for nesting)
      2. .env file
      3. ~/.tempo/config.json
      4. Defaults defined here
    """

    model_config = SettingsConfigDict(
        env_prefix="TEMPO_",
        env_nested_delimiter="__",
        env_file=(".env", str(TEMPO_HOME / ".env")),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- Sub-configs ---
    model: ModelConfig = Field(default_factory=ModelConfig)
    telegram: TelegramConfig = Field(default_factory=TelegramConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    payments: PaymentsConfig = Field(default_factory=PaymentsConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    # --- Top-level settings ---
    bot_name: str = "Tempo"
    log_level: str = "INFO"
    data_dir: str = str(DATA_DIR)

    @model_validator(mode="before")
    @classmethod
    def load_config_file(cls, values: dict) -> dict:
        """Merge config.json values as defaults (explicit values still override)."""
        if CONFIG_FILE.exists():
            try:
                file_data = json.loads(CONFIG_FILE.read_text(encoding="utf-8"))
                values = {**file_data, **{k: v for k, v in values.items() if v is not None}}
            except (json.JSONDecodeError, OSError) as exc:
                logger.warning("Ignoring unreadable %s: %s", CONFIG_FILE, exc)

        cls._apply_env_to_secrets(values)
        return values

    @classmethod
    def _apply_env_to_secrets(cls, values: dict) -> None:
        """Populate secret fields from environment variables and the .env file."""
        env_file_vals = read_env_file()

        for key_path, env_var in SECRET_FIELD_ENV_MAP.items():
            val = os.environ.get(env_var) or env_file_vals.get(env_var)
            if not val:
                continue

            section, field = key_path
            current = values.get(section)
            if isinstance(current, BaseModel):
                # Explicitly constructed sub-config: keep a value the caller set
                if not getattr(current, field):
                    values[section] = current.model_copy(update={field: val})
                continue
            if not isinstance(current, dict):
                current = {}
            if not current.get(field):
                current[field] = val
            values[section] = current

    @property
    def schedules_path(self) -> Path:
        return Path(self.data_dir).expanduser() / "schedules.json"

    @property
    def sessions_db_path(self) -> Path:
        return Path(self.data_dir).expanduser() / "agent_sessions.db"

    @property
    def wizard_path(self) -> Path:
        return Path(self.data_dir).expanduser() / "wizard_sessions.json"

    def save(self) -> None:
        """Persist current settings to config.json (secrets are excluded)."""
        CONFIG_FILE.parent.mkdir(parents=True, exist_ok=True)
        data = self.model_dump(mode="json")
        CONFIG_FILE.write_text(json.dumps(data, indent=2), encoding="utf-8")

    @classmethod
    def config_exists(cls) -> bool:
        return CONFIG_FILE.exists()


@lru_cache
def get_settings() -> Settings:
    """Singleton settings instance."""
    return Settings()
