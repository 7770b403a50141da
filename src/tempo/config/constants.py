"""Paths and default values used across the project."""

from pathlib import Path

# Base directory for all tempo data
TEMPO_HOME = Path.home() / ".tempo"

CONFIG_FILE = TEMPO_HOME / "config.json"
DATA_DIR = TEMPO_HOME / "data"
LOGS_DIR = TEMPO_HOME / "logs"
SCHEDULES_FILE = DATA_DIR / "schedules.json"
WIZARD_FILE = DATA_DIR / "wizard_sessions.json"

# Server defaults
DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 8000

# Scheduler defaults
DEFAULT_LEASE_SECONDS = 300
DEFAULT_BOOTSTRAP_JITTER_SECONDS = 30
DEFAULT_MESSAGE_QUOTA = 10
DEFAULT_PAYMENT_QUOTA = 50
DEFAULT_MAX_PROMPT_LENGTH = 4000

# Native token of the payment rail (resolved without a registry lookup)
NATIVE_SYMBOL = "APT"
NATIVE_TOKEN_TYPE = "0x1::aptos_coin::AptosCoin"
NATIVE_DECIMALS = 8
