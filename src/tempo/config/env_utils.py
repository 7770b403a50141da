"""Helpers for the ~/.tempo/.env file that holds secrets."""

from __future__ import annotations

from pathlib import Path

from tempo.config.constants import TEMPO_HOME


def read_env_file(env_path: Path | None = None) -> dict[str, str]:
    """Parse the .env file and return key-value pairs.

    Blank lines and ``#`` comments are ignored, inline comments are stripped.
    """
    if env_path is None:
        env_path = TEMPO_HOME / ".env"

    result: dict[str, str] = {}
    if not env_path.exists():
        return result

    try:
        lines = env_path.read_text(encoding="utf-8").splitlines()
    except OSError:
        return result

    for line in lines:
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        if " #" in value:
            value = value[: value.index(" #")]
        result[key.strip()] = value.strip().strip('"').strip("'")
    return result
