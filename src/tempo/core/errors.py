"""Tempo exception hierarchy.

Every error raised by tempo inherits from TempoError. Each class knows the
short reason shown to chat users (``user_message``); anything without a
specific reason falls back to a generic "try again".
"""

from __future__ import annotations

GENERIC_RETRY = "⚠️ Something went wrong, please try again."

_KIND_NOUNS = {"message": "scheduled prompts", "payment": "scheduled payments"}


class TempoError(Exception):
    """Base exception for all tempo errors."""

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    @property
    def user_message(self) -> str:
        return GENERIC_RETRY


class ConfigError(TempoError):
    """Configuration is invalid or missing."""


class InputValidationError(TempoError):
    """Wizard input was rejected; ``message`` is shown to the user as-is."""

    @property
    def user_message(self) -> str:
        return self.message


class AuthorizationError(TempoError):
    """The acting user may not perform this action."""

    @property
    def user_message(self) -> str:
        return f"❌ {self.message}."


class ScheduleNotFoundError(TempoError):
    """No live schedule with the given id."""

    def __init__(self, schedule_id: str, details: dict | None = None):
        self.schedule_id = schedule_id
        super().__init__(f"Schedule {schedule_id} not found", details)

    @property
    def user_message(self) -> str:
        return "ℹ️ Schedule not found."


class QuotaExceededError(TempoError):
    """The group already has the maximum number of active schedules of a kind."""

    def __init__(self, kind: str, limit: int, details: dict | None = None):
        self.kind = kind
        self.limit = limit
        super().__init__(f"Limit of {limit} active {kind} schedules reached", details)

    @property
    def user_message(self) -> str:
        noun = _KIND_NOUNS.get(self.kind, f"{self.kind} schedules")
        return f"❌ This group already has {self.limit} active {noun}. Pause or delete one first."


class ConflictError(TempoError):
    """The schedule's current state does not allow the action (stale edit, paused run)."""

    @property
    def user_message(self) -> str:
        return f"❌ {self.message}."


class StorageError(TempoError):
    """A store could not be read or written."""


class ExecutionError(TempoError):
    """A payload collaborator (AI provider, payment rail, directory) failed."""
