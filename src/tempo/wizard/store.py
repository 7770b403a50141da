"""JSON file persistence for pending wizard sessions."""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path

from pydantic import ValidationError

from tempo.config.constants import WIZARD_FILE
from tempo.core.errors import StorageError
from tempo.wizard.models import PendingWizardState, state_key

logger = logging.getLogger("tempo.wizard.store")


class WizardStore:
    """Pending sessions keyed by (group, user), one JSON file, atomic writes."""

    def __init__(self, path: Path | None = None) -> None:
        self._path = path or WIZARD_FILE
        self._states: dict[str, PendingWizardState] = {}
        self._lock = threading.RLock()
        self.load()

    def load(self) -> None:
        with self._lock:
            self._states.clear()
            if not self._path.exists():
                return
            try:
                data = json.loads(self._path.read_text(encoding="utf-8"))
            except (json.JSONDecodeError, OSError) as exc:
                logger.warning("Failed to load wizard sessions: %s", exc)
                return
            if not isinstance(data, dict):
                logger.warning("Ignoring %s: expected an object", self._path)
                return

            for key, raw in data.items():
                try:
                    state = PendingWizardState.model_validate(raw)
                except ValidationError as exc:
                    logger.warning("Skipping corrupt wizard session %s: %s", key, exc)
                    continue
                self._states[state.key] = state

    def save(self) -> None:
        with self._lock:
            data = {key: s.model_dump(mode="json") for key, s in self._states.items()}
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                tmp = self._path.with_suffix(".tmp")
                tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
                tmp.replace(self._path)
            except OSError as exc:
                logger.error("Failed to write wizard sessions: %s", exc)
                raise StorageError(f"Could not save wizard session: {exc}") from exc

    def get(self, group_id: int, user_id: int) -> PendingWizardState | None:
        with self._lock:
            state = self._states.get(state_key(group_id, user_id))
            return state.model_copy(deep=True) if state else None

    def put(self, state: PendingWizardState) -> PendingWizardState:
        """Replace the session for the state's key and persist."""
        with self._lock:
            previous = self._states.get(state.key)
            self._states[state.key] = state.model_copy(deep=True)
            try:
                self.save()
            except StorageError:
                if previous is None:
                    self._states.pop(state.key, None)
                else:
                    self._states[state.key] = previous
                raise
            return state

    def delete(self, group_id: int, user_id: int) -> bool:
        """Remove a session. Returns True if it existed."""
        with self._lock:
            key = state_key(group_id, user_id)
            previous = self._states.pop(key, None)
            if previous is None:
                return False
            try:
                self.save()
            except StorageError:
                self._states[key] = previous
                raise
            return True

    def all(self) -> list[PendingWizardState]:
        with self._lock:
            return [s.model_copy(deep=True) for s in self._states.values()]
