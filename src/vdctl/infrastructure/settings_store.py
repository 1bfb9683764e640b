"""SettingsStore — the single durable record of "this host is provisioned".

INVARIANT: Only the provisioning transaction writes or deletes the record.
Everything else reads it.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from pydantic import ValidationError

from vdctl.domain.errors import ConfigInvalidError, PersistenceError
from vdctl.domain.records import Settings
from vdctl.infrastructure.filesystem import atomic_write_text

logger = logging.getLogger(__name__)

SETTINGS_FILENAME = "settings.json"


class SettingsStore:
    """JSON-file backed Settings persistence."""

    def __init__(self, state_dir: Path) -> None:
        self._path = state_dir / SETTINGS_FILENAME

    @property
    def path(self) -> Path:
        return self._path

    def exists(self) -> bool:
        return self._path.is_file()

    def load(self) -> Settings | None:
        """Return the stored record, or None if the host is not provisioned.

        Raises:
            ConfigInvalidError: The file exists but is not a valid record.
        """
        if not self._path.is_file():
            return None
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
            return Settings.model_validate(raw)
        except (OSError, ValueError, ValidationError) as exc:
            msg = f"Unreadable settings record {self._path}: {exc}"
            raise ConfigInvalidError(msg, path=str(self._path)) from exc

    def save(self, settings: Settings) -> None:
        try:
            atomic_write_text(self._path, settings.to_json() + "\n")
        except OSError as exc:
            msg = f"Failed to write settings record {self._path}: {exc}"
            raise PersistenceError(msg, path=str(self._path)) from exc
        logger.debug("Settings written: %s", self._path)

    def delete(self) -> None:
        try:
            self._path.unlink(missing_ok=True)
        except OSError as exc:
            msg = f"Failed to delete settings record {self._path}: {exc}"
            raise PersistenceError(msg, path=str(self._path)) from exc
        logger.debug("Settings deleted: %s", self._path)
