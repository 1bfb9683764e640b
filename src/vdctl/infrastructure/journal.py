"""Durable journal for the in-flight provisioning transaction.

The journal exists only while a transaction runs. A journal found at
startup means the previous process died mid-transaction; its steps are
enough to replay compensations (``vdctl provision recover``).
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from pydantic import ValidationError

from vdctl.domain.errors import ConfigInvalidError, PersistenceError
from vdctl.domain.records import TransactionJournal
from vdctl.infrastructure.filesystem import atomic_write_text

logger = logging.getLogger(__name__)

JOURNAL_FILENAME = "transaction.json"


class JournalStore:
    def __init__(self, state_dir: Path) -> None:
        self._path = state_dir / JOURNAL_FILENAME

    @property
    def path(self) -> Path:
        return self._path

    def exists(self) -> bool:
        return self._path.is_file()

    def load(self) -> TransactionJournal | None:
        if not self._path.is_file():
            return None
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
            return TransactionJournal.model_validate(raw)
        except (OSError, ValueError, ValidationError) as exc:
            msg = f"Unreadable transaction journal {self._path}: {exc}"
            raise ConfigInvalidError(msg, path=str(self._path)) from exc

    def save(self, journal: TransactionJournal) -> None:
        try:
            atomic_write_text(self._path, journal.model_dump_json(indent=2) + "\n")
        except OSError as exc:
            msg = f"Failed to write transaction journal {self._path}: {exc}"
            raise PersistenceError(msg, path=str(self._path)) from exc

    def clear(self) -> None:
        try:
            self._path.unlink(missing_ok=True)
        except OSError:
            logger.warning("Failed to remove transaction journal: %s", self._path)
