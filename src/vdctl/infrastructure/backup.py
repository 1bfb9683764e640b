"""ConfigBackupManager — snapshot/restore of the streaming server's config.

A snapshot copies ``<path>`` to ``<path>.bak.pending`` and records the
SHA-256 of the original bytes. Restore verifies the staged copy against that
checksum before copying it back, so a restored file is bit-for-bit the
pre-mutation file. Only :meth:`ConfigBackupManager.commit` moves the staged
copy over ``<path>.bak``; a rolled-back transaction never touches the
backup an earlier committed transaction left behind.

INVARIANT: ``snapshot`` returns only after the backup is on disk and
verified. Callers mutate the target strictly after it returns.
"""

from __future__ import annotations

import logging
import os
from datetime import UTC, datetime
from pathlib import Path

from vdctl.domain.errors import ConfigError
from vdctl.domain.records import BackupRecord
from vdctl.infrastructure.filesystem import atomic_write_bytes, sha256_file

logger = logging.getLogger(__name__)

BACKUP_SUFFIX = ".bak"
PENDING_SUFFIX = ".pending"


def backup_path_for(path: Path) -> Path:
    """The committed backup location for *path*."""
    return path.with_name(path.name + BACKUP_SUFFIX)


def pending_path_for(path: Path) -> Path:
    """Where an uncommitted snapshot of *path* is staged."""
    return path.with_name(path.name + BACKUP_SUFFIX + PENDING_SUFFIX)


class ConfigBackupManager:
    """Owns every BackupRecord created during a transaction."""

    def snapshot(self, path: Path) -> BackupRecord:
        """Copy *path* to ``<path>.bak.pending`` and return the record.

        Raises:
            ConfigError: *path* is unreadable, the backup is unwritable, or
                the written backup does not verify.
        """
        backup = pending_path_for(path)
        try:
            data = path.read_bytes()
        except OSError as exc:
            msg = f"Cannot read config for backup: {path}: {exc}"
            raise ConfigError(msg, path=str(path)) from exc

        try:
            atomic_write_bytes(backup, data)
            checksum = sha256_file(path)
            if sha256_file(backup) != checksum:
                msg = f"Backup verification failed: {backup}"
                raise ConfigError(msg, path=str(path), backup_path=str(backup))
        except OSError as exc:
            msg = f"Cannot write config backup {backup}: {exc}"
            raise ConfigError(msg, path=str(path), backup_path=str(backup)) from exc

        logger.debug("Config snapshot: %s -> %s", path, backup)
        return BackupRecord(
            original_path=str(path),
            backup_path=str(backup),
            checksum=checksum,
            created_at=datetime.now(UTC).isoformat(),
        )

    def restore(self, record: BackupRecord) -> None:
        """Copy the backup back over the original file.

        Raises:
            ConfigError: The backup is missing, fails its checksum, or the
                original cannot be rewritten.
        """
        backup = Path(record.backup_path)
        original = Path(record.original_path)
        if not backup.is_file():
            msg = f"Config backup missing: {backup}"
            raise ConfigError(msg, backup_path=str(backup))
        try:
            if record.checksum is not None and sha256_file(backup) != record.checksum:
                msg = f"Config backup checksum mismatch: {backup}"
                raise ConfigError(msg, backup_path=str(backup))
            atomic_write_bytes(original, backup.read_bytes())
        except OSError as exc:
            msg = f"Cannot restore {original} from {backup}: {exc}"
            raise ConfigError(msg, path=str(original), backup_path=str(backup)) from exc
        logger.info("Config restored from backup: %s", original)

    def commit(self, record: BackupRecord) -> BackupRecord:
        """Promote the staged copy to ``<path>.bak`` and return the committed record.

        Raises:
            ConfigError: The staged copy cannot be moved into place.
        """
        if record.committed:
            return record
        staged = Path(record.backup_path)
        final = backup_path_for(Path(record.original_path))
        try:
            os.replace(staged, final)
        except OSError as exc:
            msg = f"Cannot commit config backup {staged} -> {final}: {exc}"
            raise ConfigError(msg, backup_path=str(staged)) from exc
        logger.debug("Config backup committed: %s", final)
        return record.model_copy(update={"backup_path": str(final), "committed": True})

    def discard(self, record: BackupRecord) -> None:
        """Remove an uncommitted backup (after it has been restored)."""
        if record.committed:
            return
        try:
            Path(record.backup_path).unlink(missing_ok=True)
        except OSError:
            logger.warning("Failed to remove config backup: %s", record.backup_path)
