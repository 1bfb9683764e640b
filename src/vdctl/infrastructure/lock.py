"""HostLock — host-wide advisory lock around provisioning transactions.

A second install/uninstall while one is running fails fast with
:class:`ConcurrentTransactionError`; it never queues.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import TYPE_CHECKING

from filelock import FileLock, Timeout

from vdctl.domain.errors import ConcurrentTransactionError

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path

logger = logging.getLogger(__name__)

LOCK_FILENAME = "vdctl.lock"


class HostLock:
    """Non-blocking file lock in the state directory."""

    def __init__(self, state_dir: Path) -> None:
        self._path = state_dir / LOCK_FILENAME
        self._lock = FileLock(str(self._path))

    @property
    def path(self) -> Path:
        return self._path

    @property
    def is_locked(self) -> bool:
        return self._lock.is_locked

    @contextmanager
    def hold(self) -> Iterator[None]:
        """Hold the lock for the duration of the block.

        Raises:
            ConcurrentTransactionError: Another process (or caller) holds it.
        """
        self._path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._lock.acquire(timeout=0)
        except Timeout as exc:
            msg = "Another provisioning transaction is in progress"
            raise ConcurrentTransactionError(msg, lock_path=str(self._path)) from exc
        logger.debug("Host lock acquired: %s", self._path)
        try:
            yield
        finally:
            self._lock.release()
            logger.debug("Host lock released: %s", self._path)

    def force_release(self) -> None:
        """Drop the lock regardless of nesting depth."""
        self._lock.release(force=True)
