"""BaseService — abstract foundation for all vdctl services.

Every service receives a :class:`HostContext` at construction time. The
context provides the settings store, journal, lock, and collaborator ports.
Services convert typed errors into ``ServiceResult`` failures at their
operation boundary and log them once, with a machine-readable ``kind``.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from vdctl.domain.errors import VdctlError
    from vdctl.infrastructure.host import HostContext

logger = logging.getLogger(__name__)


class BaseService:
    """Abstract base for all service-layer classes.

    Usage::

        class ProvisionService(BaseService):
            def install(self) -> ServiceResult:
                with self._host.lock.hold():
                    ...
    """

    def __init__(self, host: HostContext) -> None:
        self._host = host

    @staticmethod
    def _log_failure(op: str, exc: VdctlError) -> None:
        """Log an operation failure before any human-facing formatting."""
        logger.error(
            "%s failed: %s",
            op,
            exc.message,
            extra={"kind": exc.code, "op": op, "detail": exc.detail},
        )
