"""ModeService — inspect display modes and dry-run negotiation."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from vdctl.domain.errors import (
    DisplayUnavailableError,
    NotProvisionedError,
    VdctlError,
)
from vdctl.domain.modes import Mode, ModeRequest, ModeSource
from vdctl.domain.negotiation import negotiate
from vdctl.infrastructure.ports import NotAvailable
from vdctl.services.base import BaseService
from vdctl.services.result import ServiceResult
from vdctl.services.telemetry import trace_span, traced

if TYPE_CHECKING:
    from collections.abc import Iterable

    from vdctl.infrastructure.ports import DisplayPort

logger = logging.getLogger(__name__)


def _sorted_modes(modes: Iterable[Mode]) -> list[Mode]:
    return sorted(modes, key=lambda m: (-m.width, -m.height, -m.refresh_hz))


class ModeService(BaseService):
    """Read-only display mode operations."""

    def _display(self) -> tuple[DisplayPort, str]:
        """The display port and id sessions would use on this host."""
        display_id = self._host.settings.session.display
        if display_id is None:
            settings = self._host.store.load()
            if settings is None:
                raise NotProvisionedError(
                    "Host is not provisioned and no [session] display is configured"
                )
            display_id = settings.virtual_display_id
        with trace_span("fetch_tool"):
            tool = self._host.fetcher.ensure()
        return self._host.display_for(tool), display_id

    def _capabilities(self) -> tuple[frozenset[Mode], Mode | None, str]:
        display, display_id = self._display()
        modes = display.list_modes(display_id)
        if isinstance(modes, NotAvailable):
            msg = f"Display {display_id} unavailable: {modes.reason}"
            raise DisplayUnavailableError(msg, display_id=display_id)
        current = display.current_mode(display_id)
        return modes, (None if isinstance(current, NotAvailable) else current), display_id

    @traced
    def list_modes(self) -> ServiceResult:
        """List the modes the display reports, highest first."""
        op = "mode_list"
        try:
            modes, current, display_id = self._capabilities()
        except VdctlError as exc:
            self._log_failure(op, exc)
            return ServiceResult.failure(op, exc)

        return ServiceResult(
            ok=True,
            op=op,
            data={
                "display_id": display_id,
                "current": str(current) if current else None,
                "modes": [str(m) for m in _sorted_modes(modes)],
                "count": len(modes),
            },
        )

    @traced
    def negotiate(
        self,
        mode: Mode,
        *,
        capabilities: Iterable[Mode] | None = None,
    ) -> ServiceResult:
        """Run negotiation for *mode* without applying anything.

        Uses *capabilities* when given, else the display's reported modes.
        """
        op = "mode_negotiate"
        caps = frozenset(capabilities or ())
        source = "flags"
        try:
            overrides = self._host.settings.session.override_table()
            if not caps:
                caps, _, _ = self._capabilities()
                source = "display"
            request = ModeRequest(
                width=mode.width,
                height=mode.height,
                refresh_hz=mode.refresh_hz,
                source=ModeSource.CLIENT,
            )
            achieved = negotiate(request, caps, overrides)
        except VdctlError as exc:
            self._log_failure(op, exc)
            return ServiceResult.failure(op, exc, data={"capabilities_source": source})

        return ServiceResult(
            ok=True,
            op=op,
            data={
                "requested": str(achieved.requested),
                "mode": str(achieved.mode),
                "reason": str(achieved.reason),
                "degraded": achieved.degraded,
                "capabilities_source": source,
                "capabilities": [str(m) for m in _sorted_modes(caps)],
            },
        )
