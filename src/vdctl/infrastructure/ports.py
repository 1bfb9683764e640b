"""Collaborator ports — the narrow interfaces the engines call.

Concrete subprocess adapters live in :mod:`vdctl.infrastructure.adapters`;
tests substitute in-memory fakes.

Service and driver ports raise typed errors on failure. The display port
never raises: an unusable display, missing tool, or rejected mode change is
returned as :class:`NotAvailable` so callers branch on it explicitly.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, runtime_checkable

from vdctl.domain.modes import Mode


@dataclass(frozen=True)
class NotAvailable:
    """Modeled "no answer" from the display collaborator."""

    reason: str

    def __bool__(self) -> bool:
        return False


@runtime_checkable
class DisplayPort(Protocol):
    def list_modes(self, display_id: str) -> frozenset[Mode] | NotAvailable: ...

    def current_mode(self, display_id: str) -> Mode | NotAvailable: ...

    def apply_mode(self, display_id: str, mode: Mode) -> Mode | NotAvailable: ...


@runtime_checkable
class ServicePort(Protocol):
    """Lifecycle of the streaming server's OS service.

    ``stop``/``start`` issue the request; callers poll ``is_running`` for
    the settled state. Command failures raise ``ServiceControlError``.
    """

    name: str

    def exists(self) -> bool: ...

    def is_running(self) -> bool: ...

    def stop(self) -> None: ...

    def start(self) -> None: ...


@runtime_checkable
class DriverPort(Protocol):
    """Driver package registration. Failures raise ``DriverError``."""

    def register(self, package: Path) -> str: ...

    def deregister(self, driver_id: str) -> None: ...


@runtime_checkable
class HostPort(Protocol):
    def is_elevated(self) -> bool: ...

    def can_reach(self, url: str) -> bool: ...
