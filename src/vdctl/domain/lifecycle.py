"""Provisioning transaction states and transition rules.

Forward path::

    idle → preflight_checked → service_stopped → driver_installed
         → config_updated → settings_persisted → service_restarted → committed

Any non-terminal state may enter ``rolling_back``; rollback ends in
``rolled_back`` (clean) or ``failed`` (some compensation did not complete).
"""

from __future__ import annotations

from enum import StrEnum


class Operation(StrEnum):
    """What a transaction does to the host."""

    INSTALL = "install"
    UNINSTALL = "uninstall"


class InstallState(StrEnum):
    """Transaction state; also persisted in the Settings record."""

    IDLE = "idle"
    PREFLIGHT_CHECKED = "preflight_checked"
    SERVICE_STOPPED = "service_stopped"
    DRIVER_INSTALLED = "driver_installed"
    CONFIG_UPDATED = "config_updated"
    SETTINGS_PERSISTED = "settings_persisted"
    SERVICE_RESTARTED = "service_restarted"
    COMMITTED = "committed"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"


class StepKind(StrEnum):
    """Journaled side effects; each kind has a compensating action."""

    SERVICE_STOPPED = "service_stopped"
    DRIVER_REGISTERED = "driver_registered"
    DRIVER_DEREGISTERED = "driver_deregistered"
    CONFIG_BACKUP = "config_backup"
    SETTINGS_WRITTEN = "settings_written"
    SETTINGS_DELETED = "settings_deleted"


TERMINAL_STATES = frozenset(
    {InstallState.COMMITTED, InstallState.ROLLED_BACK, InstallState.FAILED}
)

TRANSITIONS: dict[str, list[str]] = {
    str(InstallState.IDLE): [str(InstallState.PREFLIGHT_CHECKED), str(InstallState.ROLLING_BACK)],
    str(InstallState.PREFLIGHT_CHECKED): [
        str(InstallState.SERVICE_STOPPED),
        str(InstallState.ROLLING_BACK),
    ],
    str(InstallState.SERVICE_STOPPED): [
        str(InstallState.DRIVER_INSTALLED),
        str(InstallState.ROLLING_BACK),
    ],
    str(InstallState.DRIVER_INSTALLED): [
        str(InstallState.CONFIG_UPDATED),
        str(InstallState.ROLLING_BACK),
    ],
    str(InstallState.CONFIG_UPDATED): [
        str(InstallState.SETTINGS_PERSISTED),
        str(InstallState.ROLLING_BACK),
    ],
    str(InstallState.SETTINGS_PERSISTED): [
        str(InstallState.SERVICE_RESTARTED),
        str(InstallState.ROLLING_BACK),
    ],
    str(InstallState.SERVICE_RESTARTED): [
        str(InstallState.COMMITTED),
        str(InstallState.ROLLING_BACK),
    ],
    str(InstallState.ROLLING_BACK): [str(InstallState.ROLLED_BACK), str(InstallState.FAILED)],
    str(InstallState.COMMITTED): [],
    str(InstallState.ROLLED_BACK): [],
    str(InstallState.FAILED): [],
}


def is_valid_transition(current: str, target: str) -> bool:
    """Check if moving from *current* to *target* is allowed."""
    return target in TRANSITIONS.get(current, [])


def is_terminal(state: str) -> bool:
    return state in TERMINAL_STATES
