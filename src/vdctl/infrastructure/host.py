"""HostContext — the explicit context injected into every service.

One HostContext lives for one CLI invocation. It owns the state-directory
stores, the host lock, and the collaborator ports, building the real
subprocess adapters lazily unless fakes were injected. Use it as a context
manager (or call :meth:`close`) so owned resources are released on every
exit path.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

from vdctl.infrastructure.adapters import (
    PnpUtilDriverPort,
    SystemHostPort,
    ToolDisplayPort,
    build_service_port,
)
from vdctl.infrastructure.backup import ConfigBackupManager
from vdctl.infrastructure.fetch import ToolFetcher
from vdctl.infrastructure.journal import JournalStore
from vdctl.infrastructure.lock import HostLock
from vdctl.infrastructure.retry import RetryPolicy
from vdctl.infrastructure.settings_store import SettingsStore

if TYPE_CHECKING:
    from collections.abc import Callable
    from types import TracebackType

    from vdctl.config.settings import VdSettings
    from vdctl.infrastructure.ports import DisplayPort, DriverPort, HostPort, ServicePort

logger = logging.getLogger(__name__)


class HostContext:
    """Repository of host state and collaborators for one invocation."""

    def __init__(
        self,
        settings: VdSettings,
        *,
        service: ServicePort | None = None,
        driver: DriverPort | None = None,
        display: DisplayPort | None = None,
        host: HostPort | None = None,
        fetcher: ToolFetcher | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self._settings = settings
        self._service = service
        self._driver = driver
        self._display = display
        self._host = host
        self._fetcher = fetcher
        self._sleep = sleep
        self._store = SettingsStore(self.state_dir)
        self._journal = JournalStore(self.state_dir)
        self._lock = HostLock(self.state_dir)
        self._backups = ConfigBackupManager()

    # ------------------------------------------------------------------
    # Paths and stores
    # ------------------------------------------------------------------

    @property
    def settings(self) -> VdSettings:
        return self._settings

    @property
    def state_dir(self) -> Path:
        return self._settings.paths.state_dir

    @property
    def sessions_dir(self) -> Path:
        return self._settings.paths.sessions_dir

    @property
    def store(self) -> SettingsStore:
        return self._store

    @property
    def journal(self) -> JournalStore:
        return self._journal

    @property
    def lock(self) -> HostLock:
        return self._lock

    @property
    def backups(self) -> ConfigBackupManager:
        return self._backups

    # ------------------------------------------------------------------
    # Ports (lazy real adapters)
    # ------------------------------------------------------------------

    @property
    def service(self) -> ServicePort:
        if self._service is None:
            cfg = self._settings.provision
            self._service = build_service_port(
                cfg.service_backend, cfg.service_name, timeout=cfg.service_timeout
            )
        return self._service

    @property
    def driver(self) -> DriverPort:
        if self._driver is None:
            self._driver = PnpUtilDriverPort()
        return self._driver

    @property
    def host(self) -> HostPort:
        if self._host is None:
            self._host = SystemHostPort()
        return self._host

    @property
    def fetcher(self) -> ToolFetcher:
        if self._fetcher is None:
            cfg = self._settings.tool
            self._fetcher = ToolFetcher(
                self._settings.paths.tools_dir,
                cfg.url,
                filename=cfg.filename,
                checksum=cfg.checksum,
                policy=self.retry_policy(attempts=cfg.attempts, delay=cfg.delay),
                timeout=cfg.timeout,
            )
        return self._fetcher

    def display_for(self, tool_path: Path | None) -> DisplayPort:
        """Display port driven by the tool at *tool_path* (or the injected fake)."""
        if self._display is not None:
            return self._display
        return ToolDisplayPort(tool_path, timeout=self._settings.tool.timeout)

    def retry_policy(self, *, attempts: int, delay: float) -> RetryPolicy:
        """Fixed-delay policy honoring an injected sleep (tests pass a no-op)."""
        if self._sleep is not None:
            return RetryPolicy(max_attempts=attempts, delay=delay, sleep=self._sleep)
        return RetryPolicy(max_attempts=attempts, delay=delay)

    def wait_policy(self, *, timeout: float, interval: float) -> RetryPolicy:
        if self._sleep is not None:
            return RetryPolicy.for_timeout(timeout, interval, sleep=self._sleep)
        return RetryPolicy.for_timeout(timeout, interval)

    # ------------------------------------------------------------------
    # Lifetime
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Release anything still held (the host lock, if a caller leaked it)."""
        if self._lock.is_locked:
            logger.warning("Host lock still held at close; releasing")
            self._lock.force_release()

    def __enter__(self) -> HostContext:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()
