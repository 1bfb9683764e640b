"""Subprocess-backed adapters for the real host.

- Services: ``sc.exe`` (Windows) or ``systemctl`` (Linux).
- Driver: ``pnputil.exe`` driver-store registration.
- Display: a command-line resolution tool in the ChangeScreenResolution
  style (``/m`` lists modes, ``/l`` lists the current mode,
  ``/w= /h= /f= /d=`` applies one).

Every call blocks for at most ``timeout`` seconds.
"""

from __future__ import annotations

import logging
import os
import re
import subprocess
import sys
from collections.abc import Sequence
from pathlib import Path

import httpx

from vdctl.domain.errors import DriverError, ServiceControlError
from vdctl.domain.modes import Mode
from vdctl.infrastructure.ports import NotAvailable

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0

# sc.exe / Win32 service error codes.
_SC_SERVICE_MISSING = 1060
_SC_ALREADY_RUNNING = 1056
_SC_NOT_STARTED = 1062

# pnputil: 3010 = success, reboot required.
_PNP_OK_CODES = frozenset({0, 3010})

_SC_STATE = re.compile(r"STATE\s*:\s*\d+\s+(\w+)")
_PUBLISHED_NAME = re.compile(r"Published\s+Name\s*:\s*(\S+)", re.IGNORECASE)
_MODE_LINE = re.compile(r"(\d+)\s*x\s*(\d+)\D*?@\s*(\d+)\s*Hz", re.IGNORECASE)


def run_command(
    cmd: Sequence[str], *, timeout: float = DEFAULT_TIMEOUT
) -> subprocess.CompletedProcess[str]:
    """Run *cmd* capturing text output. Never raises on non-zero exit."""
    logger.debug("Running: %s", " ".join(cmd))
    return subprocess.run(
        list(cmd),
        capture_output=True,
        text=True,
        timeout=timeout,
        check=False,
    )


def parse_modes(output: str) -> list[Mode]:
    """Extract every ``WxH ... @RHz`` mode from tool output, in order."""
    modes: list[Mode] = []
    for line in output.splitlines():
        match = _MODE_LINE.search(line)
        if match is None:
            continue
        width, height, refresh = (int(g) for g in match.groups())
        if min(width, height, refresh) > 0:
            modes.append(Mode(width=width, height=height, refresh_hz=refresh))
    return modes


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------


class ScServicePort:
    """Windows service control via ``sc.exe``."""

    def __init__(self, name: str, *, timeout: float = DEFAULT_TIMEOUT) -> None:
        self.name = name
        self._timeout = timeout

    def _sc(self, *args: str) -> subprocess.CompletedProcess[str]:
        try:
            return run_command(["sc.exe", *args, self.name], timeout=self._timeout)
        except (OSError, subprocess.TimeoutExpired) as exc:
            msg = f"sc.exe {args[0]} {self.name} failed: {exc}"
            raise ServiceControlError(msg, service=self.name) from exc

    def exists(self) -> bool:
        return self._sc("query").returncode != _SC_SERVICE_MISSING

    def is_running(self) -> bool:
        proc = self._sc("query")
        match = _SC_STATE.search(proc.stdout)
        return match is not None and match.group(1).upper() == "RUNNING"

    def stop(self) -> None:
        proc = self._sc("stop")
        if proc.returncode not in (0, _SC_NOT_STARTED):
            msg = f"sc.exe stop {self.name} exited {proc.returncode}"
            raise ServiceControlError(msg, service=self.name, exit_code=proc.returncode)

    def start(self) -> None:
        proc = self._sc("start")
        if proc.returncode not in (0, _SC_ALREADY_RUNNING):
            msg = f"sc.exe start {self.name} exited {proc.returncode}"
            raise ServiceControlError(msg, service=self.name, exit_code=proc.returncode)


class SystemdServicePort:
    """Linux service control via ``systemctl``."""

    def __init__(self, name: str, *, timeout: float = DEFAULT_TIMEOUT) -> None:
        self.name = name
        self._timeout = timeout

    def _systemctl(self, *args: str) -> subprocess.CompletedProcess[str]:
        try:
            return run_command(["systemctl", *args, self.name], timeout=self._timeout)
        except (OSError, subprocess.TimeoutExpired) as exc:
            msg = f"systemctl {args[0]} {self.name} failed: {exc}"
            raise ServiceControlError(msg, service=self.name) from exc

    def exists(self) -> bool:
        proc = self._systemctl("show", "--property=LoadState", "--value")
        return proc.stdout.strip() == "loaded"

    def is_running(self) -> bool:
        return self._systemctl("is-active", "--quiet").returncode == 0

    def stop(self) -> None:
        proc = self._systemctl("stop")
        if proc.returncode != 0:
            msg = f"systemctl stop {self.name} exited {proc.returncode}: {proc.stderr.strip()}"
            raise ServiceControlError(msg, service=self.name, exit_code=proc.returncode)

    def start(self) -> None:
        proc = self._systemctl("start")
        if proc.returncode != 0:
            msg = f"systemctl start {self.name} exited {proc.returncode}: {proc.stderr.strip()}"
            raise ServiceControlError(msg, service=self.name, exit_code=proc.returncode)


# ---------------------------------------------------------------------------
# Driver
# ---------------------------------------------------------------------------


class PnpUtilDriverPort:
    """Driver-store registration through ``pnputil.exe``.

    The driver id is the published ``oemNN.inf`` name pnputil assigns.
    """

    def __init__(self, *, timeout: float = 120.0) -> None:
        self._timeout = timeout

    def _pnputil(self, *args: str) -> subprocess.CompletedProcess[str]:
        try:
            return run_command(["pnputil.exe", *args], timeout=self._timeout)
        except (OSError, subprocess.TimeoutExpired) as exc:
            msg = f"pnputil.exe {args[0]} failed: {exc}"
            raise DriverError(msg) from exc

    def register(self, package: Path) -> str:
        proc = self._pnputil("/add-driver", str(package), "/install")
        if proc.returncode not in _PNP_OK_CODES:
            msg = f"Driver install failed for {package} (exit {proc.returncode})"
            raise DriverError(msg, exit_code=proc.returncode, package=str(package))
        match = _PUBLISHED_NAME.search(proc.stdout)
        if match is None:
            msg = f"Driver installed but no published name reported for {package}"
            raise DriverError(msg, exit_code=proc.returncode, package=str(package))
        return match.group(1)

    def deregister(self, driver_id: str) -> None:
        proc = self._pnputil("/delete-driver", driver_id, "/uninstall", "/force")
        if proc.returncode not in _PNP_OK_CODES:
            msg = f"Driver removal failed for {driver_id} (exit {proc.returncode})"
            raise DriverError(msg, exit_code=proc.returncode, driver_id=driver_id)


# ---------------------------------------------------------------------------
# Display
# ---------------------------------------------------------------------------


class ToolDisplayPort:
    """Display control through the fetched resolution tool."""

    def __init__(self, tool_path: Path | None, *, timeout: float = DEFAULT_TIMEOUT) -> None:
        self._tool = tool_path
        self._timeout = timeout

    def _invoke(self, *args: str) -> subprocess.CompletedProcess[str] | NotAvailable:
        if self._tool is None or not self._tool.is_file():
            return NotAvailable(f"resolution tool not available: {self._tool}")
        try:
            proc = run_command([str(self._tool), *args], timeout=self._timeout)
        except (OSError, subprocess.TimeoutExpired) as exc:
            return NotAvailable(f"resolution tool failed: {exc}")
        if proc.returncode != 0:
            return NotAvailable(f"resolution tool exited {proc.returncode}: {proc.stderr.strip()}")
        return proc

    def list_modes(self, display_id: str) -> frozenset[Mode] | NotAvailable:
        proc = self._invoke("/m", f"/d={display_id}")
        if isinstance(proc, NotAvailable):
            return proc
        modes = parse_modes(proc.stdout)
        if not modes:
            return NotAvailable(f"no modes reported for display {display_id}")
        return frozenset(modes)

    def current_mode(self, display_id: str) -> Mode | NotAvailable:
        proc = self._invoke("/l", f"/d={display_id}")
        if isinstance(proc, NotAvailable):
            return proc
        modes = parse_modes(proc.stdout)
        if not modes:
            return NotAvailable(f"current mode not reported for display {display_id}")
        return modes[0]

    def apply_mode(self, display_id: str, mode: Mode) -> Mode | NotAvailable:
        proc = self._invoke(
            f"/w={mode.width}",
            f"/h={mode.height}",
            f"/f={mode.refresh_hz}",
            f"/d={display_id}",
        )
        if isinstance(proc, NotAvailable):
            return proc
        return mode


# ---------------------------------------------------------------------------
# Host
# ---------------------------------------------------------------------------


class SystemHostPort:
    """Privilege and connectivity checks for the local machine."""

    def __init__(self, *, timeout: float = 10.0) -> None:
        self._timeout = timeout

    def is_elevated(self) -> bool:
        if sys.platform == "win32":
            import ctypes

            try:
                return bool(ctypes.windll.shell32.IsUserAnAdmin())  # type: ignore[attr-defined]
            except OSError:
                return False
        return os.geteuid() == 0

    def can_reach(self, url: str) -> bool:
        try:
            httpx.head(url, timeout=self._timeout, follow_redirects=True)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            logger.debug("Reachability check failed for %s: %s", url, exc)
            return False
        return True


def build_service_port(
    backend: str, name: str, *, timeout: float
) -> ScServicePort | SystemdServicePort:
    """Select the service adapter for *backend* (``sc`` or ``systemd``)."""
    if backend == "systemd":
        return SystemdServicePort(name, timeout=timeout)
    return ScServicePort(name, timeout=timeout)
