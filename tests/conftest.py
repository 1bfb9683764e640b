"""Shared pytest fixtures and in-memory port fakes for vdctl tests."""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Callable, Generator
from pathlib import Path
from typing import Any

import httpx
import pytest
from click.testing import CliRunner

from vdctl.config.settings import VdSettings
from vdctl.domain.errors import DriverError, ServiceControlError
from vdctl.domain.modes import Mode
from vdctl.infrastructure.fetch import ToolFetcher
from vdctl.infrastructure.host import HostContext
from vdctl.infrastructure.ports import NotAvailable
from vdctl.infrastructure.retry import RetryPolicy
from vdctl.services.telemetry import _current_span, disable_telemetry

TOOL_URL = "https://tools.test/bin/ChangeScreenResolution.exe"
TOOL_BYTES = b"MZ fake resolution tool"

# CRLF on purpose: byte-level restore must keep Windows newlines.
ORIGINAL_CONFIG = b"# Sunshine configuration\r\nport = 47989\r\nencoder = nvenc\r\n"

DISPLAY_MODES = frozenset(
    {
        Mode(width=1920, height=1080, refresh_hz=60),
        Mode(width=1920, height=1080, refresh_hz=90),
        Mode(width=2560, height=1440, refresh_hz=60),
        Mode(width=3840, height=2160, refresh_hz=60),
    }
)
DESKTOP_MODE = Mode(width=2560, height=1440, refresh_hz=60)


# ---------------------------------------------------------------------------
# Port fakes
# ---------------------------------------------------------------------------


class FakeService:
    """ServicePort with switchable failures; ``calls`` records stop/start."""

    def __init__(self, name: str = "SunshineService", *, running: bool = True) -> None:
        self.name = name
        self.installed = True
        self.running = running
        self.fail_stop = False
        self.fail_start = False
        self.ignore_stop = False
        self.calls: list[str] = []

    def exists(self) -> bool:
        return self.installed

    def is_running(self) -> bool:
        return self.running

    def stop(self) -> None:
        self.calls.append("stop")
        if self.fail_stop:
            raise ServiceControlError("sc stop failed", service=self.name)
        if not self.ignore_stop:
            self.running = False

    def start(self) -> None:
        self.calls.append("start")
        if self.fail_start:
            raise ServiceControlError("sc start failed", service=self.name)
        self.running = True


class FakeDriver:
    """DriverPort that tracks registered packages by published id."""

    def __init__(self) -> None:
        self.registered: dict[str, str] = {}
        self.fail_register = False
        self.fail_deregister = False
        self.calls: list[str] = []
        self._counter = 0

    def register(self, package: Path) -> str:
        self.calls.append("register")
        if self.fail_register:
            raise DriverError("pnputil /add-driver failed", exit_code=5)
        self._counter += 1
        driver_id = f"oem{self._counter}.inf"
        self.registered[driver_id] = str(package)
        return driver_id

    def deregister(self, driver_id: str) -> None:
        self.calls.append("deregister")
        if self.fail_deregister:
            raise DriverError("pnputil /delete-driver failed", exit_code=2)
        self.registered.pop(driver_id, None)


class FakeDisplay:
    """DisplayPort over an in-memory mode set."""

    def __init__(
        self, modes: frozenset[Mode] = DISPLAY_MODES, current: Mode = DESKTOP_MODE
    ) -> None:
        self.modes = modes
        self.current = current
        self.available = True
        self.reject_apply = False
        self.applied: list[Mode] = []

    def list_modes(self, display_id: str) -> frozenset[Mode] | NotAvailable:
        if not self.available:
            return NotAvailable("display not found")
        return self.modes

    def current_mode(self, display_id: str) -> Mode | NotAvailable:
        if not self.available:
            return NotAvailable("display not found")
        return self.current

    def apply_mode(self, display_id: str, mode: Mode) -> Mode | NotAvailable:
        if self.reject_apply:
            return NotAvailable("mode rejected")
        self.applied.append(mode)
        self.current = mode
        return mode


class FakeHost:
    def __init__(self) -> None:
        self.elevated = True
        self.reachable = True

    def is_elevated(self) -> bool:
        return self.elevated

    def can_reach(self, url: str) -> bool:
        return self.reachable


def no_sleep(_seconds: float) -> None:
    return None


def json_payload(stream: str) -> dict[str, Any]:
    """The JSON document in *stream*, skipping any log lines written before it."""
    lines = stream.splitlines()
    start = lines.index("{")
    return json.loads("\n".join(lines[start:]))


def tool_transport(
    status: int = 200, body: bytes = TOOL_BYTES
) -> tuple[httpx.MockTransport, list[httpx.Request]]:
    """MockTransport serving the tool; the list collects every request."""
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(status, content=body)

    return httpx.MockTransport(handler), requests


# ---------------------------------------------------------------------------
# Environment isolation
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _isolated_env(
    tmp_path: Path, tmp_path_factory: pytest.TempPathFactory, monkeypatch: pytest.MonkeyPatch
) -> Generator[None]:
    """Keep real user config, VDCTL_* env vars and telemetry out of every test."""
    for key in list(os.environ):
        if key.startswith("VDCTL_") or key.startswith("CLIENT_"):
            monkeypatch.delenv(key, raising=False)
    home = tmp_path_factory.mktemp("home")
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("USERPROFILE", str(home))
    monkeypatch.chdir(tmp_path)
    yield
    disable_telemetry()
    _current_span.set(None)
    logging.getLogger().handlers.clear()
    logging.getLogger("vdctl").setLevel(logging.NOTSET)


# ---------------------------------------------------------------------------
# Files and settings
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_runner() -> CliRunner:
    """Provide a Click CLI test runner."""
    return CliRunner()


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    return tmp_path / "state"


@pytest.fixture
def streaming_config(tmp_path: Path) -> Path:
    """The streaming server's config file, with CRLF newlines."""
    path = tmp_path / "sunshine" / "sunshine.conf"
    path.parent.mkdir()
    path.write_bytes(ORIGINAL_CONFIG)
    return path


@pytest.fixture
def driver_package(tmp_path: Path) -> Path:
    path = tmp_path / "driver" / "vdd.inf"
    path.parent.mkdir()
    path.write_text("[Version]\nSignature=$WINDOWS NT$\n", encoding="utf-8")
    return path


@pytest.fixture
def vdctl_toml(
    tmp_path: Path, state_dir: Path, streaming_config: Path, driver_package: Path
) -> Path:
    """A vdctl.toml in the working directory, found by walk-up discovery."""
    path = tmp_path / "vdctl.toml"
    path.write_text(
        f"""\
[paths]
state_dir = '{state_dir}'

[provision]
config_path = '{streaming_config}'
driver_package = '{driver_package}'

[tool]
url = '{TOOL_URL}'
delay = 0
""",
        encoding="utf-8",
    )
    return path


@pytest.fixture
def settings(vdctl_toml: Path) -> VdSettings:
    return VdSettings.from_cli(config_path=str(vdctl_toml))


# ---------------------------------------------------------------------------
# Ports and host context
# ---------------------------------------------------------------------------


@pytest.fixture
def fake_service() -> FakeService:
    return FakeService()


@pytest.fixture
def fake_driver() -> FakeDriver:
    return FakeDriver()


@pytest.fixture
def fake_display() -> FakeDisplay:
    return FakeDisplay()


@pytest.fixture
def fake_host() -> FakeHost:
    return FakeHost()


@pytest.fixture
def fetcher(state_dir: Path) -> Generator[ToolFetcher]:
    transport, _requests = tool_transport()
    client = httpx.Client(transport=transport)
    try:
        yield ToolFetcher(
            state_dir / "tools",
            TOOL_URL,
            policy=RetryPolicy(max_attempts=3, delay=0, sleep=no_sleep),
            client=client,
        )
    finally:
        client.close()


@pytest.fixture
def make_host(
    fake_service: FakeService,
    fake_driver: FakeDriver,
    fake_display: FakeDisplay,
    fake_host: FakeHost,
    fetcher: ToolFetcher,
) -> Callable[[VdSettings], HostContext]:
    """Factory building a HostContext over the shared fakes."""

    def factory(settings: VdSettings) -> HostContext:
        return HostContext(
            settings,
            service=fake_service,
            driver=fake_driver,
            display=fake_display,
            host=fake_host,
            fetcher=fetcher,
            sleep=no_sleep,
        )

    return factory


@pytest.fixture
def host(
    settings: VdSettings, make_host: Callable[[VdSettings], HostContext]
) -> Generator[HostContext]:
    """HostContext over fakes, with a temp state directory."""
    ctx = make_host(settings)
    try:
        yield ctx
    finally:
        ctx.close()


@pytest.fixture
def provisioned(host: HostContext) -> HostContext:
    """A host after a successful install."""
    from vdctl.services.provision import ProvisionService

    result = ProvisionService(host).install()
    assert result.ok, result.error
    return host


@pytest.fixture
def _cli_fakes(
    vdctl_toml: Path,
    make_host: Callable[[VdSettings], HostContext],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Make the CLI build its HostContext over the shared fakes.

    Use via ``@pytest.mark.usefixtures("_cli_fakes")`` on command test
    classes; the CLI discovers ``vdctl.toml`` in the working directory.
    """
    monkeypatch.setattr("vdctl.infrastructure.host.HostContext", make_host)
