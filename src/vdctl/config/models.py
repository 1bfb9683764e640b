"""Pydantic configuration models with code-baked defaults.

Sparse TOML contract: defaults baked here, vdctl.toml only contains overrides.
A typical host needs only ``[provision] config_path`` and ``[tool] url``.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field, field_validator

from vdctl.domain.modes import Mode, OverrideTable, parse_override

DEFAULT_DIRECTIVE = (
    'global_prep_cmd = [{"do":"vdctl session connect",'
    '"undo":"vdctl session disconnect","elevated":"true"}]'
)


def _default_state_dir() -> Path:
    return Path.home() / ".vdctl"


class PathsConfig(BaseModel):
    """[paths] section."""

    model_config = {"frozen": True}

    state_dir: Path = Field(default_factory=_default_state_dir)

    @property
    def sessions_dir(self) -> Path:
        return self.state_dir / "sessions"

    @property
    def tools_dir(self) -> Path:
        return self.state_dir / "tools"


class ProvisionConfig(BaseModel):
    """[provision] section."""

    model_config = {"frozen": True}

    service_name: str = "SunshineService"
    service_backend: str = "sc"
    config_path: Path = Path("C:/Program Files/Sunshine/config/sunshine.conf")
    directive: str = DEFAULT_DIRECTIVE
    driver_package: Path | None = None
    service_timeout: float = 30.0
    poll_interval: float = 0.5
    require_elevation: bool = True
    check_network: bool = True

    @field_validator("service_backend")
    @classmethod
    def _known_backend(cls, value: str) -> str:
        if value not in ("sc", "systemd"):
            msg = f"service_backend must be 'sc' or 'systemd', got {value!r}"
            raise ValueError(msg)
        return value


class ToolConfig(BaseModel):
    """[tool] section — the auxiliary resolution-control tool."""

    model_config = {"frozen": True}

    url: str = "https://tools.example.invalid/ChangeScreenResolution.exe"
    filename: str | None = None
    checksum: str | None = None
    attempts: int = Field(default=3, ge=1)
    delay: float = Field(default=2.0, ge=0)
    timeout: float = 30.0


class SessionConfig(BaseModel):
    """[session] section."""

    model_config = {"frozen": True}

    default_width: int = Field(default=1920, gt=0)
    default_height: int = Field(default=1080, gt=0)
    default_refresh_hz: int = Field(default=60, gt=0)
    overrides: list[str] = Field(default_factory=list)
    strict: bool = False
    display: str | None = None

    @property
    def default_mode(self) -> Mode:
        return Mode(
            width=self.default_width,
            height=self.default_height,
            refresh_hz=self.default_refresh_hz,
        )

    def override_table(self) -> OverrideTable:
        """Parse overrides (raises ``ConfigInvalidError`` on a bad entry)."""
        return OverrideTable(parse_override(entry) for entry in self.overrides)


class VdConfig(BaseModel):
    """Root configuration composing all sections (the vdctl.toml schema)."""

    model_config = {"frozen": True}

    paths: PathsConfig = Field(default_factory=PathsConfig)
    provision: ProvisionConfig = Field(default_factory=ProvisionConfig)
    tool: ToolConfig = Field(default_factory=ToolConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
