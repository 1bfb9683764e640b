"""Unified settings — CLI flags, env vars, and TOML config in one object.

Priority chain (highest to lowest):
  1. Init kwargs  — CLI flags passed by Click
  2. Env vars     — ``VDCTL_*`` prefix, nested sections via ``__``
                    (e.g. ``VDCTL_SESSION__STRICT=true``)
  3. TOML file    — ``vdctl.toml`` found by :func:`find_config`
  4. Code defaults — baked into the section models
"""

from __future__ import annotations

import threading
import tomllib
from pathlib import Path
from typing import Any

from pydantic import Field
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource

from vdctl.config.discovery import find_config
from vdctl.config.models import PathsConfig, ProvisionConfig, SessionConfig, ToolConfig, VdConfig


class TomlSettingsSource(PydanticBaseSettingsSource):
    """Read settings from a ``vdctl.toml`` file.

    The document is checked against :class:`VdConfig` on its own, so a bad
    value is reported even when an env var would shadow it. Only the
    config sections are taken from the file; CLI flags never come from TOML.
    """

    def __init__(self, settings_cls: type[BaseSettings], toml_path: Path | None) -> None:
        super().__init__(settings_cls)
        self._data: dict[str, Any] = {}
        if toml_path and toml_path.is_file():
            raw = toml_path.read_text(encoding="utf-8")
            try:
                data = tomllib.loads(raw)
            except tomllib.TOMLDecodeError as exc:
                import click

                msg = f"Invalid TOML in {toml_path}: {exc}"
                raise click.ClickException(msg) from exc
            VdConfig.model_validate(data)
            self._data = {k: v for k, v in data.items() if k in VdConfig.model_fields}

    def get_field_value(self, field: Any, field_name: str) -> tuple[Any, str, bool]:
        val = self._data.get(field_name)
        return val, field_name, field_name in self._data

    def __call__(self) -> dict[str, Any]:
        return self._data


# Thread-local storage for TOML path during construction.
_tls = threading.local()


class VdSettings(BaseSettings):
    """Unified settings for the vdctl CLI.

    Frozen after construction and stored on the Click context object.

    Attributes:
        config_path: The TOML file that was loaded, or None for defaults.
    """

    model_config = {
        "frozen": True,
        "env_prefix": "VDCTL_",
        "env_nested_delimiter": "__",
    }

    config_path: Path | None = None

    # --- CLI flags ---
    json_output: bool = False
    quiet: bool = False
    verbose: bool = False
    log_json: bool = False

    # --- TOML sections ---
    paths: PathsConfig = Field(default_factory=PathsConfig)
    provision: ProvisionConfig = Field(default_factory=ProvisionConfig)
    tool: ToolConfig = Field(default_factory=ToolConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Insert TOML source between env vars and defaults."""
        toml_path = getattr(_tls, "toml_path", None)
        return (
            init_settings,
            env_settings,
            TomlSettingsSource(settings_cls, toml_path),
        )

    @classmethod
    def from_cli(
        cls,
        *,
        config_path: str | None = None,
        start: Path | None = None,
        **overrides: Any,
    ) -> VdSettings:
        """Construct settings from a CLI invocation.

        Uses the explicit *config_path* when it names a file, otherwise
        :func:`find_config` starting at *start*. Remaining keyword
        arguments (flags or whole sections) win over every other source.
        """
        toml_path: Path | None = None
        if config_path:
            p = Path(config_path)
            if p.is_file():
                toml_path = p
        else:
            toml_path = find_config(start)

        _tls.toml_path = toml_path
        try:
            return cls(config_path=toml_path, **overrides)
        finally:
            _tls.toml_path = None
