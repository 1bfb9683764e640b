"""Display modes, client requests, and override rules.

A mode is a ``(width, height, refresh_hz)`` triple written as ``WxHxR``
(e.g. ``1920x1080x60``). Override rules use ``<mode>=<mode>`` and are parsed
once into an ordered :class:`OverrideTable`; first match wins.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Iterator, Mapping
from enum import StrEnum

from pydantic import BaseModel, Field

from vdctl.domain.errors import ConfigInvalidError

MODE_PATTERN = re.compile(r"^\s*(\d+)\s*[xX]\s*(\d+)\s*[xX@]\s*(\d+)\s*(?:[hH][zZ])?\s*$")

# Environment variables set by the streaming server for each connecting client.
ENV_WIDTH = "CLIENT_WIDTH"
ENV_HEIGHT = "CLIENT_HEIGHT"
ENV_REFRESH = "CLIENT_REFRESH_HZ"


class Mode(BaseModel):
    """A display configuration. Hashable so capability sets work."""

    model_config = {"frozen": True}

    width: int = Field(gt=0)
    height: int = Field(gt=0)
    refresh_hz: int = Field(gt=0)

    def __str__(self) -> str:
        return f"{self.width}x{self.height}x{self.refresh_hz}"

    def same_resolution(self, other: Mode) -> bool:
        return self.width == other.width and self.height == other.height


class ModeSource(StrEnum):
    """Where a mode request came from."""

    CLIENT = "client"
    DEFAULT = "default"


class ModeRequest(BaseModel):
    """A client's requested mode for one connect event."""

    model_config = {"frozen": True}

    width: int
    height: int
    refresh_hz: int
    source: ModeSource = ModeSource.CLIENT

    @property
    def mode(self) -> Mode:
        return Mode(width=self.width, height=self.height, refresh_hz=self.refresh_hz)

    @classmethod
    def from_environ(cls, environ: Mapping[str, str], default: Mode) -> ModeRequest:
        """Build a request from client environment variables.

        Any missing, unparseable, or non-positive field fails closed to the
        whole *default* triple rather than mixing client and default values.
        """
        values: list[int] = []
        for key in (ENV_WIDTH, ENV_HEIGHT, ENV_REFRESH):
            raw = environ.get(key)
            if raw is None:
                break
            try:
                value = int(raw.strip())
            except ValueError:
                break
            if value <= 0:
                break
            values.append(value)

        if len(values) != 3:
            return cls(
                width=default.width,
                height=default.height,
                refresh_hz=default.refresh_hz,
                source=ModeSource.DEFAULT,
            )
        width, height, refresh = values
        return cls(width=width, height=height, refresh_hz=refresh, source=ModeSource.CLIENT)


class ModeOverride(BaseModel):
    """A user-declared ``from_mode → to_mode`` rule."""

    model_config = {"frozen": True}

    from_mode: Mode
    to_mode: Mode

    def __str__(self) -> str:
        return f"{self.from_mode}={self.to_mode}"


class NegotiationReason(StrEnum):
    """Why the achieved mode was chosen."""

    EXACT_MATCH = "exact_match"
    OVERRIDE_APPLIED = "override_applied"
    REFRESH_DEGRADED = "refresh_degraded"
    # Reserved: negotiation never changes resolution.
    RESOLUTION_DEGRADED = "resolution_degraded"


class AchievedMode(BaseModel):
    """Result of negotiation: the mode to apply and how it was reached."""

    model_config = {"frozen": True}

    mode: Mode
    requested: Mode
    reason: NegotiationReason
    degraded: bool = False


def parse_mode(text: str) -> Mode:
    """Parse ``WxHxR`` (also ``WxH@R`` and an optional ``Hz`` suffix).

    Examples:
        >>> str(parse_mode("1920x1080x60"))
        '1920x1080x60'
        >>> str(parse_mode("2560x1440@144Hz"))
        '2560x1440x144'
    """
    match = MODE_PATTERN.match(text)
    if match is None:
        msg = f"Invalid mode {text!r}; expected <W>x<H>x<R>"
        raise ConfigInvalidError(msg, value=text)
    width, height, refresh = (int(g) for g in match.groups())
    if min(width, height, refresh) <= 0:
        msg = f"Invalid mode {text!r}; values must be positive"
        raise ConfigInvalidError(msg, value=text)
    return Mode(width=width, height=height, refresh_hz=refresh)


def parse_override(text: str) -> ModeOverride:
    """Parse ``"<W>x<H>x<R>=<W>x<H>x<R>"`` into a :class:`ModeOverride`."""
    left, sep, right = text.partition("=")
    if not sep:
        msg = f"Invalid override {text!r}; expected <mode>=<mode>"
        raise ConfigInvalidError(msg, value=text)
    return ModeOverride(from_mode=parse_mode(left), to_mode=parse_mode(right))


class OverrideTable:
    """Ordered, read-only override rules parsed once from config strings."""

    def __init__(self, overrides: Iterable[ModeOverride] = ()) -> None:
        self._overrides: tuple[ModeOverride, ...] = tuple(overrides)

    @classmethod
    def parse(cls, entries: Iterable[str]) -> OverrideTable:
        return cls(parse_override(entry) for entry in entries)

    def lookup(self, mode: Mode) -> ModeOverride | None:
        """Return the first override whose ``from_mode`` equals *mode*."""
        for override in self._overrides:
            if override.from_mode == mode:
                return override
        return None

    def __iter__(self) -> Iterator[ModeOverride]:
        return iter(self._overrides)

    def __len__(self) -> int:
        return len(self._overrides)
