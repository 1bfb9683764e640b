"""Rich Console factory and theme for vdctl output.

Creates Console instances that render to a StringIO buffer, preserving
the ``format_result() -> str`` contract.  In non-TTY environments
(tests, pipes) Rich automatically disables color codes.
"""

from __future__ import annotations

from io import StringIO

from rich.console import Console
from rich.theme import Theme

VD_THEME = Theme(
    {
        "vd.ok": "bold green",
        "vd.error": "bold red",
        "vd.warning": "bold yellow",
        "vd.op": "bold cyan",
        "vd.key": "dim",
        "vd.id": "bold blue",
        "vd.path": "dim",
        "vd.mode": "bold",
        "vd.state.committed": "green",
        "vd.state.rolled_back": "yellow",
        "vd.state.failed": "red",
        "vd.reason.exact_match": "green",
        "vd.reason.override_applied": "cyan",
        "vd.reason.refresh_degraded": "yellow",
    }
)

_STATE_STYLES: dict[str, str] = {
    "committed": "vd.state.committed",
    "rolled_back": "vd.state.rolled_back",
    "failed": "vd.state.failed",
}

_REASON_STYLES: dict[str, str] = {
    "exact_match": "vd.reason.exact_match",
    "override_applied": "vd.reason.override_applied",
    "refresh_degraded": "vd.reason.refresh_degraded",
}


def create_console(*, no_color: bool = False, width: int | None = None) -> Console:
    """Create a Console that renders to a StringIO buffer.

    Args:
        no_color: Disable ANSI escape codes (used in tests).
        width: Override terminal width (useful for consistent test output).
    """
    return Console(
        file=StringIO(),
        theme=VD_THEME,
        no_color=no_color,
        highlight=False,
        width=width or 120,
    )


def get_output(console: Console) -> str:
    """Extract rendered text from a StringIO-backed Console."""
    assert isinstance(console.file, StringIO)
    return console.file.getvalue()


def style_for_state(state: str) -> str:
    """Return the Rich style name for a transaction state."""
    return _STATE_STYLES.get(state, "")


def style_for_reason(reason: str) -> str:
    """Return the Rich style name for a negotiation reason."""
    return _REASON_STYLES.get(reason, "")
