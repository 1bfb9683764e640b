"""Command group: session hook entry points (connect, disconnect).

The streaming server runs these around each client session; connect reads
the client's requested mode from ``CLIENT_WIDTH``, ``CLIENT_HEIGHT`` and
``CLIENT_REFRESH_HZ``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import click

from vdctl.commands._base import VdGroup

if TYPE_CHECKING:
    from vdctl.commands._context import AppContext


@click.group(
    cls=VdGroup,
    examples="""\
  CLIENT_WIDTH=2560 CLIENT_HEIGHT=1440 CLIENT_REFRESH_HZ=120 vdctl session connect
  vdctl session disconnect""",
)
def session() -> None:
    """Apply and restore display modes around a streaming session."""


@session.command(
    examples="""\
  vdctl session connect
  CLIENT_WIDTH=1920 CLIENT_HEIGHT=1080 CLIENT_REFRESH_HZ=60 vdctl --json session connect""",
)
@click.pass_obj
def connect(app: AppContext) -> None:
    """Negotiate and apply the connecting client's display mode."""
    from vdctl.services.session import SessionService

    app.emit(SessionService(app.host).connect())


@session.command(
    examples="""\
  vdctl session disconnect
  vdctl session disconnect --session-id S-20260301T123005000042""",
)
@click.option("--session-id", default=None, help="Session to end (default: the active one).")
@click.pass_obj
def disconnect(app: AppContext, session_id: str | None) -> None:
    """Restore the pre-session display mode and clean up."""
    from vdctl.services.session import SessionService

    app.emit(SessionService(app.host).disconnect(session_id=session_id))
