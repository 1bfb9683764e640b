"""Command group: display mode inspection and dry-run negotiation."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import click

from vdctl.commands._base import VdGroup
from vdctl.domain.errors import ConfigInvalidError
from vdctl.domain.modes import Mode, parse_mode

if TYPE_CHECKING:
    from vdctl.commands._context import AppContext


class ModeParamType(click.ParamType):
    """Click parameter for ``WxHxR`` modes."""

    name = "mode"

    def convert(
        self, value: Any, param: click.Parameter | None, ctx: click.Context | None
    ) -> Mode:
        if isinstance(value, Mode):
            return value
        try:
            return parse_mode(str(value))
        except ConfigInvalidError as exc:
            self.fail(exc.message, param, ctx)


MODE = ModeParamType()


@click.group(
    cls=VdGroup,
    examples="""\
  vdctl mode list
  vdctl mode negotiate 1920x1080x120 --capability 1920x1080x60 --capability 1920x1080x90""",
)
def mode() -> None:
    """Inspect display modes and preview negotiation."""


@mode.command(
    "list",
    examples="""\
  vdctl mode list
  vdctl -q mode list""",
)
@click.pass_obj
def list_cmd(app: AppContext) -> None:
    """List the modes the virtual display supports."""
    from vdctl.services.mode import ModeService

    app.emit(ModeService(app.host).list_modes())


@mode.command(
    examples="""\
  vdctl mode negotiate 2560x1440x144
  vdctl mode negotiate 1280x720x60 --capability 3840x2160x60
  vdctl --json mode negotiate 1920x1080x120 -C 1920x1080x60 -C 1920x1080x90""",
)
@click.argument("requested", type=MODE)
@click.option(
    "-C",
    "--capability",
    "capabilities",
    type=MODE,
    multiple=True,
    help="Assume the display supports this mode (repeatable; default: ask the display).",
)
@click.pass_obj
def negotiate(app: AppContext, requested: Mode, capabilities: tuple[Mode, ...]) -> None:
    """Show which mode a client requesting REQUESTED would get."""
    from vdctl.services.mode import ModeService

    app.emit(ModeService(app.host).negotiate(requested, capabilities=capabilities or None))
