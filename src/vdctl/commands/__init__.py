"""Subcommand modules for vdctl.

Provides register_commands() which uses deferred imports to keep
``vdctl --help`` fast.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import click


def register_commands(cli: click.Group) -> None:
    """Register all command groups on the root CLI group."""
    from vdctl.commands.mode import mode
    from vdctl.commands.provision import provision
    from vdctl.commands.session import session

    cli.add_command(provision)
    cli.add_command(session)
    cli.add_command(mode)
