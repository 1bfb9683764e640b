"""Click base classes with an ``--examples`` flag.

``--help`` stays short; ``vdctl <cmd> --examples`` prints copy-pasteable
invocations and exits. Every command built through :class:`VdGroup`
accepts an ``examples=`` keyword.
"""

from __future__ import annotations

import textwrap
from typing import Any

import click

_EXAMPLES_HINT = "Run with --examples for usage examples."


def _attach_examples(cmd: click.Command, examples: str) -> None:
    text = textwrap.dedent(examples).strip("\n")

    def show_examples(ctx: click.Context, _param: click.Parameter, value: bool) -> None:
        if not value or ctx.resilient_parsing:
            return
        click.echo(f"Examples for '{ctx.command_path}':\n")
        click.echo(textwrap.indent(text, "  "))
        ctx.exit(0)

    cmd.params.append(
        click.Option(
            ["--examples"],
            is_flag=True,
            expose_value=False,
            is_eager=True,
            callback=show_examples,
            help="Show usage examples and exit.",
        )
    )
    if not cmd.epilog:
        cmd.epilog = _EXAMPLES_HINT


class VdCommand(click.Command):
    """Command that takes an ``examples`` block."""

    def __init__(self, *args: Any, examples: str | None = None, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.examples = examples
        if examples:
            _attach_examples(self, examples)


class VdGroup(click.Group):
    """Group whose subcommands and subgroups also take ``examples``."""

    command_class = VdCommand
    group_class = type

    def __init__(self, *args: Any, examples: str | None = None, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.examples = examples
        if examples:
            _attach_examples(self, examples)

