"""Root CLI group for vdctl with global flags and command registration."""

from __future__ import annotations

import click
from pydantic import ValidationError

from vdctl import __version__
from vdctl.commands import register_commands
from vdctl.commands._context import AppContext
from vdctl.config.settings import VdSettings
from vdctl.domain.errors import ConfigInvalidError, exit_code_for


@click.group(invoke_without_command=True)
@click.version_option(version=__version__, prog_name="vdctl")
@click.option("--json", "json_output", is_flag=True, help="Structured JSON output.")
@click.option("-q", "--quiet", is_flag=True, help="Minimal output.")
@click.option("-v", "--verbose", is_flag=True, help="Debug logging and span telemetry.")
@click.option("--log-json", is_flag=True, help="Structured JSON log output to stderr.")
@click.option("-c", "--config", "config_path", default=None, help="Override config file path.")
@click.pass_context
def cli(
    ctx: click.Context,
    json_output: bool,
    quiet: bool,
    verbose: bool,
    log_json: bool,
    config_path: str | None,
) -> None:
    """vdctl — virtual display provisioning and session mode control."""
    ctx.ensure_object(dict)
    try:
        settings = VdSettings.from_cli(
            config_path=config_path,
            json_output=json_output,
            quiet=quiet,
            verbose=verbose,
            log_json=log_json,
        )
    except ValidationError as exc:
        click.echo(f"ERROR: invalid configuration\n{exc}", err=True)
        ctx.exit(exit_code_for(ConfigInvalidError.code))
    ctx.obj = AppContext(settings)
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


register_commands(cli)
