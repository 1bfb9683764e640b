"""AppContext — shared Click context for all commands.

Created once by the root CLI group and flows to all subcommands via
``@click.pass_obj``.  Provides lazy HostContext construction and
centralized result emission (stdout/stderr routing + exit codes).
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import click

from vdctl.output.formatters import OutputSettings, format_result

if TYPE_CHECKING:
    from vdctl.config.settings import VdSettings
    from vdctl.infrastructure.host import HostContext
    from vdctl.services.result import ServiceResult


class AppContext:
    """Shared context flowing through Click's command hierarchy.

    The host context is built on first use so ``--help``, ``--version``
    and ``--examples`` never touch the state directory.
    """

    def __init__(self, settings: VdSettings) -> None:
        self.settings = settings
        self._host: HostContext | None = None

        from vdctl.config.logging import configure_logging

        configure_logging(verbose=settings.verbose, log_json=settings.log_json)

        if settings.verbose:
            from vdctl.services.telemetry import enable_telemetry

            enable_telemetry()

    @property
    def host(self) -> HostContext:
        """The host context (created lazily, closed with the Click context)."""
        if self._host is None:
            from vdctl.infrastructure import host as host_module

            self._host = host_module.HostContext(self.settings)
            click.get_current_context().call_on_close(self.close)
        return self._host

    def close(self) -> None:
        if self._host is not None:
            self._host.close()
            self._host = None

    def emit(self, result: ServiceResult) -> None:
        """Format and output a ServiceResult with correct exit semantics.

        * Success (``result.ok``): writes to stdout, returns normally.
          Warnings go to stderr so they don't pollute piped output.
        * Failure: writes to stderr and exits with the code mapped from
          ``result.error.code``.
        """
        settings = OutputSettings(
            json_output=self.settings.json_output,
            quiet=self.settings.quiet,
            verbose=self.settings.verbose,
        )
        output = format_result(result, settings=settings)
        if result.ok:
            click.echo(output)
            # In JSON mode, warnings are already in the serialized payload.
            if not settings.json_output and not settings.quiet:
                for warning in result.warnings:
                    click.echo(f"WARNING: {warning}", err=True)
        else:
            click.echo(output, err=True)
            raise SystemExit(result.exit_code)
