"""Command group: host provisioning (install, uninstall, status, recover)."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

import click

from vdctl.commands._base import VdGroup

if TYPE_CHECKING:
    from vdctl.commands._context import AppContext


@click.group(
    cls=VdGroup,
    examples="""\
  vdctl provision install --driver-package ./driver/vdd.inf
  vdctl provision status
  vdctl provision uninstall
  vdctl provision recover""",
)
def provision() -> None:
    """Install or remove the virtual display and session hook."""


@provision.command(
    examples="""\
  vdctl provision install --driver-package ./driver/vdd.inf
  vdctl --json provision install
  vdctl -v provision install --driver-package C:/vdd/vdd.inf""",
)
@click.option(
    "--driver-package",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="Driver package to register (default: [provision] driver_package).",
)
@click.pass_obj
def install(app: AppContext, driver_package: Path | None) -> None:
    """Register the driver, enable the session hook, and persist Settings.

    Any step failure rolls back every completed step.
    """
    from vdctl.services.provision import ProvisionService

    app.emit(ProvisionService(app.host).install(driver_package=driver_package))


@provision.command(
    examples="""\
  vdctl provision uninstall
  vdctl --json provision uninstall""",
)
@click.pass_obj
def uninstall(app: AppContext) -> None:
    """Deregister the driver, remove the session hook, and delete Settings."""
    from vdctl.services.provision import ProvisionService

    app.emit(ProvisionService(app.host).uninstall())


@provision.command(
    examples="""\
  vdctl provision status
  vdctl --json provision status""",
)
@click.pass_obj
def status(app: AppContext) -> None:
    """Show provisioning state for this host."""
    from vdctl.services.provision import ProvisionService

    app.emit(ProvisionService(app.host).status())


@provision.command(
    examples="""\
  vdctl provision recover
  vdctl --json provision recover""",
)
@click.pass_obj
def recover(app: AppContext) -> None:
    """Roll back a transaction that was interrupted mid-flight."""
    from vdctl.services.provision import ProvisionService

    app.emit(ProvisionService(app.host).recover())
