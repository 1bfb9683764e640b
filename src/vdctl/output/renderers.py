"""Operation-specific Rich renderers for ServiceResult.

Each renderer writes to a Rich Console (backed by StringIO).  The caller
extracts the rendered text via ``get_output(console)``.

Renderers are dispatched by ``result.op`` in :func:`render_result`.
Unknown ops fall through to a generic key-value renderer.
"""

from __future__ import annotations

import json as _json
from typing import TYPE_CHECKING, Any

from rich.table import Table
from rich.text import Text

from vdctl.output.console import create_console, get_output, style_for_reason, style_for_state

if TYPE_CHECKING:
    from rich.console import Console

    from vdctl.services.result import ServiceResult


# ── Public API ────────────────────────────────────────────────────────


def render_result(result: ServiceResult, *, verbose: bool = False) -> str:
    """Render a ServiceResult to a styled string via Rich.

    Returns plain text (no ANSI) when Rich detects no terminal,
    which is the case inside Click's CliRunner and piped output.
    """
    console = create_console()

    if result.ok:
        renderer = _OP_RENDERERS.get(result.op, _render_generic)
        renderer(result, console, verbose=verbose)
    else:
        _render_error(result, console, verbose=verbose)

    return get_output(console).rstrip("\n")


def render_quiet(result: ServiceResult) -> str:
    """Render minimal output for ``--quiet`` mode."""
    if not result.ok:
        msg = result.error.message if result.error else "Unknown error"
        return f"ERROR: {result.op} — {msg}"

    # Mode listings print one mode per line; a session or negotiation its mode.
    modes = result.data.get("modes")
    if modes and isinstance(modes, list):
        return "\n".join(str(m) for m in modes)
    for key in ("applied", "mode"):
        if result.data.get(key):
            return str(result.data[key])

    return f"OK: {result.op}"


# ── Helpers ───────────────────────────────────────────────────────────


def _status_line(console: Console, result: ServiceResult) -> None:
    """Print the OK/ERROR status line."""
    label = Text("OK", style="vd.ok")
    op = Text(f"  {result.op}", style="vd.op")
    console.print(label, op, end="")
    console.print()


def _field(console: Console, key: str, value: Any) -> None:
    """Print a single indented key-value field."""
    k = Text(f"  {key}: ", style="vd.key")
    if key == "id" or key.endswith("_id"):
        v = Text(str(value), style="vd.id")
    elif key.endswith("path") or key == "workspace":
        v = Text(str(value), style="vd.path")
    elif key in ("mode", "applied", "requested", "current", "prior_mode", "restored"):
        v = Text(str(value), style="vd.mode")
    elif key in ("state", "install_state"):
        v = Text(str(value), style=style_for_state(str(value)))
    elif key == "reason":
        v = Text(str(value), style=style_for_reason(str(value)))
    else:
        v = Text(str(value))
    console.print(k, v, end="")
    console.print()


def _fields(console: Console, data: dict[str, Any], keys: tuple[str, ...]) -> None:
    for key in keys:
        if data.get(key) is not None:
            _field(console, key, data[key])


def _render_meta(console: Console, result: ServiceResult) -> None:
    """Print meta block including telemetry span tree (verbose only)."""
    if not result.meta:
        return

    console.print()
    console.print(Text("  meta:", style="dim"))

    for k, v in result.meta.items():
        if k == "telemetry":
            _render_telemetry_tree(console, v, indent=4)
        else:
            console.print(f"    {k}: {v}")


def _render_telemetry_tree(
    console: Console,
    span_data: dict[str, Any],
    indent: int = 4,
) -> None:
    """Render a hierarchical span tree with color-coded timing."""
    prefix = " " * indent
    name = span_data.get("name", "?")
    duration = span_data.get("duration_ms", 0.0)

    if span_data.get("ok") is False:
        style = "bold red"
    elif duration > 1000:
        style = "yellow"
    else:
        style = "dim"

    line = f"{prefix}[{style}]{duration:>8.2f}ms[/{style}]  {name}"

    extras: list[str] = []
    if span_data.get("ok") is False:
        extras.append("failed")
    if span_data.get("annotations"):
        for ak, av in span_data["annotations"].items():
            extras.append(f"{ak}={av}")
    if extras:
        line += f"  ({', '.join(extras)})"

    console.print(line)

    for child in span_data.get("children", []):
        _render_telemetry_tree(console, child, indent=indent + 4)


# ── Error renderer ────────────────────────────────────────────────────


def _render_error(result: ServiceResult, console: Console, *, verbose: bool = False) -> None:
    err = result.error
    msg = err.message if err else "Unknown error"
    label = Text("ERROR", style="vd.error")
    op = Text(f"  {result.op}", style="vd.op")
    sep = Text(" — ")
    console.print(label, op, sep, msg)

    if err is None:
        return

    # Incomplete rollback needs manual action; always list what is left.
    failed = err.detail.get("failed_compensations")
    if failed:
        console.print(Text("  manual recovery required:", style="vd.error"))
        for entry in failed:
            console.print(f"    {entry.get('step')}: {entry.get('error')}")
        if err.detail.get("cause_message"):
            console.print(f"  cause: {err.detail['cause_message']}")

    if verbose and err.detail:
        console.print(Text("  detail:", style="dim"))
        for k, v in err.detail.items():
            if k == "failed_compensations":
                continue
            console.print(f"    {k}: {v}")
    if verbose:
        _render_meta(console, result)


# ── Provision renderers ───────────────────────────────────────────────


def _render_transaction(result: ServiceResult, console: Console, *, verbose: bool = False) -> None:
    """Render install/uninstall results."""
    _status_line(console, result)
    d = result.data
    _fields(
        console,
        d,
        ("state", "virtual_display_id", "config_changed", "backup_path", "service_restarted"),
    )
    if verbose and d.get("steps"):
        _field(console, "steps", ", ".join(d["steps"]))
    if verbose:
        _render_meta(console, result)


def _render_status(result: ServiceResult, console: Console, *, verbose: bool = False) -> None:
    """Render provisioning status."""
    d = result.data
    if not d.get("provisioned"):
        console.print("[vd.warning]NOT PROVISIONED[/vd.warning]")
        _fields(console, d, ("state_dir", "interrupted_transaction"))
        return
    _status_line(console, result)
    _fields(
        console,
        d,
        (
            "virtual_display_id",
            "service_name",
            "install_state",
            "install_timestamp",
            "config_path",
            "directive_present",
            "interrupted_transaction",
        ),
    )
    if verbose:
        _fields(console, d, ("config_backup_path", "state_dir"))
        _render_meta(console, result)


def _render_recover(result: ServiceResult, console: Console, *, verbose: bool = False) -> None:
    """Render recovery results."""
    d = result.data
    if not d.get("recovered"):
        console.print("[vd.ok]OK[/vd.ok]  Nothing to recover.")
        return
    _status_line(console, result)
    _fields(console, d, ("operation", "interrupted_state"))
    for step in d.get("compensated", []):
        console.print(f"  - undid {step}")
    if verbose:
        _render_meta(console, result)


# ── Session renderers ─────────────────────────────────────────────────


def _render_session(result: ServiceResult, console: Console, *, verbose: bool = False) -> None:
    """Render session connect/disconnect results."""
    _status_line(console, result)
    d = result.data
    _fields(console, d, ("id", "requested", "applied", "reason", "restored"))
    if d.get("workspace_retained") or d.get("keep_artifacts"):
        _field(console, "workspace", d.get("workspace"))
    if verbose:
        _fields(console, d, ("display_id", "prior_mode"))
        _render_meta(console, result)


# ── Mode renderers ────────────────────────────────────────────────────


def _render_mode_list(result: ServiceResult, console: Console, *, verbose: bool = False) -> None:
    """Render the display's modes as a table, marking the current one."""
    d = result.data
    modes = d.get("modes", [])
    current = d.get("current")
    if not modes:
        console.print("No modes reported.")
        return

    table = Table(show_header=True, show_lines=False, pad_edge=False, expand=False)
    table.add_column("Mode", style="vd.mode", no_wrap=True)
    table.add_column("Current")
    for mode in modes:
        table.add_row(str(mode), "*" if mode == current else "")
    console.print(table)
    console.print(f"\n{d.get('count', len(modes))} modes on display {d.get('display_id')}")
    if verbose:
        _render_meta(console, result)


def _render_negotiation(result: ServiceResult, console: Console, *, verbose: bool = False) -> None:
    """Render a dry-run negotiation."""
    _status_line(console, result)
    d = result.data
    _fields(console, d, ("requested", "mode", "reason", "degraded", "capabilities_source"))
    if verbose and d.get("capabilities"):
        _field(console, "capabilities", ", ".join(d["capabilities"]))
        _render_meta(console, result)


# ── Generic fallback ──────────────────────────────────────────────────


def _render_generic(result: ServiceResult, console: Console, *, verbose: bool = False) -> None:
    """Fallback renderer: status line + all data as key-value pairs."""
    _status_line(console, result)
    for key, value in result.data.items():
        if isinstance(value, (dict, list)):
            _field(console, key, _json.dumps(value, separators=(",", ":")))
        else:
            _field(console, key, value)
    if verbose:
        _render_meta(console, result)


# ── Dispatch table ────────────────────────────────────────────────────

_OP_RENDERERS: dict[str, Any] = {
    # Provision
    "provision_install": _render_transaction,
    "provision_uninstall": _render_transaction,
    "provision_status": _render_status,
    "provision_recover": _render_recover,
    # Session
    "session_connect": _render_session,
    "session_disconnect": _render_session,
    # Mode
    "mode_list": _render_mode_list,
    "mode_negotiate": _render_negotiation,
}
