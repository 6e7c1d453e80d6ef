"""IIS Site Operator CLI (iisop).

Inspect and reconcile the sites of the local IIS server by hand.

Usage:
    iisop discover                      # List every site
    iisop show "Default Web Site"       # Show one site
    iisop plan -m sites.yaml            # Report drift without changing anything
    iisop apply -m sites.yaml           # Run one reconciliation pass
    iisop run -m sites.yaml             # Reconcile on an interval until stopped
"""

from __future__ import annotations

import json
import shlex
import signal
import sys
from pathlib import Path

import click

from .config import (
    DEFAULT_POWERSHELL_ARGS,
    DEFAULT_RECONCILE_INTERVAL_SECONDS,
    MAX_COMMAND_TIMEOUT_SECONDS,
    MIN_COMMAND_TIMEOUT_SECONDS,
    Config,
    ConfigurationError,
    default_powershell_path,
)
from .discovery import DiscoveryError, discover_all, lookup
from .main import setup_logging
from .mapper import StateParseError
from .models import SiteRecord
from .provider import WebsiteProvider
from .reconciler import PassResult, Reconciler
from .renderer import CommandRenderer, TemplateError
from .session import ChannelError, PowerShellSession
from .spec_loader import SpecLoadError, load_manifest

# Exit codes
EXIT_FAILURE = 1
EXIT_UNSUPPORTED_PLATFORM = 2

TABLE_COLUMNS = (
    ("NAME", "name", 32),
    ("STATE", "ensure", 10),
    ("APP POOL", "applicationpool", 24),
    ("PHYSICAL PATH", "physicalpath", 0),
)

manifest_option = click.option(
    "--manifest",
    "-m",
    "manifest_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
    help="YAML site manifest",
)
json_option = click.option("--json", "as_json", is_flag=True, help="Print JSON instead of text")


def format_table(records: list[SiteRecord]) -> str:
    """Render records as a fixed-width table."""
    lines = []
    header = []
    for title, _, width in TABLE_COLUMNS:
        header.append(title.ljust(width) if width else title)
    lines.append("  ".join(header).rstrip())
    for record in records:
        cells = []
        for _, attr, width in TABLE_COLUMNS:
            value = getattr(record, attr) or "-"
            cells.append(value.ljust(width) if width else value)
        lines.append("  ".join(cells).rstrip())
    return "\n".join(lines)


def format_pass(result: PassResult) -> str:
    """Render a pass result as one line per site plus a summary."""
    lines = []
    for outcome in result.outcomes:
        actions = ", ".join(a.value for a in outcome.actions) or "in sync"
        status = "ok" if outcome.success else "FAILED"
        lines.append(
            f"{outcome.name}: {outcome.state_before} -> {outcome.desired.value} [{actions}] {status}"
        )
        for key, value in outcome.drift.items():
            lines.append(f"    {key}: {value}")
        for failure in outcome.failures:
            lines.append(f"    {failure}")
        if outcome.error is not None:
            lines.append(f"    {outcome.error}")
    if result.error is not None:
        lines.append(f"Pass aborted: {result.error}")
    lines.append(
        f"{len(result.outcomes)} sites, {result.changed} changed, {result.failed} failed"
        f" ({result.duration_seconds:.1f}s)"
    )
    return "\n".join(lines)


def pass_to_dict(result: PassResult) -> dict[str, object]:
    """JSON-ready form of a pass result."""
    return {
        "success": result.success,
        "dry_run": result.dry_run,
        "changed": result.changed,
        "failed": result.failed,
        "duration_seconds": round(result.duration_seconds, 2),
        "error": str(result.error) if result.error else None,
        "sites": [
            {
                "name": o.name,
                "desired": o.desired.value,
                "state_before": o.state_before,
                "state_after": o.state_after,
                "actions": [a.value for a in o.actions],
                "drift": o.drift,
                "success": o.success,
                "failures": [str(f) for f in o.failures],
                "error": str(o.error) if o.error else None,
            }
            for o in result.outcomes
        ],
    }


def open_session(ctx: click.Context) -> PowerShellSession:
    """Create the session described by the global options.

    The session is closed when the command finishes.
    """
    options = ctx.obj
    if not WebsiteProvider.is_suitable() and not options["allow_non_windows"]:
        click.echo("Error: IIS sites can only be managed on Windows", err=True)
        ctx.exit(EXIT_UNSUPPORTED_PLATFORM)
    session = PowerShellSession(
        options["powershell"],
        options["powershell_args"],
        timeout=options["timeout"],
    )
    ctx.call_on_close(session.close)
    return session


def build_config(
    ctx: click.Context,
    manifest_path: Path,
    dry_run: bool,
    interval: int | None = None,
) -> Config:
    """Build a validated Config from the global options."""
    options = ctx.obj
    try:
        return Config(
            manifest_path=manifest_path,
            powershell_path=options["powershell"],
            powershell_args=options["powershell_args"],
            command_timeout_seconds=options["timeout"],
            reconcile_interval_seconds=interval or DEFAULT_RECONCILE_INTERVAL_SECONDS,
            dry_run=dry_run,
            allow_non_windows=options["allow_non_windows"],
            log_level="DEBUG" if options["verbose"] else "WARNING",
            json_logs=False,
        )
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e


def run_pass(ctx: click.Context, manifest_path: Path, dry_run: bool, as_json: bool) -> None:
    """Run one pass and exit 1 if any site failed."""
    config = build_config(ctx, manifest_path, dry_run)
    try:
        manifest = load_manifest(config.manifest_path)
    except SpecLoadError as e:
        raise click.ClickException(str(e)) from e

    session = open_session(ctx)
    result = Reconciler(config, session, CommandRenderer()).reconcile_pass(manifest)

    if as_json:
        click.echo(json.dumps(pass_to_dict(result), indent=2, default=str))
    else:
        click.echo(format_pass(result))

    if not result.success:
        ctx.exit(EXIT_FAILURE)


@click.group()
@click.version_option(version="0.1.0", prog_name="iisop")
@click.option(
    "--powershell",
    default=default_powershell_path,
    show_default="Windows PowerShell",
    envvar="POWERSHELL_PATH",
    help="PowerShell executable",
)
@click.option(
    "--powershell-args",
    default=None,
    envvar="POWERSHELL_ARGS",
    help="PowerShell arguments, whitespace separated",
)
@click.option(
    "--timeout",
    type=click.IntRange(MIN_COMMAND_TIMEOUT_SECONDS, MAX_COMMAND_TIMEOUT_SECONDS),
    default=None,
    envvar="COMMAND_TIMEOUT",
    help="Seconds to wait for one command (default: no limit)",
)
@click.option("--allow-non-windows", is_flag=True, help="Skip the platform check")
@click.option("--verbose", "-v", is_flag=True, help="Log every command")
@click.pass_context
def cli(
    ctx: click.Context,
    powershell: str,
    powershell_args: str | None,
    timeout: int | None,
    allow_non_windows: bool,
    verbose: bool,
) -> None:
    """IIS Site Operator CLI.

    Keeps IIS websites in the state declared by a YAML manifest.

    \b
    Quick start:
        iisop discover
        iisop plan -m sites.yaml
        iisop apply -m sites.yaml
    """
    ctx.ensure_object(dict)
    ctx.obj.update(
        powershell=powershell,
        powershell_args=(
            tuple(shlex.split(powershell_args, posix=False)) if powershell_args else DEFAULT_POWERSHELL_ARGS
        ),
        timeout=timeout,
        allow_non_windows=allow_non_windows,
        verbose=verbose,
    )
    setup_logging("DEBUG" if verbose else "WARNING", json_logs=False, stream=sys.stderr)


@cli.command()
@json_option
@click.pass_context
def discover(ctx: click.Context, as_json: bool) -> None:
    """List every site on the server."""
    session = open_session(ctx)
    try:
        records = discover_all(session, CommandRenderer())
    except (ChannelError, DiscoveryError, StateParseError, TemplateError) as e:
        raise click.ClickException(str(e)) from e

    if as_json:
        click.echo(json.dumps([r.to_dict() for r in records], indent=2))
    elif records:
        click.echo(format_table(records))
    else:
        click.echo("No sites found.")


@cli.command()
@click.argument("name")
@json_option
@click.pass_context
def show(ctx: click.Context, name: str, as_json: bool) -> None:
    """Show the properties of one site."""
    session = open_session(ctx)
    try:
        record = lookup(session, CommandRenderer(), name)
    except (ChannelError, DiscoveryError, StateParseError, TemplateError) as e:
        raise click.ClickException(str(e)) from e

    if record is None:
        raise click.ClickException(f"Site not found: {name}")

    data = record.to_dict()
    if as_json:
        click.echo(json.dumps(data, indent=2))
        return
    for key, value in data.items():
        if isinstance(value, list):
            value = ",".join(value)
        click.echo(f"{key:<22}{'-' if value is None else value}")


@cli.command()
@manifest_option
@json_option
@click.pass_context
def plan(ctx: click.Context, manifest_path: Path, as_json: bool) -> None:
    """Report what apply would change, without changing it."""
    run_pass(ctx, manifest_path, dry_run=True, as_json=as_json)


@cli.command()
@manifest_option
@json_option
@click.pass_context
def apply(ctx: click.Context, manifest_path: Path, as_json: bool) -> None:
    """Run one reconciliation pass."""
    run_pass(ctx, manifest_path, dry_run=False, as_json=as_json)


@cli.command(name="run")
@manifest_option
@click.option(
    "--interval",
    type=int,
    default=DEFAULT_RECONCILE_INTERVAL_SECONDS,
    show_default=True,
    help="Seconds between passes",
)
@click.option("--dry-run", is_flag=True, help="Only report drift")
@click.pass_context
def run_loop(ctx: click.Context, manifest_path: Path, interval: int, dry_run: bool) -> None:
    """Reconcile on an interval until interrupted."""
    config = build_config(ctx, manifest_path, dry_run, interval)
    setup_logging("DEBUG" if ctx.obj["verbose"] else "INFO", json_logs=False, stream=sys.stderr)

    session = open_session(ctx)
    reconciler = Reconciler(config, session, CommandRenderer())

    def signal_handler(signum: int, frame: object) -> None:
        reconciler.shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        signal.signal(sig, signal_handler)

    click.echo(f"Reconciling {manifest_path} every {interval}s (Ctrl+C to stop)")
    reconciler.run(lambda: load_manifest(config.manifest_path))


# =============================================================================
# Entry Point
# =============================================================================


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
