"""CLI commands for vigil."""

import asyncio
import sys

import click

from vigil.inhibitor import InhibitMode


def _load_config():
    """Load the config file, exiting with status 1 if it is invalid."""
    from vigil import logging as console
    from vigil.config import Config

    try:
        return Config.load()
    except ValueError as e:
        console.config_invalid(str(Config().config_path), str(e))
        sys.exit(1)


def _parse_update(ctx: click.Context, param: click.Parameter, value: str):
    from vigil.duration import parse_duration_update

    try:
        return parse_duration_update(value)
    except ValueError as e:
        raise click.BadParameter(str(e)) from e


@click.group()
@click.version_option(package_name="vigil")
def main() -> None:
    """Keep the machine awake until an adjustable deadline."""
    pass


@main.command()
@click.option(
    "--mode",
    type=click.Choice([m.value for m in InhibitMode]),
    default=None,
    help="Inhibit mechanism (default: from config, 'auto' when unset)",
)
def daemon(mode: str | None) -> None:
    """Run the keep-awake daemon."""
    from vigil import logging as console
    from vigil.daemon import run_daemon
    from vigil.errors import DaemonAlreadyRunning, NoInhibitorAvailable

    config = _load_config()
    try:
        asyncio.run(run_daemon(config, mode))
    except DaemonAlreadyRunning as e:
        console.already_running(str(e))
        sys.exit(1)
    except NoInhibitorAvailable as e:
        console.no_inhibitor(str(e))
        sys.exit(1)


@main.command(context_settings={"ignore_unknown_options": True})
@click.argument("update", metavar="[+|-]DURATION", callback=_parse_update)
def msg(update) -> None:
    """Adjust the deadline.

    \b
    +30m  extend by 30 minutes (starting now when idle)
    -10m  shorten by 10 minutes
    1h    keep awake for exactly one hour from now
    0     stop keeping awake
    """
    from vigil import logging as console
    from vigil.errors import DaemonError
    from vigil.socket_client import send_update

    config = _load_config()
    try:
        asyncio.run(send_update(config.socket_path, update))
    except (FileNotFoundError, ConnectionError, asyncio.TimeoutError) as e:
        console.daemon_unreachable(str(e) or type(e).__name__)
        sys.exit(1)
    except DaemonError as e:
        console.daemon_error(str(e))
        sys.exit(1)
    console.update_sent(str(update))


@main.command()
@click.option("--json", "as_json", is_flag=True, help="Print the status report as JSON")
def status(as_json: bool) -> None:
    """Show the current deadline once."""
    from vigil import logging as console
    from vigil.errors import DaemonError
    from vigil.monitor import StatusReport
    from vigil.socket_client import fetch_status

    config = _load_config()
    try:
        current = asyncio.run(fetch_status(config.socket_path))
    except (FileNotFoundError, ConnectionError, asyncio.TimeoutError) as e:
        console.daemon_unreachable(str(e) or type(e).__name__)
        sys.exit(1)
    except (DaemonError, ValueError) as e:
        console.daemon_error(str(e))
        sys.exit(1)

    report = StatusReport.from_status(current)
    if as_json:
        click.echo(report.to_json())
    else:
        console.status_line(current, report.message)


@main.command()
def monitor() -> None:
    """Stream status reports as JSON lines (for status bars)."""
    from vigil import logging as console
    from vigil.monitor import monitor_forever

    config = _load_config()
    console.monitor_connected(str(config.socket_path))
    try:
        asyncio.run(monitor_forever(config.socket_path, retry_delay=config.monitor.retry_delay))
    except KeyboardInterrupt:
        pass


@main.command("list-modes")
def list_modes() -> None:
    """List inhibit mechanisms and whether they work here."""
    from vigil.inhibitor import create_inhibitor

    config = _load_config()

    async def probe() -> dict[InhibitMode, bool]:
        results = {}
        for mode in InhibitMode:
            if mode is InhibitMode.AUTO:
                continue
            results[mode] = await create_inhibitor(mode, config.inhibitor).available()
        return results

    available = asyncio.run(probe())

    click.echo(f"{InhibitMode.AUTO.value:<20} {InhibitMode.AUTO.description}")
    for mode, ok in available.items():
        mark = "yes" if ok else "no"
        click.echo(f"{mode.value:<20} [{mark:>3}] {mode.description}")
