"""drydock CLI.

Package structure::

    cli/
    ├── __init__.py        # app assembly and global options
    ├── helpers.py         # logging option state, error exits
    ├── output.py          # Rich formatting
    └── commands/
        ├── daemon.py      # daemon start/stop/status/metrics/check-capacity
        ├── fleet.py       # fleet start/stop/status/metrics/init (+ hidden loops)
        ├── remote.py      # remote add/remove/list
        └── heartbeat.py   # heartbeat write/check/list/clear
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer

from drydock import __version__

from . import helpers as helpers
from .commands import daemon_app, fleet_app, heartbeat_app, remote_app
from .helpers import configure_global_logging, set_log_file, set_log_format, set_log_level
from .output import console

app = typer.Typer(
    name="drydock",
    help="Autonomous issue scheduler and fleet capacity allocator",
    add_completion=False,
    no_args_is_help=True,
)


# ─── Global option callbacks ──────────────────────────────────────────


def version_callback(value: bool) -> None:
    if value:
        console.print(f"drydock v{__version__}")
        raise typer.Exit()


def log_level_callback(value: str | None) -> str | None:
    if value:
        set_log_level(value)
    return value


def log_file_callback(value: Path | None) -> Path | None:
    if value:
        set_log_file(value)
    return value


def log_format_callback(value: str | None) -> str | None:
    if value:
        set_log_format(value)
    return value


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
    log_level: Annotated[
        str | None,
        typer.Option(
            "--log-level",
            "-L",
            callback=log_level_callback,
            help="Logging level (DEBUG, INFO, WARNING, ERROR)",
            envvar="DRYDOCK_LOG_LEVEL",
        ),
    ] = None,
    log_file: Annotated[
        Path | None,
        typer.Option(
            "--log-file",
            callback=log_file_callback,
            help="Path for log file output",
            envvar="DRYDOCK_LOG_FILE",
        ),
    ] = None,
    log_format: Annotated[
        str | None,
        typer.Option(
            "--log-format",
            callback=log_format_callback,
            help="Log format: json, console, or both",
            envvar="DRYDOCK_LOG_FORMAT",
        ),
    ] = None,
) -> None:
    """drydock: run coding agents against labeled issues, within a worker budget."""
    configure_global_logging(console)


app.add_typer(daemon_app)
app.add_typer(fleet_app)
app.add_typer(remote_app)
app.add_typer(heartbeat_app)


__all__ = ["app", "console", "main"]
