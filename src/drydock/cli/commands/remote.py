"""Machine registry commands: ``drydock remote add/remove/list``."""

from __future__ import annotations

import typer
from pydantic import ValidationError

from drydock.exceptions import ConfigError
from drydock.fleet.config import MachineConfig
from drydock.fleet.machines import MachineRegistry

from ..helpers import exit_with_error
from ..output import console, create_machines_table, print_json

remote_app = typer.Typer(
    name="remote",
    help="Register machines for distributed rebalancing.",
    no_args_is_help=True,
)


@remote_app.command()
def add(
    name: str = typer.Argument(..., help="Unique machine name"),
    host: str = typer.Argument(..., help="Hostname or address"),
    ssh_user: str | None = typer.Option(None, "--user", "-u", help="SSH user"),
    remote_path: str = typer.Option("~", "--path", help="Repository path on the machine"),
    max_workers: int = typer.Option(4, "--max-workers", "-w", help="Worker capacity"),
) -> None:
    """Add or replace a machine."""
    try:
        machine = MachineConfig(
            name=name, host=host, ssh_user=ssh_user,
            remote_path=remote_path, max_workers=max_workers,
        )
        replaced = MachineRegistry().add(machine)
    except ValidationError as e:
        exit_with_error(console, ConfigError(str(e)))
        return
    except ConfigError as e:
        exit_with_error(console, e)
        return
    verb = "Updated" if replaced else "Added"
    console.print(f"{verb} machine [cyan]{name}[/cyan] ({machine.ssh_target}, {max_workers} workers)")


@remote_app.command()
def remove(name: str = typer.Argument(..., help="Machine name")) -> None:
    """Remove a machine from the registry."""
    try:
        removed = MachineRegistry().remove(name)
    except ConfigError as e:
        exit_with_error(console, e)
        return
    if not removed:
        exit_with_error(console, f"no machine named {name!r}")
    console.print(f"Removed machine [cyan]{name}[/cyan]")


@remote_app.command(name="list")
def list_machines(
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """List registered machines."""
    try:
        machines = MachineRegistry().list()
    except ConfigError as e:
        exit_with_error(console, e)
        return
    if json_output:
        print_json([m.model_dump(mode="json") for m in machines])
        return
    if not machines:
        console.print("[dim]No machines registered[/dim]")
        return
    table = create_machines_table()
    for m in machines:
        table.add_row(m.name, m.host, m.ssh_user or "-", m.remote_path, str(m.max_workers))
    console.print(table)


__all__ = ["remote_app"]
