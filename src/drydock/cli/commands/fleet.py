"""Fleet commands: ``drydock fleet start/stop/status/metrics/init``.

``rebalance`` and ``distributed`` are hidden: the orchestrator spawns them
as their own sessions and they run until their shutdown flag appears.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import typer

from drydock.core.logging import configure_logging, get_logger
from drydock.exceptions import ConfigError, DaemonNotRunningError
from drydock.fleet.config import DEFAULT_FLEET_CONFIG, MachineConfig

from ..helpers import exit_with_error
from ..output import (
    StatusColors,
    add_metrics_row,
    console,
    create_fleet_table,
    create_key_value_table,
    create_metrics_table,
    format_optional,
    print_json,
)

_logger = get_logger("cli.fleet")

fleet_app = typer.Typer(
    name="fleet",
    help="Run daemons across several repositories and machines.",
    no_args_is_help=True,
)

ConfigOption = typer.Option(
    DEFAULT_FLEET_CONFIG, "--config", "-c", help="Fleet config file (YAML or JSON)",
)


@fleet_app.command()
def start(config_file: Path = ConfigOption) -> None:
    """Start one daemon session per repository plus the rebalancer loops."""
    from drydock.fleet.orchestrator import FleetOrchestrator

    try:
        result = FleetOrchestrator(config_file).start()
    except ConfigError as e:
        exit_with_error(console, e)
        return

    for name in result.started:
        console.print(f"[green]started[/green] {name}")
    for name, reason in result.skipped.items():
        console.print(f"[yellow]skipped[/yellow] {name}: {reason}")
    if result.rebalancer_pid:
        console.print(f"worker-pool rebalancer: PID {result.rebalancer_pid}")
    if result.distributed_loop_pid:
        console.print(f"distributed loop: PID {result.distributed_loop_pid}")


@fleet_app.command()
def stop(config_file: Path = ConfigOption) -> None:
    """Stop every fleet session and clear the per-repo overrides."""
    from drydock.fleet.orchestrator import FleetOrchestrator

    try:
        stopped = FleetOrchestrator(config_file).stop()
    except DaemonNotRunningError as e:
        exit_with_error(console, e)
        return
    console.print(f"Stopped {len(stopped)} session(s)")


@fleet_app.command()
def status(
    config_file: Path = ConfigOption,
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """Per-repository sessions, worker allocation, and machine health."""
    from drydock.fleet.orchestrator import FleetOrchestrator

    try:
        report = FleetOrchestrator(config_file).status()
    except DaemonNotRunningError as e:
        exit_with_error(console, e)
        return
    if json_output:
        print_json(report)
        return

    table = create_fleet_table()
    for repo in report["repos"]:
        table.add_row(
            repo["name"],
            repo["session"],
            "[green]yes[/green]" if repo["alive"] else "[red]no[/red]",
            str(repo["active"]),
            str(repo["queued"]),
            str(repo["max_parallel"]),
            format_optional(repo["last_poll"]),
        )
    console.print(table)
    pool = report["worker_pool"]
    console.print(create_key_value_table({
        "Started": report["started_at"],
        "Workers allocated": pool["allocated"],
        "Rebalancer": "running" if pool["rebalancer_alive"] else "not running",
        "Distributed loop": "running" if report["distributed_loop_alive"] else "not running",
    }))
    if report["machines"]:
        console.print(create_key_value_table(
            {
                name: StatusColors.colored(StatusColors.MACHINE, value)
                for name, value in report["machines"].items()
            },
            title="Machines",
        ))


@fleet_app.command()
def metrics(
    period: int = typer.Option(7, "--period", "-p", min=1, help="Period in days"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """Per-repository and aggregate metrics from the shared event log."""
    from drydock.daemon.metrics import fleet_metrics

    report = fleet_metrics(period)
    if json_output:
        print_json(report)
        return
    table = create_metrics_table(f"Fleet metrics (last {period} days)")
    for name, repo_report in report["repos"].items():
        add_metrics_row(table, name, repo_report)
    add_metrics_row(table, "[bold]all[/bold]", report["aggregate"])
    console.print(table)


@fleet_app.command()
def init() -> None:
    """Write a starter fleet config listing sibling git repositories."""
    from drydock.fleet.orchestrator import init_fleet_config

    path, created, repos = init_fleet_config()
    if not created:
        console.print(f"[yellow]{path} already exists; not overwriting[/yellow]")
        return
    console.print(f"Wrote {path} with {len(repos)} repositor{'y' if len(repos) == 1 else 'ies'}")


# ─── Hidden loops ─────────────────────────────────────────────────────


def _loop_logging() -> None:
    configure_logging(level="INFO", format="console")


@fleet_app.command(hidden=True)
def rebalance(config_file: Path = ConfigOption) -> None:
    """Run the worker-pool rebalancer until its shutdown flag appears."""
    from drydock.fleet.orchestrator import FleetOrchestrator
    from drydock.fleet.rebalancer import WorkerPoolRebalancer

    try:
        config = FleetOrchestrator(config_file).load_config()
    except ConfigError as e:
        exit_with_error(console, e)
        return
    _loop_logging()
    asyncio.run(WorkerPoolRebalancer(config.worker_pool).run())


@fleet_app.command(hidden=True)
def distributed(config_file: Path = ConfigOption) -> None:
    """Run the distributed health/rebalance/aggregation loop."""
    from drydock.fleet.distributed import DistributedLoop
    from drydock.fleet.orchestrator import FleetOrchestrator

    orchestrator = FleetOrchestrator(config_file)
    try:
        config = orchestrator.load_config()
    except ConfigError as e:
        exit_with_error(console, e)
        return
    _loop_logging()

    machines: list[MachineConfig] = list(config.machines)

    def current_machines() -> list[MachineConfig]:
        # Registry edits are picked up on the next cycle.
        nonlocal machines
        try:
            machines = list(orchestrator.load_config().machines)
        except ConfigError as e:
            _logger.warning("fleet.config_reload_failed", error=str(e))
        return machines

    loop = DistributedLoop(current_machines, interval=config.distributed_interval_seconds)
    asyncio.run(loop.run())


__all__ = ["fleet_app"]
