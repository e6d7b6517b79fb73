"""Rich output formatting for the drydock CLI.

Status colors, table builders, and the duration/percentage formatters the
command modules share.  JSON output bypasses Rich entirely (``print_json``)
so it stays machine-parseable.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

# Command modules use this console; ``--json`` output goes through print_json.
console = Console()


class StatusColors:
    """Color mappings for status strings."""

    DAEMON: dict[str, str] = {
        "ok": "green",
        "hung": "yellow",
        "stopped": "red",
    }

    MACHINE: dict[str, str] = {
        "online": "green",
        "degraded": "yellow",
        "offline": "red",
    }

    CAPACITY: dict[str, str] = {
        "OK": "green",
        "WARNING": "yellow",
        "BLOCKED": "red",
    }

    @classmethod
    def colored(cls, table: dict[str, str], value: str) -> str:
        color = table.get(value, "white")
        return f"[{color}]{value}[/{color}]"


# ─── Formatters ───────────────────────────────────────────────────────


def format_duration(seconds: float | None) -> str:
    """Human-readable duration: "5.2s", "3m 12s", "1h 30m"; "-" for None."""
    if seconds is None:
        return "-"
    if seconds < 60:
        return f"{seconds:.1f}s"
    if seconds < 3600:
        return f"{int(seconds // 60)}m {int(seconds % 60)}s"
    return f"{int(seconds // 3600)}h {int((seconds % 3600) // 60)}m"


def format_optional(value: Any) -> str:
    return "-" if value is None else str(value)


def print_json(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2, default=str))


# ─── Table builders ───────────────────────────────────────────────────


def create_key_value_table(rows: Mapping[str, Any], title: str | None = None) -> Table:
    table = Table(title=title, show_header=False, box=None, padding=(0, 2))
    table.add_column("Key", style="bold")
    table.add_column("Value")
    for key, value in rows.items():
        table.add_row(key, format_optional(value))
    return table


def create_active_jobs_table() -> Table:
    table = Table(title="Active Jobs")
    table.add_column("Issue", style="cyan", no_wrap=True)
    table.add_column("Title")
    table.add_column("Attempt", justify="right")
    table.add_column("Priority")
    table.add_column("PID", style="dim", justify="right")
    table.add_column("Started", style="dim")
    return table


def create_fleet_table() -> Table:
    table = Table(title="Fleet")
    table.add_column("Repo", style="cyan", no_wrap=True)
    table.add_column("Session", style="dim")
    table.add_column("Alive")
    table.add_column("Active", justify="right")
    table.add_column("Queued", justify="right")
    table.add_column("Limit", justify="right")
    table.add_column("Last poll", style="dim")
    return table


def create_machines_table() -> Table:
    table = Table(title="Machines")
    table.add_column("Name", style="cyan", no_wrap=True)
    table.add_column("Host")
    table.add_column("User", style="dim")
    table.add_column("Path", style="dim")
    table.add_column("Max workers", justify="right")
    return table


def create_heartbeats_table() -> Table:
    table = Table(title="Job Heartbeats")
    table.add_column("Job", style="cyan", no_wrap=True)
    table.add_column("PID", justify="right")
    table.add_column("Stage")
    table.add_column("Iteration", justify="right")
    table.add_column("Memory MB", justify="right")
    table.add_column("Age")
    return table


def create_metrics_table(title: str = "Metrics") -> Table:
    table = Table(title=title)
    table.add_column("Scope", style="cyan", no_wrap=True)
    table.add_column("Completed", justify="right")
    table.add_column("Success", justify="right", style="green")
    table.add_column("Failed", justify="right", style="red")
    table.add_column("Per week", justify="right")
    table.add_column("CFR %", justify="right")
    table.add_column("Median", justify="right")
    table.add_column("p95", justify="right")
    table.add_column("MTTR", justify="right")
    return table


def add_metrics_row(table: Table, scope: str, metrics: Mapping[str, Any]) -> None:
    table.add_row(
        scope,
        str(metrics["completed"]),
        str(metrics["successes"]),
        str(metrics["failures"]),
        f"{metrics['throughput_per_week']:.1f}",
        f"{metrics['change_failure_rate']:.1f}",
        format_duration(metrics["median_duration_s"]),
        format_duration(metrics["p95_duration_s"]),
        format_duration(metrics["mttr_s"]),
    )


def create_header_panel(title: str, subtitle: str | None = None) -> Panel:
    body = f"[bold]{title}[/bold]"
    if subtitle:
        body += f"\n[dim]{subtitle}[/dim]"
    return Panel(body, expand=False)


__all__ = [
    "StatusColors",
    "add_metrics_row",
    "console",
    "create_active_jobs_table",
    "create_fleet_table",
    "create_header_panel",
    "create_heartbeats_table",
    "create_key_value_table",
    "create_machines_table",
    "create_metrics_table",
    "format_duration",
    "format_optional",
    "print_json",
]
