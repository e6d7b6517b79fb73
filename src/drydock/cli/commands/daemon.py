"""Daemon commands: ``drydock daemon start/stop/status/metrics/check-capacity``.

Thin typer wrappers; the logic lives in ``drydock.daemon.process``.
"""

from __future__ import annotations

from pathlib import Path

import typer

from ..output import (
    StatusColors,
    add_metrics_row,
    console,
    create_active_jobs_table,
    create_key_value_table,
    create_metrics_table,
    format_duration,
    format_optional,
    print_json,
)

daemon_app = typer.Typer(
    name="daemon",
    help="Run and inspect the per-repository scheduler.",
    no_args_is_help=True,
)

RepoOption = typer.Option(
    Path("."), "--repo", "-r", help="Repository the daemon serves", file_okay=False,
)


@daemon_app.command()
def start(
    repo: Path = RepoOption,
    config_file: Path | None = typer.Option(None, "--config", "-c", help="YAML config file"),
    detach: bool = typer.Option(False, "--detach", "-d", help="Run in the background"),
    log_level: str | None = typer.Option(None, "--log-level", "-l", help="Override log level"),
) -> None:
    """Start the scheduler for a repository."""
    from drydock.daemon.process import start_daemon

    code = start_daemon(repo, config_file=config_file, detach=detach, log_level=log_level)
    raise typer.Exit(code)


@daemon_app.command()
def stop(
    repo: Path = RepoOption,
    force: bool = typer.Option(False, "--force", help="Send SIGKILL instead of SIGTERM"),
) -> None:
    """Stop the repository's daemon."""
    from drydock.daemon.process import stop_daemon

    stop_daemon(repo, force=force)


@daemon_app.command()
def status(
    repo: Path = RepoOption,
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """Show liveness, readiness, and active jobs."""
    from drydock.daemon.process import daemon_status

    report = daemon_status(repo)
    if json_output:
        print_json(report)
        return

    liveness, readiness = report["liveness"], report["readiness"]
    console.print(
        f"[bold]{report['repo']}[/bold]  "
        f"{StatusColors.colored(StatusColors.DAEMON, liveness['status'])}"
    )
    console.print(create_key_value_table({
        "PID": liveness["pid"],
        "Uptime": format_duration(liveness["uptime_seconds"]),
        "Since last poll": format_duration(liveness["seconds_since_poll"]),
        "Capacity": readiness["capacity"],
        "Active": f"{readiness['active']} / {readiness['max_parallel']}",
        "Priority lane": readiness["active_priority"],
        "Queued": readiness["queued"],
        "Completed": readiness["completed"],
        "Paused until": readiness["paused_until"],
    }))

    if report["active_jobs"]:
        table = create_active_jobs_table()
        for job in report["active_jobs"]:
            table.add_row(
                f"#{job['issue']}",
                job["title"] or "",
                str(job["attempt"]),
                job["priority"],
                format_optional(job["pid"]),
                format_optional(job["started_at"]),
            )
        console.print(table)


@daemon_app.command()
def metrics(
    repo: Path = RepoOption,
    period: int = typer.Option(7, "--period", "-p", min=1, help="Period in days"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """Throughput, failure rate, and durations from the event log."""
    from drydock.daemon.metrics import repo_metrics

    report = repo_metrics(repo, period).to_dict()
    if json_output:
        print_json(report)
        return
    table = create_metrics_table(f"Metrics (last {period} days)")
    add_metrics_row(table, repo.resolve().name, report)
    console.print(table)
    if report["failures_by_class"]:
        console.print(create_key_value_table(report["failures_by_class"], title="Failures by class"))


@daemon_app.command(name="check-capacity")
def check_capacity(repo: Path = RepoOption) -> None:
    """Exit 0 when slots are free, 1 for priority-lane only, 2 when blocked."""
    from drydock.daemon.process import check_capacity as _check

    code = _check(repo)
    console.print(StatusColors.colored(StatusColors.CAPACITY, code.name))
    raise typer.Exit(int(code))


__all__ = ["daemon_app"]
