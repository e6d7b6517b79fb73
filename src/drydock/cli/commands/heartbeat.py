"""Job heartbeat commands: ``drydock heartbeat write/check/list/clear``.

Agents call ``drydock heartbeat write`` from inside a job; the job id and
issue number default to the ``DRYDOCK_JOB_ID`` / ``DRYDOCK_ISSUE``
variables the scheduler sets in the agent's environment.
"""

from __future__ import annotations

import os

import typer

from drydock.daemon.heartbeat import DEFAULT_HEARTBEAT_TIMEOUT, HeartbeatStore

from ..helpers import exit_with_error
from ..output import console, create_heartbeats_table, format_duration, format_optional, print_json

heartbeat_app = typer.Typer(
    name="heartbeat",
    help="Report and inspect job progress heartbeats.",
    no_args_is_help=True,
)

JobIdOption = typer.Option(
    None, "--job", "-j", envvar="DRYDOCK_JOB_ID", help="Job id (default: $DRYDOCK_JOB_ID)",
)


def _require_job(job_id: str | None) -> str:
    if not job_id:
        exit_with_error(console, "no job id given and DRYDOCK_JOB_ID is not set")
    return job_id  # type: ignore[return-value]


@heartbeat_app.command()
def write(
    job_id: str | None = JobIdOption,
    issue: int | None = typer.Option(None, "--issue", envvar="DRYDOCK_ISSUE", help="Issue number"),
    stage: str | None = typer.Option(None, "--stage", "-s", help="Current stage"),
    iteration: int | None = typer.Option(None, "--iteration", "-i", help="Current iteration"),
    activity: str = typer.Option("", "--activity", "-a", help="Last activity description"),
    pid: int | None = typer.Option(None, "--pid", help="Agent PID (default: calling process)"),
) -> None:
    """Write or refresh a job heartbeat."""
    job = _require_job(job_id)
    beat = HeartbeatStore().write(
        job,
        pid=pid if pid is not None else os.getppid(),
        issue=issue,
        stage=stage,
        iteration=iteration,
        activity=activity,
    )
    console.print(f"heartbeat written for [cyan]{beat.job_id}[/cyan] (PID {beat.pid})")


@heartbeat_app.command()
def check(
    job_id: str | None = JobIdOption,
    timeout: float = typer.Option(
        DEFAULT_HEARTBEAT_TIMEOUT, "--timeout", "-t", help="Seconds before a heartbeat is stale",
    ),
) -> None:
    """Exit 0 when the heartbeat is fresh, 1 when stale or missing."""
    job = _require_job(job_id)
    store = HeartbeatStore()
    beat = store.read(job)
    if beat is None:
        console.print(f"[red]stale[/red] {job}: no heartbeat")
        raise typer.Exit(1)
    if beat.is_stale(timeout):
        console.print(f"[red]stale[/red] {job}: last beat {format_duration(beat.age())} ago")
        raise typer.Exit(1)
    console.print(f"[green]alive[/green] {job}: last beat {format_duration(beat.age())} ago")


@heartbeat_app.command(name="list")
def list_heartbeats(
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """List every job heartbeat on this machine."""
    beats = HeartbeatStore().list()
    if json_output:
        print_json([b.model_dump(mode="json") | {"age_s": round(b.age(), 1)} for b in beats])
        return
    if not beats:
        console.print("[dim]No heartbeats[/dim]")
        return
    table = create_heartbeats_table()
    for b in beats:
        table.add_row(
            b.job_id,
            str(b.pid),
            format_optional(b.stage),
            format_optional(b.iteration),
            str(b.memory_mb),
            format_duration(b.age()),
        )
    console.print(table)


@heartbeat_app.command()
def clear(job_id: str | None = JobIdOption) -> None:
    """Delete a job's heartbeat file."""
    job = _require_job(job_id)
    if not HeartbeatStore().clear(job):
        exit_with_error(console, f"no heartbeat for {job}")
    console.print(f"cleared heartbeat for [cyan]{job}[/cyan]")


__all__ = ["heartbeat_app"]
