"""Shared fakes for drydock tests.

The scheduler, rebalancers, and health monitor only see protocols, so these
in-memory collaborators stand in for ``gh``, ``git``, real processes, and
ssh.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import yaml

from drydock.core.paths import RepoPaths
from drydock.daemon.tracker import Issue
from drydock.daemon.workspace import Workspace
from drydock.exceptions import RemoteError, SpawnError, TrackerError
from drydock.fleet.config import MachineConfig
from drydock.fleet.remote import EventBatch, LivenessRecord, MachineDemand

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


class FakeClock:
    """Mutable clock for ``clock=`` injection."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


def write_daemon_config(repo: Path, **settings: Any) -> Path:
    path = RepoPaths(repo).config_file
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(settings))
    return path


# ─── Tracker ──────────────────────────────────────────────────────────


class FakeTracker:
    def __init__(self, issues: Sequence[Issue] = ()) -> None:
        self.issues: list[Issue] = list(issues)
        self.calls: list[tuple[str, int, str | None]] = []
        self.fail_listing = False
        self.fail_actions = False

    async def list_candidates(self, label: str) -> list[Issue]:
        if self.fail_listing:
            raise TrackerError("gh issue list failed: HTTP 502")
        return list(self.issues)

    def _record(self, action: str, number: int, arg: str | None = None) -> None:
        if self.fail_actions:
            raise TrackerError(f"gh issue {action} failed")
        self.calls.append((action, number, arg))

    async def add_label(self, number: int, label: str) -> None:
        self._record("add_label", number, label)

    async def remove_label(self, number: int, label: str) -> None:
        self._record("remove_label", number, label)

    async def comment(self, number: int, body: str) -> None:
        self._record("comment", number, body)

    async def close(self, number: int) -> None:
        self._record("close", number)

    def actions_for(self, number: int) -> list[tuple[str, str | None]]:
        return [(action, arg) for action, n, arg in self.calls if n == number]


# ─── Processes ────────────────────────────────────────────────────────


@dataclass
class SpawnRecord:
    pid: int
    argv: list[str]
    cwd: Path
    log_path: Path
    env: dict[str, str]


class FakeSupervisor:
    """Processes live until a test calls :meth:`finish`."""

    def __init__(self, first_pid: int = 40_000) -> None:
        self._next_pid = first_pid
        self.spawned: list[SpawnRecord] = []
        self.alive: set[int] = set()
        self.exit_codes: dict[int, int] = {}
        self.terminated: list[int] = []
        self.released: list[int] = []
        self.fail_spawn = False

    async def spawn(
        self,
        argv: Sequence[str],
        *,
        cwd: Path,
        log_path: Path,
        env: Mapping[str, str] | None = None,
    ) -> int:
        if self.fail_spawn:
            raise SpawnError(f"cannot start {argv[0]}: No such file or directory")
        pid = self._next_pid
        self._next_pid += 1
        self.spawned.append(SpawnRecord(pid, list(argv), cwd, log_path, dict(env or {})))
        self.alive.add(pid)
        return pid

    def finish(self, pid: int, code: int = 0, output: str | None = None) -> None:
        self.alive.discard(pid)
        self.exit_codes[pid] = code
        if output is not None:
            record = next(r for r in self.spawned if r.pid == pid)
            record.log_path.parent.mkdir(parents=True, exist_ok=True)
            record.log_path.write_text(output)

    def signal(self, pid: int, sig: int) -> bool:
        return pid in self.alive

    async def wait(self, pid: int, timeout: float) -> int | None:
        return self.exit_codes.get(pid)

    def is_alive(self, pid: int) -> bool:
        return pid in self.alive

    def exit_code(self, pid: int) -> int | None:
        return self.exit_codes.get(pid)

    def release(self, pid: int) -> None:
        self.released.append(pid)

    async def terminate_tree(self, pid: int, grace: float) -> None:
        self.terminated.append(pid)
        if pid in self.alive:
            self.finish(pid, -15)

    def pids(self) -> list[int]:
        return [r.pid for r in self.spawned]


class FakeWorkspaces:
    def __init__(self, root: Path) -> None:
        self.root = root
        self.created: list[int] = []
        self.removed: list[Path] = []

    async def create(self, external_ref: int, base_branch: str) -> Workspace:
        path = self.root / f"issue-{external_ref}"
        path.mkdir(parents=True, exist_ok=True)
        self.created.append(external_ref)
        return Workspace(path=path, branch=f"drydock/issue-{external_ref}")

    async def remove(self, workspace: Workspace) -> None:
        self.removed.append(workspace.path)


# ─── Remote ───────────────────────────────────────────────────────────


@dataclass
class FakeChannel:
    """Scripted RemoteChannel keyed by machine name."""

    heartbeats: dict[str, int | None] = field(default_factory=dict)
    demands: dict[str, MachineDemand] = field(default_factory=dict)
    events: dict[str, list[str]] = field(default_factory=dict)
    unreachable: set[str] = field(default_factory=set)
    failing_push: set[str] = field(default_factory=set)
    pushed: dict[str, int] = field(default_factory=dict)
    fetched_offsets: list[tuple[str, int]] = field(default_factory=list)

    def _check(self, machine: MachineConfig) -> None:
        if machine.name in self.unreachable:
            raise RemoteError(machine.name, "ssh: connect to host: Connection timed out")

    async def probe_health(self, machine: MachineConfig) -> LivenessRecord | None:
        self._check(machine)
        ts = self.heartbeats.get(machine.name)
        return LivenessRecord(ts_epoch=ts) if ts is not None else None

    async def query_demand(self, machine: MachineConfig) -> MachineDemand:
        self._check(machine)
        return self.demands.get(machine.name, MachineDemand())

    async def push_allocation(self, machine: MachineConfig, max_parallel: int) -> None:
        self._check(machine)
        if machine.name in self.failing_push:
            raise RemoteError(machine.name, "exit 1: mv: cannot move")
        self.pushed[machine.name] = max_parallel

    async def fetch_events_since(self, machine: MachineConfig, offset: int) -> EventBatch:
        self._check(machine)
        self.fetched_offsets.append((machine.name, offset))
        lines = self.events.get(machine.name, [])
        start = 0 if len(lines) < offset else offset
        return EventBatch(lines=lines[start:], next_offset=len(lines))

    def factory(self, machine: MachineConfig) -> FakeChannel:
        return self


def machine(name: str, host: str | None = None, max_workers: int = 4) -> MachineConfig:
    return MachineConfig(name=name, host=host or f"{name}.internal", max_workers=max_workers)
