"""Fleet orchestrator.

Starts one daemon session per repository (``python -m drydock daemon
start --repo <path>`` in its own process session), plus the worker-pool
rebalancer and the distributed loop when configured.  Every PID is recorded
in ``<home>/fleet-state.json`` so ``stop`` and ``status`` can find them
again from a different process.
"""

from __future__ import annotations

import json
import os
import signal
import subprocess
import sys
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import psutil
import yaml

from drydock.core.events import EventLog
from drydock.core.logging import get_logger
from drydock.core.models import FleetRepoEntry, FleetState, SchedulerState
from drydock.core.paths import HomePaths, RepoPaths
from drydock.daemon.config import DEFAULT_WATCH_LABEL
from drydock.daemon.health import pid_alive, read_pid
from drydock.daemon.metrics import fleet_metrics
from drydock.exceptions import DaemonNotRunningError, StateCorruptionError
from drydock.fleet.config import DEFAULT_FLEET_CONFIG, FleetConfig, load_fleet_config
from drydock.fleet.machine_health import load_health_report
from drydock.fleet.machines import MachineRegistry
from drydock.state.json_store import JsonStateStore, atomic_write_text

_logger = get_logger("fleet.orchestrator")

SESSION_PREFIX = "drydock-fleet-"
STOP_GRACE_SECONDS = 10.0

Spawner = Callable[[Sequence[str], Path], int]


def spawn_session(args: Sequence[str], log_file: Path) -> int:
    """Run ``python -m drydock <args>`` detached; returns its PID."""
    log_file.parent.mkdir(parents=True, exist_ok=True)
    with open(log_file, "ab") as log:
        proc = subprocess.Popen(
            [sys.executable, "-m", "drydock", *args],
            stdin=subprocess.DEVNULL,
            stdout=log,
            stderr=subprocess.STDOUT,
            start_new_session=True,
        )
    return proc.pid


def terminate_pids(pids: Sequence[int], grace: float = STOP_GRACE_SECONDS) -> list[int]:
    """SIGTERM ``pids``, wait up to ``grace``, SIGKILL survivors.  Returns the killed PIDs."""
    procs: list[psutil.Process] = []
    for pid in pids:
        try:
            proc = psutil.Process(pid)
            proc.send_signal(signal.SIGTERM)
            procs.append(proc)
        except psutil.NoSuchProcess:
            continue
        except psutil.AccessDenied:
            _logger.warning("orchestrator.signal_denied", pid=pid)
    _, alive = psutil.wait_procs(procs, timeout=grace)
    for proc in alive:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            continue
    return [p.pid for p in alive]


@dataclass
class FleetStartResult:
    started: list[str] = field(default_factory=list)
    skipped: dict[str, str] = field(default_factory=dict)
    rebalancer_pid: int | None = None
    distributed_loop_pid: int | None = None


class FleetOrchestrator:
    """Lifecycle of the fleet's daemon sessions and rebalancer loops.

    Args:
        config_path: Fleet config file.
        spawner: Starts a detached ``drydock`` subcommand (tests inject a fake).
        terminator: Stops PIDs with escalation (tests inject a fake).
    """

    def __init__(
        self,
        config_path: Path | None = None,
        *,
        home: HomePaths | None = None,
        events: EventLog | None = None,
        spawner: Spawner = spawn_session,
        terminator: Callable[[Sequence[int], float], list[int]] = terminate_pids,
    ) -> None:
        self.config_path = (config_path or DEFAULT_FLEET_CONFIG).resolve()
        self.home = home or HomePaths.resolve()
        self.events = events or EventLog(self.home.events_file)
        self.store = JsonStateStore(self.home.fleet_state_file, FleetState)
        self.registry = MachineRegistry(self.home.machines_file)
        self._spawn = spawner
        self._terminate = terminator

    def load_config(self) -> FleetConfig:
        return load_fleet_config(self.config_path, registry=self.registry.list())

    def _load_state(self) -> FleetState:
        try:
            return self.store.load()
        except StateCorruptionError:
            _logger.warning("orchestrator.fleet_state_corrupt")
            return self.store.recover()

    @staticmethod
    def session_alive(entry: FleetRepoEntry | None, repo: Path) -> bool:
        if entry is not None and entry.pid is not None and pid_alive(entry.pid):
            return True
        pid = read_pid(RepoPaths(repo).pid_file)
        return pid is not None and pid_alive(pid)

    # ─── start ───────────────────────────────────────────────────────

    def start(self) -> FleetStartResult:
        config = self.load_config()
        state = self._load_state() if self.store.exists() else FleetState()
        result = FleetStartResult()

        for repo in config.repos:
            path = repo.path.resolve()
            name = path.name
            if not (path / ".git").exists():
                _logger.warning("orchestrator.repo_skipped", repo=str(path), reason="not a git repository")
                result.skipped[name] = "not a git repository"
                continue
            if self.session_alive(state.repos.get(name), path):
                result.skipped[name] = "already running"
                continue

            overrides = config.overrides_for(repo)
            paths = RepoPaths(path)
            atomic_write_text(paths.fleet_overrides_file, yaml.safe_dump(overrides, sort_keys=True))
            session = f"{SESSION_PREFIX}{name}"
            pid = self._spawn(
                ["daemon", "start", "--repo", str(path)],
                self.home.fleet_log_dir / f"{session}.log",
            )
            state.repos[name] = FleetRepoEntry(
                path=str(path),
                session=session,
                pid=pid,
                template=overrides["template"],
                max_parallel=overrides["max_parallel"],
            )
            result.started.append(name)
            _logger.info("orchestrator.session_started", repo=name, session=session, pid=pid)

        if config.worker_pool.enabled and not (
            state.rebalancer_pid and pid_alive(state.rebalancer_pid)
        ):
            self.home.rebalancer_shutdown_flag.unlink(missing_ok=True)
            state.rebalancer_pid = self._spawn(
                ["fleet", "rebalance", "--config", str(self.config_path)],
                self.home.fleet_log_dir / "rebalancer.log",
            )
        if config.machines and not (
            state.distributed_loop_pid and pid_alive(state.distributed_loop_pid)
        ):
            self.home.distributed_shutdown_flag.unlink(missing_ok=True)
            state.distributed_loop_pid = self._spawn(
                ["fleet", "distributed", "--config", str(self.config_path)],
                self.home.fleet_log_dir / "distributed.log",
            )
        result.rebalancer_pid = state.rebalancer_pid
        result.distributed_loop_pid = state.distributed_loop_pid

        self.store.save(state)
        self.events.emit(
            "fleet.started",
            repos=len(state.repos),
            started=len(result.started),
            skipped=len(result.skipped),
            worker_pool=config.worker_pool.enabled,
            total_workers=config.worker_pool.total_workers,
            machines=len(config.machines),
        )
        return result

    # ─── stop ────────────────────────────────────────────────────────

    def stop(self) -> list[str]:
        """Stop every session and loop; returns the repos that were stopped.

        Raises:
            DaemonNotRunningError: No fleet state exists.
        """
        if not self.store.exists():
            raise DaemonNotRunningError("no fleet is running (fleet-state.json not found)")
        state = self._load_state()

        loop_pids = [p for p in (state.rebalancer_pid, state.distributed_loop_pid) if p]
        if state.rebalancer_pid:
            self.home.rebalancer_shutdown_flag.parent.mkdir(parents=True, exist_ok=True)
            self.home.rebalancer_shutdown_flag.touch()
        if state.distributed_loop_pid:
            self.home.distributed_shutdown_flag.parent.mkdir(parents=True, exist_ok=True)
            self.home.distributed_shutdown_flag.touch()

        session_pids: list[int] = []
        for entry in state.repos.values():
            paths = RepoPaths(Path(entry.path))
            if paths.root.is_dir():
                paths.shutdown_flag.touch()
            if entry.pid is not None:
                session_pids.append(entry.pid)

        killed = self._terminate([*loop_pids, *session_pids], STOP_GRACE_SECONDS)
        if killed:
            _logger.warning("orchestrator.sessions_killed", pids=killed)

        stopped = []
        for name, entry in state.repos.items():
            paths = RepoPaths(Path(entry.path))
            paths.fleet_overrides_file.unlink(missing_ok=True)
            paths.fleet_limit_file.unlink(missing_ok=True)
            stopped.append(name)

        self.home.fleet_state_file.unlink(missing_ok=True)
        self.events.emit("fleet.stopped", repos=len(stopped), killed=len(killed))
        return stopped

    # ─── status / metrics ────────────────────────────────────────────

    def status(self) -> dict[str, Any]:
        if not self.store.exists():
            raise DaemonNotRunningError("no fleet is running (fleet-state.json not found)")
        state = self._load_state()
        repos: list[dict[str, Any]] = []
        allocated = 0
        for name, entry in sorted(state.repos.items()):
            path = Path(entry.path)
            paths = RepoPaths(path)
            try:
                repo_state = JsonStateStore(paths.state_file, SchedulerState).load()
            except StateCorruptionError:
                repo_state = SchedulerState()
            limit = _read_limit(paths.fleet_limit_file)
            allocated += limit or 0
            repos.append({
                "name": name,
                "path": entry.path,
                "session": entry.session,
                "alive": self.session_alive(entry, path),
                "active": repo_state.active_count,
                "queued": len(repo_state.queued),
                "completed": len(repo_state.completed),
                "last_poll": repo_state.last_poll.isoformat() if repo_state.last_poll else None,
                "max_parallel": limit or entry.max_parallel,
            })

        health = load_health_report(self.home.machine_health_file)
        return {
            "started_at": state.started_at.isoformat(),
            "repos": repos,
            "worker_pool": {
                "rebalancer_alive": bool(state.rebalancer_pid and pid_alive(state.rebalancer_pid)),
                "allocated": allocated,
            },
            "machines": {name: h.status.value for name, h in sorted(health.machines.items())},
            "distributed_loop_alive": bool(
                state.distributed_loop_pid and pid_alive(state.distributed_loop_pid)
            ),
        }

    def metrics(self, period_days: int = 7) -> dict[str, Any]:
        return fleet_metrics(period_days, log=self.events)


def _read_limit(path: Path) -> int | None:
    try:
        value = json.loads(path.read_text()).get("max_parallel")
    except (FileNotFoundError, json.JSONDecodeError, AttributeError):
        return None
    return value if isinstance(value, int) else None


def init_fleet_config(cwd: Path | None = None) -> tuple[Path, bool, list[Path]]:
    """Write a starter fleet config listing sibling git repositories.

    Returns ``(path, created, repos)``; an existing file is left untouched.
    """
    cwd = (cwd or Path.cwd()).resolve()
    path = cwd / DEFAULT_FLEET_CONFIG
    if path.exists():
        return path, False, []

    repos = sorted(
        d for d in cwd.parent.iterdir()
        if d.is_dir() and not d.name.startswith(".") and (d / ".git").exists()
    )
    document = {
        "repos": [{"path": str(r)} for r in repos],
        "defaults": {
            "watch_label": DEFAULT_WATCH_LABEL,
            "template": "autonomous",
            "max_parallel": 2,
            "model": "opus",
            "poll_interval_seconds": 60,
        },
        "worker_pool": {
            "enabled": False,
            "total_workers": 12,
            "rebalance_interval_seconds": 120,
            "weighting": False,
        },
    }
    atomic_write_text(path, yaml.safe_dump(document, sort_keys=False))
    _logger.info("orchestrator.config_initialized", path=str(path), repos=len(repos), pid=os.getpid())
    return path, True, repos


__all__ = [
    "FleetOrchestrator",
    "FleetStartResult",
    "SESSION_PREFIX",
    "init_fleet_config",
    "spawn_session",
    "terminate_pids",
]
