"""Filesystem layout for drydock.

Machine-wide files live under ``DRYDOCK_HOME`` (default ``~/.drydock``);
per-repository files live under ``<repo>/.drydock``.  Every component goes
through these helpers so tests can redirect the whole tree with one env var.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

HOME_ENV_VAR = "DRYDOCK_HOME"
REPO_DIR_NAME = ".drydock"


def drydock_home() -> Path:
    """Resolve the machine-wide drydock directory."""
    raw = os.environ.get(HOME_ENV_VAR)
    if raw:
        return Path(raw).expanduser()
    return Path("~/.drydock").expanduser()


@dataclass(frozen=True)
class HomePaths:
    """Well-known machine-wide files."""

    root: Path

    @classmethod
    def resolve(cls) -> HomePaths:
        return cls(drydock_home())

    @property
    def events_file(self) -> Path:
        return self.root / "events.jsonl"

    @property
    def machines_file(self) -> Path:
        return self.root / "machines.json"

    @property
    def machine_health_file(self) -> Path:
        return self.root / "machine-health.json"

    @property
    def machine_heartbeat_file(self) -> Path:
        return self.root / "machine-heartbeat.json"

    @property
    def remote_offsets_file(self) -> Path:
        return self.root / "remote-offsets.json"

    @property
    def fleet_state_file(self) -> Path:
        return self.root / "fleet-state.json"

    @property
    def fleet_log_dir(self) -> Path:
        return self.root / "fleet"

    @property
    def heartbeat_dir(self) -> Path:
        return self.root / "heartbeats"

    @property
    def rebalancer_shutdown_flag(self) -> Path:
        return self.root / "fleet-rebalancer.shutdown"

    @property
    def distributed_shutdown_flag(self) -> Path:
        return self.root / "fleet-distributed.shutdown"


@dataclass(frozen=True)
class RepoPaths:
    """Per-repository files kept in ``<repo>/.drydock``."""

    repo: Path

    @property
    def root(self) -> Path:
        return self.repo / REPO_DIR_NAME

    @property
    def state_file(self) -> Path:
        return self.root / "daemon-state.json"

    @property
    def config_file(self) -> Path:
        return self.root / "daemon.yaml"

    @property
    def fleet_overrides_file(self) -> Path:
        return self.root / "fleet-overrides.yaml"

    @property
    def fleet_limit_file(self) -> Path:
        return self.root / "fleet-limit.json"

    @property
    def signals_file(self) -> Path:
        return self.root / "signals.yaml"

    @property
    def reload_flag(self) -> Path:
        return self.root / "reload.flag"

    @property
    def shutdown_flag(self) -> Path:
        return self.root / "daemon.shutdown"

    @property
    def pid_file(self) -> Path:
        return self.root / "daemon.pid"

    @property
    def log_dir(self) -> Path:
        return self.root / "logs"

    @property
    def daemon_log_file(self) -> Path:
        return self.log_dir / "daemon.log"

    @property
    def worktree_dir(self) -> Path:
        return self.repo / ".worktrees"

    def job_log(self, external_ref: int) -> Path:
        return self.log_dir / f"issue-{external_ref}.log"


__all__ = [
    "HOME_ENV_VAR",
    "HomePaths",
    "REPO_DIR_NAME",
    "RepoPaths",
    "drydock_home",
]
