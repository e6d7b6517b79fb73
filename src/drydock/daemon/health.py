"""Liveness and readiness probes for a repository daemon.

The daemon has no control socket; both probes are computed from the PID
file, the persisted scheduler state, and the resolved config, so any
process (the CLI, the fleet orchestrator) can ask.

- **Liveness**: is the daemon process alive and still polling?
- **Readiness**: would the daemon admit another job right now?  Backs
  ``drydock daemon check-capacity`` through :class:`ExitCode`.
"""

from __future__ import annotations

import os
from datetime import datetime
from enum import IntEnum
from pathlib import Path
from typing import Any

from drydock.core.logging import get_logger
from drydock.core.models import SchedulerState
from drydock.core.paths import RepoPaths
from drydock.daemon.config import SchedulerConfig, resolve_scheduler_config
from drydock.state.json_store import JsonStateStore
from drydock.utils.time import age_seconds, utc_now

_logger = get_logger("daemon.health")

# A daemon that has not polled for this many intervals is reported as hung
_MISSED_POLLS_HUNG = 3


class ExitCode(IntEnum):
    """Exit codes for capacity checks."""

    OK = 0
    WARNING = 1
    BLOCKED = 2


def capacity(state: SchedulerState, config: SchedulerConfig, now: datetime | None = None) -> ExitCode:
    """OK while normal slots are free, WARNING when only lane slots remain,
    BLOCKED when full or paused."""
    now = now or utc_now()
    if state.paused_until is not None and state.paused_until > now:
        return ExitCode.BLOCKED
    if state.active_count < config.max_parallel:
        return ExitCode.OK
    lane = config.priority_lane
    if lane.enabled and state.active_priority_count < lane.max_extra_slots:
        return ExitCode.WARNING
    return ExitCode.BLOCKED


def read_pid(pid_file: Path) -> int | None:
    try:
        return int(pid_file.read_text().strip())
    except (FileNotFoundError, ValueError):
        return None


def pid_alive(pid: int) -> bool:
    """Whether a process with ``pid`` exists."""
    try:
        os.kill(pid, 0)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        return True


class HealthChecker:
    """Daemon probes for one repository.

    Parameters
    ----------
    repo:
        Repository working copy.
    config:
        Resolved config; re-resolved from disk when omitted.
    """

    def __init__(self, repo: Path, config: SchedulerConfig | None = None) -> None:
        self.repo = Path(repo)
        self.paths = RepoPaths(self.repo)
        self.config = config or resolve_scheduler_config(self.repo)
        self.store = JsonStateStore(self.paths.state_file, SchedulerState)

    def liveness(self, now: datetime | None = None) -> dict[str, Any]:
        now = now or utc_now()
        pid = read_pid(self.paths.pid_file)
        alive = pid is not None and pid_alive(pid)
        state = self.store.load()
        since_poll = age_seconds(state.last_poll, now)
        hung = (
            alive
            and since_poll is not None
            and since_poll > self.config.poll_interval_seconds * _MISSED_POLLS_HUNG
        )
        if not alive:
            status = "stopped"
        elif hung:
            status = "hung"
        else:
            status = "ok"
        return {
            "status": status,
            "pid": pid if alive else None,
            "uptime_seconds": round(age_seconds(state.started_at, now) or 0, 1) if alive else 0,
            "seconds_since_poll": round(since_poll, 1) if since_poll is not None else None,
        }

    def readiness(self, now: datetime | None = None) -> dict[str, Any]:
        now = now or utc_now()
        state = self.store.load()
        code = capacity(state, self.config, now)
        paused = state.paused_until is not None and state.paused_until > now
        return {
            "status": "ready" if code is ExitCode.OK else "not_ready",
            "capacity": code.name.lower(),
            "active": state.active_count,
            "active_priority": state.active_priority_count,
            "queued": len(state.queued),
            "completed": len(state.completed),
            "max_parallel": self.config.max_parallel,
            "paused_until": state.paused_until.isoformat() if paused and state.paused_until else None,
            "last_poll": state.last_poll.isoformat() if state.last_poll else None,
        }

    def check_capacity(self, now: datetime | None = None) -> ExitCode:
        code = capacity(self.store.load(), self.config, now)
        _logger.debug("health.capacity_checked", repo=self.repo.name, result=code.name)
        return code


__all__ = ["ExitCode", "HealthChecker", "capacity", "pid_alive", "read_pid"]
