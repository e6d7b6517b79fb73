"""Job and machine heartbeat files.

Agents report progress by writing ``<home>/heartbeats/<job_id>.json``
(usually via ``drydock heartbeat write``).  The scheduler reads these to
spot jobs whose process is alive but stuck.  Each daemon also refreshes the
machine-wide ``machine-heartbeat.json`` once per cycle; the machine health
monitor ages it to decide whether the host is online.
"""

from __future__ import annotations

import json
import os
import socket
from datetime import datetime
from pathlib import Path

import psutil
from pydantic import BaseModel, Field, ValidationError

from drydock.core.logging import get_logger
from drydock.core.paths import HomePaths
from drydock.state.json_store import atomic_write_json, atomic_write_text
from drydock.utils.time import age_seconds, epoch_now, utc_now

_logger = get_logger("daemon.heartbeat")

DEFAULT_HEARTBEAT_TIMEOUT = 120


class JobHeartbeat(BaseModel):
    """Progress report written by a running agent."""

    job_id: str
    pid: int
    issue: int | None = None
    stage: str | None = None
    iteration: int | None = None
    memory_mb: int = 0
    cpu_pct: float = 0.0
    last_activity: str = ""
    updated_at: datetime = Field(default_factory=utc_now)

    def age(self, now: datetime | None = None) -> float:
        return age_seconds(self.updated_at, now) or 0.0

    def is_stale(self, timeout: float, now: datetime | None = None) -> bool:
        return self.age(now) > timeout


def _resource_usage(pid: int) -> tuple[int, float]:
    try:
        proc = psutil.Process(pid)
        return proc.memory_info().rss // (1024 * 1024), proc.cpu_percent(interval=None)
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return 0, 0.0


class HeartbeatStore:
    """Reads and writes job heartbeat files under ``<home>/heartbeats``."""

    def __init__(self, directory: Path | None = None) -> None:
        self.directory = directory or HomePaths.resolve().heartbeat_dir

    def path_for(self, job_id: str) -> Path:
        return self.directory / f"{job_id}.json"

    def write(
        self,
        job_id: str,
        *,
        pid: int | None = None,
        issue: int | None = None,
        stage: str | None = None,
        iteration: int | None = None,
        activity: str = "",
    ) -> JobHeartbeat:
        pid = pid if pid is not None else os.getpid()
        memory_mb, cpu_pct = _resource_usage(pid)
        beat = JobHeartbeat(
            job_id=job_id,
            pid=pid,
            issue=issue,
            stage=stage,
            iteration=iteration,
            memory_mb=memory_mb,
            cpu_pct=cpu_pct,
            last_activity=activity,
        )
        atomic_write_text(self.path_for(job_id), beat.model_dump_json() + "\n")
        return beat

    def read(self, job_id: str) -> JobHeartbeat | None:
        path = self.path_for(job_id)
        try:
            return JobHeartbeat.model_validate_json(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except ValidationError as e:
            _logger.warning("heartbeat.unreadable", path=str(path), error=str(e))
            return None

    def list(self) -> list[JobHeartbeat]:
        if not self.directory.is_dir():
            return []
        beats = []
        for path in sorted(self.directory.glob("*.json")):
            beat = self.read(path.stem)
            if beat is not None:
                beats.append(beat)
        return beats

    def clear(self, job_id: str) -> bool:
        try:
            self.path_for(job_id).unlink()
            return True
        except FileNotFoundError:
            return False

    def is_stale(self, job_id: str, timeout: float = DEFAULT_HEARTBEAT_TIMEOUT) -> bool:
        """A missing heartbeat counts as stale."""
        beat = self.read(job_id)
        return beat is None or beat.is_stale(timeout)


def write_machine_heartbeat(path: Path | None = None, *, active_jobs: int = 0) -> None:
    """Refresh the machine-wide liveness record."""
    path = path or HomePaths.resolve().machine_heartbeat_file
    atomic_write_json(
        path,
        {
            "ts_epoch": epoch_now(),
            "hostname": socket.gethostname(),
            "pid": os.getpid(),
            "active_jobs": active_jobs,
        },
    )


def read_machine_heartbeat(path: Path | None = None) -> dict | None:
    path = path or HomePaths.resolve().machine_heartbeat_file
    try:
        data = json.loads(path.read_text())
    except (FileNotFoundError, json.JSONDecodeError):
        return None
    return data if isinstance(data, dict) else None


__all__ = [
    "DEFAULT_HEARTBEAT_TIMEOUT",
    "HeartbeatStore",
    "JobHeartbeat",
    "read_machine_heartbeat",
    "write_machine_heartbeat",
]
