"""Machine health monitor.

Each registered machine is probed for its last heartbeat and classified:

    age <= 60s          online
    60s < age <= 120s   degraded
    age > 120s          offline
    no record           online if local, else degraded

A probe that fails outright (unreachable host, ssh timeout) counts as a
miss: the first consecutive miss leaves the machine ``degraded`` and only
the second marks it ``offline``.  A successful probe resets the count.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable, Sequence
from datetime import datetime
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from drydock.core.events import EventLog
from drydock.core.logging import get_logger
from drydock.core.paths import HomePaths
from drydock.exceptions import RemoteError
from drydock.fleet.config import MachineConfig
from drydock.fleet.remote import LivenessRecord, RemoteChannel, channel_for, is_localhost
from drydock.state.json_store import atomic_write_text
from drydock.utils.time import epoch_now, utc_now

_logger = get_logger("fleet.machine_health")

ONLINE_MAX_AGE = 60
DEGRADED_MAX_AGE = 120
OFFLINE_AFTER_MISSES = 2


class MachineStatus(str, Enum):
    ONLINE = "online"
    DEGRADED = "degraded"
    OFFLINE = "offline"


class MachineHealth(BaseModel):
    status: MachineStatus
    checked_at: datetime = Field(default_factory=utc_now)
    consecutive_misses: int = Field(default=0, ge=0)
    heartbeat_age_s: int | None = None


class MachineHealthReport(BaseModel):
    """Document written to ``machine-health.json``."""

    checked_at: datetime = Field(default_factory=utc_now)
    machines: dict[str, MachineHealth] = Field(default_factory=dict)

    def status_of(self, name: str) -> MachineStatus | None:
        entry = self.machines.get(name)
        return entry.status if entry else None


def classify_liveness(age: float | None, is_local: bool) -> MachineStatus:
    """Classify a heartbeat age (None when there is no record)."""
    if age is None:
        return MachineStatus.ONLINE if is_local else MachineStatus.DEGRADED
    if age <= ONLINE_MAX_AGE:
        return MachineStatus.ONLINE
    if age <= DEGRADED_MAX_AGE:
        return MachineStatus.DEGRADED
    return MachineStatus.OFFLINE


def status_after_miss(misses: int) -> MachineStatus:
    return MachineStatus.OFFLINE if misses >= OFFLINE_AFTER_MISSES else MachineStatus.DEGRADED


def load_health_report(path: Path | None = None) -> MachineHealthReport:
    path = path or HomePaths.resolve().machine_health_file
    try:
        return MachineHealthReport.model_validate_json(path.read_text())
    except FileNotFoundError:
        return MachineHealthReport()
    except (ValidationError, json.JSONDecodeError) as e:
        _logger.warning("machine_health.report_unreadable", path=str(path), error=str(e))
        return MachineHealthReport()


class MachineHealthMonitor:
    """Probes machines concurrently and persists their health.

    Args:
        channel_factory: Picks the channel per machine (tests inject fakes).
        clock: Epoch seconds; injected for tests.
    """

    def __init__(
        self,
        *,
        home: HomePaths | None = None,
        events: EventLog | None = None,
        channel_factory: Callable[[MachineConfig], RemoteChannel] = channel_for,
        clock: Callable[[], int] = epoch_now,
    ) -> None:
        self.home = home or HomePaths.resolve()
        self.events = events or EventLog(self.home.events_file)
        self._channel_for = channel_factory
        self._clock = clock

    async def _probe(
        self,
        machine: MachineConfig,
        previous: MachineHealth | None,
    ) -> MachineHealth:
        local = is_localhost(machine.host)
        try:
            record: LivenessRecord | None = await self._channel_for(machine).probe_health(machine)
        except RemoteError as e:
            misses = (previous.consecutive_misses if previous else 0) + 1
            _logger.warning("machine_health.probe_failed", machine=machine.name, misses=misses, error=str(e))
            return MachineHealth(status=status_after_miss(misses), consecutive_misses=misses)

        age = record.age(self._clock()) if record is not None else None
        return MachineHealth(
            status=classify_liveness(age, local),
            consecutive_misses=0,
            heartbeat_age_s=age,
        )

    async def check(self, machines: Sequence[MachineConfig]) -> MachineHealthReport:
        """Probe every machine, write the report, and emit offline events."""
        previous = load_health_report(self.home.machine_health_file)
        results = await asyncio.gather(
            *(self._probe(m, previous.machines.get(m.name)) for m in machines)
        )
        report = MachineHealthReport(
            machines={m.name: health for m, health in zip(machines, results, strict=True)},
        )
        atomic_write_text(self.home.machine_health_file, report.model_dump_json(indent=2) + "\n")

        for name, health in report.machines.items():
            if health.status is MachineStatus.OFFLINE:
                self.events.emit(
                    "fleet.machine_offline",
                    machine=name,
                    heartbeat_age_s=health.heartbeat_age_s,
                    consecutive_misses=health.consecutive_misses,
                )
        _logger.info(
            "machine_health.checked",
            statuses={name: h.status.value for name, h in report.machines.items()},
        )
        return report


__all__ = [
    "MachineHealth",
    "MachineHealthMonitor",
    "MachineHealthReport",
    "MachineStatus",
    "classify_liveness",
    "load_health_report",
    "status_after_miss",
]
