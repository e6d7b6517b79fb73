"""Distributed rebalancing across registered machines.

Each cycle of :class:`DistributedLoop`:

1. probe machine health (:class:`MachineHealthMonitor`)
2. allocate each reachable machine a share of its own ``max_workers`` in
   proportion to its demand, and push the result over the remote channel
3. pull new event-log lines from every reachable remote machine, tag them
   with ``machine``, and append them to the local log

Offline machines are left out of the cycle entirely; their capacity is not
handed to anyone else.  Remote failures are logged per machine and never
abort the cycle for the others.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable, Mapping, Sequence
from pathlib import Path
from typing import Any

from drydock.core.events import EventLog
from drydock.core.logging import get_logger
from drydock.core.paths import HomePaths
from drydock.exceptions import RemoteError
from drydock.fleet.config import MachineConfig
from drydock.fleet.machine_health import MachineHealthMonitor, MachineHealthReport, MachineStatus
from drydock.fleet.remote import MachineDemand, RemoteChannel, channel_for, is_localhost
from drydock.state.json_store import atomic_write_json

_logger = get_logger("fleet.distributed")


def distributed_allocate(demands: Sequence[int], capacities: Sequence[int]) -> list[int]:
    """Per-machine limits: ``round(d/Σd * cap)`` clamped to ``[1, cap]``.

    With no demand anywhere every machine gets its full capacity.
    """
    if len(demands) != len(capacities):
        raise ValueError("demands and capacities must have the same length")
    total = sum(demands)
    if total <= 0:
        return list(capacities)
    return [
        min(max(round(d / total * cap), 1), cap)
        for d, cap in zip(demands, capacities, strict=True)
    ]


# ─── Rebalance ────────────────────────────────────────────────────────


class DistributedRebalancer:
    def __init__(
        self,
        *,
        events: EventLog | None = None,
        channel_factory: Callable[[MachineConfig], RemoteChannel] = channel_for,
    ) -> None:
        self.events = events or EventLog()
        self._channel_for = channel_factory

    async def _demand(self, machine: MachineConfig) -> MachineDemand | None:
        try:
            return await self._channel_for(machine).query_demand(machine)
        except RemoteError as e:
            _logger.warning("distributed.demand_failed", machine=machine.name, error=str(e))
            return None

    async def _push(self, machine: MachineConfig, limit: int) -> bool:
        try:
            await self._channel_for(machine).push_allocation(machine, limit)
            return True
        except RemoteError as e:
            _logger.warning("distributed.push_failed", machine=machine.name, error=str(e))
            return False

    async def rebalance(
        self,
        machines: Sequence[MachineConfig],
        health: MachineHealthReport,
    ) -> dict[str, int]:
        """Allocate and push limits for reachable machines.  Returns name -> limit."""
        reachable = [
            m for m in machines if health.status_of(m.name) is not MachineStatus.OFFLINE
        ]
        excluded = sorted(m.name for m in machines if m not in reachable)
        demands = await asyncio.gather(*(self._demand(m) for m in reachable))
        participants = [
            (machine, demand)
            for machine, demand in zip(reachable, demands, strict=True)
            if demand is not None
        ]
        excluded += sorted(m.name for m, d in zip(reachable, demands, strict=True) if d is None)
        if not participants:
            _logger.info("distributed.no_participants", excluded=excluded)
            return {}

        limits = distributed_allocate(
            [d.demand for _, d in participants],
            [m.max_workers for m, _ in participants],
        )
        allocation = {m.name: limit for (m, _), limit in zip(participants, limits, strict=True)}
        pushed = await asyncio.gather(
            *(self._push(m, limit) for (m, _), limit in zip(participants, limits, strict=True))
        )

        self.events.emit(
            "fleet.distributed_rebalance",
            machines=len(participants),
            excluded=excluded,
            total_demand=sum(d.demand for _, d in participants),
            allocations=allocation,
            pushed=sum(pushed),
        )
        _logger.info("distributed.rebalanced", allocations=allocation, excluded=excluded)
        return allocation


# ─── Event aggregation ────────────────────────────────────────────────


def load_offsets(path: Path) -> dict[str, int]:
    try:
        data = json.loads(path.read_text())
    except (FileNotFoundError, json.JSONDecodeError):
        return {}
    if not isinstance(data, dict):
        return {}
    return {k: int(v) for k, v in data.items() if isinstance(v, int) and v >= 0}


def tag_line(line: str, machine: str) -> str | None:
    """Add ``machine`` to one JSONL record; None for a malformed line."""
    try:
        record = json.loads(line)
    except json.JSONDecodeError:
        return None
    if not isinstance(record, dict):
        return None
    record["machine"] = machine
    return json.dumps(record, default=str)


class EventAggregator:
    """Tails remote event logs into the local one by stored offset."""

    def __init__(
        self,
        *,
        home: HomePaths | None = None,
        events: EventLog | None = None,
        channel_factory: Callable[[MachineConfig], RemoteChannel] = channel_for,
    ) -> None:
        self.home = home or HomePaths.resolve()
        self.events = events or EventLog(self.home.events_file)
        self._channel_for = channel_factory

    async def _pull(self, machine: MachineConfig, offset: int) -> tuple[int, int] | None:
        try:
            batch = await self._channel_for(machine).fetch_events_since(machine, offset)
        except RemoteError as e:
            _logger.warning("distributed.fetch_failed", machine=machine.name, error=str(e))
            return None
        appended = 0
        for line in batch.lines:
            tagged = tag_line(line, machine.name)
            if tagged is not None:
                self.events.append_raw(tagged)
                appended += 1
        return batch.next_offset, appended

    async def aggregate(
        self,
        machines: Sequence[MachineConfig],
        health: MachineHealthReport | None = None,
    ) -> dict[str, int]:
        """Pull from reachable non-local machines.  Returns name -> lines appended."""
        offsets = load_offsets(self.home.remote_offsets_file)
        appended: dict[str, int] = {}
        for machine in machines:
            if is_localhost(machine.host):
                continue
            if health is not None and health.status_of(machine.name) is MachineStatus.OFFLINE:
                continue
            result = await self._pull(machine, offsets.get(machine.name, 0))
            if result is None:
                continue
            offsets[machine.name], appended[machine.name] = result
        atomic_write_json(self.home.remote_offsets_file, offsets)
        if any(appended.values()):
            _logger.info("distributed.events_aggregated", appended=appended)
        return appended


# ─── Loop ─────────────────────────────────────────────────────────────


class DistributedLoop:
    """Health check, rebalance, and aggregation every ``interval`` seconds."""

    def __init__(
        self,
        machines_provider: Callable[[], Sequence[MachineConfig]],
        *,
        interval: float = 30.0,
        home: HomePaths | None = None,
        events: EventLog | None = None,
        channel_factory: Callable[[MachineConfig], RemoteChannel] = channel_for,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.home = home or HomePaths.resolve()
        self.events = events or EventLog(self.home.events_file)
        self.interval = interval
        self._machines = machines_provider
        self.monitor = MachineHealthMonitor(
            home=self.home, events=self.events, channel_factory=channel_factory,
        )
        self.rebalancer = DistributedRebalancer(events=self.events, channel_factory=channel_factory)
        self.aggregator = EventAggregator(
            home=self.home, events=self.events, channel_factory=channel_factory,
        )
        self._sleep = sleep
        self._running = False

    async def cycle(self) -> Mapping[str, Any]:
        machines = list(self._machines())
        if not machines:
            return {}
        health = await self.monitor.check(machines)
        allocation = await self.rebalancer.rebalance(machines, health)
        appended = await self.aggregator.aggregate(machines, health)
        self.events.rotate_if_needed()
        return {"health": health, "allocation": allocation, "appended": appended}

    def stop(self) -> None:
        self._running = False

    async def run(self) -> None:
        flag = self.home.distributed_shutdown_flag
        self._running = True
        _logger.info("distributed.started", interval_seconds=self.interval)
        while self._running:
            if flag.exists():
                flag.unlink(missing_ok=True)
                _logger.info("distributed.shutdown_flag_seen")
                break
            try:
                await self.cycle()
            except OSError as e:
                _logger.error("distributed.cycle_failed", error=str(e))
            await self._sleep(self.interval)
        self._running = False
        _logger.info("distributed.stopped")


__all__ = [
    "DistributedLoop",
    "DistributedRebalancer",
    "EventAggregator",
    "distributed_allocate",
    "load_offsets",
    "tag_line",
]
