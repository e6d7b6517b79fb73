"""Worker-pool rebalancer.

Every ``rebalance_interval_seconds`` the fixed ``total_workers`` budget is
redistributed across the fleet's repositories in proportion to demand
(active + queued jobs), optionally scaled by per-repo signals.  Each result
is written to ``<repo>/.drydock/fleet-limit.json`` and the daemon is told
to reload; the scheduler picks the new ``max_parallel`` up on its next
cycle without restarting.

Allocations are recomputed from scratch every cycle and never drop below
one worker per repository.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from drydock.core.events import EventLog
from drydock.core.logging import get_logger
from drydock.core.models import FleetState, SchedulerState
from drydock.core.paths import HomePaths, RepoPaths
from drydock.daemon.config import MAX_PARALLEL_LIMIT
from drydock.exceptions import StateCorruptionError
from drydock.fleet.config import WorkerPoolConfig
from drydock.state.json_store import JsonStateStore, atomic_write_json
from drydock.utils.time import iso, utc_now

_logger = get_logger("fleet.rebalancer")

URGENT_LABELS = frozenset({"priority", "urgent", "hotfix"})
NEUTRAL_SIGNAL = 50


@dataclass(frozen=True)
class RepositoryDemand:
    repo_id: str
    active_count: int = 0
    queued_count: int = 0
    weight: int | None = None

    @property
    def demand(self) -> int:
        return self.active_count + self.queued_count

    @property
    def effective_weight(self) -> int:
        return self.demand if self.weight is None else self.weight


# ─── Pure allocation ──────────────────────────────────────────────────


def urgency_factor(queued_labels: Sequence[Sequence[str]]) -> float:
    """``1 + 0.5 * urgent/queued`` over the labels of queued jobs."""
    if not queued_labels:
        return 1.0
    urgent = sum(
        1 for labels in queued_labels if any(label.lower() in URGENT_LABELS for label in labels)
    )
    return 1.0 + 0.5 * urgent / len(queued_labels)


def compute_weight(
    demand: int,
    *,
    complexity: float = NEUTRAL_SIGNAL,
    urgency: float = 1.0,
    priority: float = NEUTRAL_SIGNAL,
) -> int:
    """Scale demand by signals; zero demand stays zero."""
    if demand <= 0:
        return 0
    raw = demand * (complexity / NEUTRAL_SIGNAL) * urgency * (priority / NEUTRAL_SIGNAL)
    return max(1, round(raw))


def allocate(weights: Sequence[int], total_workers: int) -> list[int]:
    """Split ``total_workers`` across participants in proportion to ``weights``.

    Every participant gets at least 1.  When rounding overshoots the budget
    the largest allocation is trimmed one worker at a time; with more
    participants than workers the sum can still exceed the budget because
    no allocation goes below 1.
    """
    n = len(weights)
    if n == 0:
        return []
    total_weight = sum(weights)
    if total_weight <= 0:
        return [max(total_workers // n, 1)] * n

    allocations = [max(round(w / total_weight * total_workers), 1) for w in weights]
    while sum(allocations) > total_workers:
        largest = max(range(n), key=lambda i: allocations[i])
        if allocations[largest] <= 1:
            break
        allocations[largest] -= 1
    return allocations


# ─── Demand collection ────────────────────────────────────────────────


def read_signals(repo: Path) -> dict[str, Any]:
    """``<repo>/.drydock/signals.yaml``; missing or malformed means neutral."""
    path = RepoPaths(repo).signals_file
    try:
        data = yaml.safe_load(path.read_text()) or {}
    except FileNotFoundError:
        return {}
    except yaml.YAMLError as e:
        _logger.warning("rebalancer.signals_unreadable", path=str(path), error=str(e))
        return {}
    return data if isinstance(data, dict) else {}


def _signal_value(signals: dict[str, Any], key: str) -> float:
    value = signals.get(key, NEUTRAL_SIGNAL)
    return float(value) if isinstance(value, (int, float)) and value >= 0 else NEUTRAL_SIGNAL


def read_demand(repo: Path, *, weighting: bool = False) -> RepositoryDemand:
    """Read one repo's demand from its job store without modifying it."""
    store = JsonStateStore(RepoPaths(repo).state_file, SchedulerState)
    try:
        state = store.load()
    except StateCorruptionError as e:
        _logger.warning("rebalancer.state_unreadable", repo=str(repo), error=str(e))
        state = SchedulerState()

    active, queued = state.active_count, len(state.queued)
    weight: int | None = None
    if weighting:
        signals = read_signals(repo)
        weight = compute_weight(
            active + queued,
            complexity=_signal_value(signals, "avg_issue_complexity"),
            urgency=urgency_factor([job.labels for job in state.queued]),
            priority=_signal_value(signals, "priority"),
        )
    return RepositoryDemand(repo_id=repo.name, active_count=active, queued_count=queued, weight=weight)


def write_limit(repo: Path, max_parallel: int) -> int:
    """Publish a limit the daemon will accept; larger shares are capped."""
    paths = RepoPaths(repo)
    max_parallel = min(max_parallel, MAX_PARALLEL_LIMIT)
    atomic_write_json(paths.fleet_limit_file, {"max_parallel": max_parallel, "updated_at": iso(utc_now())})
    paths.reload_flag.touch()
    return max_parallel


# ─── Loop ─────────────────────────────────────────────────────────────


class WorkerPoolRebalancer:
    """Periodic local rebalancer.

    Args:
        pool: Worker budget and cadence.
        repos: Repositories to balance; read from the fleet state when omitted.
        sleep: Injected for tests.
    """

    def __init__(
        self,
        pool: WorkerPoolConfig,
        *,
        repos: Sequence[Path] | None = None,
        home: HomePaths | None = None,
        events: EventLog | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.pool = pool
        self.home = home or HomePaths.resolve()
        self.events = events or EventLog(self.home.events_file)
        self._repos = list(repos) if repos is not None else None
        self._sleep = sleep
        self._running = False

    def repos(self) -> list[Path]:
        if self._repos is not None:
            return self._repos
        store = JsonStateStore(self.home.fleet_state_file, FleetState)
        try:
            state = store.load()
        except StateCorruptionError as e:
            _logger.warning("rebalancer.fleet_state_unreadable", error=str(e))
            return []
        return [Path(entry.path) for entry in state.repos.values()]

    def cycle(self) -> dict[str, int]:
        """Recompute and write every repository's limit.  Returns repo -> limit."""
        repos = self.repos()
        if not repos:
            return {}
        demands = [read_demand(repo, weighting=self.pool.weighting) for repo in repos]
        allocations = allocate([d.effective_weight for d in demands], self.pool.total_workers)

        result: dict[str, int] = {}
        for repo, demand, limit in zip(repos, demands, allocations, strict=True):
            try:
                limit = write_limit(repo, limit)
            except OSError as e:
                _logger.warning("rebalancer.write_failed", repo=str(repo), error=str(e))
                continue
            result[demand.repo_id] = limit

        self.events.emit(
            "fleet.rebalance",
            total_workers=self.pool.total_workers,
            total_demand=sum(d.demand for d in demands),
            total_weight=sum(d.effective_weight for d in demands),
            weighting=self.pool.weighting,
            repo_count=len(repos),
            allocated=sum(result.values()),
            allocations=result,
        )
        _logger.info("rebalancer.cycle_complete", allocations=result)
        return result

    def stop(self) -> None:
        self._running = False

    async def run(self) -> None:
        """Cycle until stopped or the shutdown flag appears."""
        flag = self.home.rebalancer_shutdown_flag
        self._running = True
        _logger.info(
            "rebalancer.started",
            total_workers=self.pool.total_workers,
            interval_seconds=self.pool.rebalance_interval_seconds,
        )
        while self._running:
            if flag.exists():
                flag.unlink(missing_ok=True)
                _logger.info("rebalancer.shutdown_flag_seen")
                break
            try:
                self.cycle()
            except OSError as e:
                _logger.error("rebalancer.cycle_failed", error=str(e))
            await self._sleep(self.pool.rebalance_interval_seconds)
        self._running = False
        _logger.info("rebalancer.stopped")


__all__ = [
    "RepositoryDemand",
    "URGENT_LABELS",
    "WorkerPoolRebalancer",
    "allocate",
    "compute_weight",
    "read_demand",
    "read_signals",
    "urgency_factor",
    "write_limit",
]
