"""Delivery metrics derived from the event log.

Everything is computed from ``daemon.reap`` and ``daemon.retry`` records in
the requested period.  Nothing here writes state, so metrics can be
recomputed at any time from ``events.jsonl`` (including events aggregated
from remote machines, which carry a ``machine`` field).
"""

from __future__ import annotations

import math
import statistics
from collections import Counter, defaultdict
from collections.abc import Iterable
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from drydock.core.events import EventLog
from drydock.utils.time import utc_now


@dataclass
class MetricsReport:
    period_days: int
    completed: int = 0
    successes: int = 0
    failures: int = 0
    throughput_per_week: float = 0.0
    change_failure_rate: float = 0.0
    median_duration_s: float | None = None
    p95_duration_s: float | None = None
    mttr_s: float | None = None
    retries: int = 0
    failures_by_class: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def percentile(values: list[float], pct: float) -> float | None:
    """Nearest-rank percentile; None for an empty list."""
    if not values:
        return None
    ordered = sorted(values)
    rank = max(math.ceil(pct / 100 * len(ordered)), 1)
    return ordered[rank - 1]


def _mean_time_to_recovery(reaps: list[dict[str, Any]]) -> float | None:
    """Mean gap from each failure to the next success, in seconds."""
    gaps: list[float] = []
    pending_failure: int | None = None
    for record in sorted(reaps, key=lambda r: int(r.get("ts_epoch", 0))):
        ts = int(record.get("ts_epoch", 0))
        if record.get("result") == "failure":
            if pending_failure is None:
                pending_failure = ts
        elif record.get("result") == "success" and pending_failure is not None:
            gaps.append(ts - pending_failure)
            pending_failure = None
    return statistics.fmean(gaps) if gaps else None


def compute_metrics(events: Iterable[dict[str, Any]], period_days: int = 7) -> MetricsReport:
    """Summarize the given (already period-filtered) event records."""
    report = MetricsReport(period_days=period_days)
    reaps: list[dict[str, Any]] = []
    durations: list[float] = []
    by_class: Counter[str] = Counter()

    for record in events:
        kind = record.get("type")
        if kind == "daemon.retry":
            report.retries += 1
        elif kind == "daemon.reap":
            reaps.append(record)
            result = record.get("result")
            if result == "success":
                report.successes += 1
                duration = record.get("duration_s")
                if isinstance(duration, (int, float)):
                    durations.append(float(duration))
            elif result == "failure":
                report.failures += 1
                by_class[str(record.get("failure_class", "unknown"))] += 1

    report.completed = report.successes + report.failures
    weeks = max(period_days, 1) / 7
    report.throughput_per_week = round(report.successes / weeks, 2)
    if report.completed:
        report.change_failure_rate = round(report.failures / report.completed * 100, 1)
    if durations:
        report.median_duration_s = statistics.median(durations)
        report.p95_duration_s = percentile(durations, 95)
    report.mttr_s = _mean_time_to_recovery(reaps)
    report.failures_by_class = dict(sorted(by_class.items()))
    return report


def events_in_period(
    log: EventLog,
    period_days: int,
    now: datetime | None = None,
) -> list[dict[str, Any]]:
    since = (now or utc_now()) - timedelta(days=period_days)
    return list(log.iter_events(since_epoch=int(since.timestamp())))


def repo_metrics(
    repo: Path,
    period_days: int = 7,
    *,
    log: EventLog | None = None,
    now: datetime | None = None,
) -> MetricsReport:
    """Metrics for one repository's local daemon."""
    events = events_in_period(log or EventLog(), period_days, now)
    key = str(Path(repo).resolve())
    mine = [r for r in events if r.get("repo") == key and "machine" not in r]
    return compute_metrics(mine, period_days)


def _repo_key(record: dict[str, Any]) -> str | None:
    repo = record.get("repo")
    if not repo:
        return None
    name = Path(str(repo)).name
    machine = record.get("machine")
    return f"{machine}:{name}" if machine else name


def fleet_metrics(
    period_days: int = 7,
    *,
    log: EventLog | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Per-repository breakdown plus a fleet-wide aggregate."""
    events = events_in_period(log or EventLog(), period_days, now)
    grouped: dict[str, list[dict[str, Any]]] = defaultdict(list)
    for record in events:
        key = _repo_key(record)
        if key is not None:
            grouped[key].append(record)
    return {
        "period_days": period_days,
        "repos": {
            key: compute_metrics(records, period_days).to_dict()
            for key, records in sorted(grouped.items())
        },
        "aggregate": compute_metrics(events, period_days).to_dict(),
    }


__all__ = [
    "MetricsReport",
    "compute_metrics",
    "events_in_period",
    "fleet_metrics",
    "percentile",
    "repo_metrics",
]
