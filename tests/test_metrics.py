"""Tests for drydock.daemon.metrics."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from drydock.core.events import EventLog
from drydock.daemon.metrics import compute_metrics, fleet_metrics, percentile, repo_metrics
from tests.helpers import T0

NOW_EPOCH = int(T0.timestamp())
DAY = 86_400


def _reap(ts: int, result: str, repo: str = "/src/api", **extra) -> dict:
    return {"type": "daemon.reap", "ts_epoch": ts, "repo": repo, "result": result, **extra}


def _write(path: Path, records: list[dict]) -> EventLog:
    path.write_text("".join(json.dumps(r) + "\n" for r in records))
    return EventLog(path)


class TestPercentile:
    def test_nearest_rank(self):
        values = [float(v) for v in range(1, 21)]
        assert percentile(values, 95) == 19
        assert percentile(values, 50) == 10
        assert percentile([7.0], 95) == 7

    def test_empty(self):
        assert percentile([], 95) is None


class TestComputeMetrics:
    def test_summary(self):
        t = NOW_EPOCH - DAY
        events = [
            _reap(t, "success", duration_s=600),
            _reap(t + 100, "failure", failure_class="build_failure"),
            {"type": "daemon.retry", "ts_epoch": t + 101},
            _reap(t + 400, "success", duration_s=1200),
            _reap(t + 500, "failure", failure_class="api_error"),
            _reap(t + 600, "failure", failure_class="api_error"),
            _reap(t + 1100, "success", duration_s=300),
            {"type": "daemon.poll", "ts_epoch": t + 1200},
        ]
        report = compute_metrics(events, period_days=7)

        assert (report.completed, report.successes, report.failures) == (6, 3, 3)
        assert report.throughput_per_week == 3.0
        assert report.change_failure_rate == 50.0
        assert report.median_duration_s == 600
        assert report.p95_duration_s == 1200
        # failure at +100 recovered at +400, failure at +500 recovered at +1100
        assert report.mttr_s == pytest.approx(450)
        assert report.retries == 1
        assert report.failures_by_class == {"api_error": 2, "build_failure": 1}

    def test_no_events(self):
        report = compute_metrics([], period_days=14)
        assert report.to_dict()["completed"] == 0
        assert report.change_failure_rate == 0.0
        assert report.median_duration_s is None
        assert report.mttr_s is None


class TestRepoMetrics:
    def test_filters_by_repo_period_and_machine(self, tmp_path: Path):
        repo = tmp_path / "api"
        repo.mkdir()
        key = str(repo.resolve())
        log = _write(
            tmp_path / "events.jsonl",
            [
                _reap(NOW_EPOCH - 30 * DAY, "success", repo=key),
                _reap(NOW_EPOCH - DAY, "success", repo=key, duration_s=60),
                _reap(NOW_EPOCH - DAY, "failure", repo=key, machine="build-2"),
                _reap(NOW_EPOCH - DAY, "failure", repo="/src/other"),
            ],
        )
        report = repo_metrics(repo, 7, log=log, now=T0)
        assert report.completed == 1
        assert report.successes == 1


class TestFleetMetrics:
    def test_groups_by_machine_and_repo(self, tmp_path: Path):
        t = NOW_EPOCH - DAY
        log = _write(
            tmp_path / "events.jsonl",
            [
                _reap(t, "success", repo="/src/api"),
                _reap(t, "failure", repo="/src/web", failure_class="unknown"),
                _reap(t, "success", repo="/home/ci/api", machine="build-2"),
                {"type": "fleet.rebalance", "ts_epoch": t},
            ],
        )
        result = fleet_metrics(7, log=log, now=T0)
        assert sorted(result["repos"]) == ["api", "build-2:api", "web"]
        assert result["repos"]["web"]["failures"] == 1
        assert result["aggregate"]["completed"] == 3
        assert result["period_days"] == 7
