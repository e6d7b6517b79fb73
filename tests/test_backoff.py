"""Tests for drydock.core.backoff."""

from __future__ import annotations

from datetime import timedelta

import pytest

from drydock.core import backoff
from drydock.core.backoff import BackoffPolicy, consecutive_run, pause_minutes
from drydock.core.failures import FailureClass
from drydock.core.models import FailureEvent


def _history(*classes: FailureClass) -> list[FailureEvent]:
    return [FailureEvent(failure_class=c) for c in classes]


class TestConsecutiveRun:
    def test_empty_history(self):
        assert consecutive_run([], FailureClass.API_ERROR) == 0

    def test_counts_only_trailing_run(self):
        history = _history(
            FailureClass.API_ERROR,
            FailureClass.API_ERROR,
            FailureClass.BUILD_FAILURE,
            FailureClass.API_ERROR,
            FailureClass.API_ERROR,
        )
        assert consecutive_run(history, FailureClass.API_ERROR) == 2

    def test_different_tail_class(self):
        history = _history(FailureClass.API_ERROR, FailureClass.BUILD_FAILURE)
        assert consecutive_run(history, FailureClass.API_ERROR) == 0


class TestPauseMinutes:
    @pytest.mark.parametrize(
        ("run", "minutes"),
        [(0, 0), (1, 0), (2, 0), (3, 5), (4, 10), (5, 20), (6, 40), (9, 320), (10, 480), (60, 480)],
    )
    def test_table(self, run: int, minutes: int):
        assert pause_minutes(run) == minutes


class TestBackoffPolicy:
    def test_default_matches_module_function(self):
        policy = BackoffPolicy()
        for run in [*range(15), 40, 1000]:
            assert policy.minutes_for(run) == pause_minutes(run)

    def test_module_function_uses_default_policy(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setattr(backoff, "DEFAULT_POLICY", BackoffPolicy(threshold=1, base_minutes=1, max_minutes=60))
        assert backoff.pause_minutes(3) == 4

    def test_long_runs_clamp_exponent(self):
        policy = BackoffPolicy(base_minutes=1, max_minutes=10**9)
        assert policy.minutes_for(1000) == 2**16

    def test_pause_for_history(self):
        history = _history(*[FailureClass.BUILD_FAILURE] * 4)
        assert BackoffPolicy().pause_for(history, FailureClass.BUILD_FAILURE) == timedelta(minutes=10)

    def test_no_pause_below_threshold(self):
        history = _history(FailureClass.API_ERROR, FailureClass.API_ERROR)
        assert BackoffPolicy().pause_for(history, FailureClass.API_ERROR) == timedelta(0)

    def test_custom_threshold(self):
        policy = BackoffPolicy(threshold=1, base_minutes=1, max_minutes=3)
        assert [policy.minutes_for(n) for n in range(5)] == [0, 1, 2, 3, 3]
