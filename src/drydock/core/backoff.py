"""Backoff policy driven by consecutive same-class failures.

Only the tail of the failure history matters: an isolated failure is cheap
to retry, while a run of identical failures (an API outage, a broken build
toolchain) cools the scheduler down geometrically.

    run length  3   4   5   6   ...  >= 10
    pause (min) 5  10  20  40   ...  480
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import timedelta

from drydock.core.failures import FailureClass
from drydock.core.models import FailureEvent

PAUSE_THRESHOLD = 3
BASE_PAUSE_MINUTES = 5
MAX_PAUSE_MINUTES = 480


def consecutive_run(history: Sequence[FailureEvent], failure_class: FailureClass) -> int:
    """Count trailing entries equal to ``failure_class``.

    Scans newest-first and stops at the first entry of a different class.
    """
    run = 0
    for event in reversed(history):
        if event.failure_class is not failure_class:
            break
        run += 1
    return run


def pause_minutes(run_length: int) -> int:
    """Pause imposed after ``run_length`` consecutive same-class failures."""
    return DEFAULT_POLICY.minutes_for(run_length)


@dataclass(frozen=True)
class BackoffPolicy:
    """Pause schedule; the defaults give the table in the module docstring."""

    threshold: int = PAUSE_THRESHOLD
    base_minutes: int = BASE_PAUSE_MINUTES
    max_minutes: int = MAX_PAUSE_MINUTES

    def minutes_for(self, run_length: int) -> int:
        if run_length < self.threshold:
            return 0
        # Clamp the exponent first so very long runs cannot build huge ints
        exponent = min(run_length - self.threshold, 16)
        return min(self.base_minutes * 2 ** exponent, self.max_minutes)

    def pause_for(
        self,
        history: Sequence[FailureEvent],
        failure_class: FailureClass,
    ) -> timedelta:
        """Pause owed for the current tail of ``history``."""
        return timedelta(minutes=self.minutes_for(consecutive_run(history, failure_class)))


DEFAULT_POLICY = BackoffPolicy()


__all__ = [
    "BackoffPolicy",
    "DEFAULT_POLICY",
    "MAX_PAUSE_MINUTES",
    "consecutive_run",
    "pause_minutes",
]
