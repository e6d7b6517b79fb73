"""Time helpers.

All persisted timestamps are timezone-aware UTC datetimes; epoch seconds are
only used where files written by other processes carry them.
"""

from __future__ import annotations

from datetime import UTC, datetime


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(UTC)


def epoch_now() -> int:
    """Return the current Unix time in whole seconds."""
    return int(utc_now().timestamp())


def age_seconds(then: datetime | None, now: datetime | None = None) -> float | None:
    """Seconds elapsed since ``then``, or None when ``then`` is unknown."""
    if then is None:
        return None
    current = now or utc_now()
    return max((current - then).total_seconds(), 0.0)


def iso(dt: datetime) -> str:
    """Format a datetime the way event records carry it (``...Z``)."""
    return dt.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")
