"""Failure classification for finished jobs.

A failed job leaves behind a log tail and, sometimes, a progress file in its
workspace.  :func:`classify` turns that evidence into one of a small set of
failure classes, and :func:`retry_ceiling` says how many retries each class
is worth.

Classes are checked in a fixed order; the first match wins:

1. ``auth_error``        - credentials are missing or rejected
2. ``api_error``         - throttling, upstream 5xx, network timeouts
3. ``invalid_issue``     - the issue itself cannot be worked on
4. ``context_exhaustion``- the agent iterated but never got tests passing
5. ``build_failure``     - tests, compile, or lint failures
6. ``unknown``           - nothing matched
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum


class FailureClass(str, Enum):
    """Finite set of job failure classes."""

    AUTH_ERROR = "auth_error"
    INVALID_ISSUE = "invalid_issue"
    API_ERROR = "api_error"
    CONTEXT_EXHAUSTION = "context_exhaustion"
    BUILD_FAILURE = "build_failure"
    UNKNOWN = "unknown"

    @property
    def retryable(self) -> bool:
        return self not in (FailureClass.AUTH_ERROR, FailureClass.INVALID_ISSUE)


# Retries allowed per class.  UNKNOWN is resolved at call time so the daemon's
# ``max_retries`` setting can override it.
RETRY_CEILINGS: dict[FailureClass, int] = {
    FailureClass.AUTH_ERROR: 0,
    FailureClass.INVALID_ISSUE: 0,
    FailureClass.API_ERROR: 4,
    FailureClass.CONTEXT_EXHAUSTION: 2,
    FailureClass.BUILD_FAILURE: 2,
}

_AUTH_PATTERNS: list[str] = [
    r"not logged in",
    r"unauthorized",
    r"auth.*fail",
    r"401 ",
    r"invalid.*token",
    r"api key.*invalid",
    r"authentication required",
]

_API_PATTERNS: list[str] = [
    r"rate limit",
    r"429 ",
    r"503 ",
    r"502 ",
    r"overloaded",
    r"timeout",
    r"ETIMEDOUT",
    r"ECONNRESET",
    r"socket hang up",
    r"service unavailable",
]

_INVALID_ISSUE_PATTERNS: list[str] = [
    r"issue not found",
    r"404 ",
    r"no body",
    r"could not resolve",
    r"GraphQL.*not found",
    r"issue.*does not exist",
]

_BUILD_PATTERNS: list[str] = [
    r"test.*fail",
    r"FAIL",
    r"build.*error",
    r"compile.*error",
    r"lint.*fail",
    r"npm ERR",
    r"exit code [1-9]",
]


def _compile(patterns: list[str]) -> re.Pattern[str]:
    """Fold a pattern list into one case-insensitive alternation."""
    return re.compile("|".join(f"(?:{p})" for p in patterns), re.IGNORECASE)


_AUTH_RE = _compile(_AUTH_PATTERNS)
_API_RE = _compile(_API_PATTERNS)
_INVALID_ISSUE_RE = _compile(_INVALID_ISSUE_PATTERNS)
_BUILD_RE = _compile(_BUILD_PATTERNS)


@dataclass(frozen=True)
class FailureSignal:
    """Evidence gathered from a finished job.

    Attributes:
        log_tail: Last lines of the job's output log ("" when the log is missing).
        exit_code: Process exit code, None when unknown (e.g. after a restart).
        iteration: Build iteration reported by the agent's progress file.
        tests_passing: Whether the progress file reports passing tests.
    """

    log_tail: str = ""
    exit_code: int | None = None
    iteration: int | None = None
    tests_passing: bool | None = None

    @property
    def exhausted_context(self) -> bool:
        return (
            self.iteration is not None
            and self.iteration > 0
            and self.tests_passing is False
        )


def classify(signal: FailureSignal) -> FailureClass:
    """Map a failure signal to its failure class.  Pure."""
    text = signal.log_tail
    if _AUTH_RE.search(text):
        return FailureClass.AUTH_ERROR
    if _API_RE.search(text):
        return FailureClass.API_ERROR
    if _INVALID_ISSUE_RE.search(text):
        return FailureClass.INVALID_ISSUE
    if signal.exhausted_context:
        return FailureClass.CONTEXT_EXHAUSTION
    if _BUILD_RE.search(text):
        return FailureClass.BUILD_FAILURE
    return FailureClass.UNKNOWN


def retry_ceiling(failure_class: FailureClass, unknown_ceiling: int | None = None) -> int:
    """Maximum retries allowed for ``failure_class``.

    ``unknown`` falls back to the build-failure ceiling unless the caller
    supplies its own default (the daemon passes ``max_retries``).
    """
    if failure_class is FailureClass.UNKNOWN:
        if unknown_ceiling is not None:
            return unknown_ceiling
        return RETRY_CEILINGS[FailureClass.BUILD_FAILURE]
    return RETRY_CEILINGS[failure_class]


__all__ = [
    "FailureClass",
    "FailureSignal",
    "RETRY_CEILINGS",
    "classify",
    "retry_ceiling",
]
