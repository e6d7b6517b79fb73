"""Issue-tracker contract and the GitHub CLI adapter.

The scheduler only talks to :class:`IssueTracker`.  :class:`GhTracker` is
the default implementation; it shells out to ``gh`` and retries transient
failures (rate limits, 5xx) with 1s/3s/9s backoff before raising
:class:`TrackerError`.
"""

from __future__ import annotations

import asyncio
import json
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol, runtime_checkable

from drydock.core.logging import get_logger
from drydock.exceptions import TrackerError

_logger = get_logger("daemon.tracker")

_TRANSIENT_RE = re.compile(r"rate limit|403|429|502|503", re.IGNORECASE)


@dataclass(frozen=True)
class Issue:
    """A candidate work item as reported by the tracker."""

    number: int
    title: str = ""
    labels: tuple[str, ...] = field(default_factory=tuple)

    def has_any_label(self, labels: list[str] | tuple[str, ...]) -> bool:
        wanted = {label.lower() for label in labels}
        return any(label.lower() in wanted for label in self.labels)


@runtime_checkable
class IssueTracker(Protocol):
    """Operations the scheduler needs from an issue tracker."""

    async def list_candidates(self, label: str) -> list[Issue]:
        """Open issues carrying ``label``."""
        ...

    async def add_label(self, number: int, label: str) -> None: ...

    async def remove_label(self, number: int, label: str) -> None: ...

    async def comment(self, number: int, body: str) -> None: ...

    async def close(self, number: int) -> None: ...


class GhTracker:
    """IssueTracker backed by the ``gh`` command-line client.

    Args:
        repo: Working copy the commands run in (``gh`` infers the remote).
        attempts: Tries per call before giving up.
        sleep: Injected for tests.
    """

    def __init__(
        self,
        repo: Path,
        *,
        attempts: int = 3,
        timeout: float = 60.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._repo = repo
        self._attempts = attempts
        self._timeout = timeout
        self._sleep = sleep

    async def _gh(self, *args: str) -> str:
        backoff = 1.0
        last_error = ""
        for attempt in range(1, self._attempts + 1):
            proc = await asyncio.create_subprocess_exec(
                "gh", *args,
                cwd=self._repo,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            try:
                stdout, stderr = await asyncio.wait_for(proc.communicate(), self._timeout)
            except TimeoutError:
                proc.kill()
                await proc.wait()
                stdout, stderr = b"", b"timed out"
            if proc.returncode == 0:
                return stdout.decode("utf-8", errors="replace")

            last_error = stderr.decode("utf-8", errors="replace").strip()
            _logger.warning(
                "tracker.gh_retry",
                command=args[:2],
                attempt=attempt,
                attempts=self._attempts,
                transient=bool(_TRANSIENT_RE.search(last_error)),
                error=last_error[:200],
            )
            if attempt < self._attempts:
                await self._sleep(backoff)
                backoff *= 3
        raise TrackerError(f"gh {' '.join(args[:2])} failed: {last_error[:200]}")

    async def list_candidates(self, label: str) -> list[Issue]:
        out = await self._gh(
            "issue", "list",
            "--label", label,
            "--state", "open",
            "--json", "number,title,labels",
            "--limit", "100",
        )
        try:
            rows = json.loads(out or "[]")
        except json.JSONDecodeError as e:
            raise TrackerError(f"unparseable gh output: {e}") from e
        return [
            Issue(
                number=int(row["number"]),
                title=row.get("title", ""),
                labels=tuple(lbl.get("name", "") for lbl in row.get("labels", [])),
            )
            for row in rows
        ]

    async def add_label(self, number: int, label: str) -> None:
        await self._gh("issue", "edit", str(number), "--add-label", label)

    async def remove_label(self, number: int, label: str) -> None:
        await self._gh("issue", "edit", str(number), "--remove-label", label)

    async def comment(self, number: int, body: str) -> None:
        await self._gh("issue", "comment", str(number), "--body", body)

    async def close(self, number: int) -> None:
        await self._gh("issue", "close", str(number))


__all__ = ["GhTracker", "Issue", "IssueTracker"]
