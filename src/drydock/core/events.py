"""Append-only JSONL event log.

Every record is one JSON object on its own line carrying ``ts`` (ISO-8601
UTC), ``ts_epoch`` and ``type`` plus type-specific fields.  Past records are
never rewritten; when the active file grows past ``max_bytes`` it is rotated
to ``events.jsonl.1`` and older generations shift up, keeping at most
``generations`` of them.

The log is shared by every daemon on a machine, so appends use a single
``write`` on an ``O_APPEND`` descriptor, which keeps lines whole.
"""

from __future__ import annotations

import json
import os
from collections.abc import Iterator
from pathlib import Path
from typing import Any

from drydock.core.logging import get_logger
from drydock.core.paths import HomePaths
from drydock.utils.time import iso, utc_now

_logger = get_logger("core.events")

DEFAULT_MAX_BYTES = 50 * 1024 * 1024
DEFAULT_GENERATIONS = 3


class EventLog:
    """Writer and reader for one ``events.jsonl`` file."""

    def __init__(
        self,
        path: Path | None = None,
        *,
        max_bytes: int = DEFAULT_MAX_BYTES,
        generations: int = DEFAULT_GENERATIONS,
    ) -> None:
        self.path = path or HomePaths.resolve().events_file
        self.max_bytes = max_bytes
        self.generations = generations

    # ─── Writing ─────────────────────────────────────────────────────

    def emit(self, event_type: str, **fields: Any) -> dict[str, Any]:
        """Append one event record and return it."""
        now = utc_now()
        record: dict[str, Any] = {
            "ts": iso(now),
            "ts_epoch": int(now.timestamp()),
            "type": event_type,
            **fields,
        }
        self.append_raw(json.dumps(record, default=str))
        return record

    def append_raw(self, line: str) -> None:
        """Append an already-serialized record (used for aggregated remote events)."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = (line.rstrip("\n") + "\n").encode("utf-8")
        fd = os.open(self.path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o644)
        try:
            os.write(fd, data)
        finally:
            os.close(fd)

    def rotate_if_needed(self) -> bool:
        """Rotate the active file when it exceeds ``max_bytes``.

        Returns True when a rotation happened.
        """
        try:
            size = self.path.stat().st_size
        except FileNotFoundError:
            return False
        if size <= self.max_bytes:
            return False

        for i in range(self.generations - 1, 0, -1):
            src = self._generation(i)
            if src.exists():
                os.replace(src, self._generation(i + 1))
        os.replace(self.path, self._generation(1))
        _logger.info("events.rotated", path=str(self.path), size_bytes=size)
        return True

    def _generation(self, index: int) -> Path:
        return self.path.with_name(f"{self.path.name}.{index}")

    # ─── Reading ─────────────────────────────────────────────────────

    def line_count(self) -> int:
        try:
            with open(self.path, "rb") as f:
                return sum(1 for line in f if line.endswith(b"\n"))
        except FileNotFoundError:
            return 0

    def read_since(self, offset: int) -> list[str]:
        """Return raw lines after the first ``offset`` lines.

        A trailing line without its newline is still being written and is left out.
        """
        lines: list[str] = []
        try:
            with open(self.path, encoding="utf-8") as f:
                for index, line in enumerate(f):
                    if not line.endswith("\n"):
                        break
                    if index >= offset and line.strip():
                        lines.append(line.rstrip("\n"))
        except FileNotFoundError:
            return []
        return lines

    def iter_events(self, since_epoch: int | None = None) -> Iterator[dict[str, Any]]:
        """Yield parsed records, skipping malformed lines."""
        try:
            f = open(self.path, encoding="utf-8")
        except FileNotFoundError:
            return
        with f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    record = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if not isinstance(record, dict):
                    continue
                if since_epoch is not None and int(record.get("ts_epoch", 0)) < since_epoch:
                    continue
                yield record


__all__ = ["DEFAULT_GENERATIONS", "DEFAULT_MAX_BYTES", "EventLog"]
