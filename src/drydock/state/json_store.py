"""JSON file state store.

Each document is one JSON file validated against a pydantic model.  Writes
go to a temp file in the same directory, are fsynced, then renamed over the
target, so a concurrent reader sees either the old or the new document and
never a partial one.

Cross-process writers serialize on an advisory ``flock`` of ``<file>.lock``
with a bounded wait.  When the wait runs out the writer logs and carries on
without the lock: every write is a full recomputation, so a lost race costs
at most one stale cycle, while a stuck lock holder would otherwise stall the
daemon indefinitely.
"""

from __future__ import annotations

import fcntl
import json
import os
import tempfile
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generic

from pydantic import ValidationError

from drydock.core.logging import get_logger
from drydock.exceptions import StateCorruptionError
from drydock.state.base import M, StateStore
from drydock.utils.time import epoch_now

_logger = get_logger("state.json_store")

_LOCK_POLL_INTERVAL = 0.05


def atomic_write_text(path: Path, text: str) -> None:
    """Replace ``path`` with ``text`` via temp file + fsync + rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def atomic_write_json(path: Path, data: Any) -> None:
    atomic_write_text(path, json.dumps(data, indent=2, default=str) + "\n")


@contextmanager
def advisory_lock(path: Path, timeout: float = 5.0) -> Iterator[bool]:
    """Hold an exclusive flock on ``<path>.lock`` for the block.

    Yields True when the lock was acquired and False when ``timeout``
    elapsed first; the block runs either way.
    """
    lock_path = path.with_name(f"{path.name}.lock")
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(lock_path, os.O_RDWR | os.O_CREAT, 0o644)
    acquired = False
    try:
        deadline = time.monotonic() + timeout
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                acquired = True
                break
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    break
                time.sleep(_LOCK_POLL_INTERVAL)
        if not acquired:
            _logger.warning(
                "state.lock_timeout",
                path=str(path),
                timeout_seconds=timeout,
                message="proceeding without lock",
            )
        yield acquired
    finally:
        if acquired:
            fcntl.flock(fd, fcntl.LOCK_UN)
        os.close(fd)


class JsonStateStore(StateStore[M], Generic[M]):
    """State store backed by a single JSON file.

    Args:
        path: Location of the JSON document.
        model: Pydantic model class the document validates against.
        lock_timeout: Seconds to wait for the advisory lock in ``update``.
    """

    def __init__(self, path: Path, model: type[M], *, lock_timeout: float = 5.0) -> None:
        self.path = Path(path)
        self.model = model
        self.lock_timeout = lock_timeout

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> M:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return self.model()
        except UnicodeDecodeError as e:
            raise StateCorruptionError(f"unreadable state file {self.path}: {e}") from e
        try:
            return self.model.model_validate_json(raw)
        except ValidationError as e:
            raise StateCorruptionError(f"unreadable state file {self.path}: {e}") from e

    def save(self, state: M) -> None:
        atomic_write_text(self.path, state.model_dump_json(indent=2) + "\n")

    def update(self, mutate: Callable[[M], None]) -> M:
        with advisory_lock(self.path, self.lock_timeout):
            state = self.load()
            mutate(state)
            self.save(state)
        return state

    def check(self) -> bool:
        try:
            self.load()
        except StateCorruptionError:
            return False
        return True

    def recover(self) -> M:
        """Move the corrupt file aside and keep every field that still validates."""
        salvaged: dict[str, Any] = {}
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            raw = {}
        except (json.JSONDecodeError, UnicodeDecodeError):
            raw = {}

        if isinstance(raw, dict):
            for key, value in raw.items():
                if key not in self.model.model_fields:
                    continue
                try:
                    self.model.model_validate({key: value})
                except ValidationError:
                    _logger.warning("state.recover_dropped_field", path=str(self.path), field=key)
                    continue
                salvaged[key] = value

        if self.path.exists():
            backup = self.path.with_name(f"{self.path.name}.corrupt-{epoch_now()}")
            os.replace(self.path, backup)
            _logger.warning("state.corrupt_file_moved", path=str(self.path), backup=str(backup))

        try:
            state = self.model.model_validate(salvaged)
            self.save(state)
        except (ValidationError, OSError) as e:
            raise StateCorruptionError(f"recovery of {self.path} failed: {e}") from e

        _logger.info(
            "state.recovered",
            path=str(self.path),
            kept_fields=sorted(salvaged),
        )
        return state


__all__ = ["JsonStateStore", "advisory_lock", "atomic_write_json", "atomic_write_text"]
