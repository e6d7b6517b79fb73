"""Structured logging for drydock.

All components log through structlog with a component name and dotted
snake-case event names::

    from drydock.core.logging import get_logger

    _logger = get_logger("daemon.scheduler")
    _logger.info("scheduler.job_admitted", ref=42, lane="normal")

Long-running processes call :func:`configure_logging` once at startup.
Console output is meant for foreground runs, JSON for detached daemons whose
output lands in a rotated (and gzip-compressed) file.

Scope-wide fields (repository, job, machine) can be attached with
:func:`with_context` and are merged into every event emitted in that scope.
"""

from __future__ import annotations

import gzip
import logging
import os
import shutil
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import asdict, dataclass
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Literal

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

# Field names that must never reach a log sink in clear text
SENSITIVE_PATTERNS = frozenset({
    "api_key",
    "apikey",
    "token",
    "secret",
    "password",
    "credential",
    "authorization",
    "bearer",
})

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR"]
LogFormat = Literal["json", "console", "both"]


class CompressingRotatingFileHandler(RotatingFileHandler):
    """Rotating handler that gzips rotated generations (``daemon.log.1.gz``)."""

    def __init__(
        self,
        filename: str | Path,
        maxBytes: int = 0,
        backupCount: int = 0,
        encoding: str | None = "utf-8",
        compress_level: int = 9,
    ) -> None:
        self.compress_level = compress_level
        super().__init__(filename, maxBytes=maxBytes, backupCount=backupCount, encoding=encoding)

    def _generation(self, index: int, suffix: str = ".gz") -> Path:
        return Path(f"{self.baseFilename}.{index}{suffix}")

    def _compress_into(self, target: Path) -> bool:
        try:
            with open(self.baseFilename, "rb") as src, gzip.open(
                target, "wb", compresslevel=self.compress_level
            ) as dst:
                shutil.copyfileobj(src, dst)
        except OSError:
            target.unlink(missing_ok=True)
            return False
        os.remove(self.baseFilename)
        return True

    def doRollover(self) -> None:
        if self.stream:
            self.stream.close()
            self.stream = None  # type: ignore[assignment]

        for i in range(self.backupCount - 1, 0, -1):
            if self._generation(i).exists():
                os.replace(self._generation(i), self._generation(i + 1))

        if os.path.exists(self.baseFilename) and not self._compress_into(self._generation(1)):
            # Disk trouble: an uncompressed generation beats losing the file.
            os.replace(self.baseFilename, self._generation(1, suffix=""))

        self.stream = self._open()


# ─── Scope context ────────────────────────────────────────────────────


@dataclass(frozen=True)
class ExecutionContext:
    """Fields merged into every event logged inside a :func:`with_context` block."""

    repo: str | None = None
    job_id: str | None = None
    machine: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


_current_context: ContextVar[ExecutionContext | None] = ContextVar(
    "drydock_context", default=None,
)


def get_current_context() -> ExecutionContext | None:
    return _current_context.get()


@contextmanager
def with_context(ctx: ExecutionContext) -> Iterator[ExecutionContext]:
    token = _current_context.set(ctx)
    try:
        yield ctx
    finally:
        _current_context.reset(token)


# ─── Processors ───────────────────────────────────────────────────────


def _is_sensitive(key: str) -> bool:
    lowered = key.lower()
    return any(pattern in lowered for pattern in SENSITIVE_PATTERNS)


def _sanitize_event_dict(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Redact sensitive values, one level into nested dicts."""
    for key, value in list(event_dict.items()):
        if _is_sensitive(key):
            event_dict[key] = "[REDACTED]"
        elif isinstance(value, dict):
            event_dict[key] = {
                k: "[REDACTED]" if _is_sensitive(k) else v for k, v in value.items()
            }
    return event_dict


def _add_context(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Merge the active ExecutionContext; explicit event fields win."""
    ctx = get_current_context()
    if ctx is not None:
        for key, value in ctx.to_dict().items():
            event_dict.setdefault(key, value)
    return event_dict


def _processors(renderer: Processor) -> list[Processor]:
    return [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        _sanitize_event_dict,
        _add_context,
        structlog.processors.TimeStamper(fmt="iso", utc=True, key="timestamp"),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        renderer,
    ]


# ─── Logger wrapper ───────────────────────────────────────────────────


class DrydockLogger:
    """Component-scoped wrapper around a structlog bound logger.

    The structlog logger is looked up on every call, so module-level loggers
    created at import time honour :func:`configure_logging` calls made later.
    """

    def __init__(self, component: str, **initial_context: Any) -> None:
        self._context: dict[str, Any] = {"component": component, **initial_context}

    @property
    def component(self) -> str:
        return self._context["component"]

    def _with(self, context: dict[str, Any]) -> DrydockLogger:
        logger = DrydockLogger(self.component)
        logger._context = context
        return logger

    def bind(self, **context: Any) -> DrydockLogger:
        return self._with({**self._context, **context})

    def unbind(self, *keys: str) -> DrydockLogger:
        return self._with({k: v for k, v in self._context.items() if k not in keys or k == "component"})

    def _emit(self, method: str, event: str, fields: dict[str, Any]) -> None:
        bound = structlog.get_logger().bind(**self._context)
        getattr(bound, method)(event, **fields)

    def debug(self, event: str, **kw: Any) -> None:
        self._emit("debug", event, kw)

    def info(self, event: str, **kw: Any) -> None:
        self._emit("info", event, kw)

    def warning(self, event: str, **kw: Any) -> None:
        self._emit("warning", event, kw)

    def error(self, event: str, **kw: Any) -> None:
        self._emit("error", event, kw)

    def critical(self, event: str, **kw: Any) -> None:
        self._emit("critical", event, kw)

    def exception(self, event: str, **kw: Any) -> None:
        """Error level plus the active exception's traceback."""
        self._emit("exception", event, kw)


# ─── Configuration ────────────────────────────────────────────────────


def _handlers(
    format: LogFormat,  # noqa: A002
    file_path: Path | None,
    max_bytes: int,
    backups: int,
) -> list[logging.Handler]:
    handlers: list[logging.Handler] = []
    if format != "json":
        handlers.append(logging.StreamHandler(sys.stderr))
    if format == "console":
        return handlers
    if file_path is None:
        handlers.append(logging.StreamHandler(sys.stdout))
    else:
        file_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(CompressingRotatingFileHandler(file_path, maxBytes=max_bytes, backupCount=backups))
    return handlers


def configure_logging(
    level: LogLevel = "INFO",
    format: LogFormat = "console",  # noqa: A002
    file_path: Path | None = None,
    max_file_size_mb: int = 50,
    backup_count: int = 5,
) -> None:
    """Install root handlers and the structlog processor chain.

    Args:
        level: Minimum level to emit.
        format: ``console`` renders for humans on stderr; ``json`` writes one
            JSON object per line to ``file_path`` (stdout without one);
            ``both`` sends console output to stderr and JSON to the file.
        file_path: Log file for ``json``/``both``.
        max_file_size_mb: Size at which the file rotates.
        backup_count: Compressed generations to keep.

    Raises:
        ValueError: ``format="both"`` without a ``file_path``.
    """
    if format == "both" and file_path is None:
        raise ValueError("file_path is required when format='both'")

    log_level = getattr(logging, level)
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
    root.setLevel(log_level)
    for handler in _handlers(format, file_path, max_file_size_mb * 1024 * 1024, backup_count):
        handler.setLevel(log_level)
        root.addHandler(handler)

    renderer: Processor = (
        structlog.processors.JSONRenderer()
        if format == "json"
        else structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
    )
    structlog.configure(
        processors=_processors(renderer),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )


def get_logger(component: str, **initial_context: Any) -> DrydockLogger:
    """Return a logger bound to ``component`` (e.g. ``"fleet.rebalancer"``)."""
    return DrydockLogger(component, **initial_context)


__all__ = [
    "CompressingRotatingFileHandler",
    "DrydockLogger",
    "ExecutionContext",
    "SENSITIVE_PATTERNS",
    "configure_logging",
    "get_current_context",
    "get_logger",
    "with_context",
]
