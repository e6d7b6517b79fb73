"""Helpers for background ``asyncio.Task`` lifecycles."""

from __future__ import annotations

import asyncio
import contextlib
from typing import Any


def log_task_exception(
    task: asyncio.Task[Any],
    logger: Any,
    event: str,
    *,
    level: str = "error",
) -> BaseException | None:
    """Log the exception a finished task ended with, if any.

    Meant for ``add_done_callback`` handlers so failures in fire-and-forget
    tasks are not lost.  Returns the exception, or None for a clean or
    cancelled task.
    """
    if task.cancelled():
        return None
    exc = task.exception()
    if exc is not None:
        log_fn = getattr(logger, level, logger.error)
        log_fn(event, error=str(exc), task_name=task.get_name())
    return exc


async def cancel_and_wait(task: asyncio.Task[Any] | None, timeout: float = 5.0) -> None:
    """Cancel ``task`` and wait up to ``timeout`` seconds for it to unwind."""
    if task is None or task.done():
        return
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError, TimeoutError):
        await asyncio.wait_for(task, timeout=timeout)


__all__ = ["cancel_and_wait", "log_task_exception"]
