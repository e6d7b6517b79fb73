"""Self-supervision for the scheduler's run loop.

The watchdog restarts the loop when it exits without a shutdown request.
Restart ``k`` (0-based) waits ``min(initial * 2**k, max)`` seconds; after
``max_restarts`` restarts the watchdog gives up with
:class:`WatchdogExhaustedError`.

Before restarting, the state store is checked.  A corrupt document gets a
recovery pass instead of a plain restart; if recovery fails the
:class:`StateCorruptionError` propagates and the daemon exits.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from drydock.core.logging import get_logger
from drydock.daemon.config import WatchdogConfig
from drydock.exceptions import WatchdogExhaustedError
from drydock.state.base import StateStore

_logger = get_logger("daemon.watchdog")


@dataclass(frozen=True)
class WatchdogPolicy:
    max_restarts: int = 3
    initial_delay: float = 5.0
    max_delay: float = 300.0

    @classmethod
    def from_config(cls, config: WatchdogConfig) -> WatchdogPolicy:
        return cls(
            max_restarts=config.max_restarts,
            initial_delay=config.initial_delay_seconds,
            max_delay=config.max_delay_seconds,
        )

    def delay_for(self, restart: int) -> float:
        """Seconds to wait before restart number ``restart`` (0-based)."""
        return min(self.initial_delay * 2 ** min(restart, 32), self.max_delay)

    def delays(self) -> list[float]:
        return [self.delay_for(k) for k in range(self.max_restarts)]


class Watchdog:
    """Runs a loop coroutine and restarts it per :class:`WatchdogPolicy`.

    Args:
        policy: Restart budget and delays.
        store: State store checked (and recovered) before each restart.
        should_stop: Returns True once shutdown was requested.
        sleep: Injected for tests.
    """

    def __init__(
        self,
        policy: WatchdogPolicy,
        store: StateStore[Any],
        *,
        should_stop: Callable[[], bool],
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.policy = policy
        self.store = store
        self._should_stop = should_stop
        self._sleep = sleep
        self.restarts = 0

    async def run(
        self,
        loop_factory: Callable[[], Awaitable[None]],
        on_restart: Callable[[], Awaitable[None]] | None = None,
    ) -> None:
        while True:
            try:
                await loop_factory()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                _logger.error("watchdog.loop_crashed", error=str(e), error_type=type(e).__name__)
            else:
                if self._should_stop():
                    return
                _logger.warning("watchdog.loop_exited", restarts=self.restarts)

            if self._should_stop():
                return

            if self.restarts >= self.policy.max_restarts:
                _logger.error("watchdog.exhausted", restarts=self.restarts)
                raise WatchdogExhaustedError(
                    f"run loop failed {self.restarts + 1} times; giving up"
                )

            delay = self.policy.delay_for(self.restarts)
            self.restarts += 1
            _logger.info("watchdog.restart_scheduled", restart=self.restarts, delay_seconds=delay)
            await self._sleep(delay)

            if not self.store.check():
                _logger.warning("watchdog.state_corrupt")
                self.store.recover()

            if on_restart is not None:
                await on_restart()


__all__ = ["Watchdog", "WatchdogPolicy"]
