"""Tests for drydock.daemon.watchdog."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from drydock.core.models import SchedulerState
from drydock.daemon.config import WatchdogConfig
from drydock.daemon.watchdog import Watchdog, WatchdogPolicy
from drydock.exceptions import WatchdogExhaustedError
from drydock.state.json_store import JsonStateStore


def _store(healthy: bool = True) -> MagicMock:
    store = MagicMock()
    store.check.return_value = healthy
    return store


class TestWatchdogPolicy:
    def test_default_delays_double(self):
        assert WatchdogPolicy().delays() == [5.0, 10.0, 20.0]

    def test_delay_capped(self):
        policy = WatchdogPolicy(max_restarts=10, initial_delay=5, max_delay=300)
        assert policy.delay_for(6) == 300
        assert policy.delay_for(500) == 300

    def test_from_config(self):
        config = WatchdogConfig(max_restarts=1, initial_delay_seconds=2, max_delay_seconds=3)
        assert WatchdogPolicy.from_config(config) == WatchdogPolicy(1, 2.0, 3.0)


class TestWatchdogRun:
    @pytest.mark.asyncio
    async def test_clean_exit_on_shutdown(self):
        sleep = AsyncMock()
        watchdog = Watchdog(WatchdogPolicy(), _store(), should_stop=lambda: True, sleep=sleep)
        loop = AsyncMock()
        await watchdog.run(loop)
        loop.assert_awaited_once()
        sleep.assert_not_awaited()
        assert watchdog.restarts == 0

    @pytest.mark.asyncio
    async def test_exhausts_after_max_restarts(self):
        """Three restarts with 5/10/20s delays, then the fourth crash is fatal."""
        sleep = AsyncMock()
        watchdog = Watchdog(WatchdogPolicy(), _store(), should_stop=lambda: False, sleep=sleep)
        loop = AsyncMock(side_effect=RuntimeError("boom"))

        with pytest.raises(WatchdogExhaustedError):
            await watchdog.run(loop)

        assert loop.await_count == 4
        assert [c.args[0] for c in sleep.await_args_list] == [5.0, 10.0, 20.0]

    @pytest.mark.asyncio
    async def test_restart_counter_never_resets(self):
        """A run that recovers and later crashes again still spends the same budget."""
        outcomes = iter([RuntimeError("a"), None, RuntimeError("b"), RuntimeError("c")])

        async def loop() -> None:
            outcome = next(outcomes)
            if outcome is not None:
                raise outcome

        watchdog = Watchdog(
            WatchdogPolicy(max_restarts=3),
            _store(),
            should_stop=lambda: False,
            sleep=AsyncMock(),
        )
        with pytest.raises(WatchdogExhaustedError):
            await watchdog.run(loop)
        assert watchdog.restarts == 3

    @pytest.mark.asyncio
    async def test_corrupt_store_recovered_before_restart(self):
        store = _store(healthy=False)
        stopped = iter([False, False, True])
        on_restart = AsyncMock()
        watchdog = Watchdog(
            WatchdogPolicy(),
            store,
            should_stop=lambda: next(stopped),
            sleep=AsyncMock(),
        )
        loop = AsyncMock(side_effect=[RuntimeError("corrupt"), None])

        await watchdog.run(loop, on_restart=on_restart)

        store.recover.assert_called_once()
        on_restart.assert_awaited_once()
        assert watchdog.restarts == 1

    @pytest.mark.asyncio
    async def test_undecodable_state_file_recovered(self, tmp_path: Path):
        store = JsonStateStore(tmp_path / "daemon-state.json", SchedulerState)
        store.path.write_bytes(b'{"version": 1, "pid": \xff\xfe}')
        stopped = iter([False, True])
        loads = []

        async def loop() -> None:
            loads.append(store.load())

        watchdog = Watchdog(
            WatchdogPolicy(),
            store,
            should_stop=lambda: next(stopped),
            sleep=AsyncMock(),
        )
        await watchdog.run(loop)

        assert watchdog.restarts == 1
        assert loads == [SchedulerState()]
        assert list(tmp_path.glob("daemon-state.json.corrupt-*"))

    @pytest.mark.asyncio
    async def test_shutdown_during_crash_does_not_restart(self):
        sleep = AsyncMock()
        watchdog = Watchdog(WatchdogPolicy(), _store(), should_stop=lambda: True, sleep=sleep)
        await watchdog.run(AsyncMock(side_effect=RuntimeError("late")))
        sleep.assert_not_awaited()
