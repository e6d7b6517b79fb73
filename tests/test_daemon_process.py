"""Tests for drydock.daemon.process.

Covers PID file helpers, the core functions behind the daemon CLI, and
DaemonProcess.run with an injected scheduler.
"""

from __future__ import annotations

import os
import signal
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest
import typer

from drydock.core.events import EventLog
from drydock.core.paths import RepoPaths
from drydock.daemon.health import ExitCode
from drydock.daemon.process import (
    DaemonProcess,
    _write_pid,
    check_capacity,
    daemon_status,
    start_daemon,
    stop_daemon,
)
from drydock.daemon.scheduler import DaemonScheduler
from tests.helpers import FakeClock, FakeSupervisor, FakeTracker, FakeWorkspaces, write_daemon_config


# ─── PID File ─────────────────────────────────────────────────────────


class TestWritePid:
    def test_creates_file_and_parents(self, tmp_path: Path):
        """PID file is created with the current PID."""
        pid_file = tmp_path / "nested" / "daemon.pid"
        _write_pid(pid_file)
        assert int(pid_file.read_text()) == os.getpid()

    def test_overwrites_stale_file(self, tmp_path: Path):
        pid_file = tmp_path / "daemon.pid"
        pid_file.write_text("99999")
        _write_pid(pid_file)
        assert int(pid_file.read_text()) == os.getpid()

    def test_rejects_symlink(self, tmp_path: Path):
        target = tmp_path / "real.pid"
        target.write_text("99999")
        pid_file = tmp_path / "link.pid"
        pid_file.symlink_to(target)
        with pytest.raises(OSError, match="symlink"):
            _write_pid(pid_file)


# ─── Core Functions ───────────────────────────────────────────────────


class TestCoreFunctions:
    def test_start_refuses_when_running(self, repo: Path):
        pid_file = RepoPaths(repo).pid_file
        pid_file.parent.mkdir(parents=True)
        pid_file.write_text(str(os.getpid()))
        with pytest.raises(typer.Exit) as exc:
            start_daemon(repo)
        assert exc.value.exit_code == 1

    def test_start_missing_config_file(self, repo: Path, tmp_path: Path):
        with pytest.raises(typer.Exit):
            start_daemon(repo, config_file=tmp_path / "missing.yaml")

    def test_start_invalid_config(self, repo: Path):
        write_daemon_config(repo, max_parallel=0)
        with pytest.raises(typer.Exit):
            start_daemon(repo)

    def test_stop_when_not_running(self, repo: Path):
        pid_file = RepoPaths(repo).pid_file
        pid_file.parent.mkdir(parents=True)
        pid_file.write_text("4000000")
        with pytest.raises(typer.Exit) as exc:
            stop_daemon(repo)
        assert exc.value.exit_code == 1
        assert not pid_file.exists()

    def test_stop_signals_and_waits(self, repo: Path):
        pid_file = RepoPaths(repo).pid_file
        pid_file.parent.mkdir(parents=True)
        pid_file.write_text("4242")
        with (
            patch("drydock.daemon.process.pid_alive", return_value=True),
            patch("drydock.daemon.process.os.kill") as kill,
            patch("drydock.daemon.process._wait_for_exit", return_value=True),
        ):
            stop_daemon(repo)
        kill.assert_called_once_with(4242, 15)
        assert RepoPaths(repo).shutdown_flag.exists()

    def test_stop_escalates_to_sigkill(self, repo: Path):
        pid_file = RepoPaths(repo).pid_file
        pid_file.parent.mkdir(parents=True)
        pid_file.write_text("4242")
        with (
            patch("drydock.daemon.process.pid_alive", return_value=True),
            patch("drydock.daemon.process.os.kill") as kill,
            patch("drydock.daemon.process._wait_for_exit", return_value=False),
        ):
            stop_daemon(repo, timeout=0.1)
        assert [c.args for c in kill.call_args_list] == [(4242, 15), (4242, 9)]

    def test_status_of_idle_repo(self, repo: Path):
        status = daemon_status(repo)
        assert status["repo"] == str(repo.resolve())
        assert status["liveness"]["status"] == "stopped"
        assert status["readiness"]["capacity"] == "ok"
        assert status["active_jobs"] == []
        assert status["queued"] == []

    def test_check_capacity(self, repo: Path):
        assert check_capacity(repo) is ExitCode.OK


# ─── DaemonProcess ────────────────────────────────────────────────────


class TestDaemonProcessRun:
    def _scheduler(self, repo: Path, tmp_path: Path) -> DaemonScheduler:
        return DaemonScheduler(
            repo,
            tracker=FakeTracker(),
            supervisor=FakeSupervisor(),
            workspaces=FakeWorkspaces(tmp_path / "wt"),
            events=EventLog(tmp_path / "events.jsonl"),
            env={},
            clock=FakeClock(),
        )

    @pytest.mark.asyncio
    async def test_clean_shutdown(self, repo: Path, tmp_path: Path):
        scheduler = self._scheduler(repo, tmp_path)
        scheduler.request_shutdown()
        daemon = DaemonProcess(repo, scheduler_factory=lambda: scheduler)

        assert await daemon.run() == 0
        assert daemon.scheduler is scheduler
        assert not RepoPaths(repo).pid_file.exists()
        state = scheduler.store.load()
        assert state.pid is None
        assert state.started_at is not None

    @pytest.mark.asyncio
    async def test_watchdog_exhaustion_exits_1(self, repo: Path, tmp_path: Path):
        write_daemon_config(repo, watchdog={"max_restarts": 0})
        scheduler = self._scheduler(repo, tmp_path)
        scheduler.run_loop = AsyncMock(side_effect=RuntimeError("tracker exploded"))
        daemon = DaemonProcess(repo, scheduler_factory=lambda: scheduler)

        assert await daemon.run() == 1
        scheduler.run_loop.assert_awaited_once()
        assert not RepoPaths(repo).pid_file.exists()

    def test_signal_requests_shutdown_once(self, repo: Path, tmp_path: Path):
        scheduler = self._scheduler(repo, tmp_path)
        daemon = DaemonProcess(repo, scheduler_factory=lambda: scheduler)
        daemon._handle_signal(signal.SIGTERM, scheduler)
        daemon._handle_signal(signal.SIGINT, scheduler)
        assert scheduler.shutdown_requested

    @pytest.mark.asyncio
    async def test_sighup_reloads_config(self, repo: Path, tmp_path: Path):
        scheduler = self._scheduler(repo, tmp_path)
        daemon = DaemonProcess(repo, scheduler_factory=lambda: scheduler)
        write_daemon_config(repo, max_parallel=5)
        await daemon._handle_sighup(scheduler)
        assert scheduler.config.max_parallel == 5
