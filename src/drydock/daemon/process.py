"""Repository daemon process.

Long-running service that runs one :class:`DaemonScheduler` under a
:class:`Watchdog`.  Provides the core functions behind ``drydock daemon
start/stop/status/check-capacity``; the CLI wrappers live in
``cli/commands/daemon.py``.
"""

from __future__ import annotations

import asyncio
import fcntl
import os
import signal
import sys
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

import typer

from drydock.core.logging import ExecutionContext, configure_logging, get_logger, with_context
from drydock.core.paths import RepoPaths
from drydock.daemon.config import SchedulerConfig, resolve_scheduler_config
from drydock.daemon.health import ExitCode, HealthChecker, pid_alive, read_pid
from drydock.daemon.scheduler import DaemonScheduler
from drydock.daemon.supervisor import SubprocessSupervisor
from drydock.daemon.tasks import cancel_and_wait, log_task_exception
from drydock.daemon.tracker import GhTracker
from drydock.daemon.watchdog import Watchdog, WatchdogPolicy
from drydock.daemon.workspace import GitWorktreeManager
from drydock.exceptions import (
    ConfigError,
    DaemonAlreadyRunningError,
    StateCorruptionError,
    WatchdogExhaustedError,
)

_logger = get_logger("daemon.process")

STOP_TIMEOUT_SECONDS = 30.0

# Held for the daemon's lifetime so a second start on the same repo fails.
_pid_lock_fd: int | None = None


# ─── Core Functions (used by cli/commands/daemon.py) ──────────────────


def _load_config(repo: Path, config_file: Path | None) -> SchedulerConfig:
    try:
        return resolve_scheduler_config(repo, config_file)
    except ConfigError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from None


def start_daemon(
    repo: Path,
    config_file: Path | None = None,
    detach: bool = False,
    log_level: str | None = None,
) -> int:
    """Start the scheduler for ``repo`` and block until it stops.

    Returns the process exit code: 0 after a requested shutdown, 1 when the
    scheduler hit a fatal error.
    """
    repo = repo.resolve()
    paths = RepoPaths(repo)
    if config_file is not None and not config_file.exists():
        typer.echo(f"Error: config file not found: {config_file}", err=True)
        raise typer.Exit(1)
    config = _load_config(repo, config_file)

    pid = read_pid(paths.pid_file)
    if pid is not None and pid_alive(pid):
        typer.echo(f"drydock daemon is already running for {repo} (PID {pid})")
        raise typer.Exit(1)

    level = (log_level or config.log_level).upper()
    if detach:
        configure_logging(
            level=level,  # type: ignore[arg-type]
            format="json",
            file_path=config.log_file or paths.daemon_log_file,
        )
        _daemonize()
    elif config.log_file is not None:
        configure_logging(level=level, format="both", file_path=config.log_file)  # type: ignore[arg-type]
    else:
        configure_logging(level=level, format="console")  # type: ignore[arg-type]

    _logger.info("daemon.starting", repo=str(repo), pid=os.getpid(), detached=detach)
    daemon = DaemonProcess(repo, config_file=config_file)
    with with_context(ExecutionContext(repo=repo.name)):
        return asyncio.run(daemon.run())


def stop_daemon(repo: Path, force: bool = False, timeout: float = STOP_TIMEOUT_SECONDS) -> None:
    """Ask the daemon for ``repo`` to stop and wait for it to exit."""
    paths = RepoPaths(repo.resolve())
    pid = read_pid(paths.pid_file)
    if pid is None or not pid_alive(pid):
        typer.echo("drydock daemon is not running")
        paths.pid_file.unlink(missing_ok=True)
        raise typer.Exit(1)

    paths.root.mkdir(parents=True, exist_ok=True)
    paths.shutdown_flag.touch()
    sig = signal.SIGKILL if force else signal.SIGTERM
    os.kill(pid, sig)
    typer.echo(f"Sent {'SIGKILL' if force else 'SIGTERM'} to drydock daemon (PID {pid})")

    if _wait_for_exit(pid, timeout):
        typer.echo("drydock daemon stopped")
        return
    os.kill(pid, signal.SIGKILL)
    _logger.warning("daemon.stop_escalated", pid=pid, timeout_seconds=timeout)
    typer.echo(f"drydock daemon did not exit within {timeout:.0f}s; sent SIGKILL")


def daemon_status(repo: Path) -> dict[str, Any]:
    """Liveness, readiness, and active jobs for ``repo``."""
    repo = repo.resolve()
    checker = HealthChecker(repo, _load_config(repo, None))
    state = checker.store.load()
    return {
        "repo": str(repo),
        "liveness": checker.liveness(),
        "readiness": checker.readiness(),
        "active_jobs": [
            {
                "issue": job.external_ref,
                "title": job.title,
                "attempt": job.attempt,
                "priority": job.priority.value,
                "pid": job.process_handle,
                "started_at": job.started_at.isoformat() if job.started_at else None,
            }
            for job in state.active_jobs
        ],
        "queued": [job.external_ref for job in state.queued],
    }


def check_capacity(repo: Path) -> ExitCode:
    repo = repo.resolve()
    return HealthChecker(repo, _load_config(repo, None)).check_capacity()


# ─── DaemonProcess ────────────────────────────────────────────────────


class DaemonProcess:
    """One repository daemon: PID file, signals, scheduler, and watchdog."""

    def __init__(
        self,
        repo: Path,
        *,
        config_file: Path | None = None,
        scheduler_factory: Callable[[], DaemonScheduler] | None = None,
    ) -> None:
        self.repo = repo
        self.paths = RepoPaths(repo)
        self._config_file = config_file
        self._scheduler_factory = scheduler_factory or self._default_scheduler
        self._signal_received = False
        self._signal_tasks: list[asyncio.Task[Any]] = []
        self.scheduler: DaemonScheduler | None = None

    def _default_scheduler(self) -> DaemonScheduler:
        return DaemonScheduler(
            self.repo,
            tracker=GhTracker(self.repo),
            supervisor=SubprocessSupervisor(),
            workspaces=GitWorktreeManager(self.repo),
            config_file=self._config_file,
        )

    async def run(self) -> int:
        """Boot, run until shutdown, clean up.  Returns the exit code."""
        _write_pid(self.paths.pid_file)
        try:
            scheduler = self._scheduler_factory()
            self.scheduler = scheduler
            self._install_signal_handlers(scheduler)

            await scheduler.recover()
            watchdog = Watchdog(
                WatchdogPolicy.from_config(scheduler.config.watchdog),
                scheduler.store,
                should_stop=lambda: scheduler.shutdown_requested,
            )
            _logger.info(
                "daemon.started",
                pid=os.getpid(),
                max_parallel=scheduler.config.max_parallel,
                watch_label=scheduler.config.watch_label,
            )
            exit_code = 0
            try:
                await watchdog.run(scheduler.run_loop, on_restart=scheduler.recover)
            except (WatchdogExhaustedError, StateCorruptionError) as e:
                _logger.error("daemon.fatal", error=str(e), error_type=type(e).__name__)
                exit_code = 1
            finally:
                await scheduler.shutdown()
                for task in self._signal_tasks:
                    await cancel_and_wait(task)

            _logger.info("daemon.stopped", exit_code=exit_code)
            return exit_code
        finally:
            self.paths.pid_file.unlink(missing_ok=True)

    def _install_signal_handlers(self, scheduler: DaemonScheduler) -> None:
        loop = asyncio.get_running_loop()

        def _make_shutdown_callback(s: signal.Signals) -> Callable[[], None]:
            def _cb() -> None:
                self._handle_signal(s, scheduler)
            return _cb

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, _make_shutdown_callback(sig))

        def _sighup_callback() -> None:
            self._track_signal_task(asyncio.create_task(self._handle_sighup(scheduler)))

        loop.add_signal_handler(signal.SIGHUP, _sighup_callback)

    def _handle_signal(self, sig: signal.Signals, scheduler: DaemonScheduler) -> None:
        if self._signal_received:
            _logger.info("daemon.signal_ignored_already_shutting_down", signal=sig.name)
            return
        self._signal_received = True
        _logger.info("daemon.signal_received", signal=sig.name)
        scheduler.request_shutdown()

    def _track_signal_task(self, task: asyncio.Task[Any]) -> None:
        self._signal_tasks.append(task)
        task.add_done_callback(self._on_signal_task_done)

    def _on_signal_task_done(self, task: asyncio.Task[Any]) -> None:
        self._signal_tasks = [t for t in self._signal_tasks if not t.done()]
        log_task_exception(task, _logger, "daemon.signal_task_failed")

    async def _handle_sighup(self, scheduler: DaemonScheduler) -> None:
        """Re-resolve config now and wake the loop for an immediate cycle."""
        old_level = scheduler.config.log_level
        _logger.info("daemon.sighup_reload_start")
        scheduler.request_reload()
        new = scheduler.reload_config()
        if new.log_level != old_level:
            configure_logging(
                level=new.log_level.upper(),  # type: ignore[arg-type]
                format="json" if new.log_file else "console",
                file_path=new.log_file,
            )
            _logger.info("daemon.sighup_log_level_changed", old_level=old_level, new_level=new.log_level)
        _logger.info("daemon.sighup_reload_complete", max_parallel=new.max_parallel)


# ─── Helpers ──────────────────────────────────────────────────────────


def _wait_for_exit(pid: int, timeout: float, interval: float = 0.5) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if not pid_alive(pid):
            return True
        time.sleep(interval)
    return not pid_alive(pid)


def _write_pid(pid_file: Path) -> None:
    """Write our PID atomically and hold a flock on it for the process lifetime.

    Raises:
        DaemonAlreadyRunningError: Another daemon holds the lock.
    """
    pid_file.parent.mkdir(parents=True, exist_ok=True)
    if pid_file.is_symlink():
        raise OSError(f"PID file is a symlink: {pid_file}")

    tmp = pid_file.with_suffix(".tmp")
    tmp.write_text(str(os.getpid()))
    tmp.rename(pid_file)

    try:
        fd = os.open(str(pid_file), os.O_RDONLY)
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        global _pid_lock_fd
        _pid_lock_fd = fd
    except OSError as exc:
        raise DaemonAlreadyRunningError(
            f"cannot lock PID file {pid_file}: {exc}; another daemon may be starting"
        ) from exc


def _daemonize() -> None:
    """Double-fork to detach from the terminal."""
    pid = os.fork()
    if pid > 0:
        sys.exit(0)

    os.setsid()

    pid = os.fork()
    if pid > 0:
        sys.exit(0)

    devnull = os.open(os.devnull, os.O_RDWR)
    os.dup2(devnull, 0)
    os.dup2(devnull, 1)
    os.dup2(devnull, 2)
    os.close(devnull)

    _logger.info("daemon.daemonized", pid=os.getpid(), sid=os.getsid(0))


__all__ = [
    "DaemonProcess",
    "check_capacity",
    "daemon_status",
    "start_daemon",
    "stop_daemon",
]
