"""Process supervision for job agents.

Each agent runs as the leader of its own session (``start_new_session``),
so the whole tree it spawns can be signalled with one ``killpg``.  The
supervisor keeps the ``asyncio.subprocess.Process`` handle for every job it
started; jobs adopted after a restart are tracked by PID only, which means
their exit code is unknown once they finish.
"""

from __future__ import annotations

import asyncio
import os
import signal as _signal
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Protocol, runtime_checkable

import psutil

from drydock.core.logging import get_logger
from drydock.exceptions import SpawnError

_logger = get_logger("daemon.supervisor")


@runtime_checkable
class ProcessSupervisor(Protocol):
    """What the scheduler needs to start, observe, and stop job processes."""

    async def spawn(
        self,
        argv: Sequence[str],
        *,
        cwd: Path,
        log_path: Path,
        env: Mapping[str, str] | None = None,
    ) -> int:
        """Start ``argv`` and return its PID.  Raises SpawnError."""
        ...

    def signal(self, pid: int, sig: int) -> bool: ...

    async def wait(self, pid: int, timeout: float) -> int | None: ...

    def is_alive(self, pid: int) -> bool: ...

    def exit_code(self, pid: int) -> int | None: ...

    def release(self, pid: int) -> None: ...

    async def terminate_tree(self, pid: int, grace: float) -> None: ...


def _pid_alive(pid: int) -> bool:
    try:
        proc = psutil.Process(pid)
        return proc.status() != psutil.STATUS_ZOMBIE
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return False


class SubprocessSupervisor:
    """ProcessSupervisor built on asyncio subprocesses and psutil."""

    def __init__(self) -> None:
        self._procs: dict[int, asyncio.subprocess.Process] = {}

    async def spawn(
        self,
        argv: Sequence[str],
        *,
        cwd: Path,
        log_path: Path,
        env: Mapping[str, str] | None = None,
    ) -> int:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        child_env = {**os.environ, **(env or {})}
        try:
            with open(log_path, "ab") as log:
                proc = await asyncio.create_subprocess_exec(
                    *argv,
                    cwd=cwd,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=log,
                    stderr=asyncio.subprocess.STDOUT,
                    env=child_env,
                    start_new_session=True,
                )
        except OSError as e:
            raise SpawnError(f"cannot start {argv[0]}: {e}") from e

        self._procs[proc.pid] = proc
        _logger.debug("supervisor.spawned", pid=proc.pid, argv0=argv[0], log=str(log_path))
        return proc.pid

    def signal(self, pid: int, sig: int) -> bool:
        try:
            os.killpg(pid, sig)
            return True
        except ProcessLookupError:
            return False
        except PermissionError:
            _logger.warning("supervisor.signal_denied", pid=pid, signal=_signal.Signals(sig).name)
            return False

    async def wait(self, pid: int, timeout: float) -> int | None:
        """Wait for ``pid`` to exit; returns its exit code when known."""
        proc = self._procs.get(pid)
        if proc is not None:
            try:
                return await asyncio.wait_for(proc.wait(), timeout)
            except TimeoutError:
                return None
        try:
            await asyncio.to_thread(psutil.Process(pid).wait, timeout)
        except psutil.NoSuchProcess:
            pass
        except psutil.TimeoutExpired:
            pass
        return None

    def is_alive(self, pid: int) -> bool:
        proc = self._procs.get(pid)
        if proc is not None:
            return proc.returncode is None
        return _pid_alive(pid)

    def exit_code(self, pid: int) -> int | None:
        proc = self._procs.get(pid)
        return None if proc is None else proc.returncode

    def release(self, pid: int) -> None:
        """Forget a reaped process."""
        self._procs.pop(pid, None)

    async def terminate_tree(self, pid: int, grace: float) -> None:
        """SIGTERM the job's process group, then SIGKILL whatever outlives ``grace``."""
        try:
            root = psutil.Process(pid)
            tree = [root, *root.children(recursive=True)]
        except psutil.NoSuchProcess:
            return

        if not self.signal(pid, _signal.SIGTERM):
            for proc in tree:
                try:
                    proc.terminate()
                except psutil.NoSuchProcess:
                    continue

        _, alive = await asyncio.to_thread(psutil.wait_procs, tree, grace)
        for proc in alive:
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                continue
        if alive:
            _logger.warning(
                "supervisor.killed_survivors",
                pid=pid,
                survivors=[p.pid for p in alive],
            )

        held = self._procs.get(pid)
        if held is not None and held.returncode is None:
            try:
                await asyncio.wait_for(held.wait(), 1.0)
            except TimeoutError:
                pass


__all__ = ["ProcessSupervisor", "SubprocessSupervisor"]
