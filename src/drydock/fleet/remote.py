"""Remote channel to registered machines.

The allocation and health algorithms only see :class:`RemoteChannel`.
:class:`SshChannel` implements it with one ``ssh`` invocation per call
(bounded by ``asyncio.wait_for``); :class:`LocalChannel` reads the same
files directly when the machine is this host.

Remote layout, relative to a machine's ``remote_path`` (its repository
working copy) and the remote user's home::

    {remote_path}/.drydock/daemon-state.json   scheduler state (demand)
    {remote_path}/.drydock/fleet-limit.json    allocation pushed here
    ~/.drydock/machine-heartbeat.json          liveness ({"ts_epoch": ...})
    ~/.drydock/events.jsonl                    event log tailed by offset
"""

from __future__ import annotations

import asyncio
import json
import shlex
import socket
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from drydock.core.events import EventLog
from drydock.core.logging import get_logger
from drydock.core.paths import REPO_DIR_NAME, HomePaths, RepoPaths
from drydock.exceptions import RemoteError
from drydock.fleet.config import MachineConfig
from drydock.state.json_store import atomic_write_json
from drydock.utils.time import epoch_now, iso, utc_now

_logger = get_logger("fleet.remote")

LOCAL_HOSTS = frozenset({"localhost", "127.0.0.1", "::1"})

SSH_OPTIONS = (
    "-o", "ConnectTimeout=5",
    "-o", "BatchMode=yes",
    "-o", "StrictHostKeyChecking=accept-new",
)

_REMOTE_HOME_DIR = "~/.drydock"


def is_localhost(host: str) -> bool:
    return host in LOCAL_HOSTS or host == socket.gethostname()


@dataclass(frozen=True)
class LivenessRecord:
    """A machine's last heartbeat."""

    ts_epoch: int

    def age(self, now_epoch: int | None = None) -> int:
        return max((now_epoch if now_epoch is not None else epoch_now()) - self.ts_epoch, 0)


@dataclass(frozen=True)
class MachineDemand:
    active: int = 0
    queued: int = 0

    @property
    def demand(self) -> int:
        return self.active + self.queued


@dataclass(frozen=True)
class EventBatch:
    lines: list[str] = field(default_factory=list)
    next_offset: int = 0


@runtime_checkable
class RemoteChannel(Protocol):
    async def probe_health(self, machine: MachineConfig) -> LivenessRecord | None: ...

    async def query_demand(self, machine: MachineConfig) -> MachineDemand: ...

    async def push_allocation(self, machine: MachineConfig, max_parallel: int) -> None: ...

    async def fetch_events_since(self, machine: MachineConfig, offset: int) -> EventBatch: ...


# ─── Parsing shared by both channels ──────────────────────────────────


def parse_liveness(text: str) -> LivenessRecord | None:
    text = text.strip()
    if not text:
        return None
    try:
        data = json.loads(text)
        return LivenessRecord(ts_epoch=int(data["ts_epoch"]))
    except (json.JSONDecodeError, KeyError, TypeError, ValueError):
        return None


def parse_demand(text: str) -> MachineDemand:
    """Count active and queued jobs in a (possibly foreign-version) state file."""
    try:
        data = json.loads(text) if text.strip() else {}
    except json.JSONDecodeError:
        data = {}
    if not isinstance(data, dict):
        data = {}
    active = data.get("active_jobs") or []
    queued = data.get("queued") or []
    return MachineDemand(
        active=len(active) if isinstance(active, list) else 0,
        queued=len(queued) if isinstance(queued, list) else 0,
    )


def limit_document(max_parallel: int) -> dict[str, Any]:
    return {"max_parallel": max_parallel, "updated_at": iso(utc_now())}


def batch_from_tail(total: int, offset: int, lines: list[str]) -> EventBatch:
    """Build the batch for a log of ``total`` lines read after ``offset``.

    A log shorter than ``offset`` was rotated; the lines then start at 0.
    Only the ``total - start`` newline-terminated lines are consumed.
    """
    start = 0 if total < offset else offset
    # wc -l skips an unterminated last line; leave it for the next fetch
    complete = lines[: max(total - start, 0)]
    kept = [line for line in complete if line.strip()]
    return EventBatch(lines=kept, next_offset=start + len(complete))


# ─── SSH ──────────────────────────────────────────────────────────────


def _shell_path(path: str) -> str:
    """Quote a remote path, leaving a leading ``~`` for the remote shell."""
    if path == "~":
        return '"$HOME"'
    if path.startswith("~/"):
        return '"$HOME"/' + shlex.quote(path[2:])
    return shlex.quote(path)


class SshChannel:
    """RemoteChannel over ``ssh``.

    Args:
        timeout: Upper bound for one remote call, connection included.
    """

    def __init__(self, timeout: float = 15.0) -> None:
        self.timeout = timeout

    async def _run(self, machine: MachineConfig, command: str, stdin: bytes | None = None) -> str:
        try:
            proc = await asyncio.create_subprocess_exec(
                "ssh", *SSH_OPTIONS, machine.ssh_target, command,
                stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise RemoteError(machine.name, f"cannot run ssh: {e}") from e
        try:
            out, err = await asyncio.wait_for(proc.communicate(stdin), self.timeout)
        except TimeoutError:
            proc.kill()
            await proc.wait()
            raise RemoteError(machine.name, f"timed out after {self.timeout:.0f}s") from None
        if proc.returncode != 0:
            raise RemoteError(
                machine.name,
                f"exit {proc.returncode}: {err.decode('utf-8', errors='replace').strip()[:200]}",
            )
        return out.decode("utf-8", errors="replace")

    def _repo_file(self, machine: MachineConfig, name: str) -> str:
        return _shell_path(f"{machine.remote_path.rstrip('/')}/{REPO_DIR_NAME}/{name}")

    async def probe_health(self, machine: MachineConfig) -> LivenessRecord | None:
        path = _shell_path(f"{_REMOTE_HOME_DIR}/machine-heartbeat.json")
        return parse_liveness(await self._run(machine, f"cat {path} 2>/dev/null || true"))

    async def query_demand(self, machine: MachineConfig) -> MachineDemand:
        path = self._repo_file(machine, "daemon-state.json")
        return parse_demand(await self._run(machine, f"cat {path} 2>/dev/null || true"))

    async def push_allocation(self, machine: MachineConfig, max_parallel: int) -> None:
        directory = _shell_path(f"{machine.remote_path.rstrip('/')}/{REPO_DIR_NAME}")
        target = self._repo_file(machine, "fleet-limit.json")
        tmp = self._repo_file(machine, ".fleet-limit.json.tmp")
        flag = self._repo_file(machine, "reload.flag")
        command = (
            f"mkdir -p {directory} && cat > {tmp} && mv {tmp} {target} && touch {flag}"
        )
        payload = json.dumps(limit_document(max_parallel)).encode()
        await self._run(machine, command, stdin=payload)

    async def fetch_events_since(self, machine: MachineConfig, offset: int) -> EventBatch:
        path = _shell_path(f"{_REMOTE_HOME_DIR}/events.jsonl")
        command = (
            f"f={path}; n=$(wc -l < \"$f\" 2>/dev/null || echo 0); echo \"$n\"; "
            f"if [ \"$n\" -ge {offset} ]; then tail -n +{offset + 1} \"$f\"; "
            f"else cat \"$f\"; fi 2>/dev/null || true"
        )
        out = await self._run(machine, command)
        first, _, rest = out.partition("\n")
        try:
            total = int(first.strip() or 0)
        except ValueError as e:
            raise RemoteError(machine.name, f"unexpected event log header: {first[:40]!r}") from e
        return batch_from_tail(total, offset, rest.splitlines())


# ─── Local ────────────────────────────────────────────────────────────


class LocalChannel:
    """RemoteChannel for this host; reads and writes the files directly."""

    def __init__(self, home: HomePaths | None = None) -> None:
        self.home = home or HomePaths.resolve()

    async def probe_health(self, machine: MachineConfig) -> LivenessRecord | None:
        try:
            return parse_liveness(self.home.machine_heartbeat_file.read_text())
        except FileNotFoundError:
            return None

    async def query_demand(self, machine: MachineConfig) -> MachineDemand:
        path = RepoPaths(Path(machine.remote_path).expanduser()).state_file
        try:
            return parse_demand(path.read_text())
        except FileNotFoundError:
            return MachineDemand()

    async def push_allocation(self, machine: MachineConfig, max_parallel: int) -> None:
        paths = RepoPaths(Path(machine.remote_path).expanduser())
        try:
            atomic_write_json(paths.fleet_limit_file, limit_document(max_parallel))
            paths.reload_flag.touch()
        except OSError as e:
            raise RemoteError(machine.name, str(e)) from e

    async def fetch_events_since(self, machine: MachineConfig, offset: int) -> EventBatch:
        log = EventLog(self.home.events_file)
        total = log.line_count()
        lines = log.read_since(0 if total < offset else offset)
        return EventBatch(lines=lines, next_offset=total)


def channel_for(
    machine: MachineConfig,
    *,
    ssh: SshChannel | None = None,
    local: LocalChannel | None = None,
) -> RemoteChannel:
    if is_localhost(machine.host):
        return local or LocalChannel()
    return ssh or SshChannel()


__all__ = [
    "EventBatch",
    "LOCAL_HOSTS",
    "LivenessRecord",
    "LocalChannel",
    "MachineDemand",
    "RemoteChannel",
    "SshChannel",
    "channel_for",
    "is_localhost",
    "parse_demand",
    "parse_liveness",
]
