"""Tests for drydock.fleet.remote."""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from drydock.core.events import EventLog
from drydock.core.paths import HomePaths, RepoPaths
from drydock.daemon.heartbeat import write_machine_heartbeat
from drydock.exceptions import RemoteError
from drydock.fleet.config import MachineConfig
from drydock.fleet.remote import (
    LocalChannel,
    MachineDemand,
    RemoteChannel,
    SshChannel,
    _shell_path,
    batch_from_tail,
    channel_for,
    is_localhost,
    parse_demand,
    parse_liveness,
)
from tests.helpers import machine


# ─── Parsing ──────────────────────────────────────────────────────────


class TestParsing:
    def test_parse_liveness(self):
        assert parse_liveness('{"ts_epoch": 1700000000, "pid": 3}').ts_epoch == 1700000000
        assert parse_liveness("") is None
        assert parse_liveness("{}") is None
        assert parse_liveness('{"ts_epoch": "soon"}') is None

    def test_liveness_age_never_negative(self):
        record = parse_liveness('{"ts_epoch": 100}')
        assert record.age(160) == 60
        assert record.age(50) == 0

    def test_parse_demand(self):
        state = {"active_jobs": [{}, {}], "queued": [{}], "completed": [{}] * 9}
        assert parse_demand(json.dumps(state)) == MachineDemand(active=2, queued=1)
        assert parse_demand(json.dumps(state)).demand == 3

    @pytest.mark.parametrize("text", ["", "not json", "[]", '{"active_jobs": 3}'])
    def test_parse_demand_tolerates_garbage(self, text):
        assert parse_demand(text) == MachineDemand()

    def test_batch_from_tail(self):
        batch = batch_from_tail(13, 10, ["a", "", "b"])
        assert batch.lines == ["a", "b"]
        assert batch.next_offset == 13

    def test_unterminated_last_line_left_for_next_fetch(self):
        batch = batch_from_tail(11, 10, ['{"type": "a"}', '{"type": "b", "rep'])
        assert batch.lines == ['{"type": "a"}']
        assert batch.next_offset == 11

    def test_batch_after_rotation(self):
        batch = batch_from_tail(2, 10, ["x", "y"])
        assert batch.next_offset == 2


class TestShellPath:
    def test_home_relative(self):
        assert _shell_path("~") == '"$HOME"'
        assert _shell_path("~/src/my repo") == "\"$HOME\"/'src/my repo'"

    def test_absolute(self):
        assert _shell_path("/srv/api") == "/srv/api"
        assert _shell_path("/srv/a;b") == "'/srv/a;b'"


class TestChannelSelection:
    def test_localhost(self):
        assert is_localhost("localhost")
        assert is_localhost("127.0.0.1")
        assert not is_localhost("build-2.internal")

    def test_channel_for(self):
        assert isinstance(channel_for(machine("here", host="localhost")), LocalChannel)
        assert isinstance(channel_for(machine("far")), SshChannel)
        assert isinstance(SshChannel(), RemoteChannel)

    def test_ssh_target(self):
        assert MachineConfig(name="a", host="h", ssh_user="ci").ssh_target == "ci@h"
        assert MachineConfig(name="a", host="h").ssh_target == "h"


# ─── Local ────────────────────────────────────────────────────────────


class TestLocalChannel:
    @pytest.fixture
    def home(self, drydock_home: Path) -> HomePaths:
        return HomePaths(drydock_home)

    @pytest.mark.asyncio
    async def test_probe_health(self, home: HomePaths):
        channel = LocalChannel(home)
        here = machine("here", host="localhost")
        assert await channel.probe_health(here) is None
        write_machine_heartbeat(home.machine_heartbeat_file)
        assert (await channel.probe_health(here)).age() < 5

    @pytest.mark.asyncio
    async def test_demand_and_push(self, home: HomePaths, repo: Path):
        channel = LocalChannel(home)
        here = MachineConfig(name="here", host="localhost", remote_path=str(repo))
        assert await channel.query_demand(here) == MachineDemand()

        await channel.push_allocation(here, 3)
        paths = RepoPaths(repo)
        assert json.loads(paths.fleet_limit_file.read_text())["max_parallel"] == 3
        assert paths.reload_flag.exists()

    @pytest.mark.asyncio
    async def test_fetch_events(self, home: HomePaths):
        log = EventLog(home.events_file)
        for n in range(3):
            log.emit("e", n=n)
        channel = LocalChannel(home)
        batch = await channel.fetch_events_since(machine("here", host="localhost"), 1)
        assert [json.loads(line)["n"] for line in batch.lines] == [1, 2]
        assert batch.next_offset == 3


# ─── SSH ──────────────────────────────────────────────────────────────


def _proc(returncode: int, stdout: str = "", stderr: str = "") -> MagicMock:
    proc = MagicMock()
    proc.returncode = returncode
    proc.communicate = AsyncMock(return_value=(stdout.encode(), stderr.encode()))
    return proc


class TestSshChannel:
    @pytest.mark.asyncio
    async def test_query_demand_command(self):
        far = MachineConfig(name="far", host="far.internal", ssh_user="ci", remote_path="~/src/api")
        state = json.dumps({"active_jobs": [{}], "queued": []})
        with patch(
            "drydock.fleet.remote.asyncio.create_subprocess_exec",
            new=AsyncMock(return_value=_proc(0, state)),
        ) as exec_mock:
            demand = await SshChannel().query_demand(far)

        assert demand == MachineDemand(active=1)
        argv = exec_mock.await_args.args
        assert argv[0] == "ssh"
        assert "BatchMode=yes" in argv
        assert argv[-2] == "ci@far.internal"
        assert '"$HOME"/src/api/.drydock/daemon-state.json' in argv[-1]

    @pytest.mark.asyncio
    async def test_push_sends_document_on_stdin(self):
        proc = _proc(0)
        with patch(
            "drydock.fleet.remote.asyncio.create_subprocess_exec",
            new=AsyncMock(return_value=proc),
        ) as exec_mock:
            await SshChannel().push_allocation(machine("far"), 5)

        command = exec_mock.await_args.args[-1]
        assert "mv" in command and "reload.flag" in command
        payload = json.loads(proc.communicate.await_args.args[0])
        assert payload["max_parallel"] == 5

    @pytest.mark.asyncio
    async def test_nonzero_exit_raises(self):
        with patch(
            "drydock.fleet.remote.asyncio.create_subprocess_exec",
            new=AsyncMock(return_value=_proc(255, stderr="Connection refused")),
        ):
            with pytest.raises(RemoteError, match="Connection refused") as exc:
                await SshChannel().probe_health(machine("far"))
        assert exc.value.machine == "far"

    @pytest.mark.asyncio
    async def test_fetch_events_parses_header(self):
        out = "5\n" + '{"type": "a"}\n{"type": "b"}\n'
        with patch(
            "drydock.fleet.remote.asyncio.create_subprocess_exec",
            new=AsyncMock(return_value=_proc(0, out)),
        ):
            batch = await SshChannel().fetch_events_since(machine("far"), 3)
        assert len(batch.lines) == 2
        assert batch.next_offset == 5

    @pytest.mark.asyncio
    async def test_fetch_events_keeps_partial_record_for_later(self):
        out = "4\n" + '{"type": "a"}\n{"type": "b", "rep'
        with patch(
            "drydock.fleet.remote.asyncio.create_subprocess_exec",
            new=AsyncMock(return_value=_proc(0, out)),
        ):
            batch = await SshChannel().fetch_events_since(machine("far"), 3)
        assert batch.lines == ['{"type": "a"}']
        assert batch.next_offset == 4

    @pytest.mark.asyncio
    async def test_fetch_events_bad_header(self):
        with patch(
            "drydock.fleet.remote.asyncio.create_subprocess_exec",
            new=AsyncMock(return_value=_proc(0, "cat: permission denied\n")),
        ):
            with pytest.raises(RemoteError, match="header"):
                await SshChannel().fetch_events_since(machine("far"), 0)
