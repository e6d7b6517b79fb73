"""Tests for drydock.daemon.tracker.GhTracker with a patched subprocess layer."""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from drydock.daemon.tracker import GhTracker, Issue, IssueTracker
from drydock.exceptions import TrackerError


def _proc(returncode: int, stdout: str = "", stderr: str = "") -> MagicMock:
    proc = MagicMock()
    proc.returncode = returncode
    proc.communicate = AsyncMock(return_value=(stdout.encode(), stderr.encode()))
    return proc


def _patch_exec(*procs: MagicMock):
    return patch(
        "drydock.daemon.tracker.asyncio.create_subprocess_exec",
        new=AsyncMock(side_effect=list(procs)),
    )


@pytest.fixture
def sleep() -> AsyncMock:
    return AsyncMock()


class TestIssue:
    def test_has_any_label_case_insensitive(self):
        issue = Issue(3, "Crash on boot", ("HotFix", "bug"))
        assert issue.has_any_label(["hotfix"])
        assert not issue.has_any_label(["p0"])


class TestGhTracker:
    def test_satisfies_protocol(self, tmp_path: Path):
        assert isinstance(GhTracker(tmp_path), IssueTracker)

    @pytest.mark.asyncio
    async def test_list_candidates_parses_json(self, tmp_path: Path, sleep):
        rows = [
            {"number": 12, "title": "Add caching", "labels": [{"name": "ready-to-build"}]},
            {"number": 15, "title": "Outage", "labels": [{"name": "ready-to-build"}, {"name": "hotfix"}]},
        ]
        with _patch_exec(_proc(0, json.dumps(rows))) as exec_mock:
            issues = await GhTracker(tmp_path, sleep=sleep).list_candidates("ready-to-build")

        assert issues == [
            Issue(12, "Add caching", ("ready-to-build",)),
            Issue(15, "Outage", ("ready-to-build", "hotfix")),
        ]
        argv = exec_mock.await_args.args
        assert argv[:3] == ("gh", "issue", "list")
        assert "ready-to-build" in argv
        assert exec_mock.await_args.kwargs["cwd"] == tmp_path

    @pytest.mark.asyncio
    async def test_empty_output_means_no_issues(self, tmp_path: Path, sleep):
        with _patch_exec(_proc(0, "")):
            assert await GhTracker(tmp_path, sleep=sleep).list_candidates("x") == []

    @pytest.mark.asyncio
    async def test_unparseable_output_raises(self, tmp_path: Path, sleep):
        with _patch_exec(_proc(0, "<html>")):
            with pytest.raises(TrackerError, match="unparseable"):
                await GhTracker(tmp_path, sleep=sleep).list_candidates("x")

    @pytest.mark.asyncio
    async def test_retries_transient_failure(self, tmp_path: Path, sleep):
        with _patch_exec(_proc(1, stderr="HTTP 502: Bad Gateway"), _proc(0, "[]")) as exec_mock:
            assert await GhTracker(tmp_path, sleep=sleep).list_candidates("x") == []
        assert exec_mock.await_count == 2
        sleep.assert_awaited_once_with(1.0)

    @pytest.mark.asyncio
    async def test_gives_up_after_attempts(self, tmp_path: Path, sleep):
        failing = [_proc(1, stderr="API rate limit exceeded") for _ in range(3)]
        with _patch_exec(*failing):
            with pytest.raises(TrackerError, match="rate limit"):
                await GhTracker(tmp_path, sleep=sleep).add_label(4, "pipeline/failed")
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 3.0]

    @pytest.mark.asyncio
    async def test_label_comment_close_commands(self, tmp_path: Path, sleep):
        tracker = GhTracker(tmp_path, sleep=sleep)
        with _patch_exec(*(_proc(0) for _ in range(4))) as exec_mock:
            await tracker.add_label(7, "pipeline/complete")
            await tracker.remove_label(7, "ready-to-build")
            await tracker.comment(7, "failed")
            await tracker.close(7)

        calls = [c.args for c in exec_mock.await_args_list]
        assert calls == [
            ("gh", "issue", "edit", "7", "--add-label", "pipeline/complete"),
            ("gh", "issue", "edit", "7", "--remove-label", "ready-to-build"),
            ("gh", "issue", "comment", "7", "--body", "failed"),
            ("gh", "issue", "close", "7"),
        ]
