"""Tests for drydock.core.events."""

from __future__ import annotations

import json
from pathlib import Path

from drydock.core.events import EventLog
from drydock.core.paths import HomePaths


class TestEmit:
    def test_record_shape(self, tmp_path: Path):
        log = EventLog(tmp_path / "events.jsonl")
        record = log.emit("daemon.spawn", repo="/src/api", issue=12)
        assert record["type"] == "daemon.spawn"
        assert record["ts"].endswith("Z")
        assert isinstance(record["ts_epoch"], int)

        line = (tmp_path / "events.jsonl").read_text().splitlines()[0]
        assert json.loads(line) == record

    def test_append_only(self, tmp_path: Path):
        log = EventLog(tmp_path / "events.jsonl")
        log.emit("a")
        log.emit("b")
        assert [r["type"] for r in log.iter_events()] == ["a", "b"]

    def test_default_path_under_home(self, drydock_home: Path):
        assert EventLog().path == HomePaths(drydock_home).events_file


class TestReading:
    def test_read_since_offset(self, tmp_path: Path):
        log = EventLog(tmp_path / "events.jsonl")
        for n in range(5):
            log.emit("e", n=n)
        lines = log.read_since(3)
        assert [json.loads(line)["n"] for line in lines] == [3, 4]
        assert log.line_count() == 5

    def test_partial_last_line_not_counted(self, tmp_path: Path):
        path = tmp_path / "events.jsonl"
        path.write_text('{"type": "a"}\n{"type": "b", "rep')
        log = EventLog(path)
        assert log.line_count() == 1
        assert log.read_since(0) == ['{"type": "a"}']
        assert log.read_since(1) == []

    def test_missing_file(self, tmp_path: Path):
        log = EventLog(tmp_path / "nope.jsonl")
        assert log.read_since(0) == []
        assert log.line_count() == 0
        assert list(log.iter_events()) == []

    def test_iter_skips_malformed_and_filters_by_time(self, tmp_path: Path):
        path = tmp_path / "events.jsonl"
        path.write_text(
            '{"type": "old", "ts_epoch": 100}\n'
            "not json\n"
            "[1, 2]\n"
            '{"type": "new", "ts_epoch": 200}\n'
        )
        log = EventLog(path)
        assert [r["type"] for r in log.iter_events()] == ["old", "new"]
        assert [r["type"] for r in log.iter_events(since_epoch=150)] == ["new"]


class TestRotation:
    def test_no_rotation_under_limit(self, tmp_path: Path):
        log = EventLog(tmp_path / "events.jsonl", max_bytes=10_000)
        log.emit("small")
        assert not log.rotate_if_needed()

    def test_keeps_three_generations(self, tmp_path: Path):
        path = tmp_path / "events.jsonl"
        log = EventLog(path, max_bytes=10)
        for n in range(5):
            log.emit("fill", n=n, pad="x" * 20)
            assert log.rotate_if_needed()

        assert not path.exists()
        generations = sorted(p.name for p in tmp_path.iterdir())
        assert generations == ["events.jsonl.1", "events.jsonl.2", "events.jsonl.3"]
        newest = json.loads((tmp_path / "events.jsonl.1").read_text())
        assert newest["n"] == 4
