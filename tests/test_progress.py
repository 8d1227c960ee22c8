"""Tests for ProgressTracker and the local stage log store."""

from __future__ import annotations

import time
from pathlib import Path

from spdk_sys.logging.local import LocalLogStore
from spdk_sys.progress import ProgressTracker


class TestProgressTracker:
    def test_basic_flow(self):
        tracker = ProgressTracker()
        tracker.start("link")
        tracker.complete("link", detail="42 archives")

        summary = tracker.get_summary()
        assert len(summary["stages"]) == 1
        assert summary["stages"][0]["status"] == "completed"
        assert summary["stages"][0]["detail"] == "42 archives"
        assert summary["failed_stage"] is None

    def test_fail(self):
        tracker = ProgressTracker()
        tracker.start("configure")
        tracker.fail("configure", "rc=1")

        summary = tracker.get_summary()
        assert summary["stages"][0]["status"] == "failed"
        assert summary["stages"][0]["error"] == "rc=1"
        assert tracker.failed_stage == "configure"

    def test_skip(self):
        tracker = ProgressTracker()
        tracker.skip("fetch", "tree present")
        assert tracker.status_of("fetch") == "skipped"

    def test_unknown_stage_is_pending(self):
        assert ProgressTracker().status_of("build") == "pending"

    def test_duration(self):
        tracker = ProgressTracker()
        tracker.start("build")
        time.sleep(0.01)
        tracker.complete("build")

        p = tracker.stages[0]
        assert p.duration is not None
        assert p.duration >= 0.01

    def test_callback(self):
        events = []
        tracker = ProgressTracker()
        tracker.callbacks.append(lambda p: events.append((p.stage, p.status)))

        tracker.start("a")
        tracker.complete("a")

        assert events == [("a", "running"), ("a", "completed")]

    def test_callback_errors_do_not_propagate(self):
        tracker = ProgressTracker()
        tracker.callbacks.append(lambda p: 1 / 0)
        tracker.start("a")
        assert tracker.status_of("a") == "running"


class TestLocalLogStore:
    def test_write_and_read(self, tmp_path: Path):
        store = LocalLogStore(tmp_path / "logs")
        with store.get_writer("build") as w:
            w.write("[running]\n")
        with store.get_writer("build") as w:
            w.write("[completed]\n")
        assert store.read_log("build") == "[running]\n[completed]\n"
        assert (tmp_path / "logs" / "build.log").exists()

    def test_missing_log_is_empty(self, tmp_path: Path):
        assert LocalLogStore(tmp_path).read_log("link") == ""

    def test_clear(self, tmp_path: Path):
        store = LocalLogStore(tmp_path / "logs")
        with store.get_writer("fetch") as w:
            w.write("x")
        store.clear()
        assert store.read_log("fetch") == ""
        assert not (tmp_path / "logs").exists()
