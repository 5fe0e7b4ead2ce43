"""
Tests for the polling file watcher.
"""

import asyncio
import os
import shutil
import tempfile

from usage_meter.service.watcher import PollingWatcher
from usage_meter.storage.models import ChangeKind


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TestScanOnce:
    """Test change detection with write-stability settling."""

    def setup_method(self):
        self.clock = FakeClock()
        self.events = []
        self.watcher = PollingWatcher(
            "/unused",
            self.events.append,
            stability_threshold_s=2.0,
            clock=self.clock,
        )

    def _scan(self, current, at):
        self.clock.now = at
        return self.watcher.scan_once(current)

    def test_new_file_waits_for_stability(self):
        """Test a new file is reported only after it stops changing."""
        self.watcher.prime({})

        assert self._scan({"a": (1.0, 10)}, at=0.0) == []
        assert self._scan({"a": (1.0, 10)}, at=1.0) == []
        emitted = self._scan({"a": (1.0, 10)}, at=2.0)

        assert [(e.kind, e.path) for e in emitted] == [(ChangeKind.ADDED, "a")]
        assert self.events == emitted

    def test_growing_file_restarts_settling(self):
        """Test writes during settling postpone the notification."""
        self.watcher.prime({"a": (1.0, 10)})

        self._scan({"a": (2.0, 20)}, at=0.0)
        self._scan({"a": (3.0, 30)}, at=1.5)
        assert self._scan({"a": (3.0, 30)}, at=3.0) == []
        emitted = self._scan({"a": (3.0, 30)}, at=3.5)

        assert [(e.kind, e.path) for e in emitted] == [(ChangeKind.CHANGED, "a")]

    def test_removed_is_immediate(self):
        """Test deletions are reported on the next scan."""
        self.watcher.prime({"a": (1.0, 10)})

        emitted = self._scan({}, at=0.0)

        assert [(e.kind, e.path) for e in emitted] == [(ChangeKind.REMOVED, "a")]

    def test_unchanged_files_are_quiet(self):
        self.watcher.prime({"a": (1.0, 10)})

        assert self._scan({"a": (1.0, 10)}, at=5.0) == []

    def test_file_removed_while_settling(self):
        """Test a file deleted before it settles is never reported."""
        self.watcher.prime({})
        self._scan({"a": (1.0, 10)}, at=0.0)

        assert self._scan({}, at=5.0) == []
        assert self.events == []


class TestFileSystem:
    """Test scanning a real directory tree."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        os.makedirs(os.path.join(self.temp_dir, "app"))

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write(self, name, text):
        with open(os.path.join(self.temp_dir, "app", name), "w", encoding="utf-8") as f:
            f.write(text)

    def test_signatures_match_pattern(self):
        self._write("s1.jsonl", "{}\n")
        self._write("notes.md", "x")

        watcher = PollingWatcher(self.temp_dir, lambda event: None)

        assert list(watcher.signatures()) == [os.path.join(self.temp_dir, "app", "s1.jsonl")]

    def test_missing_root(self):
        watcher = PollingWatcher(os.path.join(self.temp_dir, "gone"), lambda event: None)

        assert watcher.signatures() == {}

    def test_run_stops(self):
        """Test the polling loop exits once stopped."""
        watcher = PollingWatcher(self.temp_dir, lambda event: None, poll_interval_s=0.01)

        async def scenario():
            task = asyncio.create_task(watcher.run())
            await asyncio.sleep(0.05)
            watcher.stop()
            await asyncio.wait_for(task, 1.0)

        asyncio.run(scenario())

    def test_file_added_after_baseline_is_reported(self):
        """Test a file written between priming and polling is still emitted."""
        events = []
        watcher = PollingWatcher(
            self.temp_dir, events.append, poll_interval_s=0.01, stability_threshold_s=0
        )
        watcher.prime({})
        self._write("s1.jsonl", "{}\n")

        async def scenario():
            task = asyncio.create_task(watcher.run())
            await asyncio.sleep(0.1)
            watcher.stop()
            await asyncio.wait_for(task, 1.0)

        asyncio.run(scenario())

        path = os.path.join(self.temp_dir, "app", "s1.jsonl")
        assert [(e.kind, e.path) for e in events] == [(ChangeKind.ADDED, path)]
