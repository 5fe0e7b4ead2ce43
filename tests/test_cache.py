"""
Unit tests for the ingestion cache and update queue.
"""

import json

import pytest

from usage_meter.core.parser import parse_file_content
from usage_meter.core.token_counter import TokenCounts
from usage_meter.storage.cache import IngestionCache, QueueState, UpdateQueue, apply_change
from usage_meter.storage.models import ChangeKind, FileChangeEvent, UsageEvent


def ev(timestamp, cost, path="/d/projects/p/s.jsonl"):
    return UsageEvent(
        timestamp=timestamp,
        tokens=TokenCounts(input_tokens=1),
        cost=cost,
        project="p",
        session="s",
        source_path=path,
    )


class TestIngestionCache:
    """Test per-file event storage."""

    def test_replace_overwrites_entry(self):
        """Test re-parsing a file replaces its events."""
        cache = IngestionCache()
        cache.replace("a", [ev("2024-01-01T10:00:00Z", 1.0, "a")])
        cache.replace("a", [ev("2024-01-01T11:00:00Z", 2.0, "a")])

        assert [e.cost for e in cache.get("a")] == [2.0]
        assert cache.event_count == 1

    def test_empty_result_drops_entry(self):
        """Test a file with no events has no entry but is remembered."""
        cache = IngestionCache()
        cache.replace("a", [ev("2024-01-01T10:00:00Z", 1.0, "a")])
        cache.replace("a", [])

        assert "a" not in cache
        assert len(cache) == 0
        assert cache.known_files == {"a"}

    def test_remove_forgets_file(self):
        cache = IngestionCache()
        cache.replace("a", [ev("2024-01-01T10:00:00Z", 1.0, "a")])
        cache.remove("a")

        assert cache.get("a") == ()
        assert cache.known_files == set()

    def test_flatten_is_sorted(self):
        """Test flattened events are ordered by timestamp then path."""
        cache = IngestionCache()
        cache.replace("b", [ev("2024-01-01T10:00:00Z", 2.0, "b")])
        cache.replace("a", [
            ev("2024-01-01T12:00:00Z", 3.0, "a"),
            ev("2024-01-01T10:00:00Z", 1.0, "a"),
        ])

        assert [e.cost for e in cache.flatten()] == [1.0, 2.0, 3.0]

    def test_flatten_orders_parsed_events_by_instant(self):
        """Test events parsed from mixed UTC offsets flatten in time order."""
        source = "/d/projects/p/s.jsonl"
        content = "\n".join(
            json.dumps({"timestamp": ts, "message": {"usage": {}}, "costUSD": cost})
            for ts, cost in (("2024-01-01T23:00:00-05:00", 2.0), ("2024-01-02T01:00:00Z", 1.0))
        )
        cache = IngestionCache()
        cache.replace(source, parse_file_content(source, content))

        assert [e.cost for e in cache.flatten()] == [1.0, 2.0]

    def test_clear(self):
        cache = IngestionCache()
        cache.replace("a", [ev("2024-01-01T10:00:00Z", 1.0, "a")])
        cache.clear()

        assert cache.flatten() == []
        assert cache.known_files == set()


class TestUpdateQueue:
    """Test queuing and coalescing of file notifications."""

    def test_coalesces_by_path(self):
        """Test several notifications for one path collapse to the last."""
        queue = UpdateQueue()
        queue.push(FileChangeEvent(ChangeKind.ADDED, "a"))
        queue.push(FileChangeEvent(ChangeKind.CHANGED, "b"))
        queue.push(FileChangeEvent(ChangeKind.REMOVED, "a"))

        batch = queue.begin()

        assert [(e.path, e.kind) for e in batch] == [
            ("a", ChangeKind.REMOVED),
            ("b", ChangeKind.CHANGED),
        ]
        assert queue.pending == 0

    def test_single_batch_in_flight(self):
        """Test a second batch cannot start while one is processing."""
        queue = UpdateQueue()
        queue.push(FileChangeEvent(ChangeKind.ADDED, "a"))
        queue.begin()

        assert queue.state is QueueState.PROCESSING
        with pytest.raises(RuntimeError):
            queue.begin()

    def test_notifications_during_processing_wait(self):
        """Test pushes during a batch stay pending for the next one."""
        queue = UpdateQueue()
        queue.push(FileChangeEvent(ChangeKind.ADDED, "a"))
        queue.begin()
        queue.push(FileChangeEvent(ChangeKind.CHANGED, "b"))
        queue.finish()

        assert queue.is_processing is False
        assert [e.path for e in queue.begin()] == ["b"]

    def test_reserve_keeps_pending(self):
        """Test reserving the flag leaves notifications for the next batch."""
        queue = UpdateQueue()
        queue.push(FileChangeEvent(ChangeKind.ADDED, "a"))
        queue.reserve()

        assert queue.pending == 1
        with pytest.raises(RuntimeError):
            queue.begin()
        queue.finish()
        assert [e.path for e in queue.begin()] == ["a"]


class TestApplyChange:
    """Test applying notifications to the cache."""

    def test_changed_replaces(self):
        cache = IngestionCache()
        apply_change(cache, FileChangeEvent(ChangeKind.CHANGED, "a"), [ev("2024-01-01T10:00:00Z", 1.0, "a")])

        assert cache.event_count == 1

    def test_removed_drops(self):
        cache = IngestionCache()
        cache.replace("a", [ev("2024-01-01T10:00:00Z", 1.0, "a")])

        apply_change(cache, FileChangeEvent(ChangeKind.REMOVED, "a"))

        assert cache.flatten() == []
