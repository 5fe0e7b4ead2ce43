"""
Tests for the snapshot repository.
"""

import os
import shutil
import sqlite3
import tempfile
from datetime import datetime, timedelta, timezone

import pytest

from usage_meter.core.aggregator import aggregate_usage_data
from usage_meter.core.token_counter import TokenCounts
from usage_meter.storage.models import UsageEvent, empty_usage_data
from usage_meter.storage.repository import DEFAULT_SNAPSHOT_KEY, SnapshotRepository

UTC = timezone.utc
NOW = datetime(2024, 1, 10, 13, 30, tzinfo=UTC)


class TestSnapshotRepository:
    """Test persistence of the summary snapshot."""

    def setup_method(self):
        """Set up test database."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "nested", "snapshot.db")
        self.repo = SnapshotRepository(self.db_path)

    def teardown_method(self):
        """Clean up test database."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _bundle(self):
        events = [
            UsageEvent(
                timestamp="2024-01-10T12:05:00Z",
                tokens=TokenCounts(input_tokens=100, output_tokens=20),
                cost=1.5,
                project="app",
                session="s1",
            ),
            UsageEvent(
                timestamp="2024-01-09T08:00:00Z",
                tokens=TokenCounts(cache_read_tokens=7),
                cost=0.5,
                project="web",
                session="s2",
            ),
        ]
        return aggregate_usage_data(events, NOW, UTC)

    def test_save_and_load(self):
        """Test a saved bundle loads back equal."""
        data = self._bundle()
        self.repo.save(data, NOW)

        assert self.repo.load(NOW + timedelta(hours=1)) == data
        assert self.repo.saved_at() == pytest.approx(NOW.timestamp())

    def test_missing_snapshot(self):
        assert self.repo.load(NOW) is None
        assert self.repo.saved_at() is None

    def test_save_overwrites(self):
        """Test saving again replaces the stored bundle."""
        self.repo.save(self._bundle(), NOW)
        self.repo.save(empty_usage_data(), NOW)

        assert self.repo.load(NOW) == empty_usage_data()

    def test_expired_snapshot_is_discarded(self):
        """Test a snapshot older than the TTL is deleted on load."""
        self.repo.save(self._bundle(), NOW)

        assert self.repo.load(NOW + timedelta(hours=24)) is None
        assert self.repo.saved_at() is None

    def test_corrupt_snapshot_is_discarded(self):
        """Test an unreadable payload is deleted rather than raised."""
        conn = sqlite3.connect(self.db_path)
        conn.execute(
            "INSERT INTO usage_snapshot (key, payload, saved_at) VALUES (?, ?, ?)",
            (DEFAULT_SNAPSHOT_KEY, '{"daily": 1}', NOW.timestamp()),
        )
        conn.commit()
        conn.close()

        assert self.repo.load(NOW) is None
        assert self.repo.saved_at() is None

    def test_clear_all(self):
        self.repo.save(self._bundle(), NOW, key="a")
        self.repo.save(self._bundle(), NOW, key="b")

        self.repo.clear()

        assert self.repo.load(NOW, key="a") is None
        assert self.repo.load(NOW, key="b") is None

    def test_invalid_ttl(self):
        with pytest.raises(ValueError):
            SnapshotRepository(self.db_path, ttl=timedelta(0))
