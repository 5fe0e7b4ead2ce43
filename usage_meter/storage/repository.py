"""
Repository for the persisted summary snapshot.

Keeps an opaque copy of the last aggregated bundle so a display has
something to show on cold start, before the first live aggregation
completes.
"""

import json
import logging
import sqlite3
from datetime import datetime, timedelta
from typing import Optional

from .db import get_connection
from .models import UsageData, usage_data_from_dict, usage_data_to_dict

log = logging.getLogger(__name__)

DEFAULT_SNAPSHOT_KEY = "usage-data"
DEFAULT_TTL = timedelta(hours=24)


class SnapshotRepository:
    """Stores the last summary bundle with a timestamp and a validity TTL.
    
    Each call opens its own connection, so a repository can be shared
    between the event loop and worker threads.
    """
    
    def __init__(self, db_path: str, ttl: timedelta = DEFAULT_TTL):
        """Initialize the repository.
        
        Args:
            db_path: Path to SQLite database file
            ttl: How long a saved snapshot stays valid
            
        Raises:
            ValueError: If ttl is not positive
        """
        if ttl <= timedelta(0):
            raise ValueError("ttl must be > 0")
        self.db_path = db_path
        self.ttl = ttl
        initialize_schema(db_path)
    
    def save(self, data: UsageData, now: datetime, key: str = DEFAULT_SNAPSHOT_KEY) -> None:
        """Replace the stored snapshot.
        
        Args:
            data: Bundle to store
            now: Time the snapshot was taken
            key: Snapshot slot
        """
        payload = json.dumps(usage_data_to_dict(data))
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                """
                INSERT INTO usage_snapshot (key, payload, saved_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    payload = excluded.payload,
                    saved_at = excluded.saved_at
                """,
                (key, payload, now.timestamp()),
            )
            conn.commit()
        finally:
            conn.close()
    
    def load(self, now: datetime, key: str = DEFAULT_SNAPSHOT_KEY) -> Optional[UsageData]:
        """Load the stored snapshot if it is still valid.
        
        An expired or unreadable snapshot is deleted.
        
        Args:
            now: Reference instant for the TTL check
            key: Snapshot slot
            
        Returns:
            The stored bundle, or None if missing, expired or corrupt
        """
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT payload, saved_at FROM usage_snapshot WHERE key = ?",
                (key,),
            ).fetchone()
        finally:
            conn.close()
        
        if row is None:
            return None
        
        payload, saved_at = row
        age = now.timestamp() - saved_at
        if age >= self.ttl.total_seconds():
            log.info("Snapshot is %.0f hours old, discarding", age / 3600)
            self.clear(key)
            return None
        
        try:
            return usage_data_from_dict(json.loads(payload))
        except (ValueError, KeyError, TypeError) as e:
            log.warning("Discarding unreadable snapshot: %s", e)
            self.clear(key)
            return None
    
    def saved_at(self, key: str = DEFAULT_SNAPSHOT_KEY) -> Optional[float]:
        """Epoch seconds of the last save, or None."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT saved_at FROM usage_snapshot WHERE key = ?", (key,)
            ).fetchone()
            return row[0] if row else None
        finally:
            conn.close()
    
    def clear(self, key: Optional[str] = None) -> None:
        """Delete one snapshot, or all of them when no key is given."""
        conn = get_connection(self.db_path)
        try:
            if key is None:
                conn.execute("DELETE FROM usage_snapshot")
            else:
                conn.execute("DELETE FROM usage_snapshot WHERE key = ?", (key,))
            conn.commit()
        finally:
            conn.close()


def initialize_schema(db_path: str) -> None:
    """Create the usage_snapshot table if it doesn't exist.
    
    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS usage_snapshot (
                key TEXT PRIMARY KEY,
                payload TEXT NOT NULL,
                saved_at REAL NOT NULL
            )
        """)
        conn.commit()
    except sqlite3.DatabaseError:
        conn.rollback()
        raise
    finally:
        conn.close()
