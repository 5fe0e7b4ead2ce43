"""
Database connection management.

Provides the SQLite connection used by the snapshot store.
"""

import sqlite3
from pathlib import Path


def get_connection(db_path: str) -> sqlite3.Connection:
    """Create and return a SQLite connection, creating parent directories.
    
    Args:
        db_path: Path to SQLite database file
        
    Returns:
        SQLite connection
    """
    path = Path(db_path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path))
    conn.execute("PRAGMA busy_timeout = 5000")
    return conn
