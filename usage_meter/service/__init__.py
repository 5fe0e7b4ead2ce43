"""
Data service for Usage Meter.

Drives file discovery, file watching and debounced re-aggregation.
"""

from .data_service import DataService, LocalFileSource
from .watcher import PollingWatcher

__all__ = ["DataService", "LocalFileSource", "PollingWatcher"]
