"""
Ingestion cache and update queue.

The cache is the sole owner of parsed events, keyed by source file.
The update queue collects file-system notifications between batches.
"""

import logging
from enum import Enum
from typing import Dict, Iterable, List, Set, Tuple

from .models import ChangeKind, FileChangeEvent, UsageEvent

log = logging.getLogger(__name__)


class IngestionCache:
    """Parsed events per source file.

    No other component mutates the stored lists. A file whose latest
    parse produced no events has no entry but is still remembered as
    seen.
    """

    def __init__(self):
        self._entries: Dict[str, Tuple[UsageEvent, ...]] = {}
        self._seen: Set[str] = set()

    def replace(self, source_path: str, events: Iterable[UsageEvent]) -> None:
        """Store the result of (re-)parsing a file.

        An empty result deletes the entry.
        """
        parsed = tuple(events)
        self._seen.add(source_path)
        if parsed:
            self._entries[source_path] = parsed
            log.debug("Cached %d events from %s", len(parsed), source_path)
        else:
            self._entries.pop(source_path, None)
            log.debug("No events in %s, entry dropped", source_path)

    def remove(self, source_path: str) -> None:
        """Forget a file entirely, e.g. after it was deleted."""
        self._entries.pop(source_path, None)
        self._seen.discard(source_path)
        log.debug("Removed %s from cache", source_path)

    def get(self, source_path: str) -> Tuple[UsageEvent, ...]:
        """Events cached for one file (empty if none)."""
        return self._entries.get(source_path, ())

    def flatten(self) -> List[UsageEvent]:
        """All cached events, ordered by timestamp then source path.

        Parsed timestamps are fixed-width UTC, so string order is time order.
        """
        events = [e for entries in self._entries.values() for e in entries]
        events.sort(key=lambda e: (e.timestamp, e.source_path))
        return events

    def clear(self) -> None:
        self._entries.clear()
        self._seen.clear()

    @property
    def known_files(self) -> Set[str]:
        """Every file seen, including those without events."""
        return set(self._seen)

    @property
    def event_count(self) -> int:
        return sum(len(entries) for entries in self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, source_path: str) -> bool:
        return source_path in self._entries


class QueueState(Enum):
    """Processing state of the update queue."""
    IDLE = "idle"
    PROCESSING = "processing"


class UpdateQueue:
    """Pending file notifications and the single in-flight batch flag.

    Notifications pushed while a batch is processing stay pending for the
    next batch; nothing is dropped.
    """

    def __init__(self):
        self._pending: List[FileChangeEvent] = []
        self.state = QueueState.IDLE

    def push(self, event: FileChangeEvent) -> None:
        self._pending.append(event)

    @property
    def pending(self) -> int:
        return len(self._pending)

    @property
    def is_processing(self) -> bool:
        return self.state is QueueState.PROCESSING

    def begin(self) -> List[FileChangeEvent]:
        """Enter the processing state and take the coalesced pending batch.

        Several notifications for the same path collapse into the last
        one; paths keep the order in which they were first seen.

        Raises:
            RuntimeError: If a batch is already processing
        """
        self.reserve()
        return self.take_batch()

    def reserve(self) -> None:
        """Enter the processing state without taking the pending batch.

        Raises:
            RuntimeError: If a batch is already processing
        """
        if self.is_processing:
            raise RuntimeError("A batch is already being processed")
        self.state = QueueState.PROCESSING

    def take_batch(self) -> List[FileChangeEvent]:
        # Reassigning a key keeps its first-seen position
        latest: Dict[str, FileChangeEvent] = {}
        for event in self._pending:
            latest[event.path] = event
        self._pending = []
        return list(latest.values())

    def finish(self) -> None:
        self.state = QueueState.IDLE


def apply_change(
    cache: IngestionCache,
    event: FileChangeEvent,
    events: Iterable[UsageEvent] = (),
) -> None:
    """Apply one coalesced notification to the cache.

    Args:
        cache: Cache to update
        event: The notification
        events: Freshly parsed events for ADDED/CHANGED notifications
    """
    if event.kind is ChangeKind.REMOVED:
        cache.remove(event.path)
    else:
        cache.replace(event.path, events)
