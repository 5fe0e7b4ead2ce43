"""
Data service wrapping the ingestion cache.

Owns the cache and the update queue, drives the initial bulk load,
debounces bursts of file notifications into batches and pushes the
re-aggregated bundle to subscribers.

Everything runs on one asyncio event loop. Aggregation is synchronous;
the only suspension points are file reads and the debounce timer.
"""

import asyncio
import logging
import sqlite3
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Protocol

from usage_meter.config.loader import MonitorConfig
from usage_meter.core.aggregator import aggregate_usage_data, filter_events
from usage_meter.core.parser import parse_file_content
from usage_meter.core.sessions import current_session_cost, reconstruct_sessions
from usage_meter.storage.cache import IngestionCache, UpdateQueue, apply_change
from usage_meter.storage.models import (
    ChangeKind,
    DataUpdate,
    FileChangeEvent,
    Session,
    UsageData,
    UsageEvent,
)
from usage_meter.storage.repository import SnapshotRepository

log = logging.getLogger(__name__)

Subscriber = Callable[[DataUpdate], None]


class FileSource(Protocol):
    """File enumeration and reading capability used by the service."""

    def list_files(self) -> List[str]:
        ...

    def read_text(self, path: str) -> str:
        ...


class LocalFileSource:
    """Reads ``*.jsonl`` logs under ``<data_dir>/projects``."""

    def __init__(self, data_dir: str):
        self.data_dir = Path(data_dir).expanduser()

    @property
    def projects_dir(self) -> Path:
        return self.data_dir / "projects"

    def list_files(self) -> List[str]:
        if not self.projects_dir.is_dir():
            log.warning("Projects directory %s does not exist", self.projects_dir)
            return []
        return sorted(str(p) for p in self.projects_dir.rglob("*.jsonl") if p.is_file())

    def read_text(self, path: str) -> str:
        return Path(path).read_text(encoding="utf-8", errors="replace")


class DataService:
    """Keeps aggregated usage current as log files change.

    A single processing flag gates batch execution: notifications that
    arrive while a batch is in flight wait for the next batch, and the
    flag clears only after the batch's broadcast has completed.
    """

    def __init__(
        self,
        config: Optional[MonitorConfig] = None,
        source: Optional[FileSource] = None,
        clock: Optional[Callable[[], datetime]] = None,
        snapshot_store: Optional[SnapshotRepository] = None,
    ):
        """Initialize the service.

        Args:
            config: Application configuration (defaults if omitted)
            source: File source (local ``data_dir`` if omitted)
            clock: Returns the current instant; injectable for tests
            snapshot_store: Snapshot repository (built from the config's
                snapshot path if omitted)
        """
        self.config = config or MonitorConfig()
        self.source = source or LocalFileSource(self.config.data.data_dir)
        self.tz = self.config.display.tz
        self._clock = clock or (lambda: datetime.now(self.tz))

        if snapshot_store is None and self.config.snapshot.path:
            snapshot_store = SnapshotRepository(
                str(Path(self.config.snapshot.path).expanduser()),
                ttl=timedelta(hours=self.config.snapshot.ttl_hours),
            )
        self.snapshot_store = snapshot_store

        self.cache = IngestionCache()
        self.queue = UpdateQueue()
        self._subscribers: List[Subscriber] = []
        self._timer: Optional[asyncio.TimerHandle] = None
        self._batch_task: Optional[asyncio.Task] = None
        self._idle = asyncio.Event()
        self._idle.set()
        self._latest: Optional[UsageData] = None
        self._snapshot: Optional[UsageData] = None

    @property
    def debounce_seconds(self) -> float:
        return self.config.ingestion.debounce_ms / 1000

    def now(self) -> datetime:
        return self._clock()

    async def initialize(self) -> None:
        """Load the snapshot, bulk-load every log file and broadcast."""
        self._load_snapshot()
        await self.load_all_data()
        self._broadcast("full")

    async def load_all_data(self) -> None:
        """Parse every discovered file in fixed-size concurrent groups.

        A file that cannot be read is skipped without aborting its group.
        """
        files = await asyncio.to_thread(self.source.list_files)
        batch_size = self.config.ingestion.batch_size
        skipped = 0

        for start in range(0, len(files), batch_size):
            group = files[start:start + batch_size]
            results = await asyncio.gather(*(self._read_and_parse(p) for p in group))
            for path, events in zip(group, results):
                if events is None:
                    skipped += 1
                    continue
                self.cache.replace(path, events)

        log.info(
            "Loaded %d events from %d files (%d skipped)",
            self.cache.event_count, len(files) - skipped, skipped,
        )

    async def _read_and_parse(self, path: str) -> Optional[List[UsageEvent]]:
        """Read and parse one file with a timeout and bounded retries.

        The read runs in a worker thread; a read that times out is
        abandoned rather than awaited.

        Returns:
            Parsed events, or None if the file could not be read
        """
        timeout = self.config.ingestion.read_timeout_s
        attempts = self.config.ingestion.read_retries + 1

        for attempt in range(1, attempts + 1):
            try:
                content = await asyncio.wait_for(
                    asyncio.to_thread(self.source.read_text, path), timeout
                )
            except asyncio.TimeoutError:
                log.warning("Timed out reading %s (attempt %d/%d)", path, attempt, attempts)
                continue
            except OSError as e:
                log.warning("Error reading %s (attempt %d/%d): %s", path, attempt, attempts, e)
                continue
            return parse_file_content(path, content)

        log.error("Skipping unreadable file %s", path)
        return None

    def queue_file_update(self, event: FileChangeEvent) -> None:
        """Queue a file notification and restart the debounce timer.

        Must be called from the event loop thread.
        """
        self.queue.push(event)
        self._arm_timer()

    def notify(self, kind: ChangeKind, path: str) -> None:
        """Convenience wrapper building the notification from its parts."""
        self.queue_file_update(FileChangeEvent(kind=kind, path=path, timestamp=self.now().timestamp()))

    def _arm_timer(self) -> None:
        loop = asyncio.get_running_loop()
        if self._timer is not None:
            self._timer.cancel()
        self._timer = loop.call_later(self.debounce_seconds, self._on_quiet_period)

    def _on_quiet_period(self) -> None:
        self._timer = None
        if self.queue.is_processing:
            # The in-flight batch or refresh re-arms the timer when it finishes
            return
        self._batch_task = asyncio.get_running_loop().create_task(self.process_update_queue())
        self._batch_task.add_done_callback(self._on_batch_done)

    def _on_batch_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error("Update batch failed", exc_info=exc)

    async def process_update_queue(self) -> bool:
        """Apply the pending notifications as one batch.

        Returns:
            True if a batch ran, False if one was already in flight or
            nothing was pending
        """
        if self.queue.is_processing or not self.queue.pending:
            return False

        batch = self.queue.begin()
        self._idle.clear()
        try:
            for event in batch:
                if event.kind is ChangeKind.REMOVED:
                    apply_change(self.cache, event)
                    continue
                events = await self._read_and_parse(event.path)
                # Unreadable files contribute nothing
                apply_change(self.cache, event, events or ())
            log.debug("Applied %d file updates", len(batch))
            self._broadcast("incremental")
        finally:
            self.queue.finish()
            self._idle.set()

        if self.queue.pending:
            self._arm_timer()
        return True

    async def flush(self) -> None:
        """Process pending notifications now instead of after the quiet period."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        await self.wait_idle()
        await self.process_update_queue()

    async def wait_idle(self) -> None:
        """Wait until no batch or refresh holds the processing flag.

        A failed timer-driven batch is logged by its done callback and
        not raised here.
        """
        if self._batch_task is not None and not self._batch_task.done():
            await asyncio.wait({self._batch_task})
        while not self._idle.is_set():
            await self._idle.wait()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a subscriber for data updates.

        Returns:
            A function that removes the subscription
        """
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _broadcast(self, kind: str) -> None:
        now = self.now()
        data = self.get_aggregated_data(now)
        self._latest = data
        self._save_snapshot(data, now)

        update = DataUpdate(kind=kind, data=data, timestamp=now.timestamp())
        for subscriber in list(self._subscribers):
            try:
                subscriber(update)
            except Exception:
                log.exception("Subscriber %r failed to handle update", subscriber)

    def get_aggregated_data(self, now: Optional[datetime] = None) -> UsageData:
        """Aggregate the current cache contents."""
        return self._aggregate(self.cache.flatten(), now)

    def _aggregate(self, events: List[UsageEvent], now: Optional[datetime]) -> UsageData:
        return aggregate_usage_data(
            events,
            now=now or self.now(),
            tz=self.tz,
            hours_limit=self.config.data.hours_limit,
            reference_date_strategy=self.config.display.reference_date_strategy,
            week_start=self.config.display.week_start,
        )

    def get_filtered_data(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        projects: Optional[Iterable[str]] = None,
        now: Optional[datetime] = None,
    ) -> UsageData:
        """Aggregate only events inside a time range and/or set of projects."""
        events = filter_events(self.cache.flatten(), start, end, projects, self.tz)
        return self._aggregate(events, now)

    def get_sessions(self, now: Optional[datetime] = None) -> List[Session]:
        """Reconstructed time sessions over the trailing hourly series, newest first."""
        return reconstruct_sessions(self.get_aggregated_data(now).hourly)

    def current_session_cost(self, now: Optional[datetime] = None) -> float:
        """Running cost of the session in progress."""
        now = now or self.now()
        events = self.cache.flatten()
        data = self._aggregate(events, now)
        return current_session_cost(data.hourly, now, live_events=events, tz=self.tz)

    def cached_data(self) -> Optional[UsageData]:
        """Latest bundle: live if aggregated, else the cold-start snapshot."""
        return self._latest or self._snapshot

    async def refresh_data(self) -> None:
        """Drop the cache, reload every file and broadcast.

        The reload holds the processing flag, so no batch runs against a
        half-loaded cache. Notifications arriving meanwhile stay pending
        and are processed once the reload has broadcast.
        """
        await self.wait_idle()
        self.queue.reserve()
        self._idle.clear()
        try:
            self.cache.clear()
            await self.load_all_data()
            self._broadcast("full")
        finally:
            self.queue.finish()
            self._idle.set()

        if self.queue.pending:
            self._arm_timer()

    def _load_snapshot(self) -> None:
        if self.snapshot_store is None:
            return
        try:
            self._snapshot = self.snapshot_store.load(self.now())
        except sqlite3.Error as e:
            log.warning("Could not load snapshot: %s", e)
            self._snapshot = None
        if self._snapshot is not None:
            log.info("Loaded cached snapshot for cold start")

    def _save_snapshot(self, data: UsageData, now: datetime) -> None:
        if self.snapshot_store is None:
            return
        try:
            self.snapshot_store.save(data, now)
        except sqlite3.Error as e:
            log.warning("Could not save snapshot: %s", e)

    async def close(self) -> None:
        """Stop the debounce timer, let any running batch finish, drop the cache."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        await self.wait_idle()
        self.cache.clear()
        self._subscribers.clear()
