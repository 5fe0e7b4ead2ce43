"""
Polling file watcher with write-stability detection.

Emits ADDED and CHANGED notifications only after a file's size and
modification time have stopped changing for the stability threshold,
so a file is never handed over in the middle of a write burst.
REMOVED is emitted as soon as a file disappears.
"""

import asyncio
import logging
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from usage_meter.storage.models import ChangeKind, FileChangeEvent

log = logging.getLogger(__name__)

Signature = Tuple[float, int]


class PollingWatcher:
    """Watches ``*.jsonl`` files below a root directory."""

    def __init__(
        self,
        root: str,
        on_change: Callable[[FileChangeEvent], None],
        poll_interval_s: float = 1.0,
        stability_threshold_s: float = 2.0,
        pattern: str = "*.jsonl",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.root = Path(root).expanduser()
        self.on_change = on_change
        self.poll_interval_s = poll_interval_s
        self.stability_threshold_s = stability_threshold_s
        self.pattern = pattern
        self._clock = clock
        self._known: Dict[str, Signature] = {}
        self._settling: Dict[str, Tuple[Signature, float]] = {}
        self._primed = False
        self._stopped = asyncio.Event()

    def signatures(self) -> Dict[str, Signature]:
        """Current (mtime, size) of every matching file."""
        found: Dict[str, Signature] = {}
        if not self.root.is_dir():
            return found
        for path in self.root.rglob(self.pattern):
            try:
                stat = path.stat()
            except FileNotFoundError:
                continue
            if path.is_file():
                found[str(path)] = (stat.st_mtime, stat.st_size)
        return found

    def prime(self, current: Optional[Dict[str, Signature]] = None) -> None:
        """Record existing files without emitting notifications for them.

        Files that appear or change after the baseline are reported by the
        next scans, so priming before an initial load misses nothing.
        """
        self._known = dict(current if current is not None else self.signatures())
        self._settling.clear()
        self._primed = True

    def scan_once(self, current: Optional[Dict[str, Signature]] = None) -> List[FileChangeEvent]:
        """Compare the file tree with the previous scan and emit settled changes."""
        if current is None:
            current = self.signatures()
        now = self._clock()
        events: List[FileChangeEvent] = []

        for path in sorted(set(self._known) - set(current)):
            del self._known[path]
            events.append(FileChangeEvent(ChangeKind.REMOVED, path, time.time()))
        for path in set(self._settling) - set(current):
            del self._settling[path]

        for path, signature in sorted(current.items()):
            if self._known.get(path) == signature:
                self._settling.pop(path, None)
                continue

            settling = self._settling.get(path)
            if settling is None or settling[0] != signature:
                # Still being written; restart the stability clock
                self._settling[path] = (signature, now)
                continue

            if now - settling[1] >= self.stability_threshold_s:
                kind = ChangeKind.CHANGED if path in self._known else ChangeKind.ADDED
                self._known[path] = signature
                del self._settling[path]
                events.append(FileChangeEvent(kind, path, time.time()))

        for event in events:
            log.debug("File %s: %s", event.kind.value, event.path)
            self.on_change(event)
        return events

    async def run(self) -> None:
        """Poll until :meth:`stop` is called.

        Directory scans run in a worker thread; notifications are
        delivered on the event loop thread. Without an earlier
        :meth:`prime` the baseline is the tree as it is on entry.
        """
        if not self._primed:
            self.prime(await asyncio.to_thread(self.signatures))
        log.info("Watching %s for changes", self.root)
        while not self._stopped.is_set():
            try:
                await asyncio.wait_for(self._stopped.wait(), self.poll_interval_s)
            except asyncio.TimeoutError:
                pass
            if self._stopped.is_set():
                break
            try:
                current = await asyncio.to_thread(self.signatures)
            except OSError as e:
                log.error("File watcher error: %s", e)
                continue
            self.scan_once(current)

    def stop(self) -> None:
        self._stopped.set()
