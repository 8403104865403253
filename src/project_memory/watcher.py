"""Optional background re-indexing driven by filesystem events.

The observer thread only enqueues paths. A single worker drains the queue,
coalesces repeated saves inside a debounce window, parses outside any
transaction and writes with bounded retries when the store is busy.
"""

from __future__ import annotations

import asyncio
import logging
import queue
import threading
import time
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TypeVar

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .indexer import SymbolIndexer, should_skip_dir
from .languages import language_for_path
from .storage import StoreBusy

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEBOUNCE_SECONDS = 0.5
RETRY_ATTEMPTS = 5
RETRY_BASE_DELAY = 0.05
RETRY_MAX_DELAY = 1.0
# A burst of events is flushed after at most this many debounce windows.
MAX_DEBOUNCE_WINDOWS = 5


async def write_with_retry(
    op: Callable[[], Awaitable[T]],
    attempts: int = RETRY_ATTEMPTS,
    base_delay: float = RETRY_BASE_DELAY,
    max_delay: float = RETRY_MAX_DELAY,
) -> T:
    """Await ``op()``, backing off exponentially while the store is busy."""
    delay = base_delay
    for attempt in range(1, attempts + 1):
        try:
            return await op()
        except StoreBusy:
            if attempt == attempts:
                raise
            logger.debug("Store busy, retry %d/%d in %.2fs", attempt, attempts, delay)
            await asyncio.sleep(delay)
            delay = min(delay * 2, max_delay)
    raise AssertionError("unreachable")


class _EnqueueHandler(FileSystemEventHandler):
    def __init__(self, watcher: FileWatcher):
        self.watcher = watcher

    def on_modified(self, event: FileSystemEvent):
        if not event.is_directory:
            self.watcher.enqueue(event.src_path)

    def on_created(self, event: FileSystemEvent):
        if not event.is_directory:
            self.watcher.enqueue(event.src_path)

    def on_deleted(self, event: FileSystemEvent):
        if not event.is_directory:
            self.watcher.enqueue(event.src_path)

    def on_moved(self, event: FileSystemEvent):
        if not event.is_directory:
            self.watcher.enqueue(event.src_path)
            self.watcher.enqueue(event.dest_path)


class FileWatcher:
    """Watches ``root`` and keeps the symbol index current."""

    def __init__(self, root: str | Path, indexer: SymbolIndexer, debounce: float = DEBOUNCE_SECONDS):
        self.root = Path(root).resolve()
        self.indexer = indexer
        self.debounce = debounce
        self._queue: queue.Queue[str | None] = queue.Queue()
        self._observer = None
        self._worker: threading.Thread | None = None
        self.processed = 0

    def wants(self, path: str | Path) -> bool:
        p = Path(path)
        try:
            parts = p.resolve().relative_to(self.root).parts
        except ValueError:
            return False
        if any(should_skip_dir(part) for part in parts[:-1]):
            return False
        return language_for_path(p.name).supported

    def enqueue(self, path: str | bytes) -> None:
        if isinstance(path, bytes):
            path = path.decode("utf-8", errors="surrogateescape")
        if self.wants(path):
            self._queue.put(path)

    def start(self) -> None:
        if self._worker is not None:
            return
        self._worker = threading.Thread(target=self._run, name="project-memory-watcher", daemon=True)
        self._worker.start()
        self._observer = Observer()
        self._observer.schedule(_EnqueueHandler(self), str(self.root), recursive=True)
        self._observer.start()
        logger.info("Watching %s", self.root)

    def stop(self, timeout: float = 5.0) -> None:
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout)
            self._observer = None
        if self._worker is not None:
            self._queue.put(None)
            self._worker.join(timeout)
            self._worker = None

    def _collect(self) -> tuple[list[str], bool]:
        """Block for one path, then gather more until the queue stays quiet."""
        first = self._queue.get()
        if first is None:
            return [], True
        pending = {first: None}
        started = time.monotonic()
        hard_stop = started + self.debounce * MAX_DEBOUNCE_WINDOWS
        quiet_until = started + self.debounce
        while True:
            remaining = min(quiet_until, hard_stop) - time.monotonic()
            if remaining <= 0:
                return list(pending), False
            try:
                item = self._queue.get(timeout=remaining)
            except queue.Empty:
                return list(pending), False
            if item is None:
                return list(pending), True
            pending[item] = None
            quiet_until = time.monotonic() + self.debounce

    def _run(self) -> None:
        while True:
            paths, stopping = self._collect()
            if paths:
                asyncio.run(self.process(paths))
            if stopping:
                return

    async def process(self, paths: list[str]) -> int:
        """Re-index each path; failures are logged and skipped."""
        done = 0
        for path in paths:
            staged = await asyncio.to_thread(self.indexer.stage, path)
            if staged is None:
                continue
            try:
                if not staged.deleted and await self.indexer.store.indexed_hash(staged.file_path) == staged.content_hash:
                    continue
                await write_with_retry(lambda: self.indexer.apply(staged))
            except StoreBusy:
                # Still busy after the bounded retries; try again on the next pass.
                logger.warning("Store stayed busy; re-queued %s", staged.file_path)
                self._queue.put(path)
                continue
            except Exception as e:
                logger.warning("Re-indexing %s failed: %s", staged.file_path, e)
                continue
            done += 1
        self.processed += done
        return done
