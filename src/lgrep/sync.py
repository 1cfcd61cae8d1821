"""Watch mode: re-sync the index as project files change.

A watchdog observer pushes changed paths into a queue. A single consumer
thread collects them until no new change has arrived for the debounce
window, then runs one incremental sync restricted to those paths.
"""

import logging
import os
import queue
import threading
import time
from collections.abc import Callable
from pathlib import Path

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.api import BaseObserver

from lgrep.config import INDEX_DIR_NAME
from lgrep.errors import IndexLockedError, WatchError
from lgrep.indexer import Indexer, SyncStats

logger = logging.getLogger(__name__)

# Poll interval of the consumer while idle, bounds shutdown latency
IDLE_POLL_SECONDS = 0.5


class _ChangeHandler(FileSystemEventHandler):
    """Forwards watchdog events to the watcher's queue as absolute paths."""

    def __init__(self, watcher: "IndexWatcher"):
        super().__init__()
        self._watcher = watcher

    def on_created(self, event: FileSystemEvent) -> None:
        self._watcher.notify(event.src_path)

    def on_modified(self, event: FileSystemEvent) -> None:
        # Directory mtimes change whenever a child does; the child has its own event
        if not event.is_directory:
            self._watcher.notify(event.src_path)

    def on_deleted(self, event: FileSystemEvent) -> None:
        self._watcher.notify(event.src_path)

    def on_moved(self, event: FileSystemEvent) -> None:
        self._watcher.notify(event.src_path)
        self._watcher.notify(event.dest_path)


class IndexWatcher:
    """Keeps an index up to date with filesystem changes.

    Both the observer and the consumer are daemon threads, so they
    terminate with the main process even if ``stop`` is never called.
    """

    def __init__(
        self,
        indexer: Indexer,
        debounce_ms: int | None = None,
        on_sync: Callable[[SyncStats], None] | None = None,
    ):
        """Initialize the watcher.

        Args:
            indexer: The indexer to run incremental syncs on.
            debounce_ms: Quiet period before a batch is synced. Defaults to
                the indexer's configured value.
            on_sync: Called with the stats of every sync that changed something.
        """
        if debounce_ms is None:
            debounce_ms = indexer.config.debounce_ms
        if debounce_ms < 0:
            raise ValueError(f"Debounce must be >= 0, got {debounce_ms}")

        self._indexer = indexer
        self._root = indexer.root
        self._debounce = debounce_ms / 1000
        self._on_sync = on_sync
        self._changes: queue.Queue[str | None] = queue.Queue()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._observer: BaseObserver | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def notify(self, path: str | bytes | Path) -> None:
        """Queue a changed path. Paths inside the index directory are ignored."""
        path = Path(os.fsdecode(path))
        try:
            relative = path.relative_to(self._root)
        except ValueError:
            return
        if relative.parts and relative.parts[0] == INDEX_DIR_NAME:
            return
        self._changes.put(str(path))

    def start(self, observe: bool = True) -> None:
        """Start the consumer thread and, unless ``observe`` is False, the observer.

        Raises:
            WatchError: if the filesystem observer cannot be started.
        """
        if self.running:
            logger.warning("Watcher already running")
            return

        self._stop_event.clear()
        if observe:
            observer = Observer()
            observer.daemon = True
            try:
                observer.schedule(_ChangeHandler(self), str(self._root), recursive=True)
                observer.start()
            except OSError as e:
                raise WatchError(f"Cannot watch {self._root}: {e}") from e
            self._observer = observer

        self._thread = threading.Thread(
            target=self._watch_loop,
            name="lgrep-watch",
            daemon=True,
        )
        self._thread.start()
        logger.info("Watching %s (debounce: %dms)", self._root, self._debounce * 1000)

    def stop(self) -> None:
        """Stop observing and wait for the consumer to finish its current sync."""
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5.0)
            self._observer = None

        if self._thread is None:
            return
        self._stop_event.set()
        self._changes.put(None)
        self._thread.join(timeout=30.0)
        if self._thread.is_alive():
            logger.warning("Watch thread did not stop cleanly")
        else:
            logger.info("Watcher stopped")
        self._thread = None

    def _collect_batch(self, first: str) -> set[str] | None:
        """Gather changes until the debounce window passes without new ones.

        Returns None if a stop was requested meanwhile.
        """
        batch = {first}
        deadline = time.monotonic() + self._debounce
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return batch
            try:
                item = self._changes.get(timeout=remaining)
            except queue.Empty:
                return batch
            if item is None:
                return None
            batch.add(item)
            deadline = time.monotonic() + self._debounce

    def _watch_loop(self) -> None:
        """Main watch loop - runs in background thread."""
        logger.debug("Watch loop started")

        while not self._stop_event.is_set():
            try:
                first = self._changes.get(timeout=IDLE_POLL_SECONDS)
            except queue.Empty:
                continue
            if first is None:
                break

            batch = self._collect_batch(first)
            if batch is None:
                break
            self._sync_batch(batch)

        logger.debug("Watch loop stopped")

    def _sync_batch(self, batch: set[str]) -> None:
        logger.debug("Syncing %d changed paths", len(batch))
        try:
            stats = self._indexer.sync(paths=sorted(batch))
        except IndexLockedError:
            logger.warning("Index is locked by another sync, retrying %d paths", len(batch))
            for path in batch:
                self._changes.put(path)
            self._stop_event.wait(timeout=max(self._debounce, IDLE_POLL_SECONDS))
            return
        except Exception:
            logger.exception("Error during watch sync")
            return

        if stats.changed:
            logger.info("Watch sync: %s", stats)
            if self._on_sync is not None:
                self._on_sync(stats)
        else:
            logger.debug("Watch sync: no changes detected")
