"""
File watcher for incremental code-index updates.

Uses watchdog to monitor a repository.  Any event touching an indexable
source file marks the index ``stale`` and (re)arms a debounce timer; when
the tree has been quiet for ``debounce_seconds`` an incremental reindex runs.
"""

from __future__ import annotations

import logging
import os
import threading
from typing import Callable, Optional

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from .indexer import IndexResult, Indexer
from .scanner import is_excluded, is_gitignored_path, load_gitignore_patterns

logger = logging.getLogger(__name__)


class IndexEventHandler(FileSystemEventHandler):
    """
    Watchdog event handler that schedules debounced reindex runs.

    Parameters
    ----------
    indexer:
        The :class:`~devmemory.index.indexer.Indexer` to drive.
    debounce_seconds:
        Quiet period after the last relevant event before reindexing.
    on_reindex:
        Optional callback receiving each :class:`IndexResult`.
    """

    def __init__(
        self,
        indexer: Indexer,
        debounce_seconds: float = 0.5,
        on_reindex: Optional[Callable[[IndexResult], None]] = None,
    ) -> None:
        super().__init__()
        self._indexer = indexer
        self._root = indexer.root
        self._debounce = debounce_seconds
        self._on_reindex = on_reindex
        self._lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self._gitignore = load_gitignore_patterns(self._root)

    # ------------------------------------------------------------------
    # Watchdog event dispatch
    # ------------------------------------------------------------------

    def on_modified(self, event) -> None:
        if not event.is_directory:
            self._handle(event.src_path)

    def on_created(self, event) -> None:
        if not event.is_directory:
            self._handle(event.src_path)

    def on_deleted(self, event) -> None:
        if not event.is_directory:
            self._handle(event.src_path)

    def on_moved(self, event) -> None:
        if not event.is_directory:
            self._handle(event.src_path)
            self._handle(event.dest_path)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _rel_path(self, abs_path) -> Optional[str]:
        """Project-relative posix path, or None if outside the root."""
        if isinstance(abs_path, bytes):
            abs_path = os.fsdecode(abs_path)
        try:
            rel = os.path.relpath(os.path.abspath(abs_path), self._root)
        except ValueError:
            return None
        if rel == os.curdir or rel.startswith(os.pardir):
            return None
        return rel.replace(os.sep, "/")

    def is_relevant(self, abs_path) -> bool:
        """Return True if a change to *abs_path* can affect the index."""
        rel = self._rel_path(abs_path)
        if rel is None:
            return False
        if is_excluded(rel, self._indexer.exclude_patterns, self._indexer.include_tests):
            return False
        return not is_gitignored_path(rel, self._gitignore)

    def _handle(self, abs_path) -> None:
        if self._rel_path(abs_path) == ".gitignore":
            self._gitignore = load_gitignore_patterns(self._root)
            logger.debug("[index watcher] Reloaded .gitignore")
            return
        if not self.is_relevant(abs_path):
            return
        logger.debug("[index watcher] Change: %s", abs_path)
        self._indexer.mark_stale()
        self._schedule()

    def _schedule(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self._debounce, self._fire)
            self._timer.daemon = True
            self._timer.start()

    @property
    def pending(self) -> bool:
        """True while a debounced reindex is waiting to run."""
        with self._lock:
            return self._timer is not None

    def _fire(self) -> None:
        with self._lock:
            self._timer = None
        self.flush()

    def flush(self) -> Optional[IndexResult]:
        """Run the incremental reindex now."""
        try:
            result = self._indexer.reindex()
        except Exception:
            logger.exception("[index watcher] Reindex of %s failed", self._root)
            return None
        logger.info(
            "[index watcher] Reindexed %s: %d files, %d deleted",
            self._root, result.files_indexed, result.files_deleted,
        )
        if self._on_reindex is not None:
            self._on_reindex(result)
        return result

    def cancel(self) -> None:
        """Drop any pending reindex."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None


class IndexWatcher:
    """
    High-level wrapper around a watchdog observer for one repository.

    Usage::

        watcher = IndexWatcher(indexer)
        watcher.start()          # non-blocking
        ...
        watcher.stop()

    Parameters
    ----------
    indexer:
        Configured :class:`~devmemory.index.indexer.Indexer`.
    debounce_seconds:
        Quiet period before an incremental reindex runs.
    on_reindex:
        Optional callback receiving each :class:`IndexResult`.
    """

    def __init__(
        self,
        indexer: Indexer,
        debounce_seconds: float = 0.5,
        on_reindex: Optional[Callable[[IndexResult], None]] = None,
    ) -> None:
        self._indexer = indexer
        self.handler = IndexEventHandler(indexer, debounce_seconds, on_reindex)
        self._observer: Optional[Observer] = None

    @property
    def running(self) -> bool:
        return self._observer is not None and self._observer.is_alive()

    def start(self) -> None:
        """Start watching in watchdog's background thread."""
        if self._observer is not None:
            return
        observer = Observer()
        observer.schedule(self.handler, self._indexer.root, recursive=True)
        observer.start()
        self._observer = observer
        logger.info("[index watcher] Watching %s", self._indexer.root)

    def run_forever(self) -> None:
        """Start watching and block until interrupted."""
        self.start()
        try:
            while self._observer is not None and self._observer.is_alive():
                self._observer.join(timeout=1)
        except KeyboardInterrupt:
            logger.info("[index watcher] Interrupted")
        finally:
            self.stop()

    def stop(self) -> None:
        """Stop the observer and drop any pending reindex."""
        self.handler.cancel()
        if self._observer is not None:
            self._observer.stop()
            self._observer.join()
            self._observer = None
            logger.info("[index watcher] Stopped")

    def __enter__(self) -> "IndexWatcher":
        self.start()
        return self

    def __exit__(self, *exc) -> None:
        self.stop()
