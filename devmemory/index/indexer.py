"""
Indexer — keeps the code index of one repository in sync with its files.

Incremental mode diffs a fresh scan against the stored mtimes and only
parses added and modified files; full mode reparses every scanned file.
Files are parsed concurrently in a thread pool, but each file's rows are
written in the calling thread inside their own transaction.

Per-repository state::

    unindexed -> indexing -> indexed -> (stale) -> indexing -> indexed

A cancelled run leaves the repository ``stale``: files committed before
the cancel stay committed, the rest are picked up by the next run.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Callable, Optional

from ..memory.db import Database
from ..memory.repos import RepoRegistry
from .diff import compute_diff
from .parsers import ParseResult, parser_for_path
from .scanner import DEFAULT_MAX_FILE_SIZE, ScannedFile, scan
from .store import IndexStore

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int, str], None]


@dataclass(frozen=True)
class IndexResult:
    """Summary of one reindex run."""
    files_scanned: int = 0
    files_added: int = 0
    files_modified: int = 0
    files_deleted: int = 0
    files_unchanged: int = 0
    files_indexed: int = 0
    symbols_found: int = 0
    imports_found: int = 0
    partial_files: int = 0
    errors: list[str] = field(default_factory=list)
    duration_ms: int = 0
    cancelled: bool = False


def _parse_one(f: ScannedFile) -> tuple[ScannedFile, Optional[ParseResult], Optional[str]]:
    """Read and parse one file.  Runs in a worker thread."""
    parser = parser_for_path(f.path)
    if parser is None:
        return f, None, "unsupported file extension"
    try:
        with open(f.absolute_path, "rb") as fh:
            content = fh.read()
    except OSError as exc:
        return f, None, f"cannot read file: {exc}"
    try:
        return f, parser.parse(f.path, content), None
    except Exception as exc:
        logger.exception("Parser crashed on %s", f.path)
        return f, None, f"parser failed: {exc}"


class Indexer:
    """
    Orchestrates full and incremental indexing of a repository.

    Parameters
    ----------
    db:
        Open :class:`Database`.
    repos:
        Registry holding the repository's index state.
    root:
        Repository root directory.
    exclude_patterns:
        Extra exclusion globs for the scanner.
    max_file_size:
        Size ceiling in bytes.
    include_tests:
        Index test files as well.
    workers:
        Parser threads.
    """

    def __init__(
        self,
        db: Database,
        repos: RepoRegistry,
        root: str,
        exclude_patterns: Optional[list[str]] = None,
        max_file_size: int = DEFAULT_MAX_FILE_SIZE,
        include_tests: bool = False,
        workers: int = 4,
    ) -> None:
        self.root = os.path.abspath(root)
        self._repos = repos
        self.repo_id = repos.ensure(self.root).id
        self.store = IndexStore(db, self.repo_id)
        self.exclude_patterns = list(exclude_patterns or [])
        self.max_file_size = max_file_size
        self.include_tests = include_tests
        self.workers = max(1, workers)
        self._run_lock = threading.Lock()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> str:
        return self._repos.require(self.repo_id).index_state

    def mark_stale(self) -> None:
        """Flag the index as out of date (e.g. after a file change event)."""
        if self.state == "indexed":
            self._repos.set_index_state(self.repo_id, "stale")

    def status(self) -> dict:
        repo = self._repos.require(self.repo_id)
        info = self.store.stats()
        info.update({
            "repo_id": self.repo_id,
            "root": self.root,
            "state": repo.index_state,
            "indexed_at": repo.indexed_at,
        })
        return info

    # ------------------------------------------------------------------
    # Reindex
    # ------------------------------------------------------------------

    def reindex(
        self,
        full: bool = False,
        cancel_event: Optional[threading.Event] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> IndexResult:
        """
        Bring the index up to date with the file tree.

        Parameters
        ----------
        full:
            Reparse every scanned file instead of only changed ones.
        cancel_event:
            When set, stops after the file currently being written.
        progress:
            Called with ``(done, total, path)`` after each file is written.

        Returns
        -------
        IndexResult
            Per-file read/parse problems are listed in ``errors``; they do
            not stop the run.
        """
        with self._run_lock:
            start = time.monotonic()
            self._repos.set_index_state(self.repo_id, "indexing")
            try:
                result = self._run(full, cancel_event, progress, start)
            except BaseException:
                self._repos.set_index_state(self.repo_id, "stale")
                raise
            self._repos.set_index_state(self.repo_id, "stale" if result.cancelled else "indexed")
            return result

    def _run(self, full, cancel_event, progress, start) -> IndexResult:
        scanned = scan(
            self.root,
            exclude_patterns=self.exclude_patterns,
            max_file_size=self.max_file_size,
            include_tests=self.include_tests,
        )
        diff = compute_diff(scanned, self.store.indexed_mtimes())
        to_parse = scanned if full else diff.changed
        logger.info(
            "Reindex %s (%s): %d scanned, %d added, %d modified, %d deleted",
            self.root, "full" if full else "incremental", len(scanned),
            len(diff.added), len(diff.modified), len(diff.deleted),
        )

        for path in diff.deleted:
            self.store.remove_file(path)

        errors: list[str] = []
        indexed = symbols = imports = partial = 0
        cancelled = False
        total = len(to_parse)

        if to_parse and cancel_event is not None and cancel_event.is_set():
            cancelled = True
        elif to_parse:
            with ThreadPoolExecutor(max_workers=self.workers,
                                    thread_name_prefix="devmem-parse") as pool:
                futures = [pool.submit(_parse_one, f) for f in to_parse]
                for done, fut in enumerate(as_completed(futures), start=1):
                    f, parsed, error = fut.result()
                    if parsed is None:
                        logger.warning("Skipping %s: %s", f.path, error)
                        errors.append(f"{f.path}: {error}")
                    else:
                        self.store.replace_file(f.path, f.mtime, parsed)
                        indexed += 1
                        symbols += len(parsed.symbols)
                        imports += len(parsed.imports)
                        if parsed.partial:
                            partial += 1
                            errors.extend(f"{f.path}: {e}" for e in parsed.errors)
                    if progress is not None:
                        progress(done, total, f.path)
                    if cancel_event is not None and cancel_event.is_set():
                        cancelled = done < total
                        for other in futures:
                            other.cancel()
                        break

        result = IndexResult(
            files_scanned=len(scanned),
            files_added=len(diff.added),
            files_modified=len(diff.modified),
            files_deleted=len(diff.deleted),
            files_unchanged=len(diff.unchanged),
            files_indexed=indexed,
            symbols_found=symbols,
            imports_found=imports,
            partial_files=partial,
            errors=errors,
            duration_ms=int((time.monotonic() - start) * 1000),
            cancelled=cancelled,
        )
        logger.info(
            "Reindex %s: %d files indexed, %d symbols, %d imports, %d errors in %dms%s",
            self.root, indexed, symbols, imports, len(errors), result.duration_ms,
            " (cancelled)" if cancelled else "",
        )
        return result
