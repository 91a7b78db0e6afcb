"""
DevMemory — the public facade over the memory store and the code index.

Wires one :class:`~devmemory.memory.db.Database`, one embedder and the
stores together for a working directory.  Every public operation is a
method here; the CLI is a thin layer on top.

Usage::

    mem = DevMemory(repo_root=".")
    result = mem.store("jest cannot find module", "add moduleNameMapper", tags=["jest"])
    for match in mem.recall("module not found in tests"):
        print(match.id, match.rank)
    mem.close()
"""

from __future__ import annotations

import logging
import os
import threading
from typing import Callable, Optional, Sequence

from .config import Config
from .index.indexer import IndexResult, Indexer
from .index.store import CallerRow, ImportRow, SymbolRow
from .index.watcher import IndexWatcher
from .memory.db import Database, close_database, get_database
from .memory.embedder import get_embedder, shutdown_embedder
from .memory.failures import FailureStore
from .memory.merge import MergeEngine
from .memory.records import (
    FailureMatch,
    FailureResult,
    MergeCandidate,
    MergeResult,
    RecallMatch,
    RewardResult,
    Solution,
    StoreResult,
    WarningRule,
)
from .memory.repos import RepoRegistry
from .memory.solutions import SolutionStore
from .memory.warnings import WarningStore

logger = logging.getLogger(__name__)


class DevMemory:
    """
    Developer memory and code index for one working directory.

    Parameters
    ----------
    config:
        Settings; defaults to :meth:`Config.load`.
    db:
        Open database.  When omitted the process-wide database at
        ``config.DB_PATH`` is used and closed by :meth:`close`.
    embedder:
        Object with ``embed`` / ``embed_many``.  When omitted the
        process-wide fastembed embedder is used and shut down by
        :meth:`close`.  The model is only loaded by operations that embed.
    repo_root:
        Repository the caller is working in (default: current directory).
        Drives recall boosts, repo-scoped storage and the code index.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        db: Optional[Database] = None,
        embedder=None,
        repo_root: Optional[str] = None,
    ) -> None:
        self.config = config or Config.load()
        self._owns_db = db is None
        self._owns_embedder = embedder is None
        self.db = db if db is not None else get_database(self.config.DB_PATH)
        self.embedder = embedder if embedder is not None else get_embedder(
            self.config.EMBEDDING_MODEL, self.config.EMBEDDING_CACHE_DIR
        )
        self.repo_root = os.path.abspath(repo_root or os.getcwd())

        self.repos = RepoRegistry(self.db, self.embedder)
        self.solutions = SolutionStore(self.db, self.embedder, self.repos, self.config)
        self.failures = FailureStore(self.db, self.embedder)
        self.warnings = WarningStore(self.db)
        self.merger = MergeEngine(self.db, self.config)

        self._indexers: dict[str, Indexer] = {}
        self._indexers_lock = threading.Lock()
        self._closed = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Release the database and embedder if this instance opened them."""
        if self._closed:
            return
        self._closed = True
        if self._owns_embedder:
            shutdown_embedder()
        if self._owns_db:
            close_database()

    def __enter__(self) -> "DevMemory":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _root(self, repo_root: Optional[str]) -> str:
        return os.path.abspath(repo_root) if repo_root else self.repo_root

    # ------------------------------------------------------------------
    # Solutions
    # ------------------------------------------------------------------

    def store(
        self,
        problem: str,
        solution: str,
        scope: str = "global",
        tags: Optional[Sequence[str]] = None,
        category: Optional[str] = None,
        complexity: Optional[int] = None,
        code_blocks: Optional[Sequence[str]] = None,
        prerequisites: Optional[Sequence[str]] = None,
        anti_patterns: Optional[Sequence[str]] = None,
        related_solutions: Optional[Sequence[str]] = None,
        files_affected: Optional[Sequence[str]] = None,
        supersedes: Optional[str] = None,
        repo_root: Optional[str] = None,
    ) -> StoreResult:
        """Store a problem/solution pair, tagged with the current repository."""
        return self.solutions.store(
            problem,
            solution,
            scope=scope,
            tags=tags,
            category=category,
            complexity=complexity,
            code_blocks=code_blocks,
            prerequisites=prerequisites,
            anti_patterns=anti_patterns,
            related_solutions=related_solutions,
            files_affected=files_affected,
            supersedes=supersedes,
            repo_root=self._root(repo_root),
        )

    def recall(
        self,
        query: str,
        limit: Optional[int] = None,
        min_score: Optional[float] = None,
        scope_filter: str = "all",
        repo_root: Optional[str] = None,
    ) -> list[RecallMatch]:
        """Rank stored solutions against *query* from the current repository's view."""
        return self.solutions.recall(
            query,
            limit=limit,
            min_score=min_score,
            scope_filter=scope_filter,
            repo_root=self._root(repo_root),
        )

    def reward(self, solution_id: str, outcome: str, notes: Optional[str] = None) -> RewardResult:
        return self.solutions.reward(solution_id, outcome, notes)

    def get_solution(self, solution_id: str) -> Solution:
        """Look up a solution by full id or unambiguous id prefix."""
        found = self.solutions.get(solution_id)
        return found if found is not None else self.solutions.get_by_prefix(solution_id)

    def update_solution(self, solution_id: str, **changes) -> Solution:
        return self.solutions.update(solution_id, **changes)

    def delete_solution(self, solution_id: str) -> None:
        self.solutions.delete(solution_id)

    def list_solutions(self, limit: int = 10, scope: Optional[str] = None) -> list[Solution]:
        return self.solutions.list_recent(limit, scope)

    # ------------------------------------------------------------------
    # Failures
    # ------------------------------------------------------------------

    def record_failure(
        self,
        error_type: str,
        message: str,
        root_cause: Optional[str] = None,
        fix_applied: Optional[str] = None,
        prevention: Optional[str] = None,
        files_involved: Optional[Sequence[str]] = None,
    ) -> FailureResult:
        return self.failures.record_failure(
            error_type,
            message,
            root_cause=root_cause,
            fix_applied=fix_applied,
            prevention=prevention,
            files_involved=files_involved,
        )

    def search_failures(self, query: str, limit: int = 5, min_score: float = 0.3) -> list[FailureMatch]:
        return self.failures.search_failures(query, limit=limit, min_score=min_score)

    # ------------------------------------------------------------------
    # Merge
    # ------------------------------------------------------------------

    def merge_candidates(
        self,
        threshold: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> list[MergeCandidate]:
        return self.merger.find_candidates(threshold, cancel_event)

    def execute_merge(self, keep_id: str, remove_id: str) -> MergeResult:
        return self.merger.execute_merge(keep_id, remove_id)

    def merge_all(
        self,
        candidates: list[MergeCandidate],
        decide: Optional[Callable[[MergeCandidate], str]] = None,
    ) -> list[MergeResult]:
        return self.merger.merge_all(candidates, decide)

    # ------------------------------------------------------------------
    # Warnings
    # ------------------------------------------------------------------

    def _warning_repo_id(self, repo_root: Optional[str], global_: bool) -> Optional[str]:
        if global_:
            return None
        return self.repos.ensure(self._root(repo_root)).id

    def add_warning(
        self,
        type_: str,
        target: str,
        reason: str,
        severity: str = "warn",
        global_: bool = False,
        repo_root: Optional[str] = None,
    ) -> WarningRule:
        """Add a warning for the current repository, or for every repository with *global_*."""
        repo_id = self._warning_repo_id(repo_root, global_)
        return self.warnings.add(type_, target, reason, severity=severity, repo_id=repo_id)

    def remove_warning(self, warning_id: str) -> None:
        self.warnings.remove(warning_id)

    def list_warnings(
        self, type_: Optional[str] = None, repo_root: Optional[str] = None
    ) -> list[WarningRule]:
        return self.warnings.list(self.repos.ensure(self._root(repo_root)).id, type_)

    def check_warnings(
        self, type_: str, value: str, repo_root: Optional[str] = None
    ) -> list[WarningRule]:
        return self.warnings.check(type_, value, self.repos.ensure(self._root(repo_root)).id)

    # ------------------------------------------------------------------
    # Code index
    # ------------------------------------------------------------------

    def indexer(self, repo_root: Optional[str] = None) -> Indexer:
        """The :class:`Indexer` for *repo_root*, created once per root."""
        root = self._root(repo_root)
        with self._indexers_lock:
            if root not in self._indexers:
                self._indexers[root] = Indexer(
                    self.db,
                    self.repos,
                    root,
                    exclude_patterns=self.config.INDEX_EXCLUDE,
                    max_file_size=self.config.INDEX_MAX_FILE_SIZE,
                    include_tests=self.config.INDEX_INCLUDE_TESTS,
                    workers=self.config.INDEX_WORKERS,
                )
            return self._indexers[root]

    def reindex(
        self,
        full: bool = False,
        cancel_event: Optional[threading.Event] = None,
        progress: Optional[Callable[[int, int, str], None]] = None,
        repo_root: Optional[str] = None,
    ) -> IndexResult:
        return self.indexer(repo_root).reindex(full=full, cancel_event=cancel_event, progress=progress)

    def watch(
        self,
        on_reindex: Optional[Callable[[IndexResult], None]] = None,
        repo_root: Optional[str] = None,
    ) -> IndexWatcher:
        """Return an (unstarted) watcher that keeps the index in sync."""
        return IndexWatcher(self.indexer(repo_root), self.config.WATCH_DEBOUNCE, on_reindex)

    def find_definition(
        self,
        name: str,
        kind: Optional[str] = None,
        file: Optional[str] = None,
        repo_root: Optional[str] = None,
    ) -> list[SymbolRow]:
        return self.indexer(repo_root).store.find_definitions(name, kind=kind, file=file)

    def find_callers(
        self, name: str, file: Optional[str] = None, repo_root: Optional[str] = None
    ) -> list[CallerRow]:
        return self.indexer(repo_root).store.find_callers(name, file=file)

    def list_exports(self, path: Optional[str] = None, repo_root: Optional[str] = None) -> list[SymbolRow]:
        return self.indexer(repo_root).store.find_exports(path)

    def search_symbols(
        self,
        query: str,
        kind: Optional[str] = None,
        exported_only: bool = False,
        limit: int = 20,
        repo_root: Optional[str] = None,
    ) -> list[SymbolRow]:
        return self.indexer(repo_root).store.search_symbols(
            query, kind=kind, exported_only=exported_only, limit=limit
        )

    def get_imports(self, file: str, repo_root: Optional[str] = None) -> list[ImportRow]:
        return self.indexer(repo_root).store.get_imports(file)

    def index_status(self, repo_root: Optional[str] = None) -> dict:
        return self.indexer(repo_root).status()

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self) -> dict:
        """Memory statistics plus the database path."""
        info = self.solutions.stats()
        info["db_path"] = self.db.path
        return info
