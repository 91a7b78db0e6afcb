"""
SQLite persistence shared by the memory store and the code index.

One connection per process, opened lazily and guarded by a lock.  Every
write goes through :meth:`Database.transaction`, which commits on success
and rolls back on any exception, so callers never observe half-written
state.

Storage: ``~/.devmemory/memory.db`` (configurable via ``db_path``).
"""

from __future__ import annotations

import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

SCOPES = ("global", "stack", "repo")
CATEGORIES = ("bugfix", "feature", "refactor", "config", "pattern", "optimization")
OUTCOMES = ("success", "partial", "failure")
INDEX_STATES = ("unindexed", "indexing", "indexed", "stale")
WARNING_TYPES = ("file", "package")
SEVERITIES = ("info", "warn", "block")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS repos (
    id                    TEXT PRIMARY KEY,
    path                  TEXT UNIQUE NOT NULL,
    name                  TEXT NOT NULL DEFAULT '',
    languages             TEXT NOT NULL DEFAULT '[]',
    frameworks            TEXT NOT NULL DEFAULT '[]',
    patterns              TEXT NOT NULL DEFAULT '[]',
    fingerprint_embedding BLOB,
    index_state           TEXT NOT NULL DEFAULT 'unindexed'
                          CHECK (index_state IN ('unindexed', 'indexing', 'indexed', 'stale')),
    indexed_at            TEXT,
    updated_at            TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS solutions (
    id                TEXT PRIMARY KEY,
    repo_id           TEXT REFERENCES repos(id),
    problem           TEXT NOT NULL,
    problem_embedding BLOB NOT NULL,
    solution          TEXT NOT NULL,
    scope             TEXT NOT NULL CHECK (scope IN ('global', 'stack', 'repo')),
    tags              TEXT NOT NULL DEFAULT '[]',
    category          TEXT CHECK (category IS NULL OR category IN
                          ('bugfix', 'feature', 'refactor', 'config', 'pattern', 'optimization')),
    complexity        INTEGER NOT NULL CHECK (complexity BETWEEN 1 AND 10),
    score             REAL    NOT NULL DEFAULT 0.5 CHECK (score BETWEEN 0 AND 1),
    uses              INTEGER NOT NULL DEFAULT 0 CHECK (uses >= 0),
    successes         INTEGER NOT NULL DEFAULT 0 CHECK (successes >= 0),
    partial_successes INTEGER NOT NULL DEFAULT 0 CHECK (partial_successes >= 0),
    failures          INTEGER NOT NULL DEFAULT 0 CHECK (failures >= 0),
    files_affected    TEXT NOT NULL DEFAULT '[]',
    prerequisites     TEXT NOT NULL DEFAULT '[]',
    anti_patterns     TEXT NOT NULL DEFAULT '[]',
    code_blocks       TEXT NOT NULL DEFAULT '[]',
    related_solutions TEXT NOT NULL DEFAULT '[]',
    supersedes        TEXT REFERENCES solutions(id) ON DELETE SET NULL,
    created_at        TEXT NOT NULL,
    updated_at        TEXT NOT NULL,
    CHECK (scope != 'repo' OR repo_id IS NOT NULL)
);

CREATE TABLE IF NOT EXISTS usage_log (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    solution_id TEXT NOT NULL REFERENCES solutions(id) ON DELETE CASCADE,
    outcome     TEXT NOT NULL CHECK (outcome IN ('success', 'partial', 'failure', 'merge')),
    notes       TEXT,
    created_at  TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS failures (
    id             TEXT PRIMARY KEY,
    signature      TEXT UNIQUE NOT NULL,
    error_type     TEXT NOT NULL,
    error_message  TEXT NOT NULL,
    occurrences    INTEGER NOT NULL DEFAULT 1 CHECK (occurrences >= 1),
    root_cause     TEXT,
    fix_applied    TEXT,
    prevention     TEXT,
    files_involved TEXT NOT NULL DEFAULT '[]',
    embedding      BLOB,
    created_at     TEXT NOT NULL,
    updated_at     TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS warnings (
    id         TEXT PRIMARY KEY,
    type       TEXT NOT NULL CHECK (type IN ('file', 'package')),
    target     TEXT NOT NULL,
    severity   TEXT NOT NULL DEFAULT 'warn' CHECK (severity IN ('info', 'warn', 'block')),
    reason     TEXT NOT NULL,
    repo_id    TEXT REFERENCES repos(id) ON DELETE CASCADE,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS repo_files (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    repo_id      TEXT    NOT NULL REFERENCES repos(id) ON DELETE CASCADE,
    path         TEXT    NOT NULL,
    mtime        INTEGER NOT NULL,
    language     TEXT    NOT NULL,
    parse_errors INTEGER NOT NULL DEFAULT 0,
    indexed_at   TEXT    NOT NULL,
    UNIQUE (repo_id, path)
);

CREATE TABLE IF NOT EXISTS symbols (
    id         INTEGER PRIMARY KEY AUTOINCREMENT,
    file_id    INTEGER NOT NULL REFERENCES repo_files(id) ON DELETE CASCADE,
    name       TEXT    NOT NULL,
    kind       TEXT    NOT NULL,
    line       INTEGER NOT NULL,
    end_line   INTEGER NOT NULL,
    exported   INTEGER NOT NULL DEFAULT 0,
    is_default INTEGER NOT NULL DEFAULT 0,
    scope      TEXT,
    signature  TEXT
);

CREATE TABLE IF NOT EXISTS imports (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    file_id       INTEGER NOT NULL REFERENCES repo_files(id) ON DELETE CASCADE,
    imported_name TEXT    NOT NULL,
    source_path   TEXT    NOT NULL,
    local_name    TEXT,
    is_default    INTEGER NOT NULL DEFAULT 0,
    is_namespace  INTEGER NOT NULL DEFAULT 0,
    is_type       INTEGER NOT NULL DEFAULT 0,
    line          INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_solutions_repo    ON solutions(repo_id);
CREATE INDEX IF NOT EXISTS idx_usage_solution    ON usage_log(solution_id);
CREATE UNIQUE INDEX IF NOT EXISTS idx_warnings_target
    ON warnings(type, target, COALESCE(repo_id, ''));
CREATE INDEX IF NOT EXISTS idx_symbols_name      ON symbols(name);
CREATE INDEX IF NOT EXISTS idx_symbols_file      ON symbols(file_id);
CREATE INDEX IF NOT EXISTS idx_imports_file      ON imports(file_id);
CREATE INDEX IF NOT EXISTS idx_imports_name      ON imports(imported_name);
"""

# Columns added after the first release.  Applied to existing databases
# that lack them: (table, column, definition).
_COLUMN_MIGRATIONS = [
    ("repos", "index_state", "TEXT NOT NULL DEFAULT 'unindexed'"),
    ("repos", "indexed_at", "TEXT"),
    ("repo_files", "parse_errors", "INTEGER NOT NULL DEFAULT 0"),
    ("failures", "files_involved", "TEXT NOT NULL DEFAULT '[]'"),
]


def utc_now() -> str:
    """Current time as an ISO-8601 UTC string."""
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

class Database:
    """
    Lazily-connected SQLite database holding every devmemory table.

    Parameters
    ----------
    path:
        Database file path, or ``":memory:"`` for a throwaway database.
    """

    def __init__(self, path: str) -> None:
        self.path = path
        self._lock = threading.RLock()
        self._conn: Optional[sqlite3.Connection] = None
        self._init_db()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _get_conn(self) -> sqlite3.Connection:
        """Thread-safe lazy connection."""
        if self._conn is None:
            if self.path != ":memory:":
                os.makedirs(os.path.dirname(os.path.abspath(self.path)), exist_ok=True)
            self._conn = sqlite3.connect(self.path, timeout=10, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=NORMAL")
            self._conn.execute("PRAGMA foreign_keys=ON")
        return self._conn

    def _init_db(self) -> None:
        """Create tables and add any columns missing from older databases."""
        with self._lock:
            conn = self._get_conn()
            existing: dict[str, set[str]] = {}
            for table, _, _ in _COLUMN_MIGRATIONS:
                if table not in existing:
                    rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
                    existing[table] = {r["name"] for r in rows}
            for table, column, definition in _COLUMN_MIGRATIONS:
                # Tables that do not exist yet are created with the column below.
                if existing[table] and column not in existing[table]:
                    logger.info("Migrating %s: adding column %s", table, column)
                    conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")
            conn.executescript(_SCHEMA)
            conn.commit()

    def close(self) -> None:
        """Close the connection.  The next call reopens it."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    # ------------------------------------------------------------------
    # Access
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Yield the connection inside a transaction.

        Commits when the block exits normally and rolls back if it raises.
        Nested use from the same thread joins the outer transaction.
        """
        with self._lock:
            conn = self._get_conn()
            if conn.in_transaction:
                yield conn
                return
            conn.execute("BEGIN")
            try:
                yield conn
                conn.commit()
            except BaseException:
                conn.rollback()
                raise

    def fetchall(self, sql: str, params: tuple | list = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self._get_conn().execute(sql, params).fetchall()

    def fetchone(self, sql: str, params: tuple | list = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self._get_conn().execute(sql, params).fetchone()

    def scalar(self, sql: str, params: tuple | list = ()) -> Any:
        """Return the first column of the first row, or ``None``."""
        row = self.fetchone(sql, params)
        return None if row is None else row[0]


# ---------------------------------------------------------------------------
# Process-wide instance
# ---------------------------------------------------------------------------

_instance: Optional[Database] = None
_instance_lock = threading.Lock()


def get_database(path: Optional[str] = None) -> Database:
    """
    Return the process-wide :class:`Database`, opening it on first call.

    Parameters
    ----------
    path:
        Database path.  Defaults to the configured ``db_path``.  Passing a
        different path than the open database closes it and opens *path*.
    """
    global _instance
    with _instance_lock:
        if path is None and _instance is None:
            from ..config import Config
            path = Config.load().DB_PATH
        if _instance is not None and path is not None and path != _instance.path:
            logger.info("Switching database from %s to %s", _instance.path, path)
            _instance.close()
            _instance = None
        if _instance is None:
            _instance = Database(path)
        return _instance


def close_database() -> None:
    """Close the process-wide database, if one was opened."""
    global _instance
    with _instance_lock:
        if _instance is not None:
            _instance.close()
            _instance = None
