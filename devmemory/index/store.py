"""
SQLite persistence and queries for the code index.

Tracks which files of a repository have been indexed (with the mtime of
their last successful parse) and the symbols and imports each one
defines.  A file's rows are always replaced as a unit inside one
transaction, so readers never observe a half-updated file.
"""

from __future__ import annotations

import logging
import posixpath
from dataclasses import dataclass
from typing import Iterable, Optional

from ..memory.db import Database, utc_now
from .parsers import ParseResult

logger = logging.getLogger(__name__)

_ECMA_EXTENSIONS = (".ts", ".tsx", ".mts", ".cts", ".js", ".jsx", ".mjs", ".cjs")
_JS_TO_TS = {".js": (".ts", ".tsx"), ".jsx": (".tsx",), ".mjs": (".mts",), ".cjs": (".cts",)}


# ---------------------------------------------------------------------------
# Row types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SymbolRow:
    name: str
    kind: str
    file: str
    line: int
    end_line: int
    exported: bool
    is_default: bool
    scope: Optional[str]
    signature: Optional[str]

    @property
    def qualified_name(self) -> str:
        return f"{self.scope}.{self.name}" if self.scope else self.name

    @classmethod
    def from_row(cls, row) -> "SymbolRow":
        return cls(
            name=row["name"],
            kind=row["kind"],
            file=row["path"],
            line=row["line"],
            end_line=row["end_line"],
            exported=bool(row["exported"]),
            is_default=bool(row["is_default"]),
            scope=row["scope"],
            signature=row["signature"],
        )


@dataclass(frozen=True)
class ImportRow:
    file: str
    imported_name: str
    source_path: str
    local_name: Optional[str]
    is_default: bool
    is_namespace: bool
    is_type: bool
    line: int

    @classmethod
    def from_row(cls, row) -> "ImportRow":
        return cls(
            file=row["path"],
            imported_name=row["imported_name"],
            source_path=row["source_path"],
            local_name=row["local_name"],
            is_default=bool(row["is_default"]),
            is_namespace=bool(row["is_namespace"]),
            is_type=bool(row["is_type"]),
            line=row["line"],
        )


@dataclass(frozen=True)
class CallerRow:
    """An import that binds a definition from another file."""
    file: str
    local_name: Optional[str]
    imported_name: str
    source_path: str
    resolved_path: str
    line: int


# ---------------------------------------------------------------------------
# Import resolution
# ---------------------------------------------------------------------------

def _resolve_python(importer: str, spec: str, known: set[str]) -> Optional[str]:
    dots = len(spec) - len(spec.lstrip("."))
    rest = spec[dots:].replace(".", "/")
    if dots:
        base = posixpath.dirname(importer)
        for _ in range(dots - 1):
            base = posixpath.dirname(base)
        module = posixpath.join(base, rest) if rest else base
    else:
        module = rest
    candidates = [module + ".py", module + ".pyi", module + "/__init__.py"]
    for cand in candidates:
        if cand in known:
            return cand
    if not dots:
        # src/ layouts and other package roots below the repo root.
        for cand in candidates:
            hits = sorted(p for p in known if p.endswith("/" + cand))
            if hits:
                return hits[0]
    return None


def _resolve_ecma(importer: str, spec: str, known: set[str]) -> Optional[str]:
    if not spec.startswith("."):
        return None
    base = posixpath.normpath(posixpath.join(posixpath.dirname(importer), spec))
    candidates = [base]
    stem, ext = posixpath.splitext(base)
    if ext in _JS_TO_TS:
        candidates += [stem + ts_ext for ts_ext in _JS_TO_TS[ext]]
    candidates += [base + e for e in _ECMA_EXTENSIONS]
    candidates += [f"{base}/index{e}" for e in _ECMA_EXTENSIONS]
    for cand in candidates:
        if cand in known:
            return cand
    return None


def resolve_import(importer: str, spec: str, known_paths: Iterable[str]) -> Optional[str]:
    """
    Resolve import specifier *spec* written in *importer* to an indexed path.

    Relative ECMAScript specifiers try the path as written, then the
    TypeScript source behind a ``.js`` specifier, then each extension, then
    ``/index``.  Python specifiers may be relative (leading dots) or dotted
    absolute module names.  Bare package names resolve to ``None``.
    """
    known = known_paths if isinstance(known_paths, set) else set(known_paths)
    if importer.endswith((".py", ".pyi")):
        return _resolve_python(importer, spec, known)
    return _resolve_ecma(importer, spec, known)


def _like_escape(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


# ---------------------------------------------------------------------------
# IndexStore
# ---------------------------------------------------------------------------

class IndexStore:
    """
    Index rows of one repository.

    Parameters
    ----------
    db:
        Open :class:`~devmemory.memory.db.Database`.
    repo_id:
        Repository the rows belong to (must exist in ``repos``).
    """

    def __init__(self, db: Database, repo_id: str) -> None:
        self._db = db
        self.repo_id = repo_id

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def indexed_mtimes(self) -> dict[str, int]:
        """Map each indexed path to the mtime of its last successful parse."""
        rows = self._db.fetchall(
            "SELECT path, mtime FROM repo_files WHERE repo_id = ?", (self.repo_id,)
        )
        return {r["path"]: r["mtime"] for r in rows}

    def replace_file(self, path: str, mtime: int, result: ParseResult) -> None:
        """
        Insert or update *path* and replace all of its symbols and imports.

        Runs in one transaction: either the new rows and mtime are all
        committed or the previous state is kept.
        """
        now = utc_now()
        with self._db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO repo_files (repo_id, path, mtime, language, parse_errors, indexed_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(repo_id, path) DO UPDATE SET
                    mtime        = excluded.mtime,
                    language     = excluded.language,
                    parse_errors = excluded.parse_errors,
                    indexed_at   = excluded.indexed_at
                """,
                (self.repo_id, path, mtime, result.language, len(result.errors), now),
            )
            file_id = conn.execute(
                "SELECT id FROM repo_files WHERE repo_id = ? AND path = ?", (self.repo_id, path)
            ).fetchone()["id"]
            # Replace symbols and imports for this file
            conn.execute("DELETE FROM symbols WHERE file_id = ?", (file_id,))
            conn.execute("DELETE FROM imports WHERE file_id = ?", (file_id,))
            conn.executemany(
                "INSERT INTO symbols (file_id, name, kind, line, end_line, exported, "
                "is_default, scope, signature) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                [
                    (file_id, s.name, s.kind, s.line, s.end_line, int(s.exported),
                     int(s.is_default), s.scope, s.signature)
                    for s in result.symbols
                ],
            )
            conn.executemany(
                "INSERT INTO imports (file_id, imported_name, source_path, local_name, "
                "is_default, is_namespace, is_type, line) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                [
                    (file_id, i.imported_name, i.source_path, i.local_name, int(i.is_default),
                     int(i.is_namespace), int(i.is_type), i.line)
                    for i in result.imports
                ],
            )

    def remove_file(self, path: str) -> bool:
        """Remove *path* with its symbols and imports.  Returns True if it existed."""
        with self._db.transaction() as conn:
            cur = conn.execute(
                "DELETE FROM repo_files WHERE repo_id = ? AND path = ?", (self.repo_id, path)
            )
        return cur.rowcount > 0

    def clear(self) -> None:
        with self._db.transaction() as conn:
            conn.execute("DELETE FROM repo_files WHERE repo_id = ?", (self.repo_id,))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    _SYMBOL_SELECT = (
        "SELECT s.name, s.kind, s.line, s.end_line, s.exported, s.is_default, "
        "s.scope, s.signature, f.path "
        "FROM symbols s JOIN repo_files f ON s.file_id = f.id WHERE f.repo_id = ?"
    )
    _IMPORT_SELECT = (
        "SELECT i.imported_name, i.source_path, i.local_name, i.is_default, "
        "i.is_namespace, i.is_type, i.line, f.path "
        "FROM imports i JOIN repo_files f ON i.file_id = f.id WHERE f.repo_id = ?"
    )

    def find_definitions(
        self,
        name: str,
        kind: Optional[str] = None,
        file: Optional[str] = None,
    ) -> list[SymbolRow]:
        """
        Every symbol named exactly *name*, across all files and scopes.

        Parameters
        ----------
        name:
            Symbol name (case-sensitive).
        kind:
            Optional filter, e.g. ``"function"``.
        file:
            Optional repo-relative path filter.
        """
        sql = self._SYMBOL_SELECT + " AND s.name = ?"
        params: list = [self.repo_id, name]
        if kind:
            sql += " AND s.kind = ?"
            params.append(kind)
        if file:
            sql += " AND f.path = ?"
            params.append(file)
        rows = self._db.fetchall(sql + " ORDER BY f.path, s.line", params)
        return [SymbolRow.from_row(r) for r in rows]

    def find_exports(self, path: Optional[str] = None) -> list[SymbolRow]:
        """Exported symbols of a file, or of every file under a directory prefix."""
        sql = self._SYMBOL_SELECT + " AND s.exported = 1"
        params: list = [self.repo_id]
        if path:
            prefix = path.rstrip("/")
            sql += " AND (f.path = ? OR f.path LIKE ? ESCAPE '\\')"
            params += [prefix, _like_escape(prefix) + "/%"]
        rows = self._db.fetchall(sql + " ORDER BY f.path, s.line", params)
        return [SymbolRow.from_row(r) for r in rows]

    def search_symbols(
        self,
        query: str,
        kind: Optional[str] = None,
        exported_only: bool = False,
        limit: int = 20,
    ) -> list[SymbolRow]:
        """
        Fuzzy symbol search.

        Ranked exact match, then prefix, then substring, then subsequence
        (``"gUB"`` finds ``getUserById``); case-insensitive, with shorter
        names first inside a tier.
        """
        query = query.strip()
        if not query or limit <= 0:
            return []
        pattern = "%" + "%".join(_like_escape(ch) for ch in query) + "%"
        sql = self._SYMBOL_SELECT + " AND s.name LIKE ? ESCAPE '\\'"
        params: list = [self.repo_id, pattern]
        if kind:
            sql += " AND s.kind = ?"
            params.append(kind)
        if exported_only:
            sql += " AND s.exported = 1"
        rows = [SymbolRow.from_row(r) for r in self._db.fetchall(sql, params)]

        q = query.lower()

        def tier(sym: SymbolRow) -> int:
            n = sym.name.lower()
            if sym.name == query:
                return 0
            if n == q:
                return 1
            if n.startswith(q):
                return 2
            if q in n:
                return 3
            return 4

        rows.sort(key=lambda s: (tier(s), len(s.name), s.name, s.file, s.line))
        return rows[:limit]

    def get_imports(self, file: str) -> list[ImportRow]:
        rows = self._db.fetchall(
            self._IMPORT_SELECT + " AND f.path = ? ORDER BY i.line, i.id", (self.repo_id, file)
        )
        return [ImportRow.from_row(r) for r in rows]

    def all_paths(self) -> set[str]:
        return set(self.indexed_mtimes())

    def find_callers(self, name: str, file: Optional[str] = None) -> list[CallerRow]:
        """
        Files importing the top-level definition *name*.

        An import counts when its specifier resolves to a file defining
        *name* and it binds that name directly, as the default export, or
        through a namespace import of the module.

        Parameters
        ----------
        name:
            Name of the definition.
        file:
            Restrict to the definition in this file.
        """
        defs = [d for d in self.find_definitions(name, file=file) if d.scope is None]
        if not defs:
            return []
        def_files = {d.file for d in defs}
        default_files = {d.file for d in defs if d.is_default}
        known = self.all_paths()

        rows = self._db.fetchall(
            self._IMPORT_SELECT + " AND (i.imported_name = ? OR i.imported_name IN ('default', '*'))"
            " ORDER BY f.path, i.line",
            (self.repo_id, name),
        )
        callers: list[CallerRow] = []
        for row in rows:
            imp = ImportRow.from_row(row)
            if imp.imported_name == "*" and not imp.is_namespace:
                continue
            resolved = resolve_import(imp.file, imp.source_path, known)
            if resolved is None or resolved not in def_files:
                continue
            if imp.imported_name == "default" and resolved not in default_files:
                continue
            callers.append(CallerRow(
                file=imp.file,
                local_name=imp.local_name,
                imported_name=imp.imported_name,
                source_path=imp.source_path,
                resolved_path=resolved,
                line=imp.line,
            ))
        return callers

    def stats(self) -> dict:
        """
        Aggregate counts for this repository.

        Returns
        -------
        dict
            Keys: files, symbols, imports, partial_files, languages.
        """
        files = self._db.scalar(
            "SELECT COUNT(*) FROM repo_files WHERE repo_id = ?", (self.repo_id,)
        )
        partial = self._db.scalar(
            "SELECT COUNT(*) FROM repo_files WHERE repo_id = ? AND parse_errors > 0",
            (self.repo_id,),
        )
        symbols = self._db.scalar(
            "SELECT COUNT(*) FROM symbols s JOIN repo_files f ON s.file_id = f.id "
            "WHERE f.repo_id = ?", (self.repo_id,),
        )
        imports = self._db.scalar(
            "SELECT COUNT(*) FROM imports i JOIN repo_files f ON i.file_id = f.id "
            "WHERE f.repo_id = ?", (self.repo_id,),
        )
        languages = {
            r["language"]: r["n"]
            for r in self._db.fetchall(
                "SELECT language, COUNT(*) AS n FROM repo_files WHERE repo_id = ? GROUP BY language",
                (self.repo_id,),
            )
        }
        return {
            "files": files,
            "symbols": symbols,
            "imports": imports,
            "partial_files": partial,
            "languages": languages,
        }
