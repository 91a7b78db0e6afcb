"""
Failure store — records errors that were hit and how they were fixed.

Repeated errors are deduplicated by *signature*: the error text with its
volatile parts (file paths, line numbers, quoted literals, addresses)
replaced by placeholders, then hashed.  Two reports that differ only in
those parts bump the ``occurrences`` counter of one row.
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
import uuid
from typing import Optional, Sequence

from ..errors import CorruptRecordError, NotFoundError, ValidationError
from .db import Database, utc_now
from .records import Failure, FailureMatch, FailureResult
from .vectors import blob_to_vector, top_k, vector_to_blob

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Normalisation
# ---------------------------------------------------------------------------

_QUOTED_RE = re.compile(r'"[^"\n]*"|(?<!\w)\'[^\'\n]*\'(?!\w)|(?<!\w)`[^`\n]*`(?!\w)')
_WINDOWS_PATH_RE = re.compile(r"\b[a-z]:\\[^\s:'\"()\[\]]+(?::\d+){0,2}")
_UNIX_PATH_RE = re.compile(r"(?<![\w/])~?/[^\s:'\"()\[\]]+(?::\d+){0,2}")
_HEX_RE = re.compile(r"\b0x[0-9a-f]+\b")
_NUMBER_RE = re.compile(r"\b\d+(?:\.\d+)?\b")
_WS_RE = re.compile(r"\s+")

SIGNATURE_LENGTH = 16


def normalize_error(text: str) -> str:
    """
    Replace the volatile parts of an error message with placeholders.

    >>> normalize_error("TypeError at /a/b.ts:10: x")
    'typeerror at PATH: x'
    """
    out = text.lower()
    out = _QUOTED_RE.sub("STR", out)
    out = _WINDOWS_PATH_RE.sub("PATH", out)
    out = _UNIX_PATH_RE.sub("PATH", out)
    out = _HEX_RE.sub("N", out)
    out = _NUMBER_RE.sub("N", out)
    return _WS_RE.sub(" ", out).strip()


def error_signature(error_type: str, message: str) -> str:
    """Deterministic signature of an error; equal for equal normalised text."""
    normalized = normalize_error(f"{error_type}: {message}")
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()[:SIGNATURE_LENGTH]


def _embedding_text(error_type: str, message: str, root_cause: Optional[str]) -> str:
    return " ".join(p for p in (error_type, message, root_cause or "") if p)


# ---------------------------------------------------------------------------
# FailureStore
# ---------------------------------------------------------------------------

class FailureStore:
    """
    Persists failures with signature deduplication and similarity search.

    Parameters
    ----------
    db:
        Open :class:`Database`.
    embedder:
        Object with ``embed(text) -> list[float]``.
    """

    def __init__(self, db: Database, embedder) -> None:
        self._db = db
        self._embedder = embedder

    def record_failure(
        self,
        error_type: str,
        message: str,
        root_cause: Optional[str] = None,
        fix_applied: Optional[str] = None,
        prevention: Optional[str] = None,
        files_involved: Optional[Sequence[str]] = None,
    ) -> FailureResult:
        """
        Record an error, merging it into an existing row with the same
        signature.

        Non-empty *root_cause*, *fix_applied* and *prevention* overwrite
        the stored values; *files_involved* is unioned.
        """
        if not isinstance(error_type, str) or not error_type.strip():
            raise ValidationError("error_type", "must be a non-empty string")
        if not isinstance(message, str) or not message.strip():
            raise ValidationError("message", "must be a non-empty string")
        error_type = error_type.strip()
        message = message.strip()
        files = sorted({f for f in (files_involved or []) if f})
        signature = error_signature(error_type, message)

        existing = self._db.fetchone("SELECT * FROM failures WHERE signature = ?", (signature,))
        if existing is not None:
            return self._bump(existing, root_cause, fix_applied, prevention, files)

        embedding = self._embedder.embed(_embedding_text(error_type, message, root_cause))
        fail_id = f"fail_{uuid.uuid4().hex[:8]}"
        now = utc_now()
        with self._db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO failures (id, signature, error_type, error_message, occurrences,
                                      root_cause, fix_applied, prevention, files_involved,
                                      embedding, created_at, updated_at)
                VALUES (?, ?, ?, ?, 1, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    fail_id, signature, error_type, message, root_cause or None,
                    fix_applied or None, prevention or None, json.dumps(files),
                    vector_to_blob(embedding), now, now,
                ),
            )
        logger.info("Recorded failure %s (%s)", fail_id, signature)
        return FailureResult(id=fail_id, signature=signature, occurrences=1, is_new=True)

    def _bump(self, row, root_cause, fix_applied, prevention, files) -> FailureResult:
        try:
            known_files = set(json.loads(row["files_involved"] or "[]"))
        except (json.JSONDecodeError, TypeError):
            logger.warning("Resetting corrupt files_involved on %s", row["id"])
            known_files = set()
        new_root = root_cause or row["root_cause"]
        embedding_blob = row["embedding"]
        if root_cause and root_cause != row["root_cause"]:
            embedding_blob = vector_to_blob(self._embedder.embed(
                _embedding_text(row["error_type"], row["error_message"], new_root)
            ))
        occurrences = row["occurrences"] + 1
        with self._db.transaction() as conn:
            conn.execute(
                """
                UPDATE failures SET occurrences = ?, root_cause = ?, fix_applied = ?,
                       prevention = ?, files_involved = ?, embedding = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    occurrences, new_root,
                    fix_applied or row["fix_applied"],
                    prevention or row["prevention"],
                    json.dumps(sorted(known_files | set(files))),
                    embedding_blob, utc_now(), row["id"],
                ),
            )
        logger.info("Failure %s seen again (%d occurrences)", row["id"], occurrences)
        return FailureResult(
            id=row["id"], signature=row["signature"], occurrences=occurrences, is_new=False,
        )

    def search_failures(
        self, query: str, limit: int = 5, min_score: float = 0.3
    ) -> list[FailureMatch]:
        """Failures ranked by embedding similarity to *query*."""
        if not isinstance(query, str) or not query.strip():
            raise ValidationError("query", "must be a non-empty string")
        query_vec = self._embedder.embed(query.strip())

        def _vectors():
            for row in self._db.fetchall("SELECT id, embedding FROM failures ORDER BY id"):
                if row["embedding"] is None:
                    continue
                try:
                    yield row["id"], blob_to_vector(row["embedding"], "failures", row["id"])
                except CorruptRecordError as exc:
                    logger.warning("Skipping %s", exc)

        matches = []
        for fail_id, similarity in top_k(query_vec, _vectors(), limit, min_score):
            failure = self.get_failure(fail_id)
            if failure is not None:
                matches.append(FailureMatch(failure=failure, similarity=similarity))
        return matches

    def get_failure(self, failure_id: str) -> Optional[Failure]:
        row = self._db.fetchone("SELECT * FROM failures WHERE id = ?", (failure_id,))
        if row is None:
            return None
        try:
            return Failure.from_row(row)
        except CorruptRecordError as exc:
            logger.warning("Skipping %s", exc)
            return None

    def require(self, failure_id: str) -> Failure:
        failure = self.get_failure(failure_id)
        if failure is None:
            raise NotFoundError("failure", failure_id)
        return failure

    def list_recent(self, limit: int = 10) -> list[Failure]:
        rows = self._db.fetchall(
            "SELECT * FROM failures ORDER BY updated_at DESC, id LIMIT ?", (limit,)
        )
        out = []
        for row in rows:
            try:
                out.append(Failure.from_row(row))
            except CorruptRecordError as exc:
                logger.warning("Skipping %s", exc)
        return out

    def count(self) -> int:
        return self._db.scalar("SELECT COUNT(*) FROM failures")
