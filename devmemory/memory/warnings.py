"""
User-defined warnings attached to files (glob patterns) or packages.

Editor and install hooks call :meth:`WarningStore.check` before touching a
file or adding a dependency; the wiring of those hooks lives elsewhere.
"""

from __future__ import annotations

import fnmatch
import logging
import uuid
from typing import Optional

from ..errors import NotFoundError, ValidationError
from .db import SEVERITIES, WARNING_TYPES, Database, utc_now
from .records import WarningRule

logger = logging.getLogger(__name__)

_SEVERITY_ORDER = {"block": 0, "warn": 1, "info": 2}


def _posix(path: str) -> str:
    path = path.replace("\\", "/")
    while path.startswith("./"):
        path = path[2:]
    return path


def _matches(rule: WarningRule, value: str) -> bool:
    if rule.type == "package":
        return value == rule.target or fnmatch.fnmatchcase(value, rule.target)
    path = _posix(value)
    target = _posix(rule.target)
    if fnmatch.fnmatchcase(path, target):
        return True
    # Patterns without a slash match the file name anywhere in the tree.
    return "/" not in target and fnmatch.fnmatchcase(path.rsplit("/", 1)[-1], target)


class WarningStore:
    """
    Persists warnings; unique on ``(type, target, repo_id)``.

    Parameters
    ----------
    db:
        Open :class:`Database`.
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    def add(
        self,
        type_: str,
        target: str,
        reason: str,
        severity: str = "warn",
        repo_id: Optional[str] = None,
    ) -> WarningRule:
        """
        Add a warning, or update reason/severity of the existing one for the
        same ``(type, target, repo_id)``.
        """
        if type_ not in WARNING_TYPES:
            raise ValidationError("type", f"must be one of {', '.join(WARNING_TYPES)}")
        if severity not in SEVERITIES:
            raise ValidationError("severity", f"must be one of {', '.join(SEVERITIES)}")
        if not target or not target.strip():
            raise ValidationError("target", "must be a non-empty string")
        if not reason or not reason.strip():
            raise ValidationError("reason", "must be a non-empty string")
        target = target.strip()

        with self._db.transaction() as conn:
            row = conn.execute(
                "SELECT id FROM warnings WHERE type = ? AND target = ? "
                "AND COALESCE(repo_id, '') = COALESCE(?, '')",
                (type_, target, repo_id),
            ).fetchone()
            if row is not None:
                warn_id = row["id"]
                conn.execute(
                    "UPDATE warnings SET reason = ?, severity = ? WHERE id = ?",
                    (reason.strip(), severity, warn_id),
                )
                logger.info("Updated warning %s on %s %s", warn_id, type_, target)
            else:
                warn_id = f"warn_{uuid.uuid4().hex[:8]}"
                conn.execute(
                    "INSERT INTO warnings (id, type, target, severity, reason, repo_id, created_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (warn_id, type_, target, severity, reason.strip(), repo_id, utc_now()),
                )
                logger.info("Added warning %s on %s %s", warn_id, type_, target)
        return self.get(warn_id)

    def get(self, warning_id: str) -> WarningRule:
        row = self._db.fetchone("SELECT * FROM warnings WHERE id = ?", (warning_id,))
        if row is None:
            raise NotFoundError("warning", warning_id)
        return WarningRule.from_row(row)

    def remove(self, warning_id: str) -> None:
        with self._db.transaction() as conn:
            cur = conn.execute("DELETE FROM warnings WHERE id = ?", (warning_id,))
            if cur.rowcount == 0:
                raise NotFoundError("warning", warning_id)
        logger.info("Removed warning %s", warning_id)

    def list(self, repo_id: Optional[str] = None, type_: Optional[str] = None) -> list[WarningRule]:
        """Global warnings plus those scoped to *repo_id*."""
        sql = "SELECT * FROM warnings WHERE (repo_id IS NULL OR repo_id = ?)"
        params: list = [repo_id]
        if type_ is not None:
            sql += " AND type = ?"
            params.append(type_)
        rows = self._db.fetchall(sql + " ORDER BY type, target", params)
        return [WarningRule.from_row(r) for r in rows]

    def check(self, type_: str, value: str, repo_id: Optional[str] = None) -> list[WarningRule]:
        """
        Warnings that apply to *value* (a repo-relative path or a package
        name), most severe first.
        """
        if type_ not in WARNING_TYPES:
            raise ValidationError("type", f"must be one of {', '.join(WARNING_TYPES)}")
        hits = [w for w in self.list(repo_id, type_) if _matches(w, value)]
        hits.sort(key=lambda w: (_SEVERITY_ORDER[w.severity], w.target))
        return hits
