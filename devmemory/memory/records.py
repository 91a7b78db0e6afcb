"""
Immutable record types returned by the memory stores.

Rows are snapshots: updating a record means calling a store operation that
writes new values, never mutating one of these instances.
"""

from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass, field
from typing import Optional

from ..errors import CorruptRecordError


def _json_list(row: sqlite3.Row, column: str, table: str) -> tuple[str, ...]:
    """Decode a JSON array column, raising CorruptRecordError if malformed."""
    raw = row[column]
    if raw is None:
        return ()
    try:
        value = json.loads(raw)
    except (json.JSONDecodeError, TypeError) as exc:
        raise CorruptRecordError(table, row["id"], f"{column}: {exc}") from exc
    if not isinstance(value, list):
        raise CorruptRecordError(table, row["id"], f"{column}: expected a JSON array")
    return tuple(str(v) for v in value)


# ---------------------------------------------------------------------------
# Solutions
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Solution:
    id: str
    problem: str
    solution: str
    scope: str
    repo_id: Optional[str]
    category: Optional[str]
    complexity: int
    tags: frozenset[str]
    score: float
    uses: int
    successes: int
    partial_successes: int
    failures: int
    supersedes: Optional[str]
    created_at: str
    updated_at: str
    files_affected: tuple[str, ...] = ()
    prerequisites: tuple[str, ...] = ()
    anti_patterns: tuple[str, ...] = ()
    code_blocks: tuple[str, ...] = ()
    related_solutions: tuple[str, ...] = ()

    @property
    def success_rate(self) -> Optional[float]:
        """Weighted success ratio, or ``None`` before the first use."""
        if self.uses == 0:
            return None
        return (self.successes + 0.5 * self.partial_successes) / self.uses

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Solution":
        return cls(
            id=row["id"],
            problem=row["problem"],
            solution=row["solution"],
            scope=row["scope"],
            repo_id=row["repo_id"],
            category=row["category"],
            complexity=row["complexity"],
            tags=frozenset(_json_list(row, "tags", "solutions")),
            score=row["score"],
            uses=row["uses"],
            successes=row["successes"],
            partial_successes=row["partial_successes"],
            failures=row["failures"],
            supersedes=row["supersedes"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            files_affected=_json_list(row, "files_affected", "solutions"),
            prerequisites=_json_list(row, "prerequisites", "solutions"),
            anti_patterns=_json_list(row, "anti_patterns", "solutions"),
            code_blocks=_json_list(row, "code_blocks", "solutions"),
            related_solutions=_json_list(row, "related_solutions", "solutions"),
        )


@dataclass(frozen=True)
class StoreResult:
    """Outcome of ``store``: ``stored``, ``superseded`` or ``duplicate``."""
    id: str
    status: str
    complexity: Optional[int] = None
    similarity: Optional[float] = None
    existing_problem: Optional[str] = None

    @property
    def is_duplicate(self) -> bool:
        return self.status == "duplicate"


@dataclass(frozen=True)
class RecallMatch:
    solution: Solution
    similarity: float
    boosted_similarity: float
    rank: float
    context_boost: Optional[str] = None   # "same_repo" | "similar_stack"

    @property
    def id(self) -> str:
        return self.solution.id


@dataclass(frozen=True)
class RewardResult:
    id: str
    outcome: str
    score: float
    previous_score: float
    uses: int


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Failure:
    id: str
    signature: str
    error_type: str
    error_message: str
    occurrences: int
    root_cause: Optional[str]
    fix_applied: Optional[str]
    prevention: Optional[str]
    files_involved: tuple[str, ...]
    created_at: str
    updated_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Failure":
        return cls(
            id=row["id"],
            signature=row["signature"],
            error_type=row["error_type"],
            error_message=row["error_message"],
            occurrences=row["occurrences"],
            root_cause=row["root_cause"],
            fix_applied=row["fix_applied"],
            prevention=row["prevention"],
            files_involved=_json_list(row, "files_involved", "failures"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass(frozen=True)
class FailureResult:
    """Outcome of ``record_failure``."""
    id: str
    signature: str
    occurrences: int
    is_new: bool


@dataclass(frozen=True)
class FailureMatch:
    failure: Failure
    similarity: float


# ---------------------------------------------------------------------------
# Repos and warnings
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RepoFingerprint:
    id: str
    path: str
    name: str
    languages: frozenset[str] = frozenset()
    frameworks: frozenset[str] = frozenset()
    patterns: frozenset[str] = frozenset()
    index_state: str = "unindexed"
    indexed_at: Optional[str] = None
    updated_at: str = ""

    def descriptor_text(self) -> str:
        """Text embedded as the repo's stack fingerprint."""
        parts = sorted(self.languages) + sorted(self.frameworks) + sorted(self.patterns)
        return " ".join(parts)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "RepoFingerprint":
        return cls(
            id=row["id"],
            path=row["path"],
            name=row["name"],
            languages=frozenset(_json_list(row, "languages", "repos")),
            frameworks=frozenset(_json_list(row, "frameworks", "repos")),
            patterns=frozenset(_json_list(row, "patterns", "repos")),
            index_state=row["index_state"],
            indexed_at=row["indexed_at"],
            updated_at=row["updated_at"],
        )


@dataclass(frozen=True)
class WarningRule:
    id: str
    type: str
    target: str
    severity: str
    reason: str
    repo_id: Optional[str]
    created_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "WarningRule":
        return cls(
            id=row["id"],
            type=row["type"],
            target=row["target"],
            severity=row["severity"],
            reason=row["reason"],
            repo_id=row["repo_id"],
            created_at=row["created_at"],
        )


# ---------------------------------------------------------------------------
# Merge
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class MergeCandidate:
    """Two solutions similar enough to merge, with the recommended keeper."""
    a: Solution
    b: Solution
    similarity: float

    @property
    def keep(self) -> Solution:
        return self.a if self.a.score >= self.b.score else self.b

    @property
    def remove(self) -> Solution:
        return self.b if self.keep is self.a else self.a


@dataclass(frozen=True)
class MergeResult:
    keep_id: str
    removed_id: str
    uses: int
    score: float
    tags: frozenset[str] = field(default_factory=frozenset)
