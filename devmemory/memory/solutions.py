"""
Solution store: persistence, deduplication, scope-aware recall and the
reward feedback loop.

Ranking
-------
Recall combines the (boosted) embedding similarity with the solution's
historical score::

    rank = w * boosted_similarity + (1 - w) * score        (w = 0.7)

Score
-----
``score`` is a Laplace-smoothed weighted success ratio::

    score = (successes + 0.5 * partial_successes + 1) / (uses + 2)

It starts at 0.5, never decreases on success and never increases on
failure.
"""

from __future__ import annotations

import json
import logging
import uuid
from collections import Counter
from typing import Iterator, Optional, Sequence

import numpy as np

from ..errors import (
    CorruptRecordError,
    DimensionMismatchError,
    NotFoundError,
    ValidationError,
)
from .db import CATEGORIES, OUTCOMES, SCOPES, Database, utc_now
from .records import RecallMatch, RewardResult, Solution, StoreResult
from .repos import RepoRegistry
from .vectors import blob_to_vector, cosine_similarity, top_k, vector_to_blob

logger = logging.getLogger(__name__)

RECALL_SCOPES = ("all",) + SCOPES
PREVIEW_CHARS = 100


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

def compute_score(successes: int, partial_successes: int, uses: int) -> float:
    """Laplace-smoothed weighted success ratio in ``(0, 1)``."""
    return (successes + 0.5 * partial_successes + 1) / (uses + 2)


def compute_complexity(
    solution: str,
    code_blocks: Sequence[str] = (),
    prerequisites: Sequence[str] = (),
    files_affected: Sequence[str] = (),
) -> int:
    """
    Estimate complexity from the size of a solution.

    Base 1, plus up to 4 for solution length (one point per 500 chars),
    up to 2 for code blocks, up to 2 for prerequisites and up to 2 for
    affected files (one point per two files); clamped to ``[1, 10]``.
    """
    value = 1
    value += min(4, len(solution) // 500)
    value += min(2, len(code_blocks))
    value += min(2, len(prerequisites))
    value += min(2, len(files_affected) // 2)
    return max(1, min(10, value))


def preview(text: str) -> str:
    if len(text) > PREVIEW_CHARS:
        return text[:PREVIEW_CHARS] + "..."
    return text


def _clean_list(field: str, values: Optional[Sequence[str]]) -> list[str]:
    if values is None:
        return []
    if isinstance(values, str):
        raise ValidationError(field, "expected a list of strings")
    out: list[str] = []
    for v in values:
        if not isinstance(v, str):
            raise ValidationError(field, "expected a list of strings")
        if v.strip():
            out.append(v.strip())
    return out


def _clean_tags(tags: Optional[Sequence[str]]) -> list[str]:
    return sorted(set(_clean_list("tags", tags)))


def _require_text(field: str, value) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(field, "must be a non-empty string")
    return value.strip()


def _require_choice(field: str, value, choices: Sequence[str]) -> str:
    if value not in choices:
        raise ValidationError(field, f"must be one of {', '.join(choices)}; got {value!r}")
    return value


def _require_complexity(value) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or not 1 <= value <= 10:
        raise ValidationError("complexity", f"must be an integer in 1..10; got {value!r}")
    return value


# ---------------------------------------------------------------------------
# SolutionStore
# ---------------------------------------------------------------------------

class SolutionStore:
    """
    CRUD, deduplication and ranked recall over stored solutions.

    Parameters
    ----------
    db:
        Open :class:`Database`.
    embedder:
        Object with ``embed(text) -> list[float]``.
    repos:
        Registry used to resolve the current repository and its fingerprint.
    config:
        :class:`~devmemory.config.Config` with the tuning constants.
    """

    def __init__(self, db: Database, embedder, repos: RepoRegistry, config) -> None:
        self._db = db
        self._embedder = embedder
        self._repos = repos
        self._config = config

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _iter_vectors(self, where: str = "", params: tuple = ()) -> Iterator[tuple[str, np.ndarray]]:
        """Yield ``(id, vector)`` for solutions, skipping corrupt embeddings."""
        rows = self._db.fetchall(
            f"SELECT id, problem_embedding FROM solutions {where} ORDER BY id", params
        )
        for row in rows:
            try:
                yield row["id"], blob_to_vector(row["problem_embedding"], "solutions", row["id"])
            except CorruptRecordError as exc:
                logger.warning("Skipping %s", exc)

    def _resolve_repo_id(self, repo_root: Optional[str]) -> Optional[str]:
        if not repo_root:
            return None
        return self._repos.get_or_create(repo_root).id

    def find_duplicate(self, embedding: Sequence[float]) -> Optional[tuple[str, float]]:
        """Return ``(id, similarity)`` of the closest solution above the duplicate threshold."""
        hits = top_k(embedding, self._iter_vectors(), 1, self._config.DUPLICATE_THRESHOLD)
        return hits[0] if hits else None

    # ------------------------------------------------------------------
    # Store
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
        """
        Store a problem/solution pair unless a near-duplicate exists.

        Returns
        -------
        StoreResult
            ``status`` is ``"duplicate"`` (nothing written, ``id`` is the
            existing record), ``"superseded"`` or ``"stored"``.

        Raises
        ------
        ValidationError
            On any invalid field, before anything is written.
        NotFoundError
            If *supersedes* names a solution that does not exist.
        ModelUnavailableError
            If the problem cannot be embedded.
        """
        problem = _require_text("problem", problem)
        solution = _require_text("solution", solution)
        _require_choice("scope", scope, SCOPES)
        if category is not None:
            _require_choice("category", category, CATEGORIES)
        if complexity is not None:
            _require_complexity(complexity)
        if scope == "repo" and not repo_root:
            raise ValidationError("repo_id", "scope 'repo' requires a repository")
        tag_list = _clean_tags(tags)
        blocks = _clean_list("code_blocks", code_blocks)
        prereqs = _clean_list("prerequisites", prerequisites)
        antis = _clean_list("anti_patterns", anti_patterns)
        related = _clean_list("related_solutions", related_solutions)
        files = _clean_list("files_affected", files_affected)

        embedding = self._embedder.embed(problem)

        duplicate = self.find_duplicate(embedding)
        if duplicate is not None:
            dup_id, similarity = duplicate
            existing = self._db.fetchone("SELECT problem FROM solutions WHERE id = ?", (dup_id,))
            logger.info("Duplicate of %s (similarity %.3f); not stored", dup_id, similarity)
            return StoreResult(
                id=dup_id,
                status="duplicate",
                similarity=round(similarity, 3),
                existing_problem=preview(existing["problem"]) if existing else None,
            )

        if supersedes is not None and self.get(supersedes) is None:
            raise NotFoundError("solution", supersedes)

        repo_id = self._resolve_repo_id(repo_root)
        if complexity is None:
            complexity = compute_complexity(solution, blocks, prereqs, files)

        sol_id = f"sol_{uuid.uuid4().hex[:8]}"
        now = utc_now()
        with self._db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO solutions (
                    id, repo_id, problem, problem_embedding, solution, scope, tags,
                    category, complexity, score, files_affected, prerequisites,
                    anti_patterns, code_blocks, related_solutions, supersedes,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    sol_id, repo_id, problem, vector_to_blob(embedding), solution, scope,
                    json.dumps(tag_list), category, complexity, compute_score(0, 0, 0),
                    json.dumps(files), json.dumps(prereqs), json.dumps(antis),
                    json.dumps(blocks), json.dumps(related), supersedes, now, now,
                ),
            )
        status = "superseded" if supersedes else "stored"
        logger.info("Stored %s (%s, scope=%s, complexity=%d)", sol_id, status, scope, complexity)
        return StoreResult(id=sol_id, status=status, complexity=complexity)

    # ------------------------------------------------------------------
    # Recall
    # ------------------------------------------------------------------

    def recall(
        self,
        query: str,
        limit: Optional[int] = None,
        min_score: Optional[float] = None,
        scope_filter: str = "all",
        repo_root: Optional[str] = None,
    ) -> list[RecallMatch]:
        """
        Rank stored solutions against *query*.

        Parameters
        ----------
        query:
            Free-text description of the problem at hand.
        limit:
            Maximum number of matches (default ``recall_limit``).
        min_score:
            Minimum boosted similarity (default ``recall_min_score``).
        scope_filter:
            ``"all"``, ``"global"``, ``"stack"`` or ``"repo"`` (current
            repository only).
        repo_root:
            Root of the repository the caller is working in; enables the
            same-repo and similar-stack boosts.
        """
        query = _require_text("query", query)
        _require_choice("scope_filter", scope_filter, RECALL_SCOPES)
        limit = self._config.RECALL_LIMIT if limit is None else limit
        min_score = self._config.RECALL_MIN_SCORE if min_score is None else min_score
        if limit <= 0:
            raise ValidationError("limit", "must be positive")
        if scope_filter == "repo" and not repo_root:
            raise ValidationError("scope_filter", "'repo' requires a repository")

        current_id = self._resolve_repo_id(repo_root)
        query_vec = self._embedder.embed(query)

        if scope_filter == "repo":
            rows = self._db.fetchall("SELECT * FROM solutions WHERE repo_id = ?", (current_id,))
        elif scope_filter == "all":
            rows = self._db.fetchall("SELECT * FROM solutions")
        else:
            rows = self._db.fetchall("SELECT * FROM solutions WHERE scope = ?", (scope_filter,))

        current_fp = self._repos.fingerprint_vector(current_id) if current_id else None
        fingerprints = self._repos.fingerprint_vectors() if current_fp is not None else {}
        stack_sim: dict[str, float] = {}
        weight = self._config.SIMILARITY_WEIGHT

        matches: list[RecallMatch] = []
        for row in rows:
            try:
                vec = blob_to_vector(row["problem_embedding"], "solutions", row["id"])
                similarity = cosine_similarity(query_vec, vec)
                sol = Solution.from_row(row)
            except (CorruptRecordError, DimensionMismatchError) as exc:
                logger.warning("Skipping %s: %s", row["id"], exc)
                continue

            boost, label = 0.0, None
            if current_id and sol.repo_id == current_id:
                boost, label = self._config.SAME_REPO_BOOST, "same_repo"
            elif current_fp is not None and sol.repo_id in fingerprints:
                if sol.repo_id not in stack_sim:
                    stack_sim[sol.repo_id] = cosine_similarity(current_fp, fingerprints[sol.repo_id])
                if stack_sim[sol.repo_id] >= self._config.STACK_SIMILARITY_THRESHOLD:
                    boost, label = self._config.SIMILAR_STACK_BOOST, "similar_stack"

            boosted = min(1.0, similarity + boost)
            if boosted < min_score:
                continue
            rank = weight * boosted + (1 - weight) * sol.score
            matches.append(RecallMatch(
                solution=sol,
                similarity=similarity,
                boosted_similarity=boosted,
                rank=rank,
                context_boost=label,
            ))

        matches.sort(key=lambda m: (-m.rank, m.solution.id))
        logger.debug("Recall %r: %d of %d candidates", query[:40], len(matches), len(rows))
        return matches[:limit]

    # ------------------------------------------------------------------
    # Feedback
    # ------------------------------------------------------------------

    def reward(self, solution_id: str, outcome: str, notes: Optional[str] = None) -> RewardResult:
        """
        Record the outcome of applying a solution and recompute its score.

        Raises
        ------
        ValidationError
            If *outcome* is not ``success``, ``partial`` or ``failure``.
        NotFoundError
            If *solution_id* does not exist.
        """
        _require_choice("outcome", outcome, OUTCOMES)
        with self._db.transaction() as conn:
            row = conn.execute(
                "SELECT score, uses, successes, partial_successes, failures "
                "FROM solutions WHERE id = ?",
                (solution_id,),
            ).fetchone()
            if row is None:
                raise NotFoundError("solution", solution_id)
            uses = row["uses"] + 1
            successes = row["successes"] + (outcome == "success")
            partial = row["partial_successes"] + (outcome == "partial")
            failures = row["failures"] + (outcome == "failure")
            score = compute_score(successes, partial, uses)
            conn.execute(
                """
                UPDATE solutions SET uses = ?, successes = ?, partial_successes = ?,
                       failures = ?, score = ?, updated_at = ?
                WHERE id = ?
                """,
                (uses, successes, partial, failures, score, utc_now(), solution_id),
            )
            conn.execute(
                "INSERT INTO usage_log (solution_id, outcome, notes, created_at) VALUES (?, ?, ?, ?)",
                (solution_id, outcome, notes, utc_now()),
            )
        logger.info("Reward %s: %s -> score %.3f", solution_id, outcome, score)
        return RewardResult(
            id=solution_id, outcome=outcome, score=score,
            previous_score=row["score"], uses=uses,
        )

    def usage_log(self, solution_id: str) -> list[dict]:
        rows = self._db.fetchall(
            "SELECT outcome, notes, created_at FROM usage_log WHERE solution_id = ? ORDER BY id",
            (solution_id,),
        )
        return [dict(r) for r in rows]

    # ------------------------------------------------------------------
    # Lookup and maintenance
    # ------------------------------------------------------------------

    def get(self, solution_id: str) -> Optional[Solution]:
        """Return the solution, or ``None`` if it does not exist."""
        row = self._db.fetchone("SELECT * FROM solutions WHERE id = ?", (solution_id,))
        return Solution.from_row(row) if row else None

    def require(self, solution_id: str) -> Solution:
        sol = self.get(solution_id)
        if sol is None:
            raise NotFoundError("solution", solution_id)
        return sol

    def get_by_prefix(self, prefix: str) -> Solution:
        """
        Resolve a (possibly abbreviated) solution id.

        Raises
        ------
        NotFoundError
            No solution id starts with *prefix*.
        ValidationError
            More than one does.
        """
        prefix = _require_text("id", prefix)
        escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        rows = self._db.fetchall(
            "SELECT * FROM solutions WHERE id LIKE ? ESCAPE '\\' ORDER BY id LIMIT 2",
            (escaped + "%",),
        )
        if not rows:
            raise NotFoundError("solution", prefix)
        if len(rows) > 1:
            raise ValidationError("id", f"prefix {prefix!r} matches more than one solution")
        return Solution.from_row(rows[0])

    def update(
        self,
        solution_id: str,
        problem: Optional[str] = None,
        solution: Optional[str] = None,
        scope: Optional[str] = None,
        tags: Optional[Sequence[str]] = None,
        category: Optional[str] = None,
        repo_root: Optional[str] = None,
    ) -> Solution:
        """
        Edit a stored solution.  A changed problem is re-embedded.

        Returns the updated snapshot.
        """
        current = self.require(solution_id)
        fields: dict = {}
        if problem is not None:
            fields["problem"] = _require_text("problem", problem)
        if solution is not None:
            fields["solution"] = _require_text("solution", solution)
        if scope is not None:
            fields["scope"] = _require_choice("scope", scope, SCOPES)
        if category is not None:
            fields["category"] = _require_choice("category", category, CATEGORIES)
        if tags is not None:
            fields["tags"] = json.dumps(_clean_tags(tags))
        if repo_root is not None:
            fields["repo_id"] = self._resolve_repo_id(repo_root)
        if fields.get("scope", current.scope) == "repo" and not fields.get("repo_id", current.repo_id):
            raise ValidationError("repo_id", "scope 'repo' requires a repository")
        if not fields:
            return current
        if "problem" in fields and fields["problem"] != current.problem:
            fields["problem_embedding"] = vector_to_blob(self._embedder.embed(fields["problem"]))
        fields["updated_at"] = utc_now()

        assignments = ", ".join(f"{name} = ?" for name in fields)
        with self._db.transaction() as conn:
            conn.execute(
                f"UPDATE solutions SET {assignments} WHERE id = ?",
                (*fields.values(), solution_id),
            )
        logger.info("Updated %s (%s)", solution_id, ", ".join(k for k in fields if k != "updated_at"))
        return self.require(solution_id)

    def delete(self, solution_id: str) -> None:
        with self._db.transaction() as conn:
            cur = conn.execute("DELETE FROM solutions WHERE id = ?", (solution_id,))
            if cur.rowcount == 0:
                raise NotFoundError("solution", solution_id)
        logger.info("Deleted %s", solution_id)

    def list_recent(self, limit: int = 10, scope: Optional[str] = None) -> list[Solution]:
        """Most recently updated solutions, skipping rows with corrupt columns."""
        if scope is not None:
            _require_choice("scope", scope, SCOPES)
            rows = self._db.fetchall(
                "SELECT * FROM solutions WHERE scope = ? ORDER BY updated_at DESC, id LIMIT ?",
                (scope, limit),
            )
        else:
            rows = self._db.fetchall(
                "SELECT * FROM solutions ORDER BY updated_at DESC, id LIMIT ?", (limit,)
            )
        out = []
        for row in rows:
            try:
                out.append(Solution.from_row(row))
            except CorruptRecordError as exc:
                logger.warning("Skipping %s", exc)
        return out

    def count(self) -> int:
        return self._db.scalar("SELECT COUNT(*) FROM solutions")

    def stats(self) -> dict:
        """
        Aggregate statistics.

        Returns
        -------
        dict
            Keys: solutions, failures, repos, total_uses, average_score,
            by_scope, by_category, top_tags (list of ``(tag, count)``).
        """
        by_scope = {
            r["scope"]: r["n"]
            for r in self._db.fetchall("SELECT scope, COUNT(*) AS n FROM solutions GROUP BY scope")
        }
        by_category = {
            (r["category"] or "uncategorized"): r["n"]
            for r in self._db.fetchall(
                "SELECT category, COUNT(*) AS n FROM solutions GROUP BY category"
            )
        }
        tag_counts: Counter = Counter()
        for row in self._db.fetchall("SELECT id, tags FROM solutions"):
            try:
                tag_counts.update(json.loads(row["tags"]))
            except (json.JSONDecodeError, TypeError):
                logger.warning("Skipping corrupt tags on %s", row["id"])
        totals = self._db.fetchone(
            "SELECT COUNT(*) AS n, COALESCE(SUM(uses), 0) AS uses, AVG(score) AS avg FROM solutions"
        )
        return {
            "solutions": totals["n"],
            "failures": self._db.scalar("SELECT COUNT(*) FROM failures"),
            "repos": self._db.scalar("SELECT COUNT(*) FROM repos"),
            "total_uses": totals["uses"],
            "average_score": round(totals["avg"], 3) if totals["avg"] is not None else None,
            "by_scope": by_scope,
            "by_category": by_category,
            "top_tags": tag_counts.most_common(10),
        }
