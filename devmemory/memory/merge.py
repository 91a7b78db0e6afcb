"""
Merge engine — finds near-identical solutions and consolidates them.

Candidate search compares every pair of stored embeddings, which is
quadratic in the number of solutions.  That is fine for a single
developer's store (hundreds to low thousands of records); beyond that an
approximate nearest-neighbour index would be needed.
"""

from __future__ import annotations

import json
import logging
import threading
from typing import Callable, Optional

import networkx as nx
import numpy as np

from ..errors import CorruptRecordError, NotFoundError, ValidationError
from .db import Database, utc_now
from .records import MergeCandidate, MergeResult, Solution
from .solutions import compute_score
from .vectors import blob_to_vector

logger = logging.getLogger(__name__)

Decision = Callable[[MergeCandidate], str]

DECISIONS = ("merge", "skip", "quit")


class MergeEngine:
    """
    Parameters
    ----------
    db:
        Open :class:`Database`.
    config:
        :class:`~devmemory.config.Config`; supplies the default threshold.
    """

    def __init__(self, db: Database, config) -> None:
        self._db = db
        self._config = config

    # ------------------------------------------------------------------
    # Candidate search
    # ------------------------------------------------------------------

    def _load(self) -> tuple[list[Solution], np.ndarray]:
        """Readable solutions in insertion order and their unit vectors."""
        rows = self._db.fetchall("SELECT * FROM solutions ORDER BY created_at, id")
        solutions: list[Solution] = []
        vectors: list[np.ndarray] = []
        for row in rows:
            try:
                vec = blob_to_vector(row["problem_embedding"], "solutions", row["id"])
                sol = Solution.from_row(row)
            except CorruptRecordError as exc:
                logger.warning("Skipping %s", exc)
                continue
            solutions.append(sol)
            vectors.append(vec.astype(np.float64))
        if not vectors:
            return [], np.zeros((0, 0))
        matrix = np.stack(vectors)
        norms = np.linalg.norm(matrix, axis=1, keepdims=True)
        norms[norms == 0] = 1.0
        return solutions, matrix / norms

    def find_candidates(
        self,
        threshold: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> list[MergeCandidate]:
        """
        All pairs of solutions with similarity ≥ *threshold*.

        Sorted by similarity descending, then by the id pair.  Setting
        *cancel_event* stops the scan and returns what was found so far.
        """
        threshold = self._config.MERGE_THRESHOLD if threshold is None else threshold
        solutions, unit = self._load()
        candidates: list[MergeCandidate] = []
        for i in range(len(solutions) - 1):
            if cancel_event is not None and cancel_event.is_set():
                logger.info("Merge scan cancelled after %d of %d rows", i, len(solutions))
                break
            sims = np.clip(unit[i + 1:] @ unit[i], -1.0, 1.0)
            for offset in np.nonzero(sims >= threshold)[0]:
                j = i + 1 + int(offset)
                candidates.append(MergeCandidate(
                    a=solutions[i], b=solutions[j], similarity=float(sims[offset]),
                ))
        candidates.sort(key=lambda c: (-c.similarity, c.a.id, c.b.id))
        logger.info("Found %d merge candidates among %d solutions", len(candidates), len(solutions))
        return candidates

    def clusters(self, threshold: Optional[float] = None) -> list[list[Solution]]:
        """
        Group candidates into connected components.

        Each cluster is ordered keeper-first: highest score, then id.
        """
        graph = nx.Graph()
        by_id: dict[str, Solution] = {}
        for cand in self.find_candidates(threshold):
            by_id[cand.a.id] = cand.a
            by_id[cand.b.id] = cand.b
            graph.add_edge(cand.a.id, cand.b.id, weight=cand.similarity)
        groups = [
            sorted((by_id[n] for n in component), key=lambda s: (-s.score, s.id))
            for component in nx.connected_components(graph)
        ]
        groups.sort(key=lambda g: g[0].id)
        return groups

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def execute_merge(self, keep_id: str, remove_id: str) -> MergeResult:
        """
        Fold *remove_id* into *keep_id* in one transaction.

        Counters are summed, tags unioned and the score recomputed from the
        summed counters.  *remove_id* is deleted and an audit entry is
        written against *keep_id*.

        Raises
        ------
        ValidationError
            If both ids are the same.
        NotFoundError
            If either solution does not exist (e.g. it was already merged).
        """
        if keep_id == remove_id:
            raise ValidationError("remove_id", "cannot merge a solution into itself")
        with self._db.transaction() as conn:
            keep = conn.execute("SELECT * FROM solutions WHERE id = ?", (keep_id,)).fetchone()
            if keep is None:
                raise NotFoundError("solution", keep_id)
            remove = conn.execute("SELECT * FROM solutions WHERE id = ?", (remove_id,)).fetchone()
            if remove is None:
                raise NotFoundError("solution", remove_id)

            keep_sol = Solution.from_row(keep)
            remove_sol = Solution.from_row(remove)
            uses = keep_sol.uses + remove_sol.uses
            successes = keep_sol.successes + remove_sol.successes
            partial = keep_sol.partial_successes + remove_sol.partial_successes
            failures = keep_sol.failures + remove_sol.failures
            tags = keep_sol.tags | remove_sol.tags
            score = compute_score(successes, partial, uses)
            now = utc_now()

            conn.execute(
                """
                UPDATE solutions SET uses = ?, successes = ?, partial_successes = ?,
                       failures = ?, tags = ?, score = ?, updated_at = ?
                WHERE id = ?
                """,
                (uses, successes, partial, failures, json.dumps(sorted(tags)), score, now, keep_id),
            )
            conn.execute(
                "UPDATE solutions SET supersedes = ? WHERE supersedes = ? AND id != ?",
                (keep_id, remove_id, keep_id),
            )
            conn.execute(
                "INSERT INTO usage_log (solution_id, outcome, notes, created_at) VALUES (?, 'merge', ?, ?)",
                (keep_id, f"Merged from {remove_id}: +{remove_sol.uses} uses", now),
            )
            conn.execute("DELETE FROM solutions WHERE id = ?", (remove_id,))

        logger.info("Merged %s into %s (%d uses)", remove_id, keep_id, uses)
        return MergeResult(keep_id=keep_id, removed_id=remove_id, uses=uses, score=score, tags=tags)

    def merge_all(
        self,
        candidates: list[MergeCandidate],
        decide: Optional[Decision] = None,
    ) -> list[MergeResult]:
        """
        Consolidate *candidates* in order.

        ``decide(candidate)`` returns ``"merge"``, ``"skip"`` or ``"quit"``;
        without it every pair is merged.  Pairs touching a solution that an
        earlier merge removed are skipped.
        """
        removed: set[str] = set()
        results: list[MergeResult] = []
        for cand in candidates:
            if cand.a.id in removed or cand.b.id in removed:
                continue
            choice = decide(cand) if decide is not None else "merge"
            if choice not in DECISIONS:
                raise ValidationError("decision", f"must be one of {', '.join(DECISIONS)}")
            if choice == "quit":
                break
            if choice == "skip":
                continue
            keep, remove = cand.keep, cand.remove
            results.append(self.execute_merge(keep.id, remove.id))
            removed.add(remove.id)
        return results
