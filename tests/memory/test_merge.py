"""
Unit tests for devmemory.memory.merge

Candidate search over near-identical solutions, keeper selection,
counter arithmetic of executeMerge and double-merge detection.
"""

from __future__ import annotations

import hashlib
import math
import re
import threading

import pytest

from devmemory.config import Config
from devmemory.errors import NotFoundError, ValidationError
from devmemory.memory.db import Database
from devmemory.memory.merge import MergeEngine
from devmemory.memory.repos import RepoRegistry
from devmemory.memory.solutions import SolutionStore, compute_score


class _FakeEmbedder:
    """Hashes words into 384 buckets."""

    def embed(self, text):
        vec = [0.0] * 384
        for word in re.findall(r"[a-z0-9]+", text.lower()):
            vec[int(hashlib.md5(word.encode()).hexdigest(), 16) % 384] += 1.0
        norm = math.sqrt(sum(v * v for v in vec)) or 1.0
        return [v / norm for v in vec]

    def embed_many(self, texts):
        return [self.embed(t) for t in texts]


# Six of seven words shared: similarity 6/7, between the merge and duplicate thresholds.
PROBLEM_A = "react query cache not invalidating after mutation"
PROBLEM_B = "react query cache not invalidating after update"
PROBLEM_C = "kubernetes pod stuck in crashloopbackoff state"


@pytest.fixture
def db(tmp_path):
    database = Database(str(tmp_path / "memory.db"))
    yield database
    database.close()


@pytest.fixture
def store(db):
    embedder = _FakeEmbedder()
    return SolutionStore(db, embedder, RepoRegistry(db, embedder), Config())


@pytest.fixture
def engine(db):
    return MergeEngine(db, Config())


class TestFindCandidates:

    def test_finds_similar_pair_only(self, store, engine):
        a = store.store(PROBLEM_A, "invalidate queries in onSuccess")
        b = store.store(PROBLEM_B, "call queryClient.invalidateQueries")
        store.store(PROBLEM_C, "check liveness probe")
        assert b.status == "stored"

        candidates = engine.find_candidates()
        assert len(candidates) == 1
        cand = candidates[0]
        assert {cand.a.id, cand.b.id} == {a.id, b.id}
        assert cand.similarity == pytest.approx(6 / 7, abs=1e-4)

    def test_threshold_and_sorting(self, store, engine):
        store.store(PROBLEM_A, "x")
        store.store(PROBLEM_B, "y")
        store.store(PROBLEM_C, "z")
        everything = engine.find_candidates(threshold=-1.0)
        assert len(everything) == 3
        sims = [c.similarity for c in everything]
        assert sims == sorted(sims, reverse=True)
        assert engine.find_candidates(threshold=0.99) == []

    def test_keeper_is_higher_score_ties_keep_first(self, store, engine):
        a = store.store(PROBLEM_A, "x")
        b = store.store(PROBLEM_B, "y")
        cand = engine.find_candidates()[0]
        assert cand.keep.id == cand.a.id
        store.reward(b.id, "success")
        cand = engine.find_candidates()[0]
        assert cand.keep.id == b.id
        assert cand.remove.id == a.id

    def test_cancel_returns_partial(self, store, engine):
        store.store(PROBLEM_A, "x")
        store.store(PROBLEM_B, "y")
        cancel = threading.Event()
        cancel.set()
        assert engine.find_candidates(cancel_event=cancel) == []

    def test_corrupt_embedding_skipped(self, store, engine, db):
        store.store(PROBLEM_A, "x")
        bad = store.store(PROBLEM_B, "y")
        with db.transaction() as conn:
            conn.execute("UPDATE solutions SET problem_embedding = ? WHERE id = ?",
                         (b"\x01\x02", bad.id))
        assert engine.find_candidates() == []

    def test_clusters(self, store, engine):
        a = store.store(PROBLEM_A, "x")
        b = store.store(PROBLEM_B, "y")
        store.store(PROBLEM_C, "z")
        store.reward(b.id, "success")
        clusters = engine.clusters()
        assert len(clusters) == 1
        assert [s.id for s in clusters[0]] == [b.id, a.id]


class TestExecuteMerge:

    def test_counts_sum_and_remove_disappears(self, store, engine):
        keep = store.store(PROBLEM_A, "x", tags=["react"])
        remove = store.store(PROBLEM_B, "y", tags=["tanstack"])
        store.reward(keep.id, "success")
        store.reward(remove.id, "failure")
        store.reward(remove.id, "partial")
        old_keep = store.require(keep.id)
        old_remove = store.require(remove.id)

        result = engine.execute_merge(keep.id, remove.id)

        merged = store.require(keep.id)
        assert merged.uses == old_keep.uses + old_remove.uses == 3
        assert merged.successes == 1
        assert merged.failures == 1
        assert merged.partial_successes == 1
        assert merged.tags == frozenset({"react", "tanstack"})
        assert merged.score == pytest.approx(compute_score(1, 1, 3))
        assert result.uses == 3
        assert store.get(remove.id) is None

    def test_audit_entry(self, store, engine):
        keep = store.store(PROBLEM_A, "x")
        remove = store.store(PROBLEM_B, "y")
        store.reward(remove.id, "success")
        engine.execute_merge(keep.id, remove.id)
        log = store.usage_log(keep.id)
        assert log[-1]["outcome"] == "merge"
        assert log[-1]["notes"] == f"Merged from {remove.id}: +1 uses"

    def test_double_merge_fails(self, store, engine):
        keep = store.store(PROBLEM_A, "x")
        remove = store.store(PROBLEM_B, "y")
        engine.execute_merge(keep.id, remove.id)
        uses = store.require(keep.id).uses
        with pytest.raises(NotFoundError):
            engine.execute_merge(keep.id, remove.id)
        assert store.require(keep.id).uses == uses

    def test_self_merge_rejected(self, store, engine):
        keep = store.store(PROBLEM_A, "x")
        with pytest.raises(ValidationError):
            engine.execute_merge(keep.id, keep.id)

    def test_supersedes_repointed(self, store, engine):
        keep = store.store(PROBLEM_A, "x")
        remove = store.store(PROBLEM_B, "y")
        newer = store.store(PROBLEM_C, "z", supersedes=remove.id)
        engine.execute_merge(keep.id, remove.id)
        assert store.require(newer.id).supersedes == keep.id


class TestMergeAll:

    def test_decisions(self, store, engine):
        store.store(PROBLEM_A, "x")
        store.store(PROBLEM_B, "y")
        candidates = engine.find_candidates()
        assert engine.merge_all(candidates, lambda c: "skip") == []
        assert engine.merge_all(candidates, lambda c: "quit") == []
        results = engine.merge_all(candidates)
        assert len(results) == 1
        assert store.count() == 1

    def test_invalid_decision(self, store, engine):
        store.store(PROBLEM_A, "x")
        store.store(PROBLEM_B, "y")
        with pytest.raises(ValidationError):
            engine.merge_all(engine.find_candidates(), lambda c: "maybe")
