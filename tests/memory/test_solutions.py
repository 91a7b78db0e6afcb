"""
Unit tests for devmemory.memory.solutions

Store, deduplication, recall ranking with context boosts, the reward
loop and maintenance operations.  A deterministic bag-of-words embedder
stands in for the ONNX model.
"""

from __future__ import annotations

import hashlib
import json
import math
import os
import re

import pytest

from devmemory.config import Config
from devmemory.errors import NotFoundError, ValidationError
from devmemory.memory.db import Database
from devmemory.memory.repos import RepoRegistry
from devmemory.memory.solutions import SolutionStore, compute_complexity, compute_score


class _FakeEmbedder:
    """Hashes words into 384 buckets; texts listed in *aliases* embed as their target."""

    def __init__(self, aliases=None):
        self.aliases = aliases or {}
        self.calls = 0

    def embed(self, text):
        self.calls += 1
        text = self.aliases.get(text, text)
        vec = [0.0] * 384
        for word in re.findall(r"[a-z0-9]+", text.lower()):
            vec[int(hashlib.md5(word.encode()).hexdigest(), 16) % 384] += 1.0
        norm = math.sqrt(sum(v * v for v in vec)) or 1.0
        return [v / norm for v in vec]

    def embed_many(self, texts):
        return [self.embed(t) for t in texts]


@pytest.fixture
def db(tmp_path):
    database = Database(str(tmp_path / "memory.db"))
    yield database
    database.close()


@pytest.fixture
def embedder():
    return _FakeEmbedder()


@pytest.fixture
def store(db, embedder):
    return SolutionStore(db, embedder, RepoRegistry(db, embedder), Config())


def _make_repo(root, package_json=None):
    os.makedirs(root, exist_ok=True)
    with open(os.path.join(root, "index.ts"), "w") as fh:
        fh.write("export const x = 1;\n")
    if package_json is not None:
        with open(os.path.join(root, "package.json"), "w") as fh:
            json.dump(package_json, fh)
    return str(root)


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

class TestScoring:

    def test_initial_score_is_half(self):
        assert compute_score(0, 0, 0) == 0.5

    def test_success_never_decreases(self):
        successes = partial = uses = 0
        score = compute_score(0, 0, 0)
        for outcome in ["failure", "failure", "partial", "success", "success"]:
            uses += 1
            if outcome == "success":
                successes += 1
                new = compute_score(successes, partial, uses)
                assert new >= score
            elif outcome == "partial":
                partial += 1
                new = compute_score(successes, partial, uses)
            else:
                new = compute_score(successes, partial, uses)
                assert new <= score
            score = new

    def test_score_stays_in_unit_interval(self):
        assert 0 < compute_score(100, 0, 100) < 1
        assert 0 < compute_score(0, 0, 100) < 1


class TestComplexity:

    def test_minimal_solution(self):
        assert compute_complexity("short fix") == 1

    def test_each_term_is_capped(self):
        value = compute_complexity(
            "x" * 10_000,
            code_blocks=["a"] * 9,
            prerequisites=["p"] * 9,
            files_affected=["f"] * 20,
        )
        assert value == 10

    def test_components(self):
        # 1 + 1000//500 + 1 block + 0 prereqs + 3//2 files
        assert compute_complexity("y" * 1000, ["code"], [], ["a", "b", "c"]) == 5


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class TestStore:

    def test_store_returns_stored_with_computed_complexity(self, store):
        result = store.store("OAuth integration with Google", "use passport.js")
        assert result.status == "stored"
        assert result.id.startswith("sol_")
        assert 1 <= result.complexity <= 10
        sol = store.require(result.id)
        assert sol.score == 0.5
        assert (sol.uses, sol.successes, sol.partial_successes, sol.failures) == (0, 0, 0, 0)

    def test_near_duplicate_is_not_stored(self, db):
        embedder = _FakeEmbedder(aliases={
            "OAuth with Google auth": "OAuth integration with Google",
        })
        store = SolutionStore(db, embedder, RepoRegistry(db, embedder), Config())
        first = store.store("OAuth integration with Google", "use passport.js", scope="global")
        before = store.count()
        dup = store.store("OAuth with Google auth", "something else")
        assert dup.status == "duplicate"
        assert dup.is_duplicate
        assert dup.id == first.id
        assert dup.similarity >= 0.9
        assert dup.existing_problem == "OAuth integration with Google"
        assert store.count() == before

    def test_distinct_problems_both_stored(self, store):
        store.store("webpack build fails on node 18", "set NODE_OPTIONS legacy provider")
        store.store("postgres connection refused in docker", "use service name as host")
        assert store.count() == 2

    def test_tags_are_a_set(self, store):
        result = store.store("p one", "s", tags=["b", "a", "b", " "])
        assert store.require(result.id).tags == frozenset({"a", "b"})

    def test_explicit_complexity_kept(self, store):
        result = store.store("p two", "s", complexity=7)
        assert result.complexity == 7

    @pytest.mark.parametrize("kwargs, field", [
        ({"scope": "universe"}, "scope"),
        ({"category": "magic"}, "category"),
        ({"complexity": 0}, "complexity"),
        ({"complexity": 11}, "complexity"),
        ({"complexity": True}, "complexity"),
        ({"tags": "not-a-list"}, "tags"),
        ({"scope": "repo"}, "repo_id"),
    ])
    def test_validation_happens_before_any_write(self, store, embedder, kwargs, field):
        with pytest.raises(ValidationError) as exc_info:
            store.store("valid problem", "valid solution", **kwargs)
        assert exc_info.value.field == field
        assert store.count() == 0
        assert embedder.calls == 0

    def test_empty_problem_rejected(self, store):
        with pytest.raises(ValidationError):
            store.store("   ", "solution")

    def test_supersedes_must_exist(self, store):
        with pytest.raises(NotFoundError):
            store.store("new approach", "s", supersedes="sol_missing")
        assert store.count() == 0

    def test_supersedes_existing(self, store):
        old = store.store("old approach to caching", "memoize")
        new = store.store("redis cache layer", "use redis", supersedes=old.id)
        assert new.status == "superseded"
        assert store.require(new.id).supersedes == old.id

    def test_repo_scope_records_repo(self, store, tmp_path):
        root = _make_repo(tmp_path / "proj")
        result = store.store("repo specific thing", "do it", scope="repo", repo_root=root)
        sol = store.require(result.id)
        assert sol.scope == "repo"
        assert sol.repo_id is not None


# ---------------------------------------------------------------------------
# Recall
# ---------------------------------------------------------------------------

class TestRecall:

    def test_best_match_first(self, store):
        a = store.store("jest cannot find module alias", "add moduleNameMapper")
        store.store("docker image too large", "use multi stage build")
        matches = store.recall("jest module alias not found", min_score=0.1)
        assert matches
        assert matches[0].id == a.id
        ranks = [m.rank for m in matches]
        assert ranks == sorted(ranks, reverse=True)

    def test_rank_combines_similarity_and_score(self, store):
        a = store.store("eslint config conflict", "extend prettier last")
        store.reward(a.id, "success")
        m = store.recall("eslint config conflict", min_score=0.0)[0]
        sol = store.require(a.id)
        assert m.similarity == pytest.approx(1.0, abs=1e-6)
        assert m.rank == pytest.approx(0.7 * m.boosted_similarity + 0.3 * sol.score)

    def test_limit_and_min_score(self, store):
        for i in range(6):
            store.store(f"flaky test number {i} timing", f"fix {i}")
        assert len(store.recall("flaky test timing", limit=3, min_score=0.0)) == 3
        assert store.recall("completely unrelated words here", min_score=0.99) == []

    def test_same_repo_boost(self, store, tmp_path):
        root = _make_repo(tmp_path / "proj")
        here = store.store("vite env vars undefined", "prefix with VITE_", repo_root=root)
        match = store.recall("vite env vars undefined", repo_root=root, min_score=0.0)[0]
        assert match.id == here.id
        assert match.context_boost == "same_repo"
        assert match.boosted_similarity == pytest.approx(1.0)

    def test_similar_stack_boost(self, store, tmp_path):
        pkg = {"dependencies": {"react": "18", "next": "14"}}
        first = _make_repo(tmp_path / "app-one", pkg)
        second = _make_repo(tmp_path / "app-two", pkg)
        stored = store.store("hydration mismatch warning", "render dates on client",
                             repo_root=first)
        match = store.recall("hydration mismatch", repo_root=second, min_score=0.0)[0]
        assert match.id == stored.id
        assert match.context_boost == "similar_stack"
        assert match.boosted_similarity == pytest.approx(
            min(1.0, match.similarity + 0.08)
        )

    def test_no_boost_without_repo(self, store):
        store.store("npm audit noise", "use overrides")
        match = store.recall("npm audit noise", min_score=0.0)[0]
        assert match.context_boost is None

    def test_scope_filter(self, store, tmp_path):
        root = _make_repo(tmp_path / "proj")
        store.store("pnpm workspace hoisting", "set shamefully-hoist", scope="stack")
        store.store("pnpm workspace hoisting issue in this repo", "link local",
                    scope="repo", repo_root=root)
        stack_only = store.recall("pnpm workspace hoisting", scope_filter="stack", min_score=0.0)
        assert {m.solution.scope for m in stack_only} == {"stack"}
        repo_only = store.recall("pnpm workspace hoisting", scope_filter="repo",
                                 repo_root=root, min_score=0.0)
        assert {m.solution.scope for m in repo_only} == {"repo"}

    def test_repo_filter_needs_repo(self, store):
        with pytest.raises(ValidationError):
            store.recall("anything", scope_filter="repo")

    def test_corrupt_row_skipped(self, store, db):
        good = store.store("tailwind classes purged", "add content globs")
        bad = store.store("tailwind purge in production", "safelist classes")
        with db.transaction() as conn:
            conn.execute("UPDATE solutions SET problem_embedding = ? WHERE id = ?",
                         (b"\x00" * 10, bad.id))
        ids = [m.id for m in store.recall("tailwind classes purged", min_score=0.0)]
        assert good.id in ids
        assert bad.id not in ids


# ---------------------------------------------------------------------------
# Reward and maintenance
# ---------------------------------------------------------------------------

class TestReward:

    def test_success_and_failure_are_monotonic(self, store):
        sol = store.store("cors error on localhost", "configure proxy")
        prev = store.require(sol.id).score
        res = store.reward(sol.id, "success", notes="worked")
        assert res.previous_score == prev
        assert res.score >= prev
        prev = res.score
        res = store.reward(sol.id, "failure")
        assert res.score <= prev
        after = store.require(sol.id)
        assert (after.uses, after.successes, after.failures) == (2, 1, 1)

    def test_partial(self, store):
        sol = store.store("slow query", "add index")
        res = store.reward(sol.id, "partial")
        assert res.score == pytest.approx(compute_score(0, 1, 1))
        assert store.require(sol.id).partial_successes == 1

    def test_usage_log_written(self, store):
        sol = store.store("memory leak in listener", "remove listener")
        store.reward(sol.id, "success", notes="fixed prod")
        log = store.usage_log(sol.id)
        assert [(e["outcome"], e["notes"]) for e in log] == [("success", "fixed prod")]

    def test_unknown_id(self, store):
        with pytest.raises(NotFoundError):
            store.reward("sol_nothere", "success")

    def test_bad_outcome(self, store):
        sol = store.store("x problem", "y")
        with pytest.raises(ValidationError):
            store.reward(sol.id, "great")


class TestMaintenance:

    def test_get_by_prefix(self, store):
        sol = store.store("prefix lookup problem", "answer")
        assert store.get_by_prefix(sol.id[:7]).id == sol.id
        with pytest.raises(NotFoundError):
            store.get_by_prefix("sol_zzzz")

    def test_ambiguous_prefix(self, store):
        store.store("first unrelated problem alpha", "a")
        store.store("second unrelated problem beta", "b")
        with pytest.raises(ValidationError):
            store.get_by_prefix("sol_")

    def test_update_reembeds_changed_problem(self, store, embedder):
        sol = store.store("old wording of problem", "fix")
        calls = embedder.calls
        updated = store.update(sol.id, problem="brand new wording", tags=["x"])
        assert embedder.calls == calls + 1
        assert updated.problem == "brand new wording"
        assert updated.tags == frozenset({"x"})
        assert store.recall("brand new wording", min_score=0.9)[0].id == sol.id

    def test_update_to_repo_scope_needs_repo(self, store):
        sol = store.store("global thing", "fix")
        with pytest.raises(ValidationError):
            store.update(sol.id, scope="repo")

    def test_delete(self, store):
        sol = store.store("to delete", "x")
        store.delete(sol.id)
        assert store.get(sol.id) is None
        with pytest.raises(NotFoundError):
            store.delete(sol.id)

    def test_list_recent_and_stats(self, store):
        a = store.store("problem a here", "a", tags=["js"], category="bugfix")
        store.store("problem b there", "b", tags=["js", "css"], scope="stack")
        store.reward(a.id, "success")
        assert len(store.list_recent(limit=1)) == 1
        assert [s.scope for s in store.list_recent(scope="stack")] == ["stack"]
        stats = store.stats()
        assert stats["solutions"] == 2
        assert stats["total_uses"] == 1
        assert stats["by_scope"] == {"global": 1, "stack": 1}
        assert stats["by_category"]["bugfix"] == 1
        assert stats["top_tags"][0] == ("js", 2)
