"""
Integration tests for devmemory.api.DevMemory

Runs the facade against a real SQLite file with a deterministic
bag-of-words embedder in place of the ONNX model.
"""

from __future__ import annotations

import hashlib
import math
import re

import pytest

from devmemory import DevMemory, NotFoundError, ValidationError
from devmemory.config import Config
from devmemory.memory.db import Database


class _FakeEmbedder:
    def __init__(self):
        self.calls = 0

    def embed(self, text):
        self.calls += 1
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
def repo(tmp_path):
    root = tmp_path / "webapp"
    (root / "src").mkdir(parents=True)
    return root


@pytest.fixture
def mem(db, repo):
    instance = DevMemory(config=Config(), db=db, embedder=_FakeEmbedder(), repo_root=str(repo))
    yield instance
    instance.close()


class TestSolutions:

    def test_store_and_recall_same_repo(self, mem):
        result = mem.store(
            "jest cannot find module alias",
            "add moduleNameMapper to jest config",
            tags=["jest", "Testing"],
        )
        assert result.status == "stored"

        matches = mem.recall("jest cannot find module alias")
        assert [m.id for m in matches] == [result.id]
        assert matches[0].context_boost == "same_repo"
        assert mem.get_solution(result.id).tags == frozenset({"jest", "Testing"})

    def test_recall_from_other_repo_has_no_same_repo_boost(self, mem, tmp_path):
        mem.store("docker build fails on arm", "set --platform linux/amd64")
        other = tmp_path / "other"
        other.mkdir()
        matches = mem.recall("docker build fails on arm", repo_root=str(other))
        assert matches and matches[0].context_boost != "same_repo"

    def test_reward_and_prefix_lookup(self, mem):
        sol_id = mem.store("cors error on api", "enable cors middleware").id
        found = mem.get_solution(sol_id[:8])
        assert found.id == sol_id

        result = mem.reward(sol_id, "success")
        assert result.uses == 1
        assert result.score == pytest.approx(2 / 3)

    def test_update_and_delete(self, mem):
        sol_id = mem.store("slow query", "add an index").id
        updated = mem.update_solution(sol_id, solution="add a composite index")
        assert updated.solution == "add a composite index"
        mem.delete_solution(sol_id)
        with pytest.raises(NotFoundError):
            mem.get_solution(sol_id)
        assert mem.list_solutions() == []

    def test_repo_scope_uses_current_repo(self, mem):
        mem.store("env var missing", "load dotenv first", scope="repo")
        (sol,) = mem.list_solutions(scope="repo")
        assert sol.repo_id is not None
        assert mem.recall("env var missing", scope_filter="repo")


class TestFailuresAndMerge:

    def test_failures(self, mem):
        first = mem.record_failure("TypeError", "x is undefined at line 10")
        again = mem.record_failure("TypeError", "x is undefined at line 42", fix_applied="guard")
        assert first.is_new and not again.is_new
        assert again.id == first.id and again.occurrences == 2
        matches = mem.search_failures("x is undefined")
        assert matches[0].failure.fix_applied == "guard"

    def test_merge_round_trip(self, mem):
        a = mem.store("webpack build runs out of memory on ci", "raise node heap size").id
        b = mem.store("webpack build runs out of memory locally", "raise node heap size limit").id
        candidates = mem.merge_candidates(threshold=0.5)
        assert {candidates[0].a.id, candidates[0].b.id} == {a, b}
        results = mem.merge_all(candidates)
        assert len(results) == 1
        assert len(mem.list_solutions()) == 1


class TestWarnings:

    def test_repo_and_global_warnings(self, mem, tmp_path):
        mem.add_warning("file", "*.lock", "generated, do not edit", severity="block")
        mem.add_warning("package", "moment", "use date-fns", global_=True)

        hits = mem.check_warnings("file", "frontend/yarn.lock")
        assert [h.severity for h in hits] == ["block"]
        assert [h.target for h in mem.check_warnings("package", "moment")] == ["moment"]

        other = tmp_path / "other"
        other.mkdir()
        assert mem.check_warnings("file", "yarn.lock", repo_root=str(other)) == []
        assert [w.target for w in mem.list_warnings(repo_root=str(other))] == ["moment"]

    def test_remove_warning(self, mem):
        rule = mem.add_warning("file", "config/prod.yml", "production secrets")
        mem.remove_warning(rule.id)
        assert mem.list_warnings() == []
        with pytest.raises(NotFoundError):
            mem.remove_warning(rule.id)

    def test_invalid_warning(self, mem):
        with pytest.raises(ValidationError):
            mem.add_warning("folder", "x", "y")


class TestCodeIndex:

    def test_index_queries(self, mem, repo):
        (repo / "src" / "math.ts").write_text(
            "export function add(a: number, b: number): number {\n  return a + b;\n}\n",
            encoding="utf-8",
        )
        (repo / "src" / "main.ts").write_text(
            "import { add } from './math';\n\nconsole.log(add(1, 2));\n",
            encoding="utf-8",
        )

        result = mem.reindex()
        assert result.files_indexed == 2

        (add,) = mem.find_definition("add")
        assert add.file == "src/math.ts"
        assert add.signature == "(a: number, b: number): number"
        assert [c.file for c in mem.find_callers("add")] == ["src/main.ts"]
        assert [s.name for s in mem.list_exports("src")] == ["add"]
        assert [s.name for s in mem.search_symbols("ad")] == ["add"]
        assert [i.imported_name for i in mem.get_imports("src/main.ts")] == ["add"]
        assert mem.index_status()["state"] == "indexed"

    def test_index_needs_no_embeddings(self, mem, repo):
        (repo / "src" / "a.py").write_text("def f():\n    pass\n", encoding="utf-8")
        mem.reindex()
        assert mem.embedder.calls == 0

    def test_indexer_cached_per_root(self, mem, tmp_path):
        assert mem.indexer() is mem.indexer()
        other = tmp_path / "other"
        other.mkdir()
        assert mem.indexer(str(other)) is not mem.indexer()

    def test_watch_returns_unstarted_watcher(self, mem):
        watcher = mem.watch()
        assert not watcher.running


class TestLifecycle:

    def test_status(self, mem, db):
        mem.store("a problem", "a solution")
        status = mem.status()
        assert status["solutions"] == 1
        assert status["db_path"] == db.path

    def test_close_keeps_injected_db_open(self, db, repo):
        with DevMemory(config=Config(), db=db, embedder=_FakeEmbedder(), repo_root=str(repo)) as m:
            m.store("p", "s")
        assert db.scalar("SELECT COUNT(*) FROM solutions") == 1
