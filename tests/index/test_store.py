"""
Unit tests for devmemory.index.store

Rows are written from hand-built ParseResults so these tests do not depend
on the tree-sitter grammars.
"""

from __future__ import annotations

import pytest

from devmemory.index.parsers import ParsedImport, ParsedSymbol, ParseResult
from devmemory.index.store import IndexStore, resolve_import
from devmemory.memory.db import Database
from devmemory.memory.repos import RepoRegistry


@pytest.fixture
def db(tmp_path):
    database = Database(str(tmp_path / "memory.db"))
    yield database
    database.close()


@pytest.fixture
def store(db, tmp_path):
    repo = RepoRegistry(db, embedder=None).ensure(str(tmp_path / "repo"))
    return IndexStore(db, repo.id)


def _sym(name, kind="function", line=1, exported=True, is_default=False, scope=None, signature=None):
    return ParsedSymbol(
        name=name, kind=kind, line=line, end_line=line + 2,
        exported=exported, is_default=is_default, scope=scope, signature=signature,
    )


def _imp(name, source, local=None, line=1, is_default=False, is_namespace=False, is_type=False):
    return ParsedImport(
        imported_name=name, source_path=source, line=line,
        local_name=local if local is not None else (None if name == "*" else name),
        is_default=is_default, is_namespace=is_namespace, is_type=is_type,
    )


def _result(language="typescript", symbols=(), imports=(), errors=()):
    return ParseResult(
        language=language, symbols=list(symbols), imports=list(imports), errors=list(errors),
    )


# ---------------------------------------------------------------------------
# resolve_import
# ---------------------------------------------------------------------------

class TestResolveImport:

    KNOWN = {
        "src/utils/format.ts",
        "src/components/Button.tsx",
        "src/lib/index.ts",
        "src/legacy.js",
        "src/esm.ts",
        "pkg/__init__.py",
        "pkg/models.py",
        "pkg/sub/helpers.py",
        "src/mylib/core.py",
    }

    @pytest.mark.parametrize("importer,spec,expected", [
        ("src/app.ts", "./utils/format", "src/utils/format.ts"),
        ("src/app.ts", "./components/Button", "src/components/Button.tsx"),
        ("src/app.ts", "./lib", "src/lib/index.ts"),
        ("src/app.ts", "./legacy.js", "src/legacy.js"),
        ("src/app.ts", "./esm.js", "src/esm.ts"),
        ("src/utils/format.ts", "../esm", "src/esm.ts"),
        ("src/app.ts", "react", None),
        ("src/app.ts", "./missing", None),
    ])
    def test_ecmascript(self, importer, spec, expected):
        assert resolve_import(importer, spec, self.KNOWN) == expected

    @pytest.mark.parametrize("importer,spec,expected", [
        ("pkg/sub/helpers.py", "..models", "pkg/models.py"),
        ("pkg/models.py", ".sub.helpers", "pkg/sub/helpers.py"),
        ("pkg/models.py", ".", "pkg/__init__.py"),
        ("main.py", "pkg.models", "pkg/models.py"),
        ("main.py", "pkg", "pkg/__init__.py"),
        ("main.py", "mylib.core", "src/mylib/core.py"),
        ("main.py", "os", None),
    ])
    def test_python(self, importer, spec, expected):
        assert resolve_import(importer, spec, self.KNOWN) == expected

    def test_accepts_any_iterable(self):
        assert resolve_import("a.ts", "./b", ["b.ts"]) == "b.ts"


# ---------------------------------------------------------------------------
# File rows
# ---------------------------------------------------------------------------

class TestFileRows:

    def test_replace_file_inserts_rows(self, store):
        store.replace_file("src/a.ts", 1000, _result(
            symbols=[_sym("foo"), _sym("Bar", kind="class", line=5)],
            imports=[_imp("x", "./x")],
        ))
        assert store.indexed_mtimes() == {"src/a.ts": 1000}
        assert [s.name for s in store.find_exports("src/a.ts")] == ["foo", "Bar"]
        assert [i.imported_name for i in store.get_imports("src/a.ts")] == ["x"]

    def test_replace_file_replaces_all_rows(self, store):
        store.replace_file("src/a.ts", 1000, _result(symbols=[_sym("foo")], imports=[_imp("x", "./x")]))
        store.replace_file("src/a.ts", 2000, _result(symbols=[_sym("foo", exported=False)]))

        assert store.indexed_mtimes() == {"src/a.ts": 2000}
        assert store.find_exports() == []
        (foo,) = store.find_definitions("foo")
        assert not foo.exported
        assert store.get_imports("src/a.ts") == []

    def test_remove_file_cascades(self, store, db):
        store.replace_file("src/a.ts", 1, _result(symbols=[_sym("foo")], imports=[_imp("x", "./x")]))
        assert store.remove_file("src/a.ts") is True
        assert store.remove_file("src/a.ts") is False
        assert store.find_definitions("foo") == []
        assert db.scalar("SELECT COUNT(*) FROM symbols") == 0
        assert db.scalar("SELECT COUNT(*) FROM imports") == 0

    def test_repos_are_isolated(self, db, tmp_path, store):
        other = IndexStore(db, RepoRegistry(db, None).ensure(str(tmp_path / "other")).id)
        store.replace_file("a.ts", 1, _result(symbols=[_sym("foo")]))
        other.replace_file("a.ts", 1, _result(symbols=[_sym("bar")]))

        assert [s.name for s in store.find_definitions("foo")] == ["foo"]
        assert store.find_definitions("bar") == []
        other.clear()
        assert other.indexed_mtimes() == {}
        assert store.indexed_mtimes() == {"a.ts": 1}

    def test_stats(self, store):
        store.replace_file("a.ts", 1, _result(symbols=[_sym("a"), _sym("b")], imports=[_imp("x", "./x")]))
        store.replace_file("b.py", 1, _result(language="python", symbols=[_sym("c")],
                                              errors=["line 3: syntax error"]))
        assert store.stats() == {
            "files": 2,
            "symbols": 3,
            "imports": 1,
            "partial_files": 1,
            "languages": {"typescript": 1, "python": 1},
        }


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

class TestQueries:

    @pytest.fixture(autouse=True)
    def _populate(self, store):
        store.replace_file("src/users/service.ts", 1, _result(symbols=[
            _sym("getUserById", line=3),
            _sym("getUsers", line=10),
            _sym("UserService", kind="class", line=20),
            _sym("find", kind="method", line=22, exported=False, scope="UserService"),
        ]))
        store.replace_file("src/users/types.ts", 1, _result(symbols=[
            _sym("User", kind="interface"),
            _sym("getUserById", kind="type", line=8, exported=False),
        ]))
        store.replace_file("src/usersearch.ts", 1, _result(symbols=[_sym("user")]))
        store.replace_file("src/other.ts", 1, _result(symbols=[_sym("debugUserBinding")]))

    def test_find_definitions(self, store):
        found = store.find_definitions("getUserById")
        assert [(s.file, s.kind) for s in found] == [
            ("src/users/service.ts", "function"),
            ("src/users/types.ts", "type"),
        ]
        assert len(store.find_definitions("getUserById", kind="type")) == 1
        assert len(store.find_definitions("getUserById", file="src/users/service.ts")) == 1
        assert store.find_definitions("getuserbyid") == []

    def test_scoped_definition(self, store):
        (find,) = store.find_definitions("find")
        assert find.scope == "UserService"
        assert find.qualified_name == "UserService.find"

    def test_find_exports_by_prefix(self, store):
        names = [s.name for s in store.find_exports("src/users/")]
        assert names == ["getUserById", "getUsers", "UserService", "User"]
        assert [s.name for s in store.find_exports("src/users/types.ts")] == ["User"]
        assert "user" not in names

    def test_search_ranking(self, store):
        names = [s.name for s in store.search_symbols("User")]
        assert names[0] == "User"
        assert names[1] == "user"
        assert names.index("UserService") < names.index("getUsers")
        assert names.index("getUsers") < names.index("debugUserBinding")

    def test_search_subsequence(self, store):
        names = [s.name for s in store.search_symbols("gUBy")]
        assert set(names) == {"getUserById"}
        assert len(names) == 2

    def test_search_filters(self, store):
        assert {s.kind for s in store.search_symbols("user", kind="class")} == {"class"}
        exported = store.search_symbols("getUserById", exported_only=True)
        assert [s.file for s in exported] == ["src/users/service.ts"]
        assert len(store.search_symbols("u", limit=2)) == 2
        assert store.search_symbols("   ") == []

    def test_search_escapes_like_wildcards(self, store):
        assert store.search_symbols("%") == []
        assert store.search_symbols("_") == []


# ---------------------------------------------------------------------------
# find_callers
# ---------------------------------------------------------------------------

class TestFindCallers:

    @pytest.fixture(autouse=True)
    def _populate(self, store):
        store.replace_file("src/api.ts", 1, _result(symbols=[
            _sym("fetchUser"),
            _sym("Client", kind="class", is_default=True, line=10),
            _sym("fetchUser", kind="method", scope="Client", exported=False, line=12),
        ]))
        store.replace_file("src/page.ts", 1, _result(imports=[
            _imp("fetchUser", "./api", line=1),
            _imp("default", "./api", local="Client", is_default=True, line=2),
        ]))
        store.replace_file("src/ns.ts", 1, _result(imports=[
            _imp("*", "./api", local="api", is_namespace=True),
        ]))
        store.replace_file("src/side.ts", 1, _result(imports=[_imp("*", "./api")]))
        store.replace_file("src/third.ts", 1, _result(imports=[_imp("fetchUser", "some-package")]))
        store.replace_file("src/copy.ts", 1, _result(symbols=[_sym("fetchUser")]))

    def test_direct_and_namespace_imports(self, store):
        callers = store.find_callers("fetchUser", file="src/api.ts")
        assert [(c.file, c.imported_name) for c in callers] == [
            ("src/ns.ts", "*"),
            ("src/page.ts", "fetchUser"),
        ]
        assert all(c.resolved_path == "src/api.ts" for c in callers)

    def test_default_import_matches_default_export(self, store):
        callers = store.find_callers("Client")
        assert [(c.file, c.local_name) for c in callers] == [
            ("src/ns.ts", "api"),
            ("src/page.ts", "Client"),
        ]

    def test_default_import_needs_default_export(self, store):
        callers = store.find_callers("fetchUser")
        assert ("src/page.ts", "default") not in [(c.file, c.imported_name) for c in callers]

    def test_unknown_name(self, store):
        assert store.find_callers("nothing") == []
        assert store.find_callers("fetchUser", file="src/missing.ts") == []
