"""
Repository identity and tech-stack fingerprinting.

A repository is identified by a stable hash of its absolute root path.
Its detected languages, frameworks and patterns are joined into a
descriptor text whose embedding drives the "similar stack" recall boost.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
from typing import Optional

from ..errors import CorruptRecordError, NotFoundError, ValidationError
from .db import INDEX_STATES, Database, utc_now
from .records import RepoFingerprint
from .vectors import blob_to_vector, vector_to_blob

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Stack detection tables
# ---------------------------------------------------------------------------

_SKIP_DIRS = {
    ".git", "node_modules", "__pycache__", "venv", ".venv", "dist", "build",
    ".next", ".nuxt", "coverage", "vendor", ".tox", ".mypy_cache",
}

_LANGUAGE_BY_EXT = {
    ".py": "python", ".ts": "typescript", ".tsx": "typescript",
    ".js": "javascript", ".jsx": "javascript", ".mjs": "javascript",
    ".cjs": "javascript", ".go": "go", ".rs": "rust", ".java": "java",
    ".kt": "kotlin", ".rb": "ruby", ".php": "php", ".cs": "csharp",
    ".swift": "swift", ".c": "c", ".cpp": "cpp",
}

# package.json dependency name -> framework label
_JS_FRAMEWORKS = {
    "react": "react", "next": "nextjs", "vue": "vue", "nuxt": "nuxt",
    "svelte": "svelte", "@angular/core": "angular", "express": "express",
    "fastify": "fastify", "@nestjs/core": "nestjs", "hono": "hono",
    "prisma": "prisma", "@prisma/client": "prisma", "drizzle-orm": "drizzle",
    "tailwindcss": "tailwind", "vite": "vite", "jest": "jest", "vitest": "vitest",
}

# Python requirement name -> framework label
_PY_FRAMEWORKS = {
    "django": "django", "flask": "flask", "fastapi": "fastapi",
    "sqlalchemy": "sqlalchemy", "pydantic": "pydantic", "pytest": "pytest",
    "numpy": "numpy", "pandas": "pandas", "torch": "pytorch",
}

# Marker file -> pattern label
_PATTERN_MARKERS = {
    "Dockerfile": "docker",
    "docker-compose.yml": "docker",
    "tsconfig.json": "typescript-config",
    "pnpm-workspace.yaml": "monorepo",
    "lerna.json": "monorepo",
    "turbo.json": "monorepo",
    ".github": "github-actions",
    "Makefile": "make",
}

_MAX_FILES_SAMPLED = 2000


def repo_id_for(root: str) -> str:
    """Stable repository id derived from the absolute root path."""
    digest = hashlib.sha256(os.path.abspath(root).encode("utf-8")).hexdigest()
    return f"repo_{digest[:8]}"


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------

def _read_json(path: str) -> dict:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as exc:
        logger.debug("Cannot read %s: %s", path, exc)
        return {}
    return data if isinstance(data, dict) else {}


def _python_requirements(root: str) -> set[str]:
    """Lower-cased requirement names from requirements.txt / pyproject.toml."""
    names: set[str] = set()
    for fname in ("requirements.txt", "pyproject.toml", "setup.py"):
        path = os.path.join(root, fname)
        if not os.path.isfile(path):
            continue
        try:
            with open(path, "r", encoding="utf-8", errors="replace") as f:
                text = f.read().lower()
        except OSError:
            continue
        for name in _PY_FRAMEWORKS:
            if name in text:
                names.add(name)
    return names


def detect_stack(root: str) -> tuple[frozenset[str], frozenset[str], frozenset[str]]:
    """
    Detect the languages, frameworks and patterns used under *root*.

    Returns
    -------
    tuple
        ``(languages, frameworks, patterns)`` as frozensets of labels.
    """
    abs_root = os.path.abspath(root)
    languages: set[str] = set()
    frameworks: set[str] = set()
    patterns: set[str] = set()

    sampled = 0
    for dirpath, dirs, files in os.walk(abs_root):
        dirs[:] = sorted(d for d in dirs if d not in _SKIP_DIRS)
        for fname in files:
            lang = _LANGUAGE_BY_EXT.get(os.path.splitext(fname)[1])
            if lang:
                languages.add(lang)
            sampled += 1
        if sampled >= _MAX_FILES_SAMPLED:
            break

    pkg = _read_json(os.path.join(abs_root, "package.json"))
    if pkg:
        deps: dict = {}
        for key in ("dependencies", "devDependencies", "peerDependencies"):
            section = pkg.get(key)
            if isinstance(section, dict):
                deps.update(section)
        for dep, label in _JS_FRAMEWORKS.items():
            if dep in deps:
                frameworks.add(label)
        if pkg.get("workspaces"):
            patterns.add("monorepo")

    for name in _python_requirements(abs_root):
        frameworks.add(_PY_FRAMEWORKS[name])

    for marker, label in _PATTERN_MARKERS.items():
        if os.path.exists(os.path.join(abs_root, marker)):
            patterns.add(label)

    return frozenset(languages), frozenset(frameworks), frozenset(patterns)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class RepoRegistry:
    """
    Persists repository fingerprints.

    Parameters
    ----------
    db:
        Open :class:`Database`.
    embedder:
        Object with an ``embed(text)`` method, used for fingerprint vectors.
    """

    def __init__(self, db: Database, embedder) -> None:
        self._db = db
        self._embedder = embedder

    def get(self, repo_id: str) -> Optional[RepoFingerprint]:
        row = self._db.fetchone("SELECT * FROM repos WHERE id = ?", (repo_id,))
        return RepoFingerprint.from_row(row) if row else None

    def require(self, repo_id: str) -> RepoFingerprint:
        repo = self.get(repo_id)
        if repo is None:
            raise NotFoundError("repo", repo_id)
        return repo

    def list(self) -> list[RepoFingerprint]:
        rows = self._db.fetchall("SELECT * FROM repos ORDER BY path")
        return [RepoFingerprint.from_row(r) for r in rows]

    def ensure(self, root: str) -> RepoFingerprint:
        """
        Register *root* without detecting its stack or embedding anything.

        Used by the code index, which must work without the embedding model.
        """
        abs_root = os.path.abspath(root)
        repo_id = repo_id_for(abs_root)
        with self._db.transaction() as conn:
            conn.execute(
                "INSERT INTO repos (id, path, name, updated_at) VALUES (?, ?, ?, ?) "
                "ON CONFLICT(id) DO NOTHING",
                (repo_id, abs_root, os.path.basename(abs_root) or abs_root, utc_now()),
            )
        return self.require(repo_id)

    def get_or_create(
        self,
        root: str,
        languages: Optional[frozenset[str]] = None,
        frameworks: Optional[frozenset[str]] = None,
        patterns: Optional[frozenset[str]] = None,
    ) -> RepoFingerprint:
        """
        Return the fingerprint for *root*, creating or refreshing it.

        Descriptors default to :func:`detect_stack`.  The fingerprint
        embedding is only recomputed when the descriptors change.
        """
        abs_root = os.path.abspath(root)
        if languages is None or frameworks is None or patterns is None:
            d_lang, d_fw, d_pat = detect_stack(abs_root)
            languages = d_lang if languages is None else frozenset(languages)
            frameworks = d_fw if frameworks is None else frozenset(frameworks)
            patterns = d_pat if patterns is None else frozenset(patterns)

        repo_id = repo_id_for(abs_root)
        existing = self.get(repo_id)
        if existing is not None and (
            existing.languages == languages
            and existing.frameworks == frameworks
            and existing.patterns == patterns
        ):
            return existing

        candidate = RepoFingerprint(
            id=repo_id,
            path=abs_root,
            name=os.path.basename(abs_root) or abs_root,
            languages=languages,
            frameworks=frameworks,
            patterns=patterns,
        )
        text = candidate.descriptor_text()
        blob = vector_to_blob(self._embedder.embed(text)) if text else None
        now = utc_now()
        with self._db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO repos (id, path, name, languages, frameworks, patterns,
                                   fingerprint_embedding, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    languages             = excluded.languages,
                    frameworks            = excluded.frameworks,
                    patterns              = excluded.patterns,
                    fingerprint_embedding = excluded.fingerprint_embedding,
                    updated_at            = excluded.updated_at
                """,
                (
                    repo_id, abs_root, candidate.name,
                    json.dumps(sorted(languages)),
                    json.dumps(sorted(frameworks)),
                    json.dumps(sorted(patterns)),
                    blob, now,
                ),
            )
        logger.info(
            "%s repo %s (%s)",
            "Updated" if existing else "Registered", repo_id, text or "no stack detected",
        )
        return self.require(repo_id)

    def fingerprint_vector(self, repo_id: str):
        """Return the fingerprint embedding, or ``None`` if absent or corrupt."""
        row = self._db.fetchone(
            "SELECT fingerprint_embedding FROM repos WHERE id = ?", (repo_id,)
        )
        if row is None or row["fingerprint_embedding"] is None:
            return None
        try:
            return blob_to_vector(row["fingerprint_embedding"], "repos", repo_id)
        except CorruptRecordError as exc:
            logger.warning("%s", exc)
            return None

    def fingerprint_vectors(self) -> dict:
        """Map every repo id with a readable fingerprint to its vector."""
        vectors = {}
        for row in self._db.fetchall(
            "SELECT id, fingerprint_embedding FROM repos "
            "WHERE fingerprint_embedding IS NOT NULL"
        ):
            try:
                vectors[row["id"]] = blob_to_vector(row["fingerprint_embedding"], "repos", row["id"])
            except CorruptRecordError as exc:
                logger.warning("%s", exc)
        return vectors

    def set_index_state(self, repo_id: str, state: str) -> None:
        """Move *repo_id* to *state*; ``indexed`` also stamps ``indexed_at``."""
        if state not in INDEX_STATES:
            raise ValidationError("index_state", f"must be one of {', '.join(INDEX_STATES)}")
        now = utc_now()
        with self._db.transaction() as conn:
            if state == "indexed":
                cur = conn.execute(
                    "UPDATE repos SET index_state = ?, indexed_at = ? WHERE id = ?",
                    (state, now, repo_id),
                )
            else:
                cur = conn.execute(
                    "UPDATE repos SET index_state = ? WHERE id = ?", (state, repo_id)
                )
            if cur.rowcount == 0:
                raise NotFoundError("repo", repo_id)
        logger.debug("Repo %s -> %s", repo_id, state)
