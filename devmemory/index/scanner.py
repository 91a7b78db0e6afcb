"""
File scanner — enumerates the source files of a repository that the code
index should track.

Skips excluded directories, dot-directories, ``.gitignore`` matches, custom
exclusion globs, test files (unless requested), declaration files,
minified/bundled output and files above the size ceiling.
"""

from __future__ import annotations

import fnmatch
import logging
import os
import re
from dataclasses import dataclass
from typing import Iterable, Optional

from .parsers import SUPPORTED_EXTENSIONS

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Directory / file exclusion rules
# ---------------------------------------------------------------------------

DEFAULT_MAX_FILE_SIZE = 1024 * 1024

_SKIP_DIRS: frozenset[str] = frozenset({
    "node_modules", "dist", "build", ".git", "coverage",
    ".next", ".nuxt", ".output", ".cache", "__pycache__",
    "vendor", ".turbo", ".vercel",
    ".venv", "venv", ".tox", ".mypy_cache", ".pytest_cache",
})

_TEST_DIRS: frozenset[str] = frozenset({"__tests__", "__mocks__"})

_TEST_FILE_RE = re.compile(
    r"(\.(test|spec)\.(ts|tsx|js|jsx|mjs|cjs|mts|cts)$)"
    r"|(^test_.*\.py$)|(_test\.py$)|(^conftest\.py$)"
)
_DECLARATION_RE = re.compile(r"\.d\.(ts|mts|cts)$")
_BUNDLE_RE = re.compile(r"\.(min|bundle)\.(js|mjs|cjs)$")


@dataclass(frozen=True)
class ScannedFile:
    """A file found by :func:`scan`."""
    path: str            # relative to the repo root, '/'-separated
    absolute_path: str
    mtime: int           # milliseconds since the epoch, floored
    size: int


def load_gitignore_patterns(root: str) -> list[str]:
    """Read .gitignore from *root* and return its glob patterns."""
    gi_path = os.path.join(root, ".gitignore")
    patterns: list[str] = []
    if not os.path.exists(gi_path):
        return patterns
    with open(gi_path, encoding="utf-8", errors="replace") as fh:
        for line in fh:
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            if line.startswith("!"):
                logger.debug("Ignoring unsupported negated .gitignore pattern %s", line)
                continue
            patterns.append(line)
    return patterns


def _is_gitignored(rel_path: str, patterns: Iterable[str], is_dir: bool = False) -> bool:
    """Return True if *rel_path* matches any gitignore pattern."""
    name = rel_path.rsplit("/", 1)[-1]
    for pattern in patterns:
        if pattern.endswith("/"):
            if not is_dir:
                continue
            pattern = pattern.rstrip("/")
        if pattern.startswith("/"):
            if fnmatch.fnmatch(rel_path, pattern.lstrip("/")):
                return True
            continue
        if fnmatch.fnmatch(name, pattern) or fnmatch.fnmatch(rel_path, pattern):
            return True
    return False


def is_gitignored_path(rel_path: str, patterns: list[str]) -> bool:
    """Return True if *rel_path* or any of its parent directories is gitignored."""
    parts = rel_path.split("/")
    for i in range(1, len(parts)):
        if _is_gitignored("/".join(parts[:i]), patterns, is_dir=True):
            return True
    return _is_gitignored(rel_path, patterns)


def _glob_to_regex(pattern: str) -> re.Pattern:
    """``**`` spans directories, ``*`` and ``?`` stay within one segment."""
    out = []
    i = 0
    while i < len(pattern):
        if pattern.startswith("**/", i):
            out.append("(?:.*/)?")
            i += 3
        elif pattern.startswith("**", i):
            out.append(".*")
            i += 2
        elif pattern[i] == "*":
            out.append("[^/]*")
            i += 1
        elif pattern[i] == "?":
            out.append("[^/]")
            i += 1
        else:
            out.append(re.escape(pattern[i]))
            i += 1
    return re.compile("^" + "".join(out) + "$")


def _matches_custom(rel_path: str, patterns: list[str]) -> bool:
    for pattern in patterns:
        if any(ch in pattern for ch in "*?["):
            if _glob_to_regex(pattern).match(rel_path):
                return True
        else:
            # Plain names match whole path segments or a path prefix.
            p = pattern.strip("/")
            if rel_path == p or rel_path.startswith(p + "/") or f"/{p}/" in f"/{rel_path}":
                return True
    return False


def is_excluded(
    rel_path: str,
    exclude_patterns: Optional[list[str]] = None,
    include_tests: bool = False,
) -> bool:
    """
    Return True if *rel_path* (relative, '/'-separated) must not be indexed.

    Does not consult ``.gitignore`` or file size.
    """
    parts = rel_path.split("/")
    dirs, name = parts[:-1], parts[-1]
    if os.path.splitext(name)[1].lower() not in SUPPORTED_EXTENSIONS:
        return True
    if any(d in _SKIP_DIRS or d.startswith(".") for d in dirs):
        return True
    if not include_tests and (any(d in _TEST_DIRS for d in dirs) or _TEST_FILE_RE.search(name)):
        return True
    if _DECLARATION_RE.search(name) or _BUNDLE_RE.search(name):
        return True
    return _matches_custom(rel_path, exclude_patterns or [])


# ---------------------------------------------------------------------------
# Scan
# ---------------------------------------------------------------------------

def scan(
    root: str,
    exclude_patterns: Optional[list[str]] = None,
    max_file_size: int = DEFAULT_MAX_FILE_SIZE,
    include_tests: bool = False,
) -> list[ScannedFile]:
    """
    Walk *root* and return every indexable source file.

    Parameters
    ----------
    root:
        Repository root directory.
    exclude_patterns:
        Extra glob patterns (``**`` aware) or plain directory names.
    max_file_size:
        Files larger than this many bytes are skipped.
    include_tests:
        Index test files and ``__tests__`` directories too.

    Returns
    -------
    list[ScannedFile]
        Sorted by relative path.
    """
    abs_root = os.path.abspath(root)
    gi_patterns = load_gitignore_patterns(abs_root)
    custom = list(exclude_patterns or [])
    results: list[ScannedFile] = []

    for dirpath, dirnames, filenames in os.walk(abs_root, topdown=True):
        rel_dir = os.path.relpath(dirpath, abs_root).replace(os.sep, "/")
        rel_dir = "" if rel_dir == "." else rel_dir + "/"
        # Prune excluded directories in-place (modifies the walk)
        dirnames[:] = sorted(
            d for d in dirnames
            if d not in _SKIP_DIRS
            and not d.startswith(".")
            and (include_tests or d not in _TEST_DIRS)
            and not _is_gitignored(rel_dir + d, gi_patterns, is_dir=True)
        )

        for fname in filenames:
            rel_path = rel_dir + fname
            if is_excluded(rel_path, custom, include_tests):
                continue
            if _is_gitignored(rel_path, gi_patterns):
                continue
            abs_path = os.path.join(dirpath, fname)
            try:
                st = os.stat(abs_path)
            except OSError as exc:
                logger.debug("Cannot stat %s: %s", abs_path, exc)
                continue
            if st.st_size > max_file_size:
                logger.debug("Skipping %s: %d bytes exceeds %d", rel_path, st.st_size, max_file_size)
                continue
            results.append(ScannedFile(
                path=rel_path,
                absolute_path=abs_path,
                mtime=st.st_mtime_ns // 1_000_000,
                size=st.st_size,
            ))

    results.sort(key=lambda f: f.path)
    logger.debug("Scanned %s: %d files", abs_root, len(results))
    return results
