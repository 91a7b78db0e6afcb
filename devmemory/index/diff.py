"""
Modification-time diff between a fresh scan and the indexed file rows.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping

from .scanner import ScannedFile


@dataclass(frozen=True)
class FileDiff:
    added: list[ScannedFile] = field(default_factory=list)
    modified: list[ScannedFile] = field(default_factory=list)
    unchanged: list[ScannedFile] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)

    @property
    def changed(self) -> list[ScannedFile]:
        """Files that need parsing: added then modified."""
        return self.added + self.modified

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.modified or self.deleted)


def compute_diff(scanned: list[ScannedFile], indexed: Mapping[str, int]) -> FileDiff:
    """
    Classify scanned files against *indexed* (``path -> mtime`` in ms).

    A file is *modified* only when its mtime is newer than the indexed one;
    indexed paths missing from the scan are *deleted*.
    """
    added: list[ScannedFile] = []
    modified: list[ScannedFile] = []
    unchanged: list[ScannedFile] = []
    seen: set[str] = set()

    for f in scanned:
        seen.add(f.path)
        known = indexed.get(f.path)
        if known is None:
            added.append(f)
        elif f.mtime > known:
            modified.append(f)
        else:
            unchanged.append(f)

    deleted = sorted(p for p in indexed if p not in seen)
    return FileDiff(added=added, modified=modified, unchanged=unchanged, deleted=deleted)
