"""
devmemory — local developer memory and incremental code index.

Public API for library usage::

    from devmemory import DevMemory

    with DevMemory(repo_root=".") as mem:
        mem.store("pnpm install hangs behind proxy", "set `strict-ssl=false` in .npmrc")
        matches = mem.recall("pnpm hangs")
"""

from .api import DevMemory
from .config import Config
from .errors import (
    CorruptRecordError,
    DevMemoryError,
    DimensionMismatchError,
    ModelUnavailableError,
    NotFoundError,
    ParseError,
    ValidationError,
)

__all__ = [
    "DevMemory",
    "Config",
    "DevMemoryError",
    "ValidationError",
    "NotFoundError",
    "DimensionMismatchError",
    "ModelUnavailableError",
    "ParseError",
    "CorruptRecordError",
]
