"""
Error taxonomy shared by the memory store and the code index.

Validation and not-found errors are raised straight to the caller.
Parse and corrupt-record errors are collected by batch operations and
reported in aggregate.  ``ModelUnavailableError`` aborts any operation
that needs embeddings.
"""

from __future__ import annotations

from typing import Optional


class DevMemoryError(Exception):
    """Base class for every error raised by devmemory."""


class ValidationError(DevMemoryError):
    """An input value was rejected before anything was written."""

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")


class NotFoundError(DevMemoryError):
    """A referenced record does not exist."""

    def __init__(self, kind: str, record_id: str) -> None:
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"{kind} not found: {record_id}")


class DimensionMismatchError(DevMemoryError):
    """Two vectors that must be compared have different lengths."""

    def __init__(self, expected: int, actual: int) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(f"vector dimension mismatch: expected {expected}, got {actual}")


class ModelUnavailableError(DevMemoryError):
    """The local embedding model cannot be loaded or run."""


class ParseError(DevMemoryError):
    """A single file (or construct within it) could not be parsed."""

    def __init__(self, path: str, message: str) -> None:
        self.path = path
        self.message = message
        super().__init__(f"{path}: {message}")


class CorruptRecordError(DevMemoryError):
    """A stored row holds an unreadable blob or malformed JSON column."""

    def __init__(self, table: str, record_id: Optional[str], reason: str) -> None:
        self.table = table
        self.record_id = record_id
        self.reason = reason
        super().__init__(f"corrupt {table} record {record_id or '?'}: {reason}")
