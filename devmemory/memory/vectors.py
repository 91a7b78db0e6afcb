"""
Vector helpers for the memory store: blob codec, cosine similarity and
top-k ranking.

Embeddings are persisted as fixed-size blobs of ``EMBEDDING_DIM``
little-endian float32 values.  A blob of any other byte length is corrupt;
ranking helpers skip such rows instead of failing the whole scan.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional, Sequence

import numpy as np

from ..errors import CorruptRecordError, DimensionMismatchError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EMBEDDING_DIM = 384
BLOB_SIZE = EMBEDDING_DIM * 4

_DTYPE = np.dtype("<f4")


# ---------------------------------------------------------------------------
# Blob codec
# ---------------------------------------------------------------------------

def vector_to_blob(vec: Sequence[float]) -> bytes:
    """Serialise *vec* to ``EMBEDDING_DIM`` little-endian float32 values."""
    arr = np.asarray(vec, dtype=_DTYPE)
    if arr.shape != (EMBEDDING_DIM,):
        raise DimensionMismatchError(EMBEDDING_DIM, int(arr.size))
    return arr.tobytes()


def blob_to_vector(
    buf: Optional[bytes],
    table: str = "solutions",
    record_id: Optional[str] = None,
) -> np.ndarray:
    """
    Deserialise a stored embedding blob.

    Raises
    ------
    CorruptRecordError
        If *buf* is missing or its length is not exactly ``BLOB_SIZE``.
    """
    if buf is None:
        raise CorruptRecordError(table, record_id, "missing embedding")
    if len(buf) != BLOB_SIZE:
        raise CorruptRecordError(
            table, record_id, f"embedding blob is {len(buf)} bytes, expected {BLOB_SIZE}"
        )
    return np.frombuffer(buf, dtype=_DTYPE).astype(np.float32)


# ---------------------------------------------------------------------------
# Similarity
# ---------------------------------------------------------------------------

def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Cosine similarity of *a* and *b*, in ``[-1, 1]``.

    A zero vector on either side yields ``0.0``.

    Raises
    ------
    DimensionMismatchError
        If the vectors have different lengths.
    """
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape:
        raise DimensionMismatchError(int(va.size), int(vb.size))
    norm_a = np.linalg.norm(va)
    norm_b = np.linalg.norm(vb)
    if norm_a == 0 or norm_b == 0:
        return 0.0
    sim = float(np.dot(va, vb) / (norm_a * norm_b))
    if np.isnan(sim):
        return 0.0
    return max(-1.0, min(1.0, sim))


def top_k(
    query: Sequence[float],
    candidates: Iterable[tuple[str, Optional[Sequence[float]]]],
    k: int,
    min_score: float = -1.0,
) -> list[tuple[str, float]]:
    """
    Rank *candidates* by cosine similarity to *query*.

    Parameters
    ----------
    query:
        Query vector.
    candidates:
        ``(id, vector)`` pairs.  Entries whose vector is ``None`` or of the
        wrong length are skipped.
    k:
        Maximum number of results.
    min_score:
        Lowest similarity kept.

    Returns
    -------
    list[tuple[str, float]]
        ``(id, similarity)`` sorted by similarity descending, then id.
    """
    if k <= 0:
        return []
    scored: list[tuple[str, float]] = []
    for cand_id, vec in candidates:
        if vec is None:
            logger.debug("Skipping %s: no embedding", cand_id)
            continue
        try:
            sim = cosine_similarity(query, vec)
        except DimensionMismatchError as exc:
            logger.warning("Skipping %s: %s", cand_id, exc)
            continue
        if sim >= min_score:
            scored.append((cand_id, sim))
    scored.sort(key=lambda item: (-item[1], item[0]))
    return scored[:k]
