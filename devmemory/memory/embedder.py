"""
Local text embedder for the memory store.

Wraps a fastembed (ONNX) sentence model producing 384-dimensional vectors.
Runs entirely on the local machine; the model files are downloaded once
into the configured cache directory.

The model is loaded lazily on first use.  Any failure to load or run it
raises :class:`~devmemory.errors.ModelUnavailableError`; callers never get
zero vectors back, since those would silently corrupt similarity rankings.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from collections import OrderedDict
from typing import Optional

from ..errors import ModelUnavailableError
from .vectors import EMBEDDING_DIM

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_MODEL = "sentence-transformers/all-MiniLM-L6-v2"
BATCH_SIZE = 64
_CACHE_SIZE = 1024


class Embedder:
    """
    Deterministic text → vector mapping backed by ``fastembed.TextEmbedding``.

    Parameters
    ----------
    model_name:
        fastembed model identifier.  Must produce ``EMBEDDING_DIM`` floats.
    cache_dir:
        Where model files are stored.  ``None`` uses fastembed's default.
    """

    dimension = EMBEDDING_DIM

    def __init__(self, model_name: str = DEFAULT_MODEL, cache_dir: Optional[str] = None) -> None:
        self.model_name = model_name
        self.cache_dir = cache_dir
        self._model = None
        self._load_lock = threading.Lock()
        self._cache: OrderedDict[str, list[float]] = OrderedDict()
        self._cache_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Model lifecycle
    # ------------------------------------------------------------------

    def _ensure_model(self):
        """Load the model on first use (thread-safe)."""
        if self._model is not None:
            return self._model
        with self._load_lock:
            if self._model is not None:
                return self._model
            try:
                from fastembed import TextEmbedding
            except ImportError as exc:
                raise ModelUnavailableError(
                    "fastembed is not installed. Install it with: pip install fastembed"
                ) from exc

            kwargs = {
                "model_name": self.model_name,
                "threads": max(1, (os.cpu_count() or 2) // 2),
            }
            if self.cache_dir:
                os.makedirs(self.cache_dir, exist_ok=True)
                kwargs["cache_dir"] = self.cache_dir
            start = time.monotonic()
            try:
                self._model = TextEmbedding(**kwargs)
            except Exception as exc:
                raise ModelUnavailableError(
                    f"Cannot load embedding model {self.model_name}: {exc}"
                ) from exc
            logger.info(
                "Loaded embedding model %s in %.1fs",
                self.model_name, time.monotonic() - start,
            )
        return self._model

    def close(self) -> None:
        """Drop the loaded model and the vector cache."""
        with self._load_lock:
            self._model = None
        with self._cache_lock:
            self._cache.clear()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def embed(self, text: str) -> list[float]:
        """Embed a single text into ``EMBEDDING_DIM`` floats."""
        return self.embed_many([text])[0]

    def embed_many(self, texts: list[str]) -> list[list[float]]:
        """
        Embed *texts* in batches.

        Each returned vector is identical to what :meth:`embed` returns for
        the same text: results are cached per text, so a text is only ever
        run through the model once per process.
        """
        if not texts:
            return []

        results: dict[str, list[float]] = {}
        pending: list[str] = []
        with self._cache_lock:
            for text in texts:
                cached = self._cache.get(text)
                if cached is not None:
                    self._cache.move_to_end(text)
                    results[text] = cached
                elif text not in results and text not in pending:
                    pending.append(text)

        if pending:
            model = self._ensure_model()
            try:
                raw = list(model.embed(pending, batch_size=BATCH_SIZE))
            except Exception as exc:
                raise ModelUnavailableError(f"Embedding failed: {exc}") from exc
            if len(raw) != len(pending):
                raise ModelUnavailableError(
                    f"Model returned {len(raw)} vectors for {len(pending)} texts"
                )
            with self._cache_lock:
                for text, vec in zip(pending, raw):
                    values = [float(x) for x in vec.astype("float32")]
                    if len(values) != EMBEDDING_DIM:
                        raise ModelUnavailableError(
                            f"Model {self.model_name} produced {len(values)} dimensions, "
                            f"expected {EMBEDDING_DIM}"
                        )
                    results[text] = values
                    self._cache[text] = values
                    if len(self._cache) > _CACHE_SIZE:
                        self._cache.popitem(last=False)

        return [list(results[text]) for text in texts]


# ---------------------------------------------------------------------------
# Process-wide instance
# ---------------------------------------------------------------------------

_instance: Optional[Embedder] = None
_instance_lock = threading.Lock()


def get_embedder(model_name: Optional[str] = None, cache_dir: Optional[str] = None) -> Embedder:
    """
    Return the process-wide :class:`Embedder`, creating it on first call.

    The model itself is still loaded lazily on the first ``embed`` call.
    """
    global _instance
    with _instance_lock:
        if _instance is None:
            if model_name is None or cache_dir is None:
                from ..config import Config
                cfg = Config.load()
                model_name = model_name or cfg.EMBEDDING_MODEL
                cache_dir = cache_dir or cfg.EMBEDDING_CACHE_DIR
            _instance = Embedder(model_name, cache_dir)
        return _instance


def shutdown_embedder() -> None:
    """Release the process-wide embedder, if one was created."""
    global _instance
    with _instance_lock:
        if _instance is not None:
            _instance.close()
            _instance = None
