"""Dense embedding generation and similarity search using model2vec.

Lightweight (numpy-only) static embeddings for matching candidate content
against campaign fingerprints. Vectors are stored as JSON lists on the
fingerprint / strategy rows and compared with cosine similarity.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Protocol, Sequence

import numpy as np

from resonance.config import get_settings

log = logging.getLogger(__name__)

MAX_EMBED_CHARS = 8000


class EmbeddingClient(Protocol):
    async def embed(self, text: str) -> list[float]: ...


# ---------------------------------------------------------------------------
# model2vec-backed client
# ---------------------------------------------------------------------------


class StaticEmbedder:
    """Embedding gateway backed by a model2vec ``StaticModel`` (loaded lazily)."""

    def __init__(self, model_name: str | None = None):
        self.model_name = model_name or get_settings().embedding_model
        self._model = None

    def _get_model(self):
        if self._model is None:
            from model2vec import StaticModel
            self._model = StaticModel.from_pretrained(self.model_name)
        return self._model

    def _encode(self, text: str) -> list[float]:
        vec = self._get_model().encode([text[:MAX_EMBED_CHARS]], show_progress_bar=False)[0]
        return normalize(vec).tolist()

    async def embed(self, text: str) -> list[float]:
        # encoding is CPU-bound; keep the event loop free
        return await asyncio.to_thread(self._encode, text)


# ---------------------------------------------------------------------------
# Vector helpers
# ---------------------------------------------------------------------------


def normalize(vec: Sequence[float] | np.ndarray) -> np.ndarray:
    arr = np.asarray(vec, dtype=np.float64)
    norm = np.linalg.norm(arr)
    if norm > 0:
        arr = arr / norm
    return arr


def top_k_similar(
    query: Sequence[float],
    vectors: Sequence[Sequence[float]],
    ids: Sequence[int],
    *,
    top_k: int = 3,
    threshold: float = 0.0,
) -> list[tuple[int, float]]:
    """Rank *vectors* by cosine similarity to *query*.

    Vectors whose dimension differs from the query, or that score as
    non-finite, are ignored.

    Returns:
        List of (id, similarity) tuples with similarity >= threshold, sorted by
        similarity descending (ties keep input order).
    """
    if not vectors:
        return []
    q = normalize(query)
    keep = [i for i, v in enumerate(vectors) if len(v) == len(q)]
    if not keep:
        return []
    matrix = np.vstack([normalize(vectors[i]) for i in keep])
    scores = matrix @ q
    # a stored vector with NaN or inf entries never ranks
    scores = np.where(np.isfinite(scores), scores, -np.inf)

    order = np.argsort(-scores, kind="stable")[:top_k]
    results = []
    for pos in order:
        score = float(scores[pos])
        if score < threshold:
            break
        results.append((int(ids[keep[pos]]), round(score, 4)))
    return results
