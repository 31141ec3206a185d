"""
Fixed-width vector kernel (1024-dim Voyage embeddings).

Pure numpy, no I/O and no shared state, so it is safe to call from inside
the event loop. Every public function rejects input of the wrong width with
DimensionMismatch.

batch_similarity() and cosine_similarity() share the same row kernel, so a
batch score is bit-for-bit identical to the per-row call.
"""
import math
from typing import Sequence

import numpy as np

from app.errors import DimensionMismatch, InvalidInput

VECTOR_DIM = 1024
DIVERSITY_MATCH_PENALTY = 0.5
# exp() underflows to 0.0 past ~745; decay never drops below this
DECAY_FLOOR = float(np.finfo(np.float64).tiny)


def as_vector(v) -> np.ndarray:
    """Coerce `v` into a float32 1-D array of VECTOR_DIM components."""
    arr = np.asarray(v, dtype=np.float32)
    if arr.ndim != 1 or arr.shape[0] != VECTOR_DIM:
        raise DimensionMismatch(VECTOR_DIM, arr.shape)
    return arr


def as_matrix(rows) -> np.ndarray:
    """Coerce `rows` into a float32 (n, VECTOR_DIM) matrix; n may be 0."""
    arr = np.asarray(rows, dtype=np.float32)
    if arr.size == 0:
        return np.zeros((0, VECTOR_DIM), dtype=np.float32)
    if arr.ndim != 2 or arr.shape[1] != VECTOR_DIM:
        raise DimensionMismatch(VECTOR_DIM, arr.shape)
    return arr


def _normalize_rows(matrix: np.ndarray) -> np.ndarray:
    # Zero rows stay zero: divide by 1.0 instead of 0.0.
    norms = np.sqrt(np.sum(matrix * matrix, axis=1, keepdims=True))
    safe = np.where(norms > 0.0, norms, np.float32(1.0))
    return matrix / safe


def _row_similarity(normalized_query: np.ndarray, normalized_rows: np.ndarray) -> np.ndarray:
    # Row-wise reduction over the contiguous axis: each row is summed the
    # same way no matter how many rows are in the batch.
    scores = np.sum(normalized_rows * normalized_query, axis=1)
    return np.clip(scores, -1.0, 1.0)


def normalize(v) -> np.ndarray:
    """L2-normalize `v`; the zero vector is returned unchanged."""
    return _normalize_rows(as_vector(v)[np.newaxis, :])[0]


def dot(a, b) -> float:
    return float(np.sum(as_vector(a) * as_vector(b)))


def cosine_similarity(a, b) -> float:
    """Cosine similarity in [-1, 1]; 0.0 if either input is the zero vector."""
    return float(batch_similarity(a, as_vector(b)[np.newaxis, :])[0])


def batch_similarity(query, matrix) -> np.ndarray:
    """One cosine score per row of `matrix` against `query`."""
    q = _normalize_rows(as_vector(query)[np.newaxis, :])[0]
    rows = as_matrix(matrix)
    if rows.shape[0] == 0:
        return np.zeros(0, dtype=np.float32)
    return _row_similarity(q, _normalize_rows(rows))


def similarity_matrix(matrix) -> np.ndarray:
    """Pairwise cosine similarities of the rows of `matrix` (n x n)."""
    rows = as_matrix(matrix)
    if rows.shape[0] == 0:
        return np.zeros((0, 0), dtype=np.float32)
    normalized = _normalize_rows(rows)
    # BLAS matmul: may differ from batch_similarity in the last ulp
    return np.clip(normalized @ normalized.T, -1.0, 1.0)


def temporal_decay(age_hours: float, rate: float) -> float:
    """exp(-rate * age), floored at DECAY_FLOOR; 1.0 at age 0, always in (0, 1]."""
    if rate <= 0 or math.isnan(rate):
        raise InvalidInput(f"decay rate must be positive, got {rate}")
    return max(math.exp(-rate * max(0.0, float(age_hours))), DECAY_FLOOR)


def diversity_penalty(candidate, preceding: Sequence, threshold: float) -> float:
    """
    Penalty in (0, 1] for a candidate given the items presented before it.

    Each preceding vector whose similarity exceeds `threshold` counts as a
    match; score = 1 / (1 + matches * 0.5). Items presented *after* the
    candidate never count.
    """
    if len(preceding) == 0:
        as_vector(candidate)
        return 1.0
    scores = batch_similarity(candidate, preceding)
    matches = int(np.count_nonzero(scores > threshold))
    return 1.0 / (1.0 + matches * DIVERSITY_MATCH_PENALTY)


def top_k(query, matrix, k: int) -> list[tuple[int, float]]:
    """(row index, score) of the `k` most similar rows, best first."""
    if k <= 0:
        return []
    scores = batch_similarity(query, matrix)
    # Stable sort keeps lower row index first among equal scores
    order = np.argsort(-scores, kind="stable")[:k]
    return [(int(i), float(scores[i])) for i in order]


def centroid(matrix, weights: Sequence[float] | None = None) -> np.ndarray:
    """(Weighted) mean of the rows of `matrix`."""
    rows = as_matrix(matrix)
    if rows.shape[0] == 0:
        raise InvalidInput("cannot compute the centroid of zero vectors")
    if weights is None:
        return rows.mean(axis=0)
    w = np.asarray(weights, dtype=np.float32)
    if w.shape != (rows.shape[0],) or float(w.sum()) <= 0.0:
        raise InvalidInput("centroid weights must be one positive weight per row")
    return (rows * w[:, np.newaxis]).sum(axis=0) / w.sum()
