"""Vector math helpers shared by search, clustering and linking."""

from collections.abc import Iterable, Sequence

import numpy as np


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity clipped to [0, 1]."""
    va = np.asarray(a, dtype=float)
    vb = np.asarray(b, dtype=float)
    norm = np.linalg.norm(va) * np.linalg.norm(vb)
    if norm == 0:
        return 0.0
    return float(np.clip(np.dot(va, vb) / norm, 0.0, 1.0))


def cosine_similarities(query: Sequence[float], matrix: np.ndarray) -> np.ndarray:
    """Clipped cosine similarity of ``query`` against each row of ``matrix``."""
    if matrix.size == 0:
        return np.zeros(0)
    q = np.asarray(query, dtype=float)
    row_norms = np.linalg.norm(matrix, axis=1)
    denom = row_norms * np.linalg.norm(q)
    with np.errstate(divide="ignore", invalid="ignore"):
        scores = np.where(denom > 0, matrix @ q / denom, 0.0)
    return np.clip(scores, 0.0, 1.0)


def similarity_matrix(vectors: Sequence[Sequence[float]]) -> np.ndarray:
    """Pairwise clipped cosine similarity matrix."""
    m = np.asarray(vectors, dtype=float)
    if m.size == 0:
        return np.zeros((0, 0))
    norms = np.linalg.norm(m, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    unit = m / norms
    return np.clip(unit @ unit.T, 0.0, 1.0)


def centroid(vectors: Sequence[Sequence[float]]) -> list[float] | None:
    """Mean of the vectors, or None when there are none."""
    if not vectors:
        return None
    return np.mean(np.asarray(vectors, dtype=float), axis=0).tolist()


def jaccard(a: Iterable[str], b: Iterable[str]) -> float:
    set_a, set_b = set(a), set(b)
    if not set_a and not set_b:
        return 0.0
    return len(set_a & set_b) / len(set_a | set_b)
