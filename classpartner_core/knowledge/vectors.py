"""Vector math helpers shared by the buffer, the store and retrieval."""

from typing import List, Optional, Sequence, Tuple, TypeVar

import numpy as np

T = TypeVar("T")


def vector_norm(vector: Optional[Sequence[float]]) -> float:
    """Euclidean norm, 0.0 for missing or empty vectors."""
    if not vector:
        return 0.0
    return float(np.linalg.norm(np.asarray(vector, dtype=np.float32)))


def cosine_similarity(
    vec1: Optional[Sequence[float]],
    vec2: Optional[Sequence[float]],
    norm1: Optional[float] = None,
    norm2: Optional[float] = None,
) -> float:
    """
    Calculate cosine similarity between two vectors.

    Precomputed norms may be passed to skip recomputation. Returns 0.0
    when either vector is missing, has zero norm, or the dimensions
    disagree.
    """
    if not vec1 or not vec2 or len(vec1) != len(vec2):
        return 0.0

    a = np.asarray(vec1, dtype=np.float32)
    b = np.asarray(vec2, dtype=np.float32)
    n1 = norm1 if norm1 is not None else float(np.linalg.norm(a))
    n2 = norm2 if norm2 is not None else float(np.linalg.norm(b))

    if n1 == 0 or n2 == 0:
        return 0.0

    return float(np.dot(a, b) / (n1 * n2))


def rank_by_similarity(
    query: Sequence[float],
    candidates: List[Tuple[T, Optional[Sequence[float]]]],
    limit: int,
) -> List[Tuple[T, float]]:
    """Score (item, vector) pairs against a query and return the top `limit`."""
    query_norm = vector_norm(query)
    if query_norm == 0:
        return []

    scored = [
        (item, cosine_similarity(query, vector, norm1=query_norm))
        for item, vector in candidates
        if vector
    ]
    scored.sort(key=lambda pair: pair[1], reverse=True)
    return scored[:limit]


__all__ = ["vector_norm", "cosine_similarity", "rank_by_similarity"]
