from __future__ import annotations

from typing import List, Sequence

import numpy as np


def _normalize_rows(matrix: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return matrix / norms


def maximal_marginal_relevance(
    query_vector: Sequence[float],
    candidate_vectors: Sequence[Sequence[float]],
    k: int,
    lambda_mult: float = 0.5,
) -> List[int]:
    """
    Greedy MMR selection over candidate vectors.

    Returns indices into ``candidate_vectors`` in selection order. The first
    pick is the most relevant candidate; each following pick maximises
    ``lambda * sim(query, c) - (1 - lambda) * max(sim(c, selected))``.
    ``lambda_mult=1`` is pure relevance, ``0`` pure diversity.
    """
    if not 0.0 <= lambda_mult <= 1.0:
        raise ValueError(f"lambda_mult must be within [0, 1], got {lambda_mult}")

    candidates = np.asarray(candidate_vectors, dtype=np.float32)
    if k <= 0 or candidates.size == 0:
        return []
    if candidates.ndim == 1:
        candidates = candidates.reshape(1, -1)

    query = np.asarray(query_vector, dtype=np.float32).reshape(1, -1)
    candidates = _normalize_rows(candidates)
    query = _normalize_rows(query)[0]

    relevance = candidates @ query
    selected = [int(np.argmax(relevance))]
    limit = min(k, len(candidates))

    while len(selected) < limit:
        redundancy = (candidates @ candidates[selected].T).max(axis=1)
        scores = lambda_mult * relevance - (1.0 - lambda_mult) * redundancy
        scores[selected] = -np.inf
        selected.append(int(np.argmax(scores)))

    return selected


__all__ = ["maximal_marginal_relevance"]
