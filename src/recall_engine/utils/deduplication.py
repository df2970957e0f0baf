"""
Near-duplicate discovery for memory consolidation.

Candidate pairs come from a single numpy cosine-similarity matrix over the
active memories' embeddings, so discovery is one matrix product rather than
O(n²) Python loops. Pairs at or above the merge threshold are returned most
similar first and capped per run.

Union-Find groups transitive duplicates (A≈B, B≈C → one cluster of three),
which gives the number of memories a full consolidation would remove.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

import numpy as np

from ..models.consolidation import ConsolidationCandidate
from ..models.memory import Memory
from .embeddings import cosine_similarity_matrix

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Union-Find for transitive closure grouping
# ---------------------------------------------------------------------------


class _UnionFind:
    """Path-compressed Union-Find over memory ids."""

    def __init__(self) -> None:
        self._parent: dict[int, int] = {}
        self._rank: dict[int, int] = {}

    def find(self, x: int) -> int:
        if x not in self._parent:
            self._parent[x] = x
            self._rank[x] = 0
        if self._parent[x] != x:
            self._parent[x] = self.find(self._parent[x])
        return self._parent[x]

    def union(self, x: int, y: int) -> None:
        rx, ry = self.find(x), self.find(y)
        if rx == ry:
            return
        if self._rank[rx] < self._rank[ry]:
            rx, ry = ry, rx
        self._parent[ry] = rx
        if self._rank[rx] == self._rank[ry]:
            self._rank[rx] += 1


# ---------------------------------------------------------------------------
# Candidate discovery
# ---------------------------------------------------------------------------


def _embedded(memories: Sequence[Memory]) -> list[Memory]:
    """Memories with an embedding of the majority dimension."""
    with_embedding = [m for m in memories if m.embedding]
    if not with_embedding:
        return []
    dims = [len(m.embedding) for m in with_embedding]
    dim = max(set(dims), key=dims.count)
    skipped = len(with_embedding) - dims.count(dim)
    if skipped:
        logger.warning(f"Skipping {skipped} memories whose embedding dimension differs from {dim}")
    return [m for m in with_embedding if len(m.embedding) == dim]


def find_consolidation_candidates(
    memories: Sequence[Memory],
    threshold: float = 0.85,
    max_candidates: int | None = 50,
) -> list[ConsolidationCandidate]:
    """Pairs with cosine similarity ≥ ``threshold``, most similar first.

    Args:
        memories: Memories to compare; those without an embedding are ignored.
        threshold: Minimum cosine similarity for a pair to qualify.
        max_candidates: Cap on returned pairs (``None`` for no cap).

    Returns:
        Candidate pairs sorted by descending similarity.
    """
    pool = _embedded(memories)
    if len(pool) < 2:
        return []

    sims = cosine_similarity_matrix([m.embedding for m in pool])
    rows, cols = np.triu_indices(len(pool), k=1)
    pair_sims = sims[rows, cols]
    mask = pair_sims >= threshold

    hits = sorted(
        zip(pair_sims[mask].tolist(), rows[mask].tolist(), cols[mask].tolist()),
        key=lambda t: t[0],
        reverse=True,
    )
    if max_candidates is not None:
        hits = hits[:max_candidates]

    return [
        ConsolidationCandidate(memory_a=pool[i], memory_b=pool[j], similarity=float(min(sim, 1.0)))
        for sim, i, j in hits
    ]


def group_candidates(candidates: Sequence[ConsolidationCandidate]) -> list[list[int]]:
    """Transitive clusters of memory ids (each with ≥2 members)."""
    uf = _UnionFind()
    for candidate in candidates:
        uf.union(candidate.memory_a.id, candidate.memory_b.id)

    groups: dict[int, list[int]] = {}
    all_ids = {mid for c in candidates for mid in (c.memory_a.id, c.memory_b.id)}
    for mid in all_ids:
        groups.setdefault(uf.find(mid), []).append(mid)

    return [sorted(members) for members in groups.values() if len(members) >= 2]


def potential_reduction(candidates: Sequence[ConsolidationCandidate]) -> int:
    """Memories removed if every cluster collapsed to one survivor."""
    return sum(len(group) - 1 for group in group_candidates(candidates))
