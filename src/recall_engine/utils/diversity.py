"""
Diversity re-ranking over an already-ranked list.

Two strategies:

- ``apply_diversity_filter``: greedy threshold filter. The first item is always
  kept; each later item is kept only if its cosine similarity to every kept
  item is below ``max_similarity``. Items without an embedding are exempt and
  always kept.
- ``apply_mmr``: Maximal Marginal Relevance,
  ``lambda * relevance - (1 - lambda) * max_sim_to_selected``. ``lambda = 1``
  is pure relevance; the 0.8 default lets relevance dominate with a mild
  diversity penalty.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import Any, TypeVar

from ..config import settings
from .embeddings import cosine_similarity

T = TypeVar("T")

DEFAULT_MMR_LAMBDA = 0.8


def default_embedding(item: Any) -> list[float] | None:
    """Embedding of a ``Memory`` or of a result wrapping one."""
    embedding = getattr(item, "embedding", None)
    if embedding is None and hasattr(item, "memory"):
        embedding = getattr(item.memory, "embedding", None)
    return embedding or None


def _similarity(a: list[float], b: list[float]) -> float:
    if len(a) != len(b):
        return 0.0
    return cosine_similarity(a, b)


def apply_diversity_filter(
    items: Sequence[T],
    max_similarity: float | None = None,
    embedding_of: Callable[[T], list[float] | None] = default_embedding,
) -> list[T]:
    """Greedy near-duplicate removal that preserves input order."""
    threshold = max_similarity if max_similarity is not None else settings.working_memory.diversity_max_similarity
    if not items:
        return []

    kept: list[T] = [items[0]]
    kept_embeddings: list[list[float]] = []
    first_embedding = embedding_of(items[0])
    if first_embedding:
        kept_embeddings.append(first_embedding)

    for item in items[1:]:
        embedding = embedding_of(item)
        if not embedding:
            kept.append(item)
            continue
        if all(_similarity(embedding, other) < threshold for other in kept_embeddings):
            kept.append(item)
            kept_embeddings.append(embedding)
    return kept


def apply_mmr(
    items: Sequence[Any],
    query_embedding: list[float] | None = None,
    lambda_: float = DEFAULT_MMR_LAMBDA,
    limit: int | None = None,
    embedding_of: Callable[[Any], list[float] | None] = default_embedding,
) -> list[Any]:
    """MMR re-ranking of results that carry a ``similarity`` field.

    Relevance is cosine similarity to ``query_embedding`` when given, otherwise
    the item's own ``similarity``. Returned items are copies whose
    ``similarity`` holds their MMR score; items without an embedding are
    appended unchanged after the ranked ones.
    """
    max_results = limit if limit is not None else len(items)
    if len(items) <= 1:
        return list(items)[:max_results]

    with_embedding = [item for item in items if embedding_of(item)]
    without_embedding = [item for item in items if not embedding_of(item)]
    if not with_embedding:
        return list(items)[:max_results]

    def relevance(item: Any) -> float:
        if query_embedding:
            return _similarity(query_embedding, embedding_of(item))
        return item.similarity

    selected: list[Any] = []
    selected_embeddings: list[list[float]] = []
    candidates = list(with_embedding)

    while len(selected) < max_results and candidates:
        best_idx, best_score = -1, float("-inf")
        for i, candidate in enumerate(candidates):
            embedding = embedding_of(candidate)
            max_sim = max((_similarity(embedding, sel) for sel in selected_embeddings), default=0.0)
            score = lambda_ * relevance(candidate) - (1 - lambda_) * max(max_sim, 0.0)
            if score > best_score:
                best_idx, best_score = i, score

        chosen = candidates.pop(best_idx)
        selected_embeddings.append(embedding_of(chosen))
        selected.append(chosen.model_copy(update={"similarity": best_score}))

    return [*selected, *without_embedding][:max_results]
