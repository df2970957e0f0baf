"""
Vector similarity search with an ANN fast path and a bounded brute-force fallback.

Order of attempts:
1. ANN backend (if configured): ``k = limit * multiplier`` candidates,
   similarity = ``1 - distance``, threshold-filtered.
2. Brute-force cosine over stored embeddings when the ANN backend is absent,
   raised, or produced nothing above threshold.
3. If the corpus holds more embeddings than the row cap, the scan is skipped
   and the outcome is flagged ``degraded`` so the caller serves BM25-only
   results. Availability wins over completeness here.

Nothing in this module raises because the ANN backend is missing or failing.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Literal, Protocol, runtime_checkable

from ..config import settings
from ..models.results import ScoredDoc
from .embeddings import cosine_similarities

if TYPE_CHECKING:
    from ..storage.base import CorpusStorage

logger = logging.getLogger(__name__)


@runtime_checkable
class AnnBackend(Protocol):
    """Approximate nearest-neighbour index, one logical collection per corpus."""

    async def query(self, corpus: str, vector: Sequence[float], k: int) -> list[tuple[int, float]]:
        """Return up to ``k`` ``(id, cosine distance)`` pairs, nearest first."""


@dataclass
class VectorSearchOutcome:
    """Ranked vector hits plus which path produced them."""

    results: list[ScoredDoc] = field(default_factory=list)
    backend: Literal["ann", "brute_force", "none"] = "none"
    degraded: bool = False


async def _ann_search(
    ann: AnnBackend,
    corpus: str,
    query_vector: Sequence[float],
    k: int,
    threshold: float,
) -> list[ScoredDoc]:
    hits = await ann.query(corpus, query_vector, k)
    results = [ScoredDoc(doc_id, 1.0 - distance) for doc_id, distance in hits]
    results = [r for r in results if r.score >= threshold]
    results.sort(key=lambda r: r.score, reverse=True)
    return results


async def brute_force_search(
    storage: CorpusStorage,
    query_vector: Sequence[float],
    threshold: float,
    max_rows: int,
) -> list[ScoredDoc]:
    """Exact cosine over at most ``max_rows`` stored embeddings."""
    rows = await storage.fetch_embeddings(max_rows)
    dim = len(query_vector)
    usable = [(doc_id, emb) for doc_id, emb in rows if len(emb) == dim]
    if len(usable) < len(rows):
        logger.warning(f"Skipped {len(rows) - len(usable)} stored embedding(s) with dimension != {dim}")
    if not usable:
        return []

    similarities = cosine_similarities(query_vector, [emb for _, emb in usable])
    results = [
        ScoredDoc(doc_id, float(sim)) for (doc_id, _), sim in zip(usable, similarities) if sim >= threshold
    ]
    results.sort(key=lambda r: r.score, reverse=True)
    return results


async def vector_search(
    corpus: str,
    query_vector: Sequence[float],
    storage: CorpusStorage,
    limit: int,
    threshold: float,
    ann: AnnBackend | None = None,
    max_rows: int | None = None,
    candidate_multiplier: int | None = None,
) -> VectorSearchOutcome:
    """Threshold-filtered vector hits for one corpus, best first.

    Args:
        corpus: Corpus name, used as the ANN collection key.
        query_vector: Query embedding.
        storage: Source of stored embeddings for the brute-force path.
        limit: Caller's result limit; ANN fetches ``limit * multiplier`` candidates.
        threshold: Minimum similarity to keep.
        ann: Optional ANN backend.
        max_rows: Brute-force row cap (defaults to settings).
        candidate_multiplier: ANN over-fetch factor (defaults to settings).
    """
    config = settings.vector
    max_rows = max_rows if max_rows is not None else config.brute_force_max_rows
    multiplier = candidate_multiplier if candidate_multiplier is not None else config.ann_candidate_multiplier

    if ann is not None:
        try:
            results = await _ann_search(ann, corpus, query_vector, limit * multiplier, threshold)
            if results:
                return VectorSearchOutcome(results=results, backend="ann")
        except Exception as e:
            logger.warning(f"ANN search failed for corpus '{corpus}', falling back to brute force (non-fatal): {e}")

    count = await storage.count_embeddings()
    if count > max_rows:
        logger.warning(
            f"Corpus '{corpus}' has {count} embeddings (> {max_rows}); skipping brute-force scan, BM25-only results"
        )
        return VectorSearchOutcome(backend="none", degraded=True)

    results = await brute_force_search(storage, query_vector, threshold, max_rows)
    return VectorSearchOutcome(results=results, backend="brute_force")
