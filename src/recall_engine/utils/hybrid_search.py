"""
Hybrid search utilities: Reciprocal Rank Fusion and post-fusion adjustments.

RRF combines two already-ranked lists without needing their raw scores to be
comparable:

    score(d) = (1 - alpha) / (K + rank_bm25(d)) + alpha / (K + rank_vector(d))

with 1-based ranks and ``K = 60``. A document missing from one list simply
gets no contribution from it. ``alpha = 0`` is pure lexical ranking,
``alpha = 1`` pure vector ranking.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Sequence

from ..models.results import HybridSearchResult, ScoredDoc

logger = logging.getLogger(__name__)

RRF_K = 60

EXACT_SYMBOL_BOOST = 0.15
PARTIAL_SYMBOL_BOOST = 0.08

REGEX_FILTER_MAX_LENGTH = 500

_QUERY_TOKEN_SPLIT = re.compile(r"[\s,]+")


def rrf_score(rank: int, k: int = RRF_K) -> float:
    """Reciprocal rank contribution for a 1-based ``rank``; non-positive ranks score 0."""
    if rank <= 0:
        return 0.0
    return 1.0 / (k + rank)


def reciprocal_rank_fusion(
    bm25_results: Sequence[ScoredDoc],
    vector_results: Sequence[ScoredDoc],
    alpha: float = 0.5,
    limit: int = 10,
    k: int = RRF_K,
) -> list[ScoredDoc]:
    """Fuse a lexical and a vector ranking into one list of at most ``limit`` docs."""
    combined: dict[int, float] = {}
    for rank, result in enumerate(bm25_results, start=1):
        combined[result.doc_id] = combined.get(result.doc_id, 0.0) + (1 - alpha) * rrf_score(rank, k)
    for rank, result in enumerate(vector_results, start=1):
        combined[result.doc_id] = combined.get(result.doc_id, 0.0) + alpha * rrf_score(rank, k)

    ranked = sorted(combined.items(), key=lambda item: item[1], reverse=True)
    return [ScoredDoc(doc_id, score) for doc_id, score in ranked[:limit]]


def query_tokens(query: str) -> list[str]:
    """Lowercased query words split on whitespace and commas."""
    return [t for t in _QUERY_TOKEN_SPLIT.split(query.lower().strip()) if t]


def symbol_boost(symbol_name: str | None, tokens: Iterable[str]) -> float:
    """Boost for a symbol name matching a query token; the first matching token decides."""
    if not symbol_name:
        return 0.0
    symbol = symbol_name.lower()
    for token in tokens:
        if symbol == token:
            return EXACT_SYMBOL_BOOST
        if token in symbol or symbol in token:
            return PARTIAL_SYMBOL_BOOST
    return 0.0


def apply_symbol_boost(results: list[HybridSearchResult], query: str) -> list[HybridSearchResult]:
    """Boost symbol-name matches, clamp to 1.0 and re-sort."""
    tokens = query_tokens(query)
    for result in results:
        boosted = result.similarity + symbol_boost(result.symbol_name, tokens)
        result.similarity = min(boosted, 1.0)
    results.sort(key=lambda r: r.similarity, reverse=True)
    return results


def compile_regex_filter(pattern: str | None, max_length: int = REGEX_FILTER_MAX_LENGTH) -> re.Pattern[str] | None:
    """Case-insensitive content filter; oversized or invalid patterns are ignored."""
    if not pattern:
        return None
    if len(pattern) > max_length:
        logger.warning(f"Regex filter longer than {max_length} chars ignored")
        return None
    try:
        return re.compile(pattern, re.IGNORECASE)
    except re.error as e:
        logger.warning(f"Invalid regex filter ignored: {e}")
        return None


def passes_filters(
    result: HybridSearchResult,
    regex: re.Pattern[str] | None = None,
    symbol_type: str | None = None,
) -> bool:
    if symbol_type and result.symbol_type != symbol_type:
        return False
    if regex is not None and not regex.search(result.content):
        return False
    return True
