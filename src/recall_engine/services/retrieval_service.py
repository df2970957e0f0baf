"""
Retrieval Service - hybrid BM25 + vector search over every corpus.

Per query:

1. Code queries are expanded with flatcase segments when that yields more
   terms than the raw query.
2. BM25 returns ``limit * 3`` candidates.
3. The vector layer (ANN, then bounded brute force) returns threshold-filtered
   hits; the best ``limit * 3`` are kept. If the corpus is too large to scan,
   the query degrades to BM25-only results scored by BM25.
4. Reciprocal Rank Fusion merges both lists down to ``limit``.
5. Code results get the symbol-name boost and the optional regex/symbol-type
   filters; global memories get the tag and ``since`` filters.

Memory recall then feeds the hydrated memories through the working-memory
pipeline and records the access.
"""

import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass, field

from ..config import HybridSearchSettings, settings
from ..models.memory import Memory, MemoryQueryResult
from ..models.results import HybridSearchResult, ScoredDoc
from ..storage.base import CorpusStorage, MemoryStore
from ..utils.diversity import apply_diversity_filter
from ..utils.embeddings import EmbeddingProvider, validate_embedding
from ..utils.hybrid_search import apply_symbol_boost, compile_regex_filter, passes_filters, reciprocal_rank_fusion
from ..utils.invariants import EmbeddingMatch, RegexMatch, detect_memory_invariant
from ..utils.reference_embeddings import ReferenceEmbeddingCache
from ..utils.segmentation import tokenize_code_with_segmentation
from ..utils.vector_search import AnnBackend, vector_search
from ..utils.working_memory import apply_working_memory_pipeline, is_pinned
from .index_registry import CODE_CORPUS, DOCS_CORPUS, GLOBAL_MEMORIES_CORPUS, MEMORIES_CORPUS, IndexRegistry

logger = logging.getLogger(__name__)

# BM25 and vector candidate lists are over-fetched relative to the final limit
CANDIDATE_MULTIPLIER = 3


@dataclass
class _FusedRanking:
    ranked: list[ScoredDoc]
    bm25_scores: dict[int, float] = field(default_factory=dict)
    vector_scores: dict[int, float] = field(default_factory=dict)
    degraded: bool = False


class RetrievalService:
    """Hybrid search over the corpora registered with an ``IndexRegistry``.

    Args:
        registry: Owner of the per-corpus BM25 indexes and their storage.
        ann: Optional ANN backend for the vector fast path.
        embedder: Optional provider used to embed memories saved without one.
        invariant_cache: Reference phrases for the embedding invariant check.
        config: Fusion weight and thresholds (defaults to ``settings.hybrid``).
        pin_threshold: Correction count that pins a memory.
    """

    def __init__(
        self,
        registry: IndexRegistry,
        ann: AnnBackend | None = None,
        embedder: EmbeddingProvider | None = None,
        invariant_cache: ReferenceEmbeddingCache | None = None,
        config: HybridSearchSettings | None = None,
        pin_threshold: int | None = None,
    ):
        self.registry = registry
        self.ann = ann
        self.embedder = embedder
        self.invariant_cache = invariant_cache
        self.config = config or settings.hybrid
        self.pin_threshold = pin_threshold if pin_threshold is not None else settings.working_memory.pin_threshold

    # -- collaborators -----------------------------------------------------

    def _storage(self, corpus: str) -> CorpusStorage:
        return self.registry.binding(corpus).storage

    def _memory_store(self, corpus: str = MEMORIES_CORPUS) -> MemoryStore:
        storage = self._storage(corpus)
        if not isinstance(storage, MemoryStore):
            raise TypeError(f"Corpus '{corpus}' is not backed by a MemoryStore")
        return storage

    # -- core hybrid flow --------------------------------------------------

    def enhance_code_query(self, query: str) -> str:
        """Query with flatcase words expanded, if that adds terms."""
        tokens = tokenize_code_with_segmentation(query, self.registry.segmenter)
        if len(tokens) > len(query.split()):
            return " ".join(tokens)
        return query

    async def _fused_ranking(
        self,
        corpus: str,
        query: str,
        query_embedding: Sequence[float] | None,
        limit: int,
        threshold: float,
        alpha: float,
    ) -> _FusedRanking:
        candidate_limit = limit * CANDIDATE_MULTIPLIER

        if self.registry.tokenizer_for(corpus) == "code":
            bm25_query = self.enhance_code_query(query)
        else:
            bm25_query = query
        bm25_results = await self.registry.search(corpus, bm25_query, candidate_limit, exact_query=query)
        bm25_scores = {r.doc_id: r.score for r in bm25_results}

        vector_results: list[ScoredDoc] = []
        if query_embedding is not None:
            outcome = await vector_search(
                corpus,
                query_embedding,
                self._storage(corpus),
                limit,
                threshold,
                ann=self.ann,
            )
            if outcome.degraded:
                return _FusedRanking(ranked=bm25_results[:limit], bm25_scores=bm25_scores, degraded=True)
            vector_results = outcome.results[:candidate_limit]

        fused = reciprocal_rank_fusion(bm25_results, vector_results, alpha=alpha, limit=limit)
        return _FusedRanking(
            ranked=fused,
            bm25_scores=bm25_scores,
            vector_scores={r.doc_id: r.score for r in vector_results},
        )

    async def _search_units(
        self,
        corpus: str,
        query: str,
        query_embedding: Sequence[float] | None,
        limit: int,
        threshold: float,
        alpha: float | None,
    ) -> tuple[list[HybridSearchResult], bool]:
        alpha = alpha if alpha is not None else self.config.alpha
        fused = await self._fused_ranking(corpus, query, query_embedding, limit, threshold, alpha)

        units = await self._storage(corpus).get_units([r.doc_id for r in fused.ranked])
        results = [
            HybridSearchResult.from_unit(
                units[r.doc_id],
                similarity=r.score,
                bm25_score=fused.bm25_scores.get(r.doc_id),
                vector_score=fused.vector_scores.get(r.doc_id),
            )
            for r in fused.ranked
            if r.doc_id in units
        ]
        return results, fused.degraded

    # -- public search API -------------------------------------------------

    async def search_code(
        self,
        query: str,
        query_embedding: Sequence[float] | None = None,
        limit: int = 5,
        threshold: float | None = None,
        alpha: float | None = None,
        regex: str | None = None,
        symbol_type: str | None = None,
    ) -> list[HybridSearchResult]:
        """Hybrid code search with symbol boosting and optional filters.

        Args:
            query: Free text or an identifier.
            query_embedding: Query vector; omit for lexical-only search.
            limit: Maximum results.
            threshold: Minimum vector similarity (defaults to the code threshold).
            alpha: Fusion weight, 0 = pure BM25, 1 = pure vector.
            regex: Case-insensitive content filter; oversized or invalid patterns are ignored.
            symbol_type: Keep only results with this exact symbol type.
        """
        threshold = threshold if threshold is not None else self.config.code_threshold
        results, degraded = await self._search_units(CODE_CORPUS, query, query_embedding, limit, threshold, alpha)

        if not degraded:
            apply_symbol_boost(results, query)

        pattern = compile_regex_filter(regex, self.config.regex_max_length)
        if pattern is not None or symbol_type:
            results = [r for r in results if passes_filters(r, pattern, symbol_type)]
        return results

    async def search_docs(
        self,
        query: str,
        query_embedding: Sequence[float] | None = None,
        limit: int = 5,
        threshold: float | None = None,
        alpha: float | None = None,
    ) -> list[HybridSearchResult]:
        threshold = threshold if threshold is not None else self.config.docs_threshold
        results, _ = await self._search_units(DOCS_CORPUS, query, query_embedding, limit, threshold, alpha)
        return results

    async def _search_memory_corpus(
        self,
        corpus: str,
        query: str,
        query_embedding: Sequence[float] | None,
        limit: int,
        threshold: float | None,
        alpha: float | None,
    ) -> list[MemoryQueryResult]:
        threshold = threshold if threshold is not None else self.config.memory_threshold
        alpha = alpha if alpha is not None else self.config.alpha
        fused = await self._fused_ranking(corpus, query, query_embedding, limit, threshold, alpha)

        memories = await self._memory_store(corpus).get_memories([r.doc_id for r in fused.ranked])
        by_id = {m.id: m for m in memories if m.is_active}
        return [
            MemoryQueryResult(
                memory=by_id[r.doc_id],
                similarity=r.score,
                bm25_score=fused.bm25_scores.get(r.doc_id),
                vector_score=fused.vector_scores.get(r.doc_id),
            )
            for r in fused.ranked
            if r.doc_id in by_id
        ]

    async def search_memories(
        self,
        query: str,
        query_embedding: Sequence[float] | None = None,
        limit: int = 5,
        threshold: float | None = None,
        alpha: float | None = None,
    ) -> list[MemoryQueryResult]:
        """Hybrid search over the project memory corpus; superseded memories are skipped."""
        return await self._search_memory_corpus(MEMORIES_CORPUS, query, query_embedding, limit, threshold, alpha)

    async def search_global_memories(
        self,
        query: str,
        query_embedding: Sequence[float] | None = None,
        limit: int = 5,
        threshold: float | None = None,
        alpha: float | None = None,
        tags: Sequence[str] | None = None,
        since: float | None = None,
    ) -> list[MemoryQueryResult]:
        """Hybrid search over the cross-project memory corpus.

        Args:
            tags: Keep results with at least one tag containing any of these
                (case-insensitive substring match).
            since: Keep results created at or after this epoch time.
        """
        results = await self._search_memory_corpus(
            GLOBAL_MEMORIES_CORPUS, query, query_embedding, limit, threshold, alpha
        )
        if tags:
            wanted = [t.lower() for t in tags]
            results = [
                r for r in results if any(w in tag.lower() for tag in r.memory.tags for w in wanted)
            ]
        if since is not None:
            results = [r for r in results if r.memory.created_at >= since]
        return results

    # -- working memory ----------------------------------------------------

    async def get_working_memory(
        self,
        limit: int = 10,
        candidates: Sequence[Memory] | None = None,
        now: float | None = None,
        diversify: bool = False,
        max_similarity: float | None = None,
        corpus: str = MEMORIES_CORPUS,
    ) -> list[Memory]:
        """Prioritised memories for an assistant's context.

        Pinned memories come first and are never dropped by the diversity
        filter; the rest are ranked, optionally de-duplicated by embedding, and
        the whole list is capped at ``limit``.
        """
        now = now if now is not None else time.time()
        store = self._memory_store(corpus)
        if candidates is None:
            candidates = await store.get_all_memories()
        pinned = await store.get_pinned_memories(self.pin_threshold)

        if not diversify:
            return apply_working_memory_pipeline(
                candidates, limit, now=now, pinned=pinned, pin_threshold=self.pin_threshold
            )

        ranked = apply_working_memory_pipeline(
            candidates,
            len(candidates) + len(pinned),
            now=now,
            pinned=pinned,
            pin_threshold=self.pin_threshold,
        )
        head = [m for m in ranked if is_pinned(m, self.pin_threshold)]
        rest = apply_diversity_filter([m for m in ranked if not is_pinned(m, self.pin_threshold)], max_similarity)
        return [*head, *rest][:limit]

    async def recall_memories(
        self,
        query: str,
        query_embedding: Sequence[float] | None = None,
        limit: int = 10,
        now: float | None = None,
        record_access: bool = True,
    ) -> list[Memory]:
        """Hybrid memory search fed through the working-memory pipeline."""
        now = now if now is not None else time.time()
        results = await self.search_memories(query, query_embedding, limit=limit * CANDIDATE_MULTIPLIER)
        memories = await self.get_working_memory(limit, candidates=[r.memory for r in results], now=now)

        if record_access and memories:
            await self._memory_store().record_access([m.id for m in memories], now)
        return memories

    # -- ingestion ---------------------------------------------------------

    async def index_memory(self, memory: Memory, corpus: str = MEMORIES_CORPUS) -> Memory:
        """Validate, flag invariants, save and index one memory.

        Raises:
            EmbeddingValidationError: The embedding (given or provided) is malformed.
        """
        if memory.embedding is None and self.embedder is not None:
            vectors = await self.embedder.embed([memory.content])
            memory = memory.model_copy(update={"embedding": validate_embedding(vectors[0])})
        elif memory.embedding is not None:
            memory = memory.model_copy(update={"embedding": validate_embedding(memory.embedding)})

        if not memory.is_invariant:
            detection = await detect_memory_invariant(
                memory.content, memory.memory_type, memory.embedding, self.invariant_cache
            )
            if isinstance(detection, (RegexMatch, EmbeddingMatch)):
                memory = memory.model_copy(update={"is_invariant": True})
                logger.debug(f"Memory flagged invariant: {detection}")

        saved = await self._memory_store(corpus).save_memory(memory)
        await self.registry.update(corpus, saved.to_unit())
        return saved

    async def remove_memory(self, memory_id: int, corpus: str = MEMORIES_CORPUS, force: bool = False) -> bool:
        """Hard-delete a memory and drop it from the corpus index.

        Raises:
            PinnedMemoryError: The memory is pinned and ``force`` is not set.
        """
        deleted = await self._memory_store(corpus).delete_memory(memory_id, force=force)
        if deleted:
            await self.registry.remove(corpus, memory_id)
        return deleted
