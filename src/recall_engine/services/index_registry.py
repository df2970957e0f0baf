"""
Index Registry - owns one BM25 index per corpus.

Each corpus is bound to a paged unit source and a key-value metadata store.
On first use an index is loaded from its persisted blob; a missing,
unreadable or mismatched blob is a cache miss and the index is rebuilt from
storage in batches, then persisted again. Invalidation is an explicit call
that drops both the cached index and its blob, and only ever touches the
corpus it names.

Single-unit writes are persisted in batches: the blob is rewritten after
``persist_every`` updates or removals, and ``flush``/``close`` write whatever
is still pending.

Code-corpus writes also feed the token frequency table that drives flatcase
segmentation and BPE training.
"""

import asyncio
import logging
import time
from dataclasses import dataclass

from ..config import settings
from ..models.documents import IndexedUnit
from ..models.results import ScoredDoc
from ..storage.base import CorpusStorage, MetadataStore
from ..utils.bm25 import BM25Index, TokenizerKind
from ..utils.bpe import BPEVocab, load_bpe_vocab, needs_bpe_retrain, save_bpe_vocab, train_bpe_from_frequencies
from ..utils.segmentation import FlatcaseSegmenter, TokenFrequencyTable

logger = logging.getLogger(__name__)

CODE_CORPUS = "code"
DOCS_CORPUS = "docs"
MEMORIES_CORPUS = "memories"
GLOBAL_MEMORIES_CORPUS = "global_memories"

CORPORA = (CODE_CORPUS, DOCS_CORPUS, MEMORIES_CORPUS, GLOBAL_MEMORIES_CORPUS)


def index_key(corpus: str) -> str:
    """Metadata key under which a corpus index blob is persisted."""
    return f"bm25_{corpus}_index"


@dataclass
class CorpusBinding:
    """Persistence collaborators for one corpus.

    ``tokenizer`` defaults to ``code`` for the code corpus and ``docs`` for
    everything else; ``key`` defaults to :func:`index_key`.
    """

    storage: CorpusStorage
    metadata_store: MetadataStore
    tokenizer: TokenizerKind | None = None
    key: str | None = None


class IndexRegistry:
    """Process-local owner of the per-corpus BM25 indexes."""

    def __init__(
        self,
        bindings: dict[str, CorpusBinding],
        frequencies: TokenFrequencyTable | None = None,
        segmenter: FlatcaseSegmenter | None = None,
        batch_size: int | None = None,
        persist_every: int | None = None,
    ):
        self._bindings = bindings
        self.frequencies = frequencies if frequencies is not None else TokenFrequencyTable()
        self.segmenter = segmenter if segmenter is not None else FlatcaseSegmenter(self.frequencies)
        self.batch_size = batch_size if batch_size is not None else settings.bm25.rebuild_batch_size
        self.persist_every = persist_every if persist_every is not None else settings.bm25.persist_every
        self._indexes: dict[str, BM25Index] = {}
        self._pending: dict[str, int] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self.last_indexed_at: float | None = None

    # -- bindings ----------------------------------------------------------

    @property
    def corpora(self) -> list[str]:
        return list(self._bindings)

    def has_corpus(self, corpus: str) -> bool:
        return corpus in self._bindings

    def binding(self, corpus: str) -> CorpusBinding:
        try:
            return self._bindings[corpus]
        except KeyError:
            raise KeyError(f"Unknown corpus '{corpus}'") from None

    def tokenizer_for(self, corpus: str) -> TokenizerKind:
        binding = self.binding(corpus)
        if binding.tokenizer is not None:
            return binding.tokenizer
        return "code" if corpus == CODE_CORPUS else "docs"

    def key_for(self, corpus: str) -> str:
        return self.binding(corpus).key or index_key(corpus)

    def is_loaded(self, corpus: str) -> bool:
        return corpus in self._indexes

    # -- lifecycle ---------------------------------------------------------

    async def get(self, corpus: str) -> BM25Index:
        """The corpus index, loading or rebuilding it on first use."""
        index = self._indexes.get(corpus)
        if index is not None:
            return index

        lock = self._locks.setdefault(corpus, asyncio.Lock())
        async with lock:
            index = self._indexes.get(corpus)
            if index is not None:
                return index

            index = await self._load(corpus)
            if index is None:
                index = await self._rebuild(corpus)
                await self._save(corpus, index)
            elif corpus == CODE_CORPUS:
                self._seed_frequencies(index)

            self._indexes[corpus] = index
            return index

    async def _load(self, corpus: str) -> BM25Index | None:
        binding = self.binding(corpus)
        blob = await binding.metadata_store.get(self.key_for(corpus))
        if blob is None:
            return None
        try:
            index = BM25Index.deserialize(blob)
        except ValueError as e:
            logger.warning(f"Persisted BM25 index for '{corpus}' is unreadable, rebuilding (non-fatal): {e}")
            return None

        tokenizer = self.tokenizer_for(corpus)
        if index.tokenizer != tokenizer:
            logger.warning(
                f"Persisted BM25 index for '{corpus}' uses the {index.tokenizer} tokenizer, "
                f"expected {tokenizer}; rebuilding"
            )
            return None
        logger.debug(f"Loaded BM25 index for '{corpus}' ({index.total_docs} docs)")
        return index

    async def _rebuild(self, corpus: str) -> BM25Index:
        """Full rebuild in id-ordered pages to bound peak memory."""
        binding = self.binding(corpus)
        index = BM25Index.empty(self.tokenizer_for(corpus))
        start = time.perf_counter()
        if corpus == CODE_CORPUS:
            # Counts are rebuilt alongside the index
            self.frequencies.clear()
            self.segmenter.clear_cache()

        offset = 0
        while True:
            page = await binding.storage.fetch_units(self.batch_size, offset)
            for unit in page:
                tokens = index.add(unit)
                if corpus == CODE_CORPUS:
                    self.frequencies.record(tokens)
            if len(page) < self.batch_size:
                break
            offset += self.batch_size

        elapsed_ms = (time.perf_counter() - start) * 1000
        logger.info(f"Rebuilt BM25 index for '{corpus}': {index.total_docs} docs in {elapsed_ms:.0f}ms")
        return index

    async def _save(self, corpus: str, index: BM25Index) -> None:
        await self.binding(corpus).metadata_store.set(self.key_for(corpus), index.serialize())

    async def _mark_dirty(self, corpus: str, index: BM25Index) -> None:
        pending = self._pending.get(corpus, 0) + 1
        if pending >= self.persist_every:
            await self._save(corpus, index)
            pending = 0
        self._pending[corpus] = pending

    def pending_writes(self, corpus: str) -> int:
        return self._pending.get(corpus, 0)

    async def flush(self, corpus: str | None = None) -> None:
        """Persist every corpus (or just ``corpus``) with unsaved writes."""
        names = [corpus] if corpus is not None else list(self._pending)
        for name in names:
            index = self._indexes.get(name)
            if index is not None and self._pending.get(name):
                await self._save(name, index)
            self._pending.pop(name, None)

    def _seed_frequencies(self, index: BM25Index) -> None:
        if self.frequencies.total:
            return
        totals = {term: sum(postings.values()) for term, postings in index.inverted_index.items()}
        self.frequencies.record_counts(totals)

    # -- mutation ----------------------------------------------------------

    async def update(self, corpus: str, unit: IndexedUnit, now: float | None = None) -> None:
        """Add or replace one unit; the blob is rewritten once enough writes are pending."""
        index = await self.get(corpus)
        tokens = index.add(unit)
        if corpus == CODE_CORPUS:
            self.frequencies.record(tokens)
            self.last_indexed_at = now if now is not None else time.time()
        await self._mark_dirty(corpus, index)

    async def remove(self, corpus: str, doc_id: int) -> bool:
        """Drop one unit; only an actual removal counts as a pending write."""
        index = await self.get(corpus)
        removed = index.remove(doc_id)
        if removed:
            await self._mark_dirty(corpus, index)
        return removed

    async def invalidate(self, corpus: str) -> None:
        """Forget the cached index and its persisted blob; the next ``get`` rebuilds."""
        self._indexes.pop(corpus, None)
        self._pending.pop(corpus, None)
        await self.binding(corpus).metadata_store.delete(self.key_for(corpus))
        logger.debug(f"Invalidated BM25 index for '{corpus}'")

    async def invalidate_all(self) -> None:
        for corpus in self.corpora:
            await self.invalidate(corpus)

    async def close(self) -> None:
        """Flush pending writes, drop cached indexes and close the metadata stores (each once)."""
        await self.flush()
        self._indexes.clear()
        closed: set[int] = set()
        for binding in self._bindings.values():
            if id(binding.metadata_store) not in closed:
                closed.add(id(binding.metadata_store))
                await binding.metadata_store.close()

    # -- query -------------------------------------------------------------

    async def search(
        self, corpus: str, query: str, limit: int = 10, exact_query: str | None = None
    ) -> list[ScoredDoc]:
        index = await self.get(corpus)
        return index.search(query, limit, exact_query=exact_query)

    # -- BPE ---------------------------------------------------------------

    def _bpe_store(self) -> MetadataStore | None:
        if not self.has_corpus(CODE_CORPUS):
            return None
        return self.binding(CODE_CORPUS).metadata_store

    async def load_bpe(self) -> BPEVocab | None:
        """Attach the persisted BPE vocabulary (if any) to the segmenter.

        Does nothing while the segmenter has BPE disabled.
        """
        store = self._bpe_store()
        if store is None or not self.segmenter.bpe_enabled:
            return None
        vocab = await load_bpe_vocab(store)
        if vocab is not None:
            self.segmenter.bpe_vocab = vocab
        return vocab

    async def maybe_retrain_bpe(self, now: float | None = None, force: bool = False) -> BPEVocab | None:
        """Retrain the BPE vocabulary when the schedule says it is due.

        Returns the new vocabulary, or ``None`` when nothing was trained.
        ``force`` skips the schedule but never trains while BPE is disabled.
        """
        config = settings.segmentation
        store = self._bpe_store()
        if store is None or not self.segmenter.bpe_enabled:
            return None
        now = now if now is not None else time.time()

        current = self.segmenter.bpe_vocab
        last_trained = current.trained_at if current is not None else None
        if not force and not needs_bpe_retrain(last_trained, config.bpe_retrain_interval, self.last_indexed_at, now):
            return None

        vocab = train_bpe_from_frequencies(
            self.frequencies,
            vocab_size=config.bpe_vocab_size,
            min_frequency=config.bpe_min_frequency,
            min_unique_tokens=config.bpe_min_unique_tokens,
            max_tokens=config.bpe_max_training_tokens,
            max_repeat=config.bpe_max_token_repeat,
            now=now,
        )
        if vocab is None:
            return None
        await save_bpe_vocab(store, vocab)
        self.segmenter.bpe_vocab = vocab
        return vocab
