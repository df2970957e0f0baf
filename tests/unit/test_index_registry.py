"""
Unit tests for the per-corpus index registry.

Covers:
- First use rebuilds from storage in pages and persists the blob
- A persisted blob is loaded instead of rebuilding
- Corrupt or mismatched blobs count as a cache miss
- Updates and invalidation only touch the named corpus
- Single-unit writes are persisted in batches, flushed on close
- Code indexing feeds the token frequency table and the BPE schedule
"""

import logging
import string

import pytest

from recall_engine.models.documents import IndexedUnit
from recall_engine.services.index_registry import (
    CODE_CORPUS,
    DOCS_CORPUS,
    CorpusBinding,
    IndexRegistry,
    index_key,
)
from recall_engine.storage.in_memory import InMemoryCorpusStorage, InMemoryMetadataStore
from recall_engine.utils.bm25 import BM25Index
from recall_engine.utils.bpe import BPE_VOCAB_KEY, save_bpe_vocab, train_bpe
from recall_engine.utils.segmentation import FlatcaseSegmenter, TokenFrequencyTable

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class _CountingStorage(InMemoryCorpusStorage):
    """Records the offsets each rebuild page was fetched at."""

    def __init__(self) -> None:
        super().__init__()
        self.offsets: list[int] = []

    async def fetch_units(self, limit: int, offset: int) -> list[IndexedUnit]:
        self.offsets.append(offset)
        return await super().fetch_units(limit, offset)


def _storage(*contents: str) -> _CountingStorage:
    storage = _CountingStorage()
    for uid, content in enumerate(contents, start=1):
        storage.add_unit(IndexedUnit(id=uid, content=content))
    return storage


def _registry(code=None, docs=None, meta=None, **kwargs) -> IndexRegistry:
    meta = meta if meta is not None else InMemoryMetadataStore()
    return IndexRegistry(
        {
            CODE_CORPUS: CorpusBinding(code if code is not None else _storage(), meta),
            DOCS_CORPUS: CorpusBinding(docs if docs is not None else _storage(), meta),
        },
        **kwargs,
    )


def _bpe_registry(code=None, meta=None) -> IndexRegistry:
    frequencies = TokenFrequencyTable()
    segmenter = FlatcaseSegmenter(frequencies, bpe_enabled=True)
    return _registry(code=code, meta=meta, frequencies=frequencies, segmenter=segmenter)


# ---------------------------------------------------------------------------
# Load / rebuild
# ---------------------------------------------------------------------------


class TestLifecycle:
    def test_index_key(self):
        assert index_key("code") == "bm25_code_index"

    def test_unknown_corpus(self):
        with pytest.raises(KeyError, match="Unknown corpus"):
            _registry().binding("nope")

    def test_tokenizer_defaults(self):
        registry = _registry()
        assert registry.tokenizer_for(CODE_CORPUS) == "code"
        assert registry.tokenizer_for(DOCS_CORPUS) == "docs"

    @pytest.mark.asyncio
    async def test_rebuild_persists_blob(self):
        meta = InMemoryMetadataStore()
        registry = _registry(code=_storage("def parse_config(): pass"), meta=meta)
        index = await registry.get(CODE_CORPUS)
        assert index.total_docs == 1
        assert registry.is_loaded(CODE_CORPUS)
        assert BM25Index.deserialize(await meta.get("bm25_code_index")) == index

    @pytest.mark.asyncio
    async def test_rebuild_is_paged(self):
        storage = _storage(*(f"unit number {i}" for i in range(5)))
        registry = _registry(code=storage, batch_size=2)
        index = await registry.get(CODE_CORPUS)
        assert index.total_docs == 5
        assert storage.offsets == [0, 2, 4]

    @pytest.mark.asyncio
    async def test_loads_persisted_blob(self):
        meta = InMemoryMetadataStore()
        await _registry(docs=_storage("the cat sat"), meta=meta).get(DOCS_CORPUS)

        empty = _storage()
        fresh = _registry(docs=empty, meta=meta)
        results = await fresh.search(DOCS_CORPUS, "cat")
        assert [r.doc_id for r in results] == [1]
        assert empty.offsets == []

    @pytest.mark.asyncio
    async def test_cached_after_first_get(self):
        storage = _storage("alpha")
        registry = _registry(code=storage)
        first = await registry.get(CODE_CORPUS)
        assert await registry.get(CODE_CORPUS) is first
        assert storage.offsets == [0]

    @pytest.mark.asyncio
    async def test_corrupt_blob_rebuilds(self, caplog):
        meta = InMemoryMetadataStore()
        await meta.set("bm25_docs_index", "{garbage")
        registry = _registry(docs=_storage("the cat sat"), meta=meta)
        with caplog.at_level(logging.WARNING):
            index = await registry.get(DOCS_CORPUS)
        assert index.total_docs == 1
        assert "unreadable" in caplog.text
        assert BM25Index.deserialize(await meta.get("bm25_docs_index")).total_docs == 1

    @pytest.mark.asyncio
    async def test_tokenizer_mismatch_rebuilds(self):
        meta = InMemoryMetadataStore()
        stale = BM25Index.build([IndexedUnit(id=9, content="stale")], tokenizer="code")
        await meta.set("bm25_docs_index", stale.serialize())
        index = await _registry(docs=_storage("the cat sat"), meta=meta).get(DOCS_CORPUS)
        assert index.tokenizer == "docs"
        assert 9 not in index


# ---------------------------------------------------------------------------
# Mutation
# ---------------------------------------------------------------------------


class TestMutation:
    @pytest.mark.asyncio
    async def test_update_touches_only_named_corpus(self):
        meta = InMemoryMetadataStore()
        registry = _registry(meta=meta, persist_every=1)
        await registry.get(DOCS_CORPUS)
        docs_blob = await meta.get("bm25_docs_index")

        await registry.update(CODE_CORPUS, IndexedUnit(id=1, content="getUserName"), now=100.0)

        assert await meta.get("bm25_docs_index") == docs_blob
        assert 1 in BM25Index.deserialize(await meta.get("bm25_code_index"))

    @pytest.mark.asyncio
    async def test_update_records_code_frequencies(self):
        registry = _registry()
        await registry.update(CODE_CORPUS, IndexedUnit(id=1, content="getUserName"), now=100.0)
        assert registry.frequencies.frequency("user") == 1
        assert registry.last_indexed_at == 100.0

    @pytest.mark.asyncio
    async def test_docs_update_leaves_frequencies(self):
        registry = _registry()
        await registry.update(DOCS_CORPUS, IndexedUnit(id=1, content="user guide"))
        assert registry.frequencies.total == 0
        assert registry.last_indexed_at is None

    @pytest.mark.asyncio
    async def test_remove(self):
        meta = InMemoryMetadataStore()
        registry = _registry(code=_storage("alpha", "beta"), meta=meta, persist_every=1)
        assert await registry.remove(CODE_CORPUS, 1)
        assert not await registry.remove(CODE_CORPUS, 1)
        assert 1 not in BM25Index.deserialize(await meta.get("bm25_code_index"))

    @pytest.mark.asyncio
    async def test_writes_batched(self):
        meta = InMemoryMetadataStore()
        registry = _registry(meta=meta, persist_every=3)
        await registry.get(DOCS_CORPUS)

        for uid in (1, 2):
            await registry.update(DOCS_CORPUS, IndexedUnit(id=uid, content=f"note {uid}"))
        assert BM25Index.deserialize(await meta.get("bm25_docs_index")).total_docs == 0
        assert registry.pending_writes(DOCS_CORPUS) == 2

        await registry.update(DOCS_CORPUS, IndexedUnit(id=3, content="note 3"))
        assert BM25Index.deserialize(await meta.get("bm25_docs_index")).total_docs == 3
        assert registry.pending_writes(DOCS_CORPUS) == 0

        await registry.update(DOCS_CORPUS, IndexedUnit(id=4, content="note 4"))
        await registry.flush(DOCS_CORPUS)
        assert BM25Index.deserialize(await meta.get("bm25_docs_index")).total_docs == 4
        assert registry.pending_writes(DOCS_CORPUS) == 0

    @pytest.mark.asyncio
    async def test_close_flushes_pending(self):
        meta = InMemoryMetadataStore()
        registry = _registry(meta=meta, persist_every=10)
        await registry.update(CODE_CORPUS, IndexedUnit(id=1, content="getUserName"))
        await registry.remove(CODE_CORPUS, 99)
        assert registry.pending_writes(CODE_CORPUS) == 1

        await registry.close()
        assert 1 in BM25Index.deserialize(await meta.get("bm25_code_index"))

    @pytest.mark.asyncio
    async def test_invalidate_discards_pending(self):
        meta = InMemoryMetadataStore()
        registry = _registry(meta=meta, persist_every=10)
        await registry.update(CODE_CORPUS, IndexedUnit(id=1, content="getUserName"))
        await registry.invalidate(CODE_CORPUS)
        await registry.flush()
        assert await meta.get("bm25_code_index") is None

    @pytest.mark.asyncio
    async def test_invalidate_drops_cache_and_blob(self):
        meta = InMemoryMetadataStore()
        registry = _registry(meta=meta)
        await registry.get(CODE_CORPUS)
        await registry.get(DOCS_CORPUS)

        await registry.invalidate(CODE_CORPUS)

        assert not registry.is_loaded(CODE_CORPUS)
        assert registry.is_loaded(DOCS_CORPUS)
        assert meta.keys() == ["bm25_docs_index"]

    @pytest.mark.asyncio
    async def test_invalidate_all(self):
        meta = InMemoryMetadataStore()
        registry = _registry(meta=meta)
        await registry.get(CODE_CORPUS)
        await registry.invalidate_all()
        assert meta.keys() == []


# ---------------------------------------------------------------------------
# Frequencies and BPE
# ---------------------------------------------------------------------------


class TestFrequenciesAndBpe:
    @pytest.mark.asyncio
    async def test_rebuild_counts_code_tokens(self):
        registry = _registry(code=_storage("getUserName", "userId"))
        await registry.get(CODE_CORPUS)
        assert registry.frequencies.frequency("user") == 2

    @pytest.mark.asyncio
    async def test_load_seeds_empty_table(self):
        meta = InMemoryMetadataStore()
        await _registry(code=_storage("getUserName"), meta=meta).get(CODE_CORPUS)

        fresh = _registry(meta=meta)
        await fresh.get(CODE_CORPUS)
        assert fresh.frequencies.frequency("user") == 1

    @pytest.mark.asyncio
    async def test_retrain_needs_data(self):
        registry = _bpe_registry(code=_storage("getUserName"))
        await registry.get(CODE_CORPUS)
        assert await registry.maybe_retrain_bpe(now=1000.0, force=True) is None

    @pytest.mark.asyncio
    async def test_retrain_saves_and_attaches(self):
        letters = string.ascii_lowercase
        words = [a + b + "q" for a in letters for b in letters][:150]
        meta = InMemoryMetadataStore()
        registry = _bpe_registry(code=_storage(" ".join(words)), meta=meta)
        await registry.get(CODE_CORPUS)

        vocab = await registry.maybe_retrain_bpe(now=1000.0)
        assert vocab is not None
        assert registry.segmenter.bpe_vocab is vocab
        assert await meta.get(BPE_VOCAB_KEY) is not None

        # Just trained, nothing indexed since
        assert await registry.maybe_retrain_bpe(now=1000.0 + 60) is None

        fresh = _bpe_registry(meta=meta)
        assert await fresh.load_bpe() == vocab
        assert fresh.segmenter.bpe_vocab == vocab

    @pytest.mark.asyncio
    async def test_bpe_disabled_never_trains_or_loads(self):
        letters = string.ascii_lowercase
        words = [a + b + "q" for a in letters for b in letters][:150]
        meta = InMemoryMetadataStore()
        registry = _registry(code=_storage(" ".join(words)), meta=meta)
        await registry.get(CODE_CORPUS)

        assert await registry.maybe_retrain_bpe(now=1000.0, force=True) is None
        assert await meta.get(BPE_VOCAB_KEY) is None

        await save_bpe_vocab(meta, train_bpe({"abab": 5}, vocab_size=10, min_frequency=2, now=0.0))
        assert await registry.load_bpe() is None
        assert registry.segmenter.bpe_vocab is None
