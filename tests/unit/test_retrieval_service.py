"""
Unit tests for RetrievalService.

Covers:
- Code search: flatcase expansion, symbol boost, regex and symbol-type filters
- Docs search: pure-lexical fusion, vector-weighted fusion, ANN fast path
- Degraded BM25-only results when the corpus is too large to scan
- Memory corpora: superseded memories skipped, global tag/since filters
- Ingestion: embedding, validation and invariant flagging
- Working memory and recall: pinning, diversity, access recording
"""

import pytest

from recall_engine.config import settings
from recall_engine.models.documents import IndexedUnit
from recall_engine.models.memory import Memory
from recall_engine.services.index_registry import (
    CODE_CORPUS,
    DOCS_CORPUS,
    GLOBAL_MEMORIES_CORPUS,
    MEMORIES_CORPUS,
    CorpusBinding,
    IndexRegistry,
)
from recall_engine.services.retrieval_service import RetrievalService
from recall_engine.storage.in_memory import InMemoryCorpusStorage, InMemoryMemoryStore, InMemoryMetadataStore
from recall_engine.utils.embeddings import EmbeddingValidationError

NOW = 1_700_000_000.0

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


class FakeEmbedder:
    def __init__(self, vector: list[float]) -> None:
        self.vector = vector
        self.calls: list[list[str]] = []

    async def embed(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(texts)
        return [list(self.vector) for _ in texts]


class FakeAnn:
    def __init__(self, hits: list[tuple[int, float]]) -> None:
        self.hits = hits
        self.queries: list[tuple[str, int]] = []

    async def query(self, corpus, vector, k):
        self.queries.append((corpus, k))
        return self.hits


def _code_storage() -> InMemoryCorpusStorage:
    storage = InMemoryCorpusStorage()
    storage.add_unit(
        IndexedUnit(
            id=1,
            content="def parse_config(path): return load(path)",
            symbol_name="parse_config",
            signature="def parse_config(path)",
            symbol_type="function",
        )
    )
    storage.add_unit(
        IndexedUnit(
            id=2,
            content="class Config: pass  # settings holder",
            symbol_name="Config",
            signature="class Config",
            symbol_type="class",
        )
    )
    storage.add_unit(
        IndexedUnit(
            id=3,
            content="def render_page(template): return html",
            symbol_name="render_page",
            signature="def render_page(template)",
            symbol_type="function",
        )
    )
    return storage


def _docs_storage() -> InMemoryCorpusStorage:
    storage = InMemoryCorpusStorage()
    storage.add_unit(IndexedUnit(id=1, content="Installing the server requires Python"), [1.0, 0.0, 0.0])
    storage.add_unit(
        IndexedUnit(id=2, content="Configure the server with environment variables; the server reads env"),
        [0.0, 1.0, 0.0],
    )
    storage.add_unit(IndexedUnit(id=3, content="Deployment notes for the cluster"), [0.9, 0.1, 0.0])
    return storage


@pytest.fixture
def memory_store():
    return InMemoryMemoryStore()


@pytest.fixture
def global_store():
    return InMemoryMemoryStore()


@pytest.fixture
def registry(memory_store, global_store):
    meta = InMemoryMetadataStore()
    return IndexRegistry(
        {
            CODE_CORPUS: CorpusBinding(_code_storage(), meta),
            DOCS_CORPUS: CorpusBinding(_docs_storage(), meta),
            MEMORIES_CORPUS: CorpusBinding(memory_store, meta),
            GLOBAL_MEMORIES_CORPUS: CorpusBinding(global_store, meta),
        }
    )


@pytest.fixture
def service(registry):
    return RetrievalService(registry)


def _memory(content: str, **kwargs) -> Memory:
    kwargs.setdefault("created_at", NOW)
    return Memory(id=0, content=content, **kwargs)


# ---------------------------------------------------------------------------
# Code search
# ---------------------------------------------------------------------------


class TestCodeSearch:
    @pytest.mark.asyncio
    async def test_identifier_query_ranks_definition_first(self, service):
        results = await service.search_code("parse_config")
        assert results[0].id == 1
        assert results[0].symbol_name == "parse_config"
        assert results[0].bm25_score is not None
        assert results[0].vector_score is None

    @pytest.mark.asyncio
    async def test_symbol_boost_clamped(self, service):
        results = await service.search_code("parse_config")
        assert all(r.similarity <= 1.0 for r in results)
        # RRF alone is well below 0.1; the exact symbol match adds 0.15
        assert results[0].similarity > 0.15

    @pytest.mark.asyncio
    async def test_flatcase_query_expanded(self, service, registry):
        await registry.get(CODE_CORPUS)
        enhanced = service.enhance_code_query("parseconfig").split()
        assert "parse" in enhanced
        assert "config" in enhanced

        by_id = {r.id: r for r in await service.search_code("parseconfig")}
        assert by_id[1].bm25_score > by_id[2].bm25_score

    def test_plain_query_not_expanded(self, service):
        # No corpus statistics yet, so nothing to segment with
        assert service.enhance_code_query("parse") == "parse"

    @pytest.mark.asyncio
    async def test_regex_filter(self, service):
        results = await service.search_code("config", regex=r"class\s+Config")
        assert [r.id for r in results] == [2]

    @pytest.mark.asyncio
    async def test_invalid_regex_ignored(self, service):
        results = await service.search_code("config", regex="([")
        assert {r.id for r in results} == {1, 2}

    @pytest.mark.asyncio
    async def test_symbol_type_filter(self, service):
        results = await service.search_code("config", symbol_type="class")
        assert [r.id for r in results] == [2]

    @pytest.mark.asyncio
    async def test_no_match(self, service):
        assert await service.search_code("zzzqqq") == []


# ---------------------------------------------------------------------------
# Docs search and fusion
# ---------------------------------------------------------------------------


class TestDocsSearch:
    @pytest.mark.asyncio
    async def test_alpha_zero_keeps_lexical_order(self, service, registry):
        expected = [r.doc_id for r in await registry.search(DOCS_CORPUS, "server", 15)]
        results = await service.search_docs("server", [1.0, 0.0, 0.0], alpha=0.0)
        assert [r.id for r in results][: len(expected)] == expected

    @pytest.mark.asyncio
    async def test_alpha_one_follows_vectors(self, service):
        results = await service.search_docs("server", [1.0, 0.0, 0.0], alpha=1.0)
        assert [r.id for r in results] == [1, 3, 2]
        assert results[0].vector_score == pytest.approx(1.0)
        # Below the docs threshold, so no vector score
        assert results[2].vector_score is None

    @pytest.mark.asyncio
    async def test_ann_fast_path(self, registry):
        ann = FakeAnn([(2, 0.05)])
        service = RetrievalService(registry, ann=ann)
        results = await service.search_docs("cluster", [1.0, 0.0, 0.0], limit=2, alpha=1.0)
        assert results[0].id == 2
        assert results[0].vector_score == pytest.approx(0.95)
        assert ann.queries == [(DOCS_CORPUS, 2 * settings.vector.ann_candidate_multiplier)]

    @pytest.mark.asyncio
    async def test_degrades_to_bm25(self, service, registry, monkeypatch):
        monkeypatch.setattr(settings.vector, "brute_force_max_rows", 1)
        expected = await registry.search(DOCS_CORPUS, "server", 5)

        results = await service.search_docs("server", [1.0, 0.0, 0.0])

        assert [r.id for r in results] == [r.doc_id for r in expected]
        for result, scored in zip(results, expected):
            assert result.similarity == pytest.approx(scored.score)
            assert result.vector_score is None

    @pytest.mark.asyncio
    async def test_degraded_code_skips_symbol_boost(self, registry, monkeypatch):
        code = registry.binding(CODE_CORPUS).storage
        code.add_unit(IndexedUnit(id=4, content="def parse_args(): pass"), [1.0, 0.0])
        code.add_unit(IndexedUnit(id=5, content="def parse_env(): pass"), [0.0, 1.0])
        monkeypatch.setattr(settings.vector, "brute_force_max_rows", 1)

        results = await RetrievalService(registry).search_code("parse_config", [1.0, 0.0])

        expected = await registry.search(CODE_CORPUS, "parse_config", 5)
        assert results[0].similarity == pytest.approx(expected[0].score)


# ---------------------------------------------------------------------------
# Memory corpora
# ---------------------------------------------------------------------------


class TestMemorySearch:
    @pytest.mark.asyncio
    async def test_superseded_memories_skipped(self, service, memory_store):
        first = await service.index_memory(_memory("redis cache timeout is 30 seconds"))
        second = await service.index_memory(_memory("redis cache timeout raised to 60 seconds"))
        await memory_store.invalidate_memory(first.id, superseded_by=second.id, at=NOW)

        results = await service.search_memories("redis timeout")
        assert [r.memory.id for r in results] == [second.id]

    @pytest.mark.asyncio
    async def test_global_tag_filter(self, service):
        await service.index_memory(_memory("async context managers", tags=["Python-tips"]), GLOBAL_MEMORIES_CORPUS)
        await service.index_memory(_memory("async runtimes compared", tags=["rust"]), GLOBAL_MEMORIES_CORPUS)

        results = await service.search_global_memories("async", tags=["python"])
        assert [r.memory.content for r in results] == ["async context managers"]

    @pytest.mark.asyncio
    async def test_global_since_filter(self, service):
        await service.index_memory(_memory("async old note", created_at=NOW - 100), GLOBAL_MEMORIES_CORPUS)
        await service.index_memory(_memory("async new note", created_at=NOW), GLOBAL_MEMORIES_CORPUS)

        results = await service.search_global_memories("async", since=NOW - 50)
        assert [r.memory.content for r in results] == ["async new note"]

    @pytest.mark.asyncio
    async def test_global_corpus_is_separate(self, service):
        await service.index_memory(_memory("shared lesson about retries"), GLOBAL_MEMORIES_CORPUS)
        assert await service.search_memories("retries") == []

    @pytest.mark.asyncio
    async def test_code_corpus_is_not_a_memory_store(self, service):
        with pytest.raises(TypeError):
            await service.get_working_memory(corpus=CODE_CORPUS)


# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------


class TestIndexMemory:
    @pytest.mark.asyncio
    async def test_assigns_id_and_indexes(self, service, registry):
        saved = await service.index_memory(_memory("use uv for dependency management"))
        assert saved.id == 1
        assert [r.doc_id for r in await registry.search(MEMORIES_CORPUS, "dependency")] == [1]

    @pytest.mark.asyncio
    async def test_flags_rule_like_decisions(self, service):
        saved = await service.index_memory(_memory("Never commit secrets to git", type="decision"))
        assert saved.is_invariant

    @pytest.mark.asyncio
    async def test_observations_not_flagged(self, service):
        saved = await service.index_memory(_memory("The build never finished yesterday"))
        assert not saved.is_invariant

    @pytest.mark.asyncio
    async def test_flags_rule_like_dead_ends(self, service):
        saved = await service.index_memory(_memory("Never pin grpcio below 1.60, it deadlocks", type="dead_end"))
        assert saved.is_invariant

    @pytest.mark.asyncio
    async def test_uses_embedder(self, registry):
        embedder = FakeEmbedder([0.0, 1.0, 0.0])
        service = RetrievalService(registry, embedder=embedder)
        saved = await service.index_memory(_memory("cache warmup on boot"))
        assert saved.embedding == [0.0, 1.0, 0.0]
        assert embedder.calls == [["cache warmup on boot"]]

    @pytest.mark.asyncio
    async def test_given_embedding_not_replaced(self, registry):
        embedder = FakeEmbedder([0.0, 1.0, 0.0])
        service = RetrievalService(registry, embedder=embedder)
        saved = await service.index_memory(_memory("cache warmup on boot", embedding=[1.0, 0.0, 0.0]))
        assert saved.embedding == [1.0, 0.0, 0.0]
        assert embedder.calls == []

    @pytest.mark.asyncio
    async def test_rejects_wrong_dimension(self):
        store = InMemoryMemoryStore(expected_dimension=3)
        registry = IndexRegistry({MEMORIES_CORPUS: CorpusBinding(store, InMemoryMetadataStore())})
        service = RetrievalService(registry)
        with pytest.raises(EmbeddingValidationError):
            await service.index_memory(_memory("two dims", embedding=[1.0, 0.0]))
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_rejects_non_finite(self, service):
        with pytest.raises(EmbeddingValidationError):
            await service.index_memory(_memory("bad vector", embedding=[1.0, float("nan")]))

    @pytest.mark.asyncio
    async def test_remove_memory(self, service, registry):
        saved = await service.index_memory(_memory("temporary workaround for flaky test"))
        assert await service.remove_memory(saved.id)
        assert await registry.search(MEMORIES_CORPUS, "workaround") == []
        assert not await service.remove_memory(saved.id)


# ---------------------------------------------------------------------------
# Working memory and recall
# ---------------------------------------------------------------------------


class TestWorkingMemory:
    @pytest.mark.asyncio
    async def test_diversity_drops_near_duplicates(self, service):
        await service.index_memory(_memory("deploy with blue green", quality_score=0.9, embedding=[1.0, 0.0, 0.0]))
        await service.index_memory(_memory("blue green deploys", quality_score=0.8, embedding=[1.0, 0.0, 0.0]))
        await service.index_memory(_memory("pin numpy below 2", quality_score=0.5, embedding=[0.0, 1.0, 0.0]))

        plain = await service.get_working_memory(limit=10, now=NOW)
        diverse = await service.get_working_memory(limit=10, now=NOW, diversify=True)

        assert [m.id for m in plain] == [1, 2, 3]
        assert [m.id for m in diverse] == [1, 3]

    @pytest.mark.asyncio
    async def test_pinned_survive_diversity(self, service):
        await service.index_memory(_memory("deploy with blue green", quality_score=0.9, embedding=[1.0, 0.0, 0.0]))
        await service.index_memory(
            _memory("blue green deploys only", correction_count=2, embedding=[1.0, 0.0, 0.0])
        )

        diverse = await service.get_working_memory(limit=10, now=NOW, diversify=True)
        assert [m.id for m in diverse] == [2, 1]

    @pytest.mark.asyncio
    async def test_limit_applies(self, service):
        for i in range(4):
            await service.index_memory(_memory(f"note {i}", quality_score=0.5))
        assert len(await service.get_working_memory(limit=2, now=NOW)) == 2

    @pytest.mark.asyncio
    async def test_recall_pins_first_and_records_access(self, service, memory_store):
        plain = await service.index_memory(_memory("deploy checklist: run migrations", quality_score=0.9))
        pinned = await service.index_memory(_memory("deploy rollback steps", correction_count=2))

        recalled = await service.recall_memories("deploy", now=NOW + 10)

        assert [m.id for m in recalled] == [pinned.id, plain.id]
        stored = await memory_store.get_memory(plain.id)
        assert stored.access_count == 1
        assert stored.last_accessed == NOW + 10

    @pytest.mark.asyncio
    async def test_recall_without_recording(self, service, memory_store):
        saved = await service.index_memory(_memory("deploy checklist", quality_score=0.9))
        await service.recall_memories("deploy", now=NOW, record_access=False)
        assert (await memory_store.get_memory(saved.id)).access_count == 0
