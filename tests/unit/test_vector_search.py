"""
Unit tests for vector search.

Covers:
- ANN fast path: distance → similarity, threshold, over-fetch k
- Fallback to brute force when ANN is absent, raises or finds nothing
- Degraded outcome when the corpus exceeds the brute-force row cap
- Brute force skips stored embeddings of the wrong dimension
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from recall_engine.models.documents import IndexedUnit
from recall_engine.storage.in_memory import InMemoryCorpusStorage
from recall_engine.utils.vector_search import brute_force_search, vector_search

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _storage() -> InMemoryCorpusStorage:
    storage = InMemoryCorpusStorage()
    storage.add_unit(IndexedUnit(id=1, content="one"), [1.0, 0.0, 0.0])
    storage.add_unit(IndexedUnit(id=2, content="two"), [0.8, 0.6, 0.0])
    storage.add_unit(IndexedUnit(id=3, content="three"), [0.0, 0.0, 1.0])
    return storage


def _ann(hits=None, error: Exception | None = None) -> MagicMock:
    ann = MagicMock()
    ann.query = AsyncMock(return_value=hits or [], side_effect=error)
    return ann


# ---------------------------------------------------------------------------
# ANN path
# ---------------------------------------------------------------------------


class TestAnnPath:
    @pytest.mark.asyncio
    async def test_distance_converted_and_thresholded(self):
        ann = _ann([(2, 0.9), (1, 0.1)])
        outcome = await vector_search("code", [1.0, 0.0, 0.0], _storage(), limit=2, threshold=0.5, ann=ann)
        assert outcome.backend == "ann"
        assert [r.doc_id for r in outcome.results] == [1]
        assert outcome.results[0].score == pytest.approx(0.9)

    @pytest.mark.asyncio
    async def test_over_fetches_by_multiplier(self):
        ann = _ann([(1, 0.0)])
        await vector_search(
            "docs", [1.0, 0.0, 0.0], _storage(), limit=2, threshold=0.0, ann=ann, candidate_multiplier=5
        )
        ann.query.assert_awaited_once()
        assert ann.query.await_args.args[2] == 10

    @pytest.mark.asyncio
    async def test_ann_failure_falls_back(self):
        ann = _ann(error=RuntimeError("collection missing"))
        outcome = await vector_search("code", [1.0, 0.0, 0.0], _storage(), limit=2, threshold=0.5, ann=ann)
        assert outcome.backend == "brute_force"
        assert [r.doc_id for r in outcome.results] == [1, 2]

    @pytest.mark.asyncio
    async def test_empty_ann_result_falls_back(self):
        outcome = await vector_search("code", [1.0, 0.0, 0.0], _storage(), limit=2, threshold=0.5, ann=_ann([]))
        assert outcome.backend == "brute_force"
        assert outcome.results


# ---------------------------------------------------------------------------
# Brute force
# ---------------------------------------------------------------------------


class TestBruteForce:
    @pytest.mark.asyncio
    async def test_sorted_and_thresholded(self):
        outcome = await vector_search("code", [1.0, 0.0, 0.0], _storage(), limit=5, threshold=0.5)
        assert outcome.backend == "brute_force"
        assert [r.doc_id for r in outcome.results] == [1, 2]
        assert outcome.results[1].score == pytest.approx(0.8)

    @pytest.mark.asyncio
    async def test_degrades_above_row_cap(self):
        outcome = await vector_search("code", [1.0, 0.0, 0.0], _storage(), limit=5, threshold=0.0, max_rows=2)
        assert outcome.degraded
        assert outcome.results == []

    @pytest.mark.asyncio
    async def test_skips_mismatched_dimensions(self):
        storage = MagicMock()
        storage.fetch_embeddings = AsyncMock(return_value=[(1, [1.0, 0.0]), (2, [1.0, 0.0, 0.0])])
        results = await brute_force_search(storage, [1.0, 0.0], threshold=0.0, max_rows=10)
        assert [r.doc_id for r in results] == [1]

    @pytest.mark.asyncio
    async def test_empty_storage(self):
        outcome = await vector_search("code", [1.0, 0.0], InMemoryCorpusStorage(), limit=5, threshold=0.0)
        assert outcome.results == []
        assert not outcome.degraded
