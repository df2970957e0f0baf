"""
Unit tests for the data models.

Covers:
- Memory: "type" alias, timestamp coercion, tag normalisation, quality bounds
- Memory.to_dict ISO timestamps and to_unit projection
- IndexedUnit / HybridSearchResult serialisation
- Consolidation records: pair_key, errored, undo success
"""

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from recall_engine.models.consolidation import ConsolidationCandidate, ConsolidationReport, UndoResult
from recall_engine.models.documents import IndexedUnit
from recall_engine.models.memory import Memory
from recall_engine.models.results import HybridSearchResult

NOW = 1_700_000_000.0


class TestMemory:
    def test_type_alias(self):
        assert Memory(id=1, content="x", type="decision").memory_type == "decision"
        assert Memory(id=1, content="x", memory_type="error").memory_type == "error"

    def test_iso_timestamp(self):
        memory = Memory(id=1, content="x", created_at="2023-11-14T22:13:20Z")
        assert memory.created_at == NOW

    def test_datetime_timestamp(self):
        memory = Memory(id=1, content="x", created_at=datetime.fromtimestamp(NOW, timezone.utc))
        assert memory.created_at == NOW

    def test_blank_optional_timestamp(self):
        assert Memory(id=1, content="x", valid_until="").valid_until is None

    def test_tags_normalised(self):
        assert Memory(id=1, content="x", tags="a, b,,").tags == ["a", "b"]
        assert Memory(id=1, content="x", tags=["a", None, " b "]).tags == ["a", "b"]

    def test_quality_bounds(self):
        with pytest.raises(ValidationError):
            Memory(id=1, content="x", quality_score=1.5)

    def test_nan_quality_dropped(self):
        assert Memory(id=1, content="x", quality_score=float("nan")).quality_score is None

    def test_negative_counts_rejected(self):
        with pytest.raises(ValidationError):
            Memory(id=1, content="x", access_count=-1)

    def test_to_dict(self):
        d = Memory(id=1, content="x", created_at=NOW, embedding=[1.0]).to_dict()
        assert d["type"] == "observation"
        assert d["created_at_iso"] == "2023-11-14T22:13:20Z"
        assert d["valid_until_iso"] is None
        assert "embedding" not in d

    def test_to_unit(self):
        unit = Memory(id=4, content="hello").to_unit()
        assert (unit.id, unit.content) == (4, "hello")

    def test_touch(self):
        memory = Memory(id=1, content="x")
        memory.touch(NOW)
        assert memory.access_count == 1
        assert memory.last_accessed == NOW

    def test_is_active(self):
        assert Memory(id=1, content="x").is_active
        assert not Memory(id=1, content="x", invalidated_by=2).is_active


class TestResults:
    def test_unit_dict_drops_none(self):
        assert IndexedUnit(id=1, content="x").to_dict() == {"id": 1, "content": "x"}

    def test_result_from_unit(self):
        unit = IndexedUnit(id=2, content="def f(): pass", symbol_name="f", symbol_type="function")
        result = HybridSearchResult.from_unit(unit, similarity=0.4, bm25_score=1.2)
        assert result.symbol_name == "f"
        assert result.to_dict()["bm25_score"] == 1.2
        assert "vector_score" not in result.to_dict()


class TestConsolidationModels:
    def test_pair_key_sorted(self):
        candidate = ConsolidationCandidate(
            memory_a=Memory(id=9, content="a"), memory_b=Memory(id=3, content="b"), similarity=0.9
        )
        assert candidate.pair_key == (3, 9)

    def test_report_errored(self):
        report = ConsolidationReport(errors=["pair (1, 2): boom"])
        assert report.errored == 1
        assert report.to_dict()["errored"] == 1

    def test_undo_success(self):
        assert UndoResult(merged_id=1, restored=[2]).success
        assert not UndoResult(merged_id=1).success
        assert not UndoResult(merged_id=1, restored=[2], errors=["x"]).success
