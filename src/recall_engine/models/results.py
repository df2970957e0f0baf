"""Ranked search results."""

from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel

from .documents import IndexedUnit


@dataclass(frozen=True, slots=True)
class ScoredDoc:
    """A document id with a score from a single ranker (BM25, vector or RRF)."""

    doc_id: int
    score: float


class HybridSearchResult(BaseModel):
    """A fused code/docs result.

    ``similarity`` is the fused (and, for code, symbol-boosted) score; the
    component scores are present only when the document appeared in that list.
    """

    id: int
    similarity: float
    bm25_score: float | None = None
    vector_score: float | None = None
    content: str = ""
    file_path: str | None = None
    start_line: int | None = None
    end_line: int | None = None
    symbol_name: str | None = None
    symbol_type: str | None = None

    @classmethod
    def from_unit(
        cls,
        unit: IndexedUnit,
        similarity: float,
        bm25_score: float | None = None,
        vector_score: float | None = None,
    ) -> "HybridSearchResult":
        return cls(
            id=unit.id,
            similarity=similarity,
            bm25_score=bm25_score,
            vector_score=vector_score,
            content=unit.content,
            file_path=unit.file_path,
            start_line=unit.start_line,
            end_line=unit.end_line,
            symbol_name=unit.symbol_name,
            symbol_type=unit.symbol_type,
        )

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)
