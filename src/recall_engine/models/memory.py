"""Memory-related data models.

A ``Memory`` is a short natural-language record (decision, error, pattern, ...)
with an embedding and the temporal/quality signals used by the working-memory
pipeline. Timestamps are epoch-seconds floats; ISO strings and datetimes are
accepted on input.
"""

import time
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .documents import IndexedUnit
from .validators import NonNegativeInt, OptionalScore, OptionalTimestamp, Tags, Timestamp


def _float_to_iso(ts: float) -> str:
    """Convert float timestamp to ISO string (UTC, Z-suffix)."""
    return datetime.fromtimestamp(ts, timezone.utc).isoformat().replace("+00:00", "Z")


class Memory(BaseModel):
    """A stored memory with temporal validity, quality and pinning signals."""

    model_config = ConfigDict(populate_by_name=True)

    id: int
    content: str
    embedding: list[float] | None = None
    tags: Tags = Field(default_factory=list)
    memory_type: str | None = Field(default="observation", alias="type")
    source: str | None = None
    project: str | None = None

    quality_score: OptionalScore = None
    access_count: NonNegativeInt = 0
    correction_count: NonNegativeInt = 0
    is_invariant: bool = False
    priority_score: OptionalScore = None

    created_at: Timestamp = Field(default_factory=time.time)
    last_accessed: OptionalTimestamp = None
    valid_from: OptionalTimestamp = None
    valid_until: OptionalTimestamp = None

    # Set by consolidation when this memory is superseded, together with the
    # valid_until it overwrote so undo can put it back
    invalidated_by: int | None = None
    superseded_valid_until: OptionalTimestamp = None

    @field_validator("quality_score")
    @classmethod
    def _quality_in_unit_range(cls, v: float | None) -> float | None:
        if v is not None and not 0.0 <= v <= 1.0:
            raise ValueError(f"quality_score must be within [0, 1], got {v}")
        return v

    @property
    def is_active(self) -> bool:
        """True while the memory has not been superseded."""
        return self.invalidated_by is None

    def to_unit(self) -> IndexedUnit:
        """The text this memory contributes to a BM25 corpus."""
        return IndexedUnit(id=self.id, content=self.content)

    def touch(self, now: float | None = None) -> None:
        """Record one access."""
        self.access_count += 1
        self.last_accessed = now if now is not None else time.time()

    def to_dict(self) -> dict[str, Any]:
        """Serialise with ISO timestamps alongside the float values."""
        d = self.model_dump(by_alias=True, exclude={"embedding"})
        for key in ("created_at", "last_accessed", "valid_from", "valid_until"):
            value = getattr(self, key)
            d[f"{key}_iso"] = _float_to_iso(value) if value is not None else None
        return d


class MemoryQueryResult(BaseModel):
    """A memory returned from hybrid search with its component scores."""

    memory: Memory
    similarity: float
    bm25_score: float | None = None
    vector_score: float | None = None

    def to_dict(self) -> dict[str, Any]:
        d = self.memory.to_dict()
        d["similarity"] = self.similarity
        d["bm25_score"] = self.bm25_score
        d["vector_score"] = self.vector_score
        return d
