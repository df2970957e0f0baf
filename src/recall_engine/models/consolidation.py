"""Consolidation records: links, candidate pairs, run reports and history."""

import time
from typing import Any, Literal

from pydantic import BaseModel, Field

from .memory import Memory
from .validators import LinkRelation, NonNegativeInt, Timestamp


class MemoryLink(BaseModel):
    """Directed relation between two memories.

    ``supersedes`` links point from a merged (surviving or synthetic) memory to
    each original it replaced; they are the sole source of truth for history
    and undo. When a memory is superseded its other links are copied onto the
    survivor with ``transferred_from`` naming the original, so undo can drop
    exactly those copies.
    """

    source_id: int
    target_id: int
    relation: LinkRelation
    weight: float = 1.0
    created_at: Timestamp = Field(default_factory=time.time)
    transferred_from: int | None = None


class ConsolidationCandidate(BaseModel):
    """A near-duplicate pair discovered by vector similarity."""

    memory_a: Memory
    memory_b: Memory
    similarity: float

    @property
    def pair_key(self) -> tuple[int, int]:
        a, b = self.memory_a.id, self.memory_b.id
        return (a, b) if a < b else (b, a)


class ConsolidationAction(BaseModel):
    """What a run did (or, in dry-run mode, would do) with one pair."""

    kind: Literal["llm_merge", "keep_one", "keep_both", "skipped"]
    memory_ids: tuple[int, int]
    similarity: float
    merged_id: int | None = None
    invalidated_ids: list[int] = Field(default_factory=list)
    reason: str = ""


class ConsolidationReport(BaseModel):
    """Run-level summary. Per-pair failures land in ``errors``; the run continues."""

    candidates_found: NonNegativeInt = 0
    merged: NonNegativeInt = 0
    invalidated: NonNegativeInt = 0
    kept: NonNegativeInt = 0
    skipped: NonNegativeInt = 0
    errors: list[str] = Field(default_factory=list)
    actions: list[ConsolidationAction] = Field(default_factory=list)
    dry_run: bool = False
    skipped_reason: str | None = None

    @property
    def errored(self) -> int:
        return len(self.errors)

    def to_dict(self) -> dict[str, Any]:
        d = self.model_dump(exclude={"actions"})
        d["errored"] = self.errored
        return d


class UndoResult(BaseModel):
    """Outcome of reversing one consolidation."""

    merged_id: int
    restored: list[int] = Field(default_factory=list)
    deleted_merge: bool = False
    message: str = ""
    errors: list[str] = Field(default_factory=list)

    @property
    def success(self) -> bool:
        return bool(self.restored) and not self.errors


class ConsolidationHistoryEntry(BaseModel):
    """Derived from ``supersedes`` links; never stored on its own."""

    merged_memory_id: int
    original_ids: list[int]
    merged_at: float
    merged_content: str | None = None


class ConsolidationStats(BaseModel):
    total_memories: NonNegativeInt
    candidate_pairs: NonNegativeInt
    potential_reduction: NonNegativeInt
