"""
Working-memory pipeline.

Turns a list of candidate memories (plus an optional, separately fetched list
of pinned memories) into the prioritised set loaded into an assistant's
context:

1. Validity filter: drop memories outside ``[valid_from, valid_until)``.
2. Pinning: invariant memories and memories corrected at least
   ``pin_threshold`` times always surface first, deduplicated.
3. Ranking of the rest by ``priority_score`` (stored or computed):

       0.30 * is_invariant
     + 0.25 * decayed quality      (7-day half-life, floor at 10% of base)
     + 0.20 * normalised corrections
     + 0.15 * tag weight           (by memory type, boosted by key tags)
     + 0.10 * normalised access count

   If no candidate carries a quality signal at all, recency order is used.
4. Truncate to ``limit``.

Everything here is a pure function of its inputs and ``now``.
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Sequence
from dataclasses import dataclass

from ..config import WorkingMemorySettings, settings
from ..models.memory import Memory
from ..models.validators import MemoryType

logger = logging.getLogger(__name__)

_HOUR = 3600.0

DEFAULT_QUALITY = 0.5

# Correction count at which the normalised correction signal saturates
CORRECTION_SATURATION = 5

TYPE_WEIGHTS: dict[MemoryType, float] = {
    "decision": 1.0,
    "error": 0.9,
    "dead_end": 0.85,
    "pattern": 0.8,
    "learning": 0.7,
    "observation": 0.5,
}
UNKNOWN_TYPE_WEIGHT = 0.5

BOOST_TAGS = frozenset({"critical", "architecture", "security"})
BOOSTED_TAG_FLOOR = 0.6


# ---------------------------------------------------------------------------
# Validity and pinning
# ---------------------------------------------------------------------------


def is_valid_at(valid_from: float | None, valid_until: float | None, now: float) -> bool:
    """Half-open validity window; open ends are unbounded."""
    if valid_from is not None and now < valid_from:
        return False
    if valid_until is not None and now >= valid_until:
        return False
    return True


def is_pinned(memory: Memory, pin_threshold: int | None = None) -> bool:
    """Invariant, or corrected at least ``pin_threshold`` times."""
    threshold = pin_threshold if pin_threshold is not None else settings.working_memory.pin_threshold
    return memory.is_invariant or memory.correction_count >= threshold


# ---------------------------------------------------------------------------
# Scoring components
# ---------------------------------------------------------------------------


def compute_confidence_decay(
    base_quality: float,
    last_accessed: float | None,
    created_at: float,
    now: float,
    half_life_hours: float | None = None,
    floor: float | None = None,
) -> float:
    """``base * max(floor, 0.5 ** (hours / half_life))``; future timestamps do not decay."""
    config = settings.working_memory
    half_life = half_life_hours if half_life_hours is not None else config.decay_half_life_hours
    floor = floor if floor is not None else config.decay_floor

    reference = last_accessed if last_accessed is not None else created_at
    hours = max(0.0, (now - reference) / _HOUR)
    return base_quality * max(floor, 0.5 ** (hours / half_life))


def compute_tag_weight(memory_type: str | None, tags: Sequence[str] = ()) -> float:
    """Type weight, raised to at least 0.6 when a key tag is present (capped at 1.0)."""
    weight = TYPE_WEIGHTS.get(memory_type, UNKNOWN_TYPE_WEIGHT)  # type: ignore[arg-type]
    if any(tag.lower() in BOOST_TAGS for tag in tags):
        weight = max(weight, BOOSTED_TAG_FLOOR)
    return min(weight, 1.0)


def normalize_corrections(correction_count: int) -> float:
    return min(correction_count / CORRECTION_SATURATION, 1.0)


def normalize_access(access_count: int) -> float:
    """Log-normalised access count: 0 → 0.0, 100+ → 1.0."""
    if access_count <= 0:
        return 0.0
    return min(1.0, math.log(1 + access_count) / math.log(101))


@dataclass(frozen=True, slots=True)
class PriorityWeights:
    """Priority formula weights. Named and overridable rather than fixed."""

    invariant: float = 0.30
    quality: float = 0.25
    corrections: float = 0.20
    tags: float = 0.15
    access: float = 0.10

    @classmethod
    def from_settings(cls, config: WorkingMemorySettings | None = None) -> PriorityWeights:
        config = config or settings.working_memory
        return cls(
            invariant=config.weight_invariant,
            quality=config.weight_quality,
            corrections=config.weight_corrections,
            tags=config.weight_tags,
            access=config.weight_access,
        )


def compute_priority_score(
    memory: Memory,
    now: float | None = None,
    weights: PriorityWeights | None = None,
) -> float:
    """Weighted priority in ``[0, sum(weights)]``."""
    now = now if now is not None else time.time()
    w = weights or PriorityWeights.from_settings()

    base_quality = memory.quality_score if memory.quality_score is not None else DEFAULT_QUALITY
    decayed = compute_confidence_decay(base_quality, memory.last_accessed, memory.created_at, now)

    return (
        w.invariant * (1.0 if memory.is_invariant else 0.0)
        + w.quality * decayed
        + w.corrections * normalize_corrections(memory.correction_count)
        + w.tags * compute_tag_weight(memory.memory_type, memory.tags)
        + w.access * normalize_access(memory.access_count)
    )


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


def _has_quality_signal(memory: Memory) -> bool:
    return memory.quality_score is not None or memory.priority_score is not None


def apply_working_memory_pipeline(
    candidates: Sequence[Memory],
    limit: int,
    now: float | None = None,
    pinned: Sequence[Memory] | None = None,
    pin_threshold: int | None = None,
    weights: PriorityWeights | None = None,
) -> list[Memory]:
    """Filter, pin, rank and truncate candidate memories.

    Args:
        candidates: Memories to rank, typically newest first from storage.
        limit: Maximum number of memories to return.
        now: Evaluation time in epoch seconds (defaults to the current time).
        pinned: Separately fetched pinned memories; merged with any pinned
            candidates and placed first.
        pin_threshold: Correction count that pins a memory.
        weights: Priority weights for memories without a stored score.

    Returns:
        Pinned memories first, then the best-ranked rest, at most ``limit``.
    """
    now = now if now is not None else time.time()
    if limit <= 0:
        return []

    pinned = list(pinned or [])
    total_before = len(candidates) + len(pinned)

    valid = [m for m in candidates if is_valid_at(m.valid_from, m.valid_until, now)]
    valid_pinned = [m for m in pinned if is_valid_at(m.valid_from, m.valid_until, now)]

    removed = total_before - len(valid) - len(valid_pinned)
    if total_before and removed / total_before > settings.working_memory.validity_log_ratio:
        logger.info(
            f"Validity filter removed {removed}/{total_before} candidates ({removed / total_before * 100:.1f}%)"
        )

    # Pinned first, deduplicated by id
    pinned_by_id: dict[int, Memory] = {}
    for memory in [*valid_pinned, *valid]:
        if memory.id not in pinned_by_id and is_pinned(memory, pin_threshold):
            pinned_by_id[memory.id] = memory

    def priority(memory: Memory) -> float:
        if memory.priority_score is not None:
            return memory.priority_score
        return compute_priority_score(memory, now, weights)

    pinned_ranked = sorted(pinned_by_id.values(), key=priority, reverse=True)

    seen: set[int] = set(pinned_by_id)
    rest: list[Memory] = []
    for memory in valid:
        if memory.id not in seen:
            seen.add(memory.id)
            rest.append(memory)

    if rest and not any(_has_quality_signal(m) for m in rest):
        logger.warning(f"All {len(rest)} candidates lack a quality score, falling back to recency order")
        rest.sort(key=lambda m: m.created_at, reverse=True)
    else:
        rest.sort(key=priority, reverse=True)

    result = [*pinned_ranked, *rest][:limit]
    if not result and total_before:
        logger.warning(f"Working-memory pipeline returned 0 memories from {total_before} candidates")
    return result
