"""
Retention analysis.

Scores each memory for long-term value and sorts it into a tier:

    effective = quality * recency * access_boost
    recency = 1 / (1 + decay_rate * age_days)
    access_boost = min(1 + access_weight * access_count, max_access_boost)

Tiers: ``keep`` (≥ 0.3), ``warn`` (≥ 0.15), ``delete`` (below). Pinned
memories are always ``keep``. This is advisory: nothing here deletes.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any

from ..models.memory import Memory
from ..models.validators import RetentionTier
from .working_memory import is_pinned

_DAY = 86400.0


@dataclass(frozen=True, slots=True)
class RetentionConfig:
    decay_rate: float = 0.01
    access_weight: float = 0.1
    max_access_boost: float = 2.0
    keep_threshold: float = 0.3
    delete_threshold: float = 0.15
    default_quality: float = 0.5


@dataclass(frozen=True, slots=True)
class EffectiveScore:
    memory_id: int
    quality_score: float
    access_count: int
    age_days: float
    recency_factor: float
    access_boost: float
    effective_score: float
    tier: RetentionTier
    pinned: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "memory_id": self.memory_id,
            "quality_score": round(self.quality_score, 3),
            "access_count": self.access_count,
            "age_days": round(self.age_days),
            "recency_factor": round(self.recency_factor, 3),
            "access_boost": round(self.access_boost, 2),
            "effective_score": round(self.effective_score, 3),
            "tier": self.tier,
            "pinned": self.pinned,
        }


@dataclass
class RetentionAnalysis:
    keep: list[EffectiveScore] = field(default_factory=list)
    warn: list[EffectiveScore] = field(default_factory=list)
    delete: list[EffectiveScore] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.keep) + len(self.warn) + len(self.delete)

    def stats(self) -> dict[str, Any]:
        everything = [*self.keep, *self.warn, *self.delete]
        if not everything:
            return {"total": 0, "keep": 0, "warn": 0, "delete": 0, "avg_effective_score": 0.0}
        return {
            "total": self.total,
            "keep": len(self.keep),
            "warn": len(self.warn),
            "delete": len(self.delete),
            "avg_effective_score": round(sum(s.effective_score for s in everything) / len(everything), 3),
        }


def calculate_recency_factor(age_days: float, decay_rate: float) -> float:
    return 1.0 / (1.0 + decay_rate * max(age_days, 0.0))


def calculate_access_boost(access_count: int, access_weight: float, max_boost: float) -> float:
    return min(1.0 + access_weight * access_count, max_boost)


def calculate_effective_score(
    memory: Memory,
    now: float | None = None,
    config: RetentionConfig | None = None,
    pin_threshold: int | None = None,
) -> EffectiveScore:
    cfg = config or RetentionConfig()
    now = now if now is not None else time.time()

    age_days = max(0.0, (now - memory.created_at) / _DAY)
    quality = memory.quality_score if memory.quality_score is not None else cfg.default_quality
    recency = calculate_recency_factor(age_days, cfg.decay_rate)
    boost = calculate_access_boost(memory.access_count, cfg.access_weight, cfg.max_access_boost)
    effective = quality * recency * boost

    pinned = is_pinned(memory, pin_threshold)
    tier: RetentionTier
    if pinned or effective >= cfg.keep_threshold:
        tier = "keep"
    elif effective >= cfg.delete_threshold:
        tier = "warn"
    else:
        tier = "delete"

    return EffectiveScore(
        memory_id=memory.id,
        quality_score=quality,
        access_count=memory.access_count,
        age_days=age_days,
        recency_factor=recency,
        access_boost=boost,
        effective_score=effective,
        tier=tier,
        pinned=pinned,
    )


def analyze_retention(
    memories: list[Memory],
    now: float | None = None,
    config: RetentionConfig | None = None,
    pin_threshold: int | None = None,
) -> RetentionAnalysis:
    """Tier every memory; delete/warn lists are lowest score first, keep is highest first."""
    now = now if now is not None else time.time()
    analysis = RetentionAnalysis()
    for memory in memories:
        score = calculate_effective_score(memory, now, config, pin_threshold)
        getattr(analysis, score.tier).append(score)

    analysis.keep.sort(key=lambda s: s.effective_score, reverse=True)
    analysis.warn.sort(key=lambda s: s.effective_score)
    analysis.delete.sort(key=lambda s: s.effective_score)
    return analysis
