"""
Configuration for the recall engine.

Each concern gets its own ``BaseSettings`` class with a dedicated env prefix so
deployments can tune one layer without touching the others:

- RECALL_HYBRID_*           fusion weight and per-corpus similarity thresholds
- RECALL_VECTOR_*           ANN candidate sizing and the brute-force row cap
- RECALL_BM25_*             paginated rebuild batch size
- RECALL_SEGMENT_*          flatcase segmentation cache and BPE training
- RECALL_WORKING_MEMORY_*   pinning, decay, diversity and priority weights
- RECALL_CONSOLIDATION_*    duplicate discovery and merge guards
- RECALL_LLM_*              Anthropic endpoint used for merge synthesis

BM25's k1/b and the RRF constant are fixed in code, not configurable.
"""

from typing import Literal

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class HybridSearchSettings(BaseSettings):
    """Reciprocal Rank Fusion and per-corpus vector thresholds."""

    model_config = SettingsConfigDict(env_prefix="RECALL_HYBRID_", extra="ignore")

    alpha: float = Field(default=0.5, ge=0.0, le=1.0, description="0 = pure BM25, 1 = pure vector")
    code_threshold: float = Field(default=0.25, ge=0.0, le=1.0)
    docs_threshold: float = Field(default=0.2, ge=0.0, le=1.0)
    memory_threshold: float = Field(default=0.3, ge=0.0, le=1.0)
    regex_max_length: int = Field(default=500, ge=1, description="Longer regex filters are ignored")


class VectorSearchSettings(BaseSettings):
    """ANN fast path and brute-force fallback sizing."""

    model_config = SettingsConfigDict(env_prefix="RECALL_VECTOR_", extra="ignore")

    brute_force_max_rows: int = Field(
        default=10_000,
        ge=1,
        description="Corpora larger than this are never brute-force scanned; the query degrades to BM25-only",
    )
    ann_candidate_multiplier: int = Field(default=5, ge=1, description="ANN k = limit * multiplier")


class BM25Settings(BaseSettings):
    """Index rebuild and persistence settings."""

    model_config = SettingsConfigDict(env_prefix="RECALL_BM25_", extra="ignore")

    rebuild_batch_size: int = Field(default=5000, ge=1)
    persist_every: int = Field(
        default=50,
        ge=1,
        description="Re-serialise a corpus index after this many updates or removals; flush() and close() write the rest",
    )


class SegmentationSettings(BaseSettings):
    """Flatcase segmentation and BPE fallback."""

    model_config = SettingsConfigDict(env_prefix="RECALL_SEGMENT_", extra="ignore")

    cache_size: int = Field(default=2000, ge=0)
    min_token_length: int = Field(default=2, ge=1)
    max_token_length: int = Field(default=15, ge=2)
    bpe_enabled: bool = False
    bpe_vocab_size: int = Field(default=5000, ge=1)
    bpe_min_frequency: int = Field(default=2, ge=1)
    bpe_retrain_interval: Literal["hourly", "daily"] = "hourly"
    bpe_min_unique_tokens: int = Field(default=100, ge=1)
    bpe_max_training_tokens: int = Field(default=50_000, ge=1)
    bpe_max_token_repeat: int = Field(default=1000, ge=1)


class WorkingMemorySettings(BaseSettings):
    """Working-memory pipeline: pinning, decay, diversity and priority weights.

    The five priority weights are named and overridable; the defaults sum to 1.0.
    """

    model_config = SettingsConfigDict(env_prefix="RECALL_WORKING_MEMORY_", extra="ignore")

    pin_threshold: int = Field(default=2, ge=1, description="correction_count at which a memory is pinned")
    decay_half_life_hours: float = Field(default=168.0, gt=0.0)
    decay_floor: float = Field(default=0.1, ge=0.0, le=1.0)
    diversity_max_similarity: float = Field(default=0.85, ge=0.0, le=1.0)
    invariant_similarity_threshold: float = Field(default=0.75, ge=0.0, le=1.0)
    validity_log_ratio: float = Field(default=0.1, ge=0.0, le=1.0)

    weight_invariant: float = Field(default=0.30, ge=0.0, le=1.0)
    weight_quality: float = Field(default=0.25, ge=0.0, le=1.0)
    weight_corrections: float = Field(default=0.20, ge=0.0, le=1.0)
    weight_tags: float = Field(default=0.15, ge=0.0, le=1.0)
    weight_access: float = Field(default=0.10, ge=0.0, le=1.0)


class ConsolidationSettings(BaseSettings):
    """Duplicate discovery and merge guards."""

    model_config = SettingsConfigDict(env_prefix="RECALL_CONSOLIDATION_", extra="ignore")

    merge_threshold: float = Field(default=0.85, ge=0.0, le=1.0)
    max_candidates: int = Field(default=50, ge=1)
    use_llm: bool = True
    llm_concurrency: int = Field(default=2, ge=1, description="Merge syntheses in flight at once")
    llm_retry_attempts: int = Field(default=2, ge=1)
    min_memory_age_days: float = Field(default=7.0, ge=0.0, description="Younger memories are never merged")
    min_corpus_size: int = Field(default=20, ge=0, description="Skip the run below this many active memories")


class LLMMergeSettings(BaseSettings):
    """Anthropic Messages API endpoint used to synthesise merged memories."""

    model_config = SettingsConfigDict(env_prefix="RECALL_LLM_", extra="ignore")

    api_key: SecretStr | None = None
    base_url: str = "https://api.anthropic.com"
    model: str = "claude-3-5-haiku-latest"
    max_tokens: int = Field(default=512, ge=1)
    timeout_seconds: float = Field(default=30.0, gt=0.0)

    @model_validator(mode="after")
    def _strip_base_url(self):
        self.base_url = self.base_url.rstrip("/")
        return self


class Settings(BaseSettings):
    """Aggregate settings; each section reads its own env prefix."""

    model_config = SettingsConfigDict(extra="ignore")

    hybrid: HybridSearchSettings = Field(default_factory=HybridSearchSettings)
    vector: VectorSearchSettings = Field(default_factory=VectorSearchSettings)
    bm25: BM25Settings = Field(default_factory=BM25Settings)
    segmentation: SegmentationSettings = Field(default_factory=SegmentationSettings)
    working_memory: WorkingMemorySettings = Field(default_factory=WorkingMemorySettings)
    consolidation: ConsolidationSettings = Field(default_factory=ConsolidationSettings)
    llm: LLMMergeSettings = Field(default_factory=LLMMergeSettings)


settings = Settings()
