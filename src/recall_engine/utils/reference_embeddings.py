"""Reference embedding cache for embedding-based classification.

Named sets of reference phrases are registered up front; their embeddings are
computed lazily on first query and kept for the life of the process. Lookups
never raise: an embedding failure or dimension mismatch scores 0.0.
"""

from __future__ import annotations

import logging

from .embeddings import EmbeddingProvider, cosine_similarity, validate_embeddings

logger = logging.getLogger(__name__)

INVARIANT_REFERENCE_SET = "invariant"

INVARIANT_REFERENCE_PHRASES: list[str] = [
    "Always run the full test suite before committing changes.",
    "Never commit secrets or API keys to the repository.",
    "You must use the staging database when running migrations.",
    "Do not modify generated files by hand.",
    "Critical: this rule must never be broken.",
    "Under no circumstances deploy on Friday afternoon.",
    "Every public function must have type annotations.",
    "It is forbidden to push directly to the main branch.",
    "This constraint must always hold for every request.",
    "Make sure to never call this API without authentication.",
]


class ReferenceEmbeddingCache:
    """Lazily embedded reference phrase sets."""

    def __init__(self, provider: EmbeddingProvider) -> None:
        self._provider = provider
        self._phrases: dict[str, list[str]] = {}
        self._embeddings: dict[str, list[list[float]]] = {}

    def register(self, name: str, phrases: list[str]) -> None:
        """Register (or replace) a set; embeddings are computed on first use."""
        self._phrases[name] = list(phrases)
        self._embeddings.pop(name, None)

    def is_registered(self, name: str) -> bool:
        return name in self._phrases

    async def get_embeddings(self, name: str) -> list[list[float]]:
        """Embeddings for a set, computing them on first call.

        Raises:
            KeyError: The set was never registered.
        """
        if name not in self._phrases:
            raise KeyError(f"Reference set '{name}' not registered")
        if name not in self._embeddings:
            vectors = await self._provider.embed(self._phrases[name])
            self._embeddings[name] = validate_embeddings(vectors)
        return self._embeddings[name]

    async def best_match(self, embedding: list[float], name: str) -> tuple[str | None, float]:
        """Closest reference phrase and its similarity; ``(None, 0.0)`` on any failure."""
        try:
            references = await self.get_embeddings(name)
        except Exception as e:
            logger.warning(f"Reference embeddings for '{name}' unavailable (non-fatal): {e}")
            return None, 0.0

        best_phrase, best_sim = None, 0.0
        for phrase, ref in zip(self._phrases[name], references):
            if len(ref) != len(embedding):
                continue
            sim = cosine_similarity(embedding, ref)
            if sim > best_sim:
                best_phrase, best_sim = phrase, sim
        return best_phrase, best_sim

    def clear(self) -> None:
        """Drop computed embeddings but keep the registered phrases."""
        self._embeddings.clear()

    def reset(self) -> None:
        self._phrases.clear()
        self._embeddings.clear()


def invariant_reference_cache(provider: EmbeddingProvider) -> ReferenceEmbeddingCache:
    """Cache pre-registered with the invariant reference phrases."""
    cache = ReferenceEmbeddingCache(provider)
    cache.register(INVARIANT_REFERENCE_SET, INVARIANT_REFERENCE_PHRASES)
    return cache
