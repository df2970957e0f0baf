"""Embedding contracts, validation and similarity helpers.

The engine never computes embeddings itself; an ``EmbeddingProvider`` is
injected. Vectors crossing the write boundary are validated: a wrong dimension
or a non-finite component is a hard error, because a silently corrupted vector
poisons every later similarity query.
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from typing import Protocol, runtime_checkable

import numpy as np
from numpy.typing import NDArray


class EmbeddingValidationError(ValueError):
    """An embedding has the wrong dimension or non-finite values."""


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Async batch embedding contract."""

    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Return one vector per input text, in order."""


def validate_embedding(embedding: Sequence[float], expected_dim: int | None = None) -> list[float]:
    """Check an embedding and return it as a plain float list.

    Raises:
        EmbeddingValidationError: Empty vector, dimension mismatch, or NaN/inf components.
    """
    if len(embedding) == 0:
        raise EmbeddingValidationError("Embedding is empty")
    if expected_dim is not None and len(embedding) != expected_dim:
        raise EmbeddingValidationError(f"Embedding dimension mismatch: expected {expected_dim}, got {len(embedding)}")
    values = [float(x) for x in embedding]
    bad = [i for i, x in enumerate(values) if not math.isfinite(x)]
    if bad:
        raise EmbeddingValidationError(
            f"Embedding has {len(bad)} non-finite value(s), first at index {bad[0]}"
        )
    return values


def validate_embeddings(embeddings: Sequence[Sequence[float]], expected_dim: int | None = None) -> list[list[float]]:
    """Validate a batch; all vectors must share one dimension."""
    validated: list[list[float]] = []
    for embedding in embeddings:
        dim = expected_dim if expected_dim is not None else (len(validated[0]) if validated else None)
        validated.append(validate_embedding(embedding, dim))
    return validated


# ---------------------------------------------------------------------------
# Similarity
# ---------------------------------------------------------------------------


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity between two vectors; 0.0 if either has zero magnitude."""
    if len(a) != len(b):
        raise ValueError(f"Vector dimension mismatch: {len(a)} vs {len(b)}")
    dot = sum(x * y for x, y in zip(a, b))
    mag_a = math.sqrt(sum(x * x for x in a))
    mag_b = math.sqrt(sum(y * y for y in b))
    if mag_a == 0.0 or mag_b == 0.0:
        return 0.0
    return dot / (mag_a * mag_b)


def normalize_rows(matrix: NDArray) -> NDArray:
    """L2-normalise each row; zero rows stay zero."""
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms = np.where(norms == 0, 1.0, norms)
    return matrix / norms


def cosine_similarity_matrix(vectors: Sequence[Sequence[float]]) -> NDArray[np.float64]:
    """Pairwise cosine similarity for a batch of equal-length vectors."""
    if len(vectors) == 0:
        return np.empty((0, 0))
    matrix = normalize_rows(np.asarray(vectors, dtype=np.float64))
    return matrix @ matrix.T


def cosine_similarities(query: Sequence[float], vectors: Sequence[Sequence[float]]) -> NDArray[np.float64]:
    """Similarity of ``query`` against each row of ``vectors``."""
    if len(vectors) == 0:
        return np.empty(0)
    q = np.asarray(query, dtype=np.float64)
    if q.shape[0] != len(vectors[0]):
        raise ValueError(f"Vector dimension mismatch: {q.shape[0]} vs {len(vectors[0])}")
    norm = np.linalg.norm(q)
    if norm == 0:
        return np.zeros(len(vectors))
    return normalize_rows(np.asarray(vectors, dtype=np.float64)) @ (q / norm)


def mean_embedding(vectors: Sequence[Sequence[float]]) -> list[float]:
    """Unit-length mean of several vectors (used when no provider is available)."""
    mean = np.mean(np.asarray(vectors, dtype=np.float64), axis=0)
    norm = np.linalg.norm(mean)
    if norm > 0:
        mean = mean / norm
    return [float(x) for x in mean]
