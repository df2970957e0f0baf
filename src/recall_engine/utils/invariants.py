"""
Invariant detection for memories.

An invariant is a rule phrased as an imperative or prohibition ("always ...",
"never ...", "must ...", "do not ...", "critical: ..."). Invariant memories are
pinned in working memory regardless of score.

Detection is data-driven: ``INVARIANT_PATTERNS`` maps a language code to its
regex rules. When no rule fires, an optional embedding check compares the
memory against reference invariant phrases. That fallback is non-fatal: any
failure resolves to "no match".

Results are tagged (``RegexMatch | EmbeddingMatch | NoMatch``) so callers and
tests can see why something was, or was not, flagged.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from ..config import settings
from .reference_embeddings import INVARIANT_REFERENCE_SET, ReferenceEmbeddingCache

logger = logging.getLogger(__name__)

# Observations are narrative; every other type (unknown ones included) is checked
INVARIANT_SKIPPED_TYPES = frozenset({"observation"})

INVARIANT_PATTERNS: dict[str, list[str]] = {
    "en": [
        r"\b(?:always|never)\b",
        r"\bmust(?:\s+not)?\b",
        r"\b(?:do\s+not|don'?t|shall\s+not|should\s+never)\b",
        r"\bunder\s+no\s+circumstances\b",
        r"^\s*(?:critical|important|invariant|rule)\s*:",
    ],
    "ru": [
        r"\b(?:всегда|никогда|обязательно|нельзя|запрещено)\b",
        r"\b(?:должен|должна|должно|должны)\b",
        r"\bни\s+в\s+коем\s+случае\b",
        r"^\s*(?:критично|важно)\s*:",
    ],
    "de": [
        r"\b(?:immer|niemals|nie)\b",
        r"\b(?:muss|müssen)\b",
        r"\b(?:darf|dürfen)\s+(?:\w+\s+)?nicht\b",
        r"\bauf\s+keinen\s+fall\b",
        r"^\s*(?:kritisch|wichtig)\s*:",
    ],
    "fr": [
        r"\b(?:toujours|jamais)\b",
        r"\b(?:doit|doivent|il\s+faut)\b",
        r"\bne\s+(?:\w+\s+)?pas\b",
        r"\binterdit\b",
        r"^\s*(?:critique|important)\s*:",
    ],
    "es": [
        r"\b(?:siempre|nunca|jamás)\b",
        r"\b(?:debe|deben)\b",
        r"\bno\s+(?:debe|deben|hay\s+que)\b",
        r"\bprohibido\b",
        r"^\s*(?:crítico|importante)\s*:",
    ],
    "zh": [
        r"(?:总是|始终|永远|必须|务必)",
        r"(?:绝不|不要|不得|禁止|严禁|切勿)",
        r"^\s*(?:关键|重要)\s*[:：]",
    ],
    "ja": [
        r"(?:必ず|常に|絶対に|決して)",
        r"(?:してはいけない|してはならない|しないでください|禁止|べからず)",
        r"^\s*(?:重要|注意)\s*[:：]",
    ],
    "ko": [
        r"(?:항상|절대|반드시)",
        r"(?:하지\s*마|하면\s*안\s*된다|금지)",
        r"^\s*(?:중요|주의)\s*[:：]",
    ],
}

_COMPILED: dict[str, list[re.Pattern[str]]] = {
    lang: [re.compile(p, re.IGNORECASE | re.MULTILINE) for p in patterns]
    for lang, patterns in INVARIANT_PATTERNS.items()
}


@dataclass(frozen=True, slots=True)
class RegexMatch:
    language: str
    pattern: str
    matched_text: str


@dataclass(frozen=True, slots=True)
class EmbeddingMatch:
    similarity: float
    reference: str | None = None


@dataclass(frozen=True, slots=True)
class NoMatch:
    similarity: float | None = None


InvariantDetection = RegexMatch | EmbeddingMatch | NoMatch


def is_invariant_match(result: InvariantDetection) -> bool:
    return not isinstance(result, NoMatch)


def detect_invariant(content: str) -> RegexMatch | NoMatch:
    """First regex rule (in table order) that matches ``content``."""
    if not content:
        return NoMatch()
    for language, patterns in _COMPILED.items():
        for pattern in patterns:
            match = pattern.search(content)
            if match:
                return RegexMatch(language=language, pattern=pattern.pattern, matched_text=match.group(0))
    return NoMatch()


async def detect_invariant_with_embedding(
    content: str,
    embedding: list[float] | None,
    cache: ReferenceEmbeddingCache | None,
    threshold: float | None = None,
) -> InvariantDetection:
    """Regex rules first, then similarity to the reference invariant phrases."""
    regex_result = detect_invariant(content)
    if isinstance(regex_result, RegexMatch):
        return regex_result
    if not embedding or cache is None:
        return regex_result

    threshold = threshold if threshold is not None else settings.working_memory.invariant_similarity_threshold
    try:
        reference, similarity = await cache.best_match(embedding, INVARIANT_REFERENCE_SET)
    except Exception as e:
        logger.warning(f"Embedding invariant check failed (non-fatal): {e}")
        return NoMatch()

    if similarity >= threshold:
        return EmbeddingMatch(similarity=similarity, reference=reference)
    return NoMatch(similarity=similarity)


async def detect_memory_invariant(
    content: str,
    memory_type: str | None,
    embedding: list[float] | None = None,
    cache: ReferenceEmbeddingCache | None = None,
    threshold: float | None = None,
) -> InvariantDetection:
    """Invariant detection gated on memory type."""
    if memory_type in INVARIANT_SKIPPED_TYPES:
        return NoMatch()
    return await detect_invariant_with_embedding(content, embedding, cache, threshold)
