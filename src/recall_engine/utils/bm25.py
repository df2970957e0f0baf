"""
BM25 inverted index.

Standard Okapi BM25 with fixed ``k1=1.3`` and ``b=0.75`` and the smoothed IDF
``ln((N - n + 0.5) / (n + 0.5) + 1)``, which never goes negative for very
common terms.

Two tokenizer modes share one index structure:
- ``code``: identifier-aware tokens, AST enrichment when symbol metadata is
  present, and lowercased raw content retained for the exact-match boost.
- ``docs``: stemmed natural-language tokens; no raw content is kept.

The average document length is maintained from a running total so add/remove
stay incremental.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from typing import Literal

from pydantic import BaseModel, model_validator

from ..models.documents import IndexedUnit
from ..models.results import ScoredDoc
from .tokenizers import extract_identifiers, tokenize_code, tokenize_code_with_ast, tokenize_docs

logger = logging.getLogger(__name__)

K1 = 1.3
B = 0.75

TokenizerKind = Literal["code", "docs"]

_IDENTIFIER_QUERY = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")

# Exact-match boost: score * 2 for substring containment, * 3 at word boundaries, then + 5
CONTAINS_BOOST = 2.0
WORD_BOUNDARY_BOOST = 3.0
EXACT_MATCH_BONUS = 5.0


def is_identifier_like(query: str) -> bool:
    """Single identifier-shaped word longer than two characters."""
    stripped = query.strip()
    return bool(_IDENTIFIER_QUERY.match(stripped)) and len(stripped) > 2 and " " not in query


def tokenize_unit(unit: IndexedUnit, tokenizer: TokenizerKind) -> list[str]:
    """Tokens used to index one unit."""
    if tokenizer == "docs":
        return tokenize_docs(unit.content)
    if unit.symbol_name or unit.signature:
        return tokenize_code_with_ast(unit.content, extract_identifiers(unit.signature), unit.symbol_name)
    return tokenize_code(unit.content)


def tokenize_query(query: str, tokenizer: TokenizerKind) -> list[str]:
    return tokenize_code(query) if tokenizer == "code" else tokenize_docs(query)


# ---------------------------------------------------------------------------
# Serialized form
# ---------------------------------------------------------------------------


class SerializedBM25Index(BaseModel):
    """JSON blob persisted per corpus. Entries are lists of pairs so int keys survive JSON."""

    tokenizer: TokenizerKind
    keep_raw_content: bool
    inverted_index: list[tuple[str, list[tuple[int, int]]]]
    doc_lengths: list[tuple[int, int]]
    raw_content: list[tuple[int, str]]
    avg_doc_length: float
    total_docs: int

    @model_validator(mode="after")
    def _check_consistency(self):
        if self.total_docs != len(self.doc_lengths):
            raise ValueError(f"total_docs {self.total_docs} does not match {len(self.doc_lengths)} doc lengths")
        if self.total_docs:
            expected = sum(length for _, length in self.doc_lengths) / self.total_docs
            if not math.isclose(self.avg_doc_length, expected, rel_tol=1e-9, abs_tol=1e-9):
                raise ValueError(f"avg_doc_length {self.avg_doc_length} does not match {expected}")
        return self


# ---------------------------------------------------------------------------
# Index
# ---------------------------------------------------------------------------


@dataclass
class BM25Index:
    """Term → (doc id → term frequency) with per-document lengths."""

    tokenizer: TokenizerKind = "code"
    keep_raw_content: bool = True
    inverted_index: dict[str, dict[int, int]] = field(default_factory=dict)
    doc_lengths: dict[int, int] = field(default_factory=dict)
    raw_content: dict[int, str] = field(default_factory=dict)
    total_length: int = 0

    @classmethod
    def empty(cls, tokenizer: TokenizerKind = "code") -> BM25Index:
        """Empty index; raw content is retained only for the code tokenizer."""
        return cls(tokenizer=tokenizer, keep_raw_content=tokenizer == "code")

    @classmethod
    def build(cls, units: list[IndexedUnit], tokenizer: TokenizerKind = "code") -> BM25Index:
        index = cls.empty(tokenizer)
        for unit in units:
            index.add(unit)
        return index

    @property
    def total_docs(self) -> int:
        return len(self.doc_lengths)

    @property
    def avg_doc_length(self) -> float:
        return self.total_length / self.total_docs if self.total_docs else 0.0

    def __contains__(self, doc_id: int) -> bool:
        return doc_id in self.doc_lengths

    # -- mutation -----------------------------------------------------------

    def add(self, unit: IndexedUnit) -> list[str]:
        """Index one unit, replacing any previous version with the same id.

        Returns the tokens that were indexed.
        """
        if unit.id in self.doc_lengths:
            self.remove(unit.id)

        tokens = tokenize_unit(unit, self.tokenizer)
        self.doc_lengths[unit.id] = len(tokens)
        self.total_length += len(tokens)
        if self.keep_raw_content:
            self.raw_content[unit.id] = unit.content.lower()

        term_freq: dict[str, int] = {}
        for token in tokens:
            term_freq[token] = term_freq.get(token, 0) + 1
        for term, freq in term_freq.items():
            self.inverted_index.setdefault(term, {})[unit.id] = freq
        return tokens

    def remove(self, doc_id: int) -> bool:
        """Drop a document; unknown ids are a no-op."""
        length = self.doc_lengths.pop(doc_id, None)
        if length is None:
            return False
        self.total_length -= length
        self.raw_content.pop(doc_id, None)

        empty_terms = []
        for term, postings in self.inverted_index.items():
            if postings.pop(doc_id, None) is not None and not postings:
                empty_terms.append(term)
        for term in empty_terms:
            del self.inverted_index[term]
        return True

    # -- scoring ------------------------------------------------------------

    def idf(self, term: str) -> float:
        docs_with_term = len(self.inverted_index.get(term, ()))
        if docs_with_term == 0:
            return 0.0
        return math.log((self.total_docs - docs_with_term + 0.5) / (docs_with_term + 0.5) + 1)

    def search(self, query: str, limit: int = 10, exact_query: str | None = None) -> list[ScoredDoc]:
        """Score documents for ``query``, best first.

        Identifier-like queries against a code index also get the exact-match
        boost over the retained raw content. ``exact_query`` names the text to
        check for that boost when ``query`` has been rewritten (e.g. expanded
        with flatcase segments); it defaults to ``query``.
        """
        scores: dict[int, float] = {}
        avg_length = self.avg_doc_length or 1.0

        for token in tokenize_query(query, self.tokenizer):
            postings = self.inverted_index.get(token)
            if not postings:
                continue
            term_idf = self.idf(token)
            for doc_id, tf in postings.items():
                doc_length = self.doc_lengths.get(doc_id, 0)
                numerator = tf * (K1 + 1)
                denominator = tf + K1 * (1 - B + B * (doc_length / avg_length))
                scores[doc_id] = scores.get(doc_id, 0.0) + term_idf * (numerator / denominator)

        needle = exact_query if exact_query is not None else query
        if self.tokenizer == "code" and self.raw_content and is_identifier_like(needle):
            self._apply_exact_match_boost(needle.strip().lower(), scores)

        ranked = sorted(scores.items(), key=lambda item: item[1], reverse=True)
        return [ScoredDoc(doc_id, score) for doc_id, score in ranked[:limit]]

    def _apply_exact_match_boost(self, needle: str, scores: dict[int, float]) -> None:
        word_boundary = re.compile(rf"\b{re.escape(needle)}\b")
        for doc_id, content in self.raw_content.items():
            if needle not in content:
                continue
            boost = WORD_BOUNDARY_BOOST if word_boundary.search(content) else CONTAINS_BOOST
            scores[doc_id] = scores.get(doc_id, 0.0) * boost + EXACT_MATCH_BONUS

    # -- serialization ------------------------------------------------------

    def serialize(self) -> str:
        return SerializedBM25Index(
            tokenizer=self.tokenizer,
            keep_raw_content=self.keep_raw_content,
            inverted_index=[(term, list(postings.items())) for term, postings in self.inverted_index.items()],
            doc_lengths=list(self.doc_lengths.items()),
            raw_content=list(self.raw_content.items()),
            avg_doc_length=self.avg_doc_length,
            total_docs=self.total_docs,
        ).model_dump_json()

    @classmethod
    def deserialize(cls, blob: str | bytes) -> BM25Index:
        """Rebuild an index from :meth:`serialize` output.

        Raises:
            ValueError: The blob is not valid JSON or is internally inconsistent.
        """
        data = SerializedBM25Index.model_validate_json(blob)
        doc_lengths = dict(data.doc_lengths)
        return cls(
            tokenizer=data.tokenizer,
            keep_raw_content=data.keep_raw_content,
            inverted_index={term: dict(postings) for term, postings in data.inverted_index},
            doc_lengths=doc_lengths,
            raw_content=dict(data.raw_content),
            total_length=sum(doc_lengths.values()),
        )
