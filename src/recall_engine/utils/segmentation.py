"""
Flatcase identifier segmentation.

Identifiers such as ``getusername`` carry no case or separator boundaries, so
the code tokenizer cannot split them. This module recovers the parts with a
Norvig-style dynamic program over token frequencies learnt from the indexed
code corpus:

    best[i] = max over j of best[j] + score(word[j:i])

Known tokens score ``log10(freq / total)`` plus a length bonus (longer known
tokens are preferred, up to 8 characters; beyond that a penalty discourages
keeping compounds whole). Unknown tokens get a small negative constant that is
penalised further for short pieces. Tokens missing from the corpus fall back
to a built-in dictionary of common programming words, scaled to corpus size.

Results are cached in an LRU keyed by ``(word, corpus_size)`` so a growing
corpus naturally invalidates stale splits.
"""

from __future__ import annotations

import logging
import math
import re
from collections import Counter, OrderedDict
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from ..config import settings
from .bpe import BPEVocab, segment_with_bpe
from .tokenizers import tokenize_code

logger = logging.getLogger(__name__)

_FLATCASE = re.compile(r"^[a-z]{4,}$")

# Tokens shorter than this are left alone by tokenize_code_with_segmentation
MIN_SEGMENTABLE_LENGTH = 6

# Length bonus applies up to this many characters; longer tokens are penalised
_BONUS_LENGTH_CAP = 8
_LONG_TOKEN_PENALTY = 0.15

# ---------------------------------------------------------------------------
# Built-in frequency dictionary
# ---------------------------------------------------------------------------

# Approximate occurrences per 10,000 identifier tokens in typical source code.
BUILTIN_FREQUENCIES: dict[str, int] = {
    # verbs
    "get": 120, "set": 90, "add": 45, "remove": 30, "delete": 25, "update": 35,
    "create": 40, "make": 15, "build": 25, "init": 30, "load": 30, "save": 25,
    "read": 35, "write": 30, "open": 20, "close": 20, "parse": 25, "format": 20,
    "find": 25, "search": 20, "check": 25, "validate": 15, "handle": 25,
    "process": 20, "run": 30, "start": 20, "stop": 15, "send": 20, "fetch": 20,
    "render": 20, "compute": 12, "convert": 12, "apply": 15, "reset": 12,
    "clear": 12, "sort": 12, "filter": 15, "map": 20, "merge": 10, "split": 12,
    "join": 10, "push": 12, "pop": 10, "emit": 8, "call": 15, "use": 25,
    "has": 30, "can": 10, "should": 8, "new": 25, "copy": 10, "print": 10,
    "log": 20, "test": 25, "register": 10, "resolve": 10, "execute": 10,
    "dispatch": 6, "subscribe": 6, "listen": 6, "encode": 8, "decode": 8,
    "to": 40, "is": 45, "on": 25, "of": 20, "by": 15, "in": 20, "at": 10,
    "for": 15, "from": 15, "with": 12, "all": 15, "up": 8, "as": 10,
    # nouns
    "user": 60, "name": 70, "id": 80, "data": 60, "value": 50, "key": 45,
    "list": 40, "item": 35, "items": 20, "file": 45, "path": 40, "dir": 15,
    "type": 50, "config": 35, "options": 25, "option": 15, "error": 45,
    "result": 35, "response": 25, "request": 25, "index": 30, "count": 25,
    "size": 25, "length": 20, "time": 25, "date": 15, "string": 25, "text": 20,
    "number": 15, "node": 25, "tree": 10, "event": 25, "handler": 20,
    "callback": 12, "state": 25, "context": 20, "message": 20, "service": 20,
    "manager": 12, "client": 20, "server": 15, "url": 15, "api": 20,
    "query": 20, "db": 15, "table": 15, "row": 10, "column": 10, "field": 15,
    "model": 20, "view": 15, "page": 15, "token": 15, "cache": 15, "buffer": 12,
    "stream": 12, "input": 15, "output": 15, "args": 15, "params": 15,
    "info": 15, "status": 15, "code": 20, "content": 15, "source": 15,
    "target": 12, "parent": 12, "child": 10, "children": 10, "root": 10,
    "session": 12, "account": 10, "auth": 12, "password": 8, "email": 8,
    "memory": 12, "storage": 10, "store": 12, "queue": 8, "task": 12, "job": 8,
    "array": 15, "object": 15, "module": 12, "class": 15,
    "method": 10, "function": 12, "default": 15, "max": 15, "min": 15,
    "total": 10, "first": 10, "last": 10, "next": 15, "prev": 8, "current": 12,
    "old": 8, "io": 8, "ui": 8, "os": 8, "fs": 8,
    "http": 12, "json": 12, "xml": 6, "html": 8, "sql": 8, "env": 10,
    "vector": 8, "embedding": 6, "score": 10, "rank": 6, "limit": 10,
    "offset": 8, "batch": 8, "line": 15, "char": 8, "word": 8, "version": 10,
}  # fmt: skip

_BUILTIN_SCALE = 10_000


def builtin_frequency(token: str, total_tokens: int) -> float:
    """Frequency of ``token`` from the built-in dictionary, scaled to a corpus of ``total_tokens``."""
    weight = BUILTIN_FREQUENCIES.get(token)
    if not weight:
        return 0.0
    return weight * max(total_tokens, 1) / _BUILTIN_SCALE


# ---------------------------------------------------------------------------
# Token frequency table
# ---------------------------------------------------------------------------


class TokenFrequencyTable:
    """Token → occurrence counter fed by code indexing.

    Drives flatcase segmentation and BPE training.
    """

    def __init__(self, counts: dict[str, int] | None = None) -> None:
        self._counts: Counter[str] = Counter(counts or {})
        self._total = sum(self._counts.values())

    def record(self, tokens: Iterable[str]) -> None:
        for token in tokens:
            self._counts[token] += 1
            self._total += 1

    def record_counts(self, counts: Mapping[str, int]) -> None:
        """Add pre-aggregated counts (e.g. term totals from a loaded index)."""
        for token, count in counts.items():
            if count > 0:
                self._counts[token] += count
                self._total += count

    def frequency(self, token: str) -> int:
        return self._counts.get(token, 0)

    @property
    def total(self) -> int:
        return self._total

    @property
    def unique_tokens(self) -> int:
        return len(self._counts)

    def top(self, n: int) -> list[tuple[str, int]]:
        return self._counts.most_common(n)

    def stats(self) -> dict[str, int]:
        return {"unique_tokens": self.unique_tokens, "total_occurrences": self._total}

    def clear(self) -> None:
        self._counts.clear()
        self._total = 0

    def to_dict(self) -> dict[str, int]:
        return dict(self._counts)


# ---------------------------------------------------------------------------
# Dynamic-programming segmentation
# ---------------------------------------------------------------------------


def is_flatcase(word: str) -> bool:
    """Lowercase letters only, at least 4 characters."""
    return bool(_FLATCASE.match(word))


def _length_bonus(length: int) -> float:
    if length <= _BONUS_LENGTH_CAP:
        return math.sqrt(length) * 0.5
    return math.sqrt(_BONUS_LENGTH_CAP) * 0.5 - (length - _BONUS_LENGTH_CAP) * _LONG_TOKEN_PENALTY


def segment_flatcase(
    word: str,
    get_frequency: Callable[[str], float],
    total_tokens: int,
    min_token_length: int = 2,
    max_token_length: int = 15,
    use_builtin: bool = True,
) -> list[str]:
    """Find the highest-scoring split of ``word``.

    Args:
        word: Flatcase identifier, e.g. ``"getusername"``.
        get_frequency: Corpus frequency lookup (0 for unseen tokens).
        total_tokens: Total token occurrences in the corpus.
        min_token_length: Shortest allowed piece.
        max_token_length: Longest allowed piece.
        use_builtin: Consult the built-in dictionary for tokens the corpus lacks.

    Returns:
        The pieces in order, e.g. ``["get", "user", "name"]``. A word no longer
        than ``min_token_length`` is returned whole.
    """
    n = len(word)
    if n <= min_token_length:
        return [word]

    total = max(total_tokens, 1)
    unknown_score = math.log10(0.1 / total)

    best_score = [-math.inf] * (n + 1)
    best_split = [0] * (n + 1)
    best_score[0] = 0.0

    for i in range(1, n + 1):
        for j in range(max(0, i - max_token_length), i):
            token_len = i - j
            if token_len < min_token_length or best_score[j] == -math.inf:
                continue

            token = word[j:i]
            freq = get_frequency(token)
            if freq <= 0 and use_builtin:
                freq = builtin_frequency(token, total)

            if freq > 0:
                token_score = math.log10(freq / total) + _length_bonus(token_len)
            else:
                token_score = unknown_score - (max_token_length - token_len) * 0.1

            candidate = best_score[j] + token_score
            if candidate > best_score[i]:
                best_score[i] = candidate
                best_split[i] = j

    if best_score[n] == -math.inf:
        return [word]

    tokens: list[str] = []
    pos = n
    while pos > 0:
        split = best_split[pos]
        tokens.append(word[split:pos])
        pos = split
    tokens.reverse()
    return tokens


def is_meaningful_split(segments: list[str], min_token_length: int = 2) -> bool:
    return len(segments) > 1 and all(len(s) >= min_token_length for s in segments)


class FlatcaseSegmenter:
    """Cached flatcase segmentation with an optional BPE fallback.

    The DP result wins when it yields a meaningful split; otherwise, when BPE
    is enabled, a trained vocabulary (if attached) gets a chance at the same
    word.
    """

    def __init__(
        self,
        frequencies: TokenFrequencyTable | None = None,
        cache_size: int | None = None,
        min_token_length: int | None = None,
        max_token_length: int | None = None,
        bpe_vocab: BPEVocab | None = None,
        bpe_enabled: bool | None = None,
    ) -> None:
        config = settings.segmentation
        self.frequencies = frequencies if frequencies is not None else TokenFrequencyTable()
        self.cache_size = cache_size if cache_size is not None else config.cache_size
        self.min_token_length = min_token_length if min_token_length is not None else config.min_token_length
        self.max_token_length = max_token_length if max_token_length is not None else config.max_token_length
        self.bpe_enabled = bpe_enabled if bpe_enabled is not None else config.bpe_enabled
        self._bpe_vocab = bpe_vocab
        self._cache: OrderedDict[tuple[str, int], list[str]] = OrderedDict()
        self._hits = 0
        self._misses = 0

    @property
    def total_tokens(self) -> int:
        return self.frequencies.total

    @property
    def bpe_vocab(self) -> BPEVocab | None:
        return self._bpe_vocab

    @bpe_vocab.setter
    def bpe_vocab(self, vocab: BPEVocab | None) -> None:
        self._bpe_vocab = vocab
        self.clear_cache()

    def segment(self, word: str) -> list[str]:
        """Segment one flatcase word; non-flatcase input is returned whole."""
        if not is_flatcase(word):
            return [word]

        key = (word, self.total_tokens)
        cached = self._cache.get(key)
        if cached is not None:
            self._cache.move_to_end(key)
            self._hits += 1
            return list(cached)

        self._misses += 1
        segments = segment_flatcase(
            word,
            self.frequencies.frequency,
            self.total_tokens,
            min_token_length=self.min_token_length,
            max_token_length=self.max_token_length,
        )
        if (
            self.bpe_enabled
            and self._bpe_vocab is not None
            and not is_meaningful_split(segments, self.min_token_length)
        ):
            bpe_segments = segment_with_bpe(word, self._bpe_vocab)
            if len(bpe_segments) > 1:
                segments = bpe_segments

        if self.cache_size > 0:
            self._cache[key] = segments
            if len(self._cache) > self.cache_size:
                self._cache.popitem(last=False)
        return list(segments)

    def cache_info(self) -> dict[str, Any]:
        return {
            "hits": self._hits,
            "misses": self._misses,
            "size": len(self._cache),
            "capacity": self.cache_size,
        }

    def clear_cache(self) -> None:
        self._cache.clear()


def tokenize_code_with_segmentation(text: str, segmenter: FlatcaseSegmenter | None = None) -> list[str]:
    """Code tokens with flatcase words expanded into their segments.

    A flatcase token of at least six characters is replaced by its segments
    followed by the token itself, when segmentation finds a meaningful split.
    Without a segmenter or corpus statistics this is plain ``tokenize_code``.
    """
    standard = tokenize_code(text)
    if segmenter is None or segmenter.total_tokens == 0:
        return standard

    result: list[str] = []
    seen: set[str] = set()
    for token in standard:
        if token in seen:
            continue
        seen.add(token)

        if is_flatcase(token) and len(token) >= MIN_SEGMENTABLE_LENGTH:
            segments = segmenter.segment(token)
            if is_meaningful_split(segments, segmenter.min_token_length):
                for segment in segments:
                    if segment not in seen:
                        result.append(segment)
                        seen.add(segment)
        result.append(token)

    return result
