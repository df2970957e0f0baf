"""
Byte Pair Encoding for code tokens.

Learns a subword vocabulary from indexed-token frequencies and offers it as a
fallback segmenter for flatcase identifiers the DP segmenter cannot split.

Training starts from already-split code tokens (``get``, ``user``, ``name``)
rather than raw source, so merges converge on meaningful word parts instead of
arbitrary character runs, and the pre-computed frequency table keeps training
cheap.

Schedule: retrain hourly when new code has been indexed since the last run,
and unconditionally once a day.
"""

from __future__ import annotations

import logging
import re
import time
from collections import Counter
from collections.abc import Iterable, Mapping
from typing import TYPE_CHECKING

from pydantic import BaseModel, ValidationError

from ..models.validators import RetrainInterval, Timestamp

if TYPE_CHECKING:
    from ..storage.base import MetadataStore
    from .segmentation import TokenFrequencyTable

logger = logging.getLogger(__name__)

BPE_VOCAB_KEY = "bpe_vocab"

_LETTERS_ONLY = re.compile(r"^[a-z]{2,}$")

_HOUR = 3600.0
_DAY = 24 * _HOUR


class BPEVocab(BaseModel):
    """Trained vocabulary: ordered merges plus token → id."""

    merges: list[tuple[str, str]]
    vocab: dict[str, int]
    vocab_size: int
    corpus_size: int
    trained_at: Timestamp


# ---------------------------------------------------------------------------
# Training
# ---------------------------------------------------------------------------


def _merge_symbols(symbols: list[str], first: str, second: str) -> list[str]:
    merged = first + second
    out: list[str] = []
    i = 0
    while i < len(symbols):
        if i < len(symbols) - 1 and symbols[i] == first and symbols[i + 1] == second:
            out.append(merged)
            i += 2
        else:
            out.append(symbols[i])
            i += 1
    return out


def train_bpe(
    tokens: Iterable[str] | Mapping[str, int],
    vocab_size: int = 5000,
    min_frequency: int = 2,
    now: float | None = None,
) -> BPEVocab:
    """Iteratively merge the most frequent adjacent pair.

    Args:
        tokens: Training tokens, either as a stream (repeats count) or as a
            ``token -> occurrences`` mapping.
        vocab_size: Stop once the vocabulary reaches this size.
        min_frequency: Stop once the best pair occurs fewer times than this.
        now: Training timestamp (epoch seconds); defaults to the current time.

    Ties between equally frequent pairs go to the pair seen first.
    """
    weights: Mapping[str, int] = tokens if isinstance(tokens, Mapping) else Counter(tokens)

    # Unique words carry their weight, so pair counting is O(unique) not O(corpus)
    words: list[tuple[list[str], int]] = [(list(word), count) for word, count in weights.items() if word and count > 0]
    corpus_size = sum(count for _, count in words)

    vocab: dict[str, int] = {}
    for symbols, _ in words:
        for ch in symbols:
            if ch not in vocab:
                vocab[ch] = len(vocab)

    merges: list[tuple[str, str]] = []
    target_merges = vocab_size - len(vocab)

    for step in range(max(target_merges, 0)):
        pair_counts: dict[tuple[str, str], int] = {}
        for symbols, count in words:
            for a, b in zip(symbols, symbols[1:]):
                pair_counts[(a, b)] = pair_counts.get((a, b), 0) + count
        if not pair_counts:
            break

        best_pair, best_count = None, 0
        for pair, count in pair_counts.items():
            if count > best_count:
                best_pair, best_count = pair, count
        if best_pair is None or best_count < min_frequency:
            break

        first, second = best_pair
        words = [(_merge_symbols(symbols, first, second), count) for symbols, count in words]
        merges.append(best_pair)
        merged = first + second
        if merged not in vocab:
            vocab[merged] = len(vocab)

        if (step + 1) % 500 == 0:
            logger.debug(f"BPE training: {step + 1}/{target_merges} merges")

    return BPEVocab(
        merges=merges,
        vocab=vocab,
        vocab_size=len(vocab),
        corpus_size=corpus_size,
        trained_at=now if now is not None else time.time(),
    )


def encode_bpe(token: str, vocab: BPEVocab) -> list[str]:
    """Apply the learnt merges, in training order, to one token."""
    symbols = list(token)
    for first, second in vocab.merges:
        if len(symbols) < 2:
            break
        symbols = _merge_symbols(symbols, first, second)
    return symbols


def segment_with_bpe(word: str, vocab: BPEVocab) -> list[str]:
    """Segment a flatcase word, dropping single-character noise pieces."""
    return [s for s in encode_bpe(word.lower(), vocab) if len(s) >= 2]


# ---------------------------------------------------------------------------
# Training from indexed-token frequencies
# ---------------------------------------------------------------------------


def build_training_corpus(top_tokens: Iterable[tuple[str, int]], max_repeat: int = 1000) -> dict[str, int]:
    """Letters-only tokens weighted by frequency, each capped at ``max_repeat``."""
    corpus: dict[str, int] = {}
    for token, frequency in top_tokens:
        if _LETTERS_ONLY.match(token) and frequency > 0:
            corpus[token] = min(frequency, max_repeat)
    return corpus


def train_bpe_from_frequencies(
    frequencies: TokenFrequencyTable,
    vocab_size: int = 5000,
    min_frequency: int = 2,
    min_unique_tokens: int = 100,
    max_tokens: int = 50_000,
    max_repeat: int = 1000,
    now: float | None = None,
) -> BPEVocab | None:
    """Train from the token frequency table; ``None`` when there is too little data."""
    stats = frequencies.stats()
    if stats["unique_tokens"] < min_unique_tokens:
        logger.info(
            f"Only {stats['unique_tokens']} unique tokens indexed, need at least {min_unique_tokens} for BPE training"
        )
        return None

    top = frequencies.top(min(max_tokens, stats["unique_tokens"]))
    corpus = build_training_corpus(top, max_repeat=max_repeat)
    occurrences = sum(corpus.values())
    if occurrences < min_unique_tokens:
        logger.info(f"Not enough letter-only tokens for BPE training ({occurrences} occurrences)")
        return None

    vocab = train_bpe(corpus, vocab_size=vocab_size, min_frequency=min_frequency, now=now)
    logger.info(
        f"BPE trained: {vocab.vocab_size} vocab size, {len(vocab.merges)} merges from {occurrences} token occurrences"
    )
    return vocab


# ---------------------------------------------------------------------------
# Schedule
# ---------------------------------------------------------------------------


def needs_bpe_retrain(
    last_trained: float | None,
    interval: RetrainInterval = "hourly",
    last_indexed: float | None = None,
    now: float | None = None,
) -> bool:
    """Decide whether the vocabulary is due for retraining.

    Hourly: retrain after an hour if code was indexed since the last training.
    Both intervals retrain after a day regardless. Never trained → retrain.
    """
    if last_trained is None:
        return True

    elapsed = (now if now is not None else time.time()) - last_trained
    if elapsed >= _DAY:
        return True
    if interval == "hourly" and elapsed >= _HOUR and last_indexed is not None:
        return last_indexed > last_trained
    return False


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


async def save_bpe_vocab(store: MetadataStore, vocab: BPEVocab) -> None:
    await store.set(BPE_VOCAB_KEY, vocab.model_dump_json())


async def load_bpe_vocab(store: MetadataStore) -> BPEVocab | None:
    """Load the stored vocabulary; a missing or corrupt blob yields ``None``."""
    raw = await store.get(BPE_VOCAB_KEY)
    if raw is None:
        return None
    try:
        return BPEVocab.model_validate_json(raw)
    except ValidationError as e:
        logger.warning(f"Stored BPE vocabulary is unreadable, ignoring it (non-fatal): {e}")
        return None
