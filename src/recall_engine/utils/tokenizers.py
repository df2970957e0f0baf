"""
Tokenizers for BM25 indexing.

Two modes:
- Code: identifier-aware splitting (camelCase, PascalCase, snake_case,
  kebab-case, dotted and path-like names, acronyms, digit suffixes). The
  original identifiers are kept alongside the split parts so that an exact
  identifier query still matches.
- Docs: markdown-stripped natural language with a simplified Porter stemmer.
  Both stemmed and unstemmed forms are emitted so literal queries still hit.

Both return deduplicated, order-preserving token lists. AST enrichment is the
exception: it deliberately repeats tokens to raise their BM25 term frequency.
"""

from __future__ import annotations

import re
from collections.abc import Iterable

# ---------------------------------------------------------------------------
# Code tokenizer
# ---------------------------------------------------------------------------

_CAMEL_BOUNDARY = re.compile(r"([a-z])([A-Z])")
_ACRONYM_BOUNDARY = re.compile(r"([A-Z]+)([A-Z][a-z])")
_SEPARATORS = re.compile(r"[_\-./\\:@]+")
_LETTER_DIGIT = re.compile(r"([a-zA-Z])(\d)")
_DIGIT_LETTER = re.compile(r"(\d)([a-zA-Z])")
_NON_ALNUM = re.compile(r"[^a-zA-Z0-9\s]")
_NON_IDENTIFIER = re.compile(r"[^a-zA-Z0-9_]+")


def tokenize_code(text: str) -> list[str]:
    """Split identifiers into their parts and keep the originals.

    ``getUserName`` → ``["get", "user", "name", "getusername"]``
    ``HTMLParser`` → ``["html", "parser", "htmlparser"]``
    ``user2`` → ``["user", "2", "user2"]``
    """
    processed = _CAMEL_BOUNDARY.sub(r"\1 \2", text)
    processed = _ACRONYM_BOUNDARY.sub(r"\1 \2", processed)
    processed = _SEPARATORS.sub(" ", processed)
    processed = _LETTER_DIGIT.sub(r"\1 \2", processed)
    processed = _DIGIT_LETTER.sub(r"\1 \2", processed)
    processed = _NON_ALNUM.sub(" ", processed)

    words = processed.lower().split()

    # Underscores are valid identifier characters, so the originals keep them
    originals = [t.lower() for t in _NON_IDENTIFIER.split(text) if len(t) > 1]

    return list(dict.fromkeys([*words, *originals]))


# ---------------------------------------------------------------------------
# Stemmer
# ---------------------------------------------------------------------------

_VOWEL = re.compile(r"[aeiou]")

# Ordered: the first matching suffix wins
_DERIVATIONAL_SUFFIXES: tuple[tuple[str, str], ...] = (
    ("ational", "ate"),
    ("tional", "tion"),
    ("ization", "ize"),
    ("ation", "ate"),
    ("fulness", "ful"),
    ("ousness", "ous"),
    ("iveness", "ive"),
    ("ement", "e"),
    ("ment", ""),
    ("ness", ""),
    ("able", ""),
    ("ible", ""),
    ("ful", ""),
    ("less", ""),
    ("ive", ""),
    ("ize", ""),
    ("ise", ""),
    ("ly", ""),
    ("er", ""),
    ("or", ""),
)


def stem(word: str) -> str:
    """Simplified Porter stemmer: plurals, -ed/-ing, common derivational suffixes."""
    if len(word) < 3:
        return word

    w = word.lower()

    # Plurals
    if w.endswith("sses"):
        w = w[:-2]
    elif w.endswith("ies"):
        w = w[:-3] + "y"
    elif w.endswith("ss"):
        pass
    elif w.endswith("s"):
        w = w[:-1]

    # -eed / -ed / -ing
    if w.endswith("eed"):
        if len(w) > 4:
            w = w[:-1]
    elif w.endswith("ed"):
        base = w[:-2]
        if _VOWEL.search(base):
            w = base
    elif w.endswith("ing"):
        base = w[:-3]
        if _VOWEL.search(base):
            w = base

    for suffix, replacement in _DERIVATIONAL_SUFFIXES:
        if w.endswith(suffix) and len(w) - len(suffix) >= 2:
            w = w[: -len(suffix)] + replacement
            break

    return w


# ---------------------------------------------------------------------------
# Docs tokenizer
# ---------------------------------------------------------------------------

_CODE_FENCE = re.compile(r"```[\s\S]*?```")
_INLINE_CODE = re.compile(r"`[^`]+`")
_MARKDOWN_LINK = re.compile(r"\[([^\]]+)\]\([^)]+\)")
_MARKDOWN_CHARS = re.compile(r"[#*_~>|]")


def tokenize_docs(text: str) -> list[str]:
    """Tokenize markdown prose: stemmed words followed by their unstemmed forms."""
    processed = _CODE_FENCE.sub(" ", text)
    processed = _INLINE_CODE.sub(" ", processed)
    processed = _MARKDOWN_LINK.sub(r"\1", processed)
    processed = _MARKDOWN_CHARS.sub(" ", processed)
    processed = processed.replace("\n", " ")
    processed = _NON_ALNUM.sub(" ", processed)

    words = [t for t in processed.lower().split() if len(t) > 2]
    stemmed = [stem(w) for w in words]

    return list(dict.fromkeys([*stemmed, *words]))


# ---------------------------------------------------------------------------
# AST enrichment
# ---------------------------------------------------------------------------

# Declaration keywords that show up in signatures but carry no meaning
_SIGNATURE_KEYWORDS = frozenset(
    {
        "def", "async", "await", "function", "func", "fn", "return", "returns",
        "const", "let", "var", "class", "interface", "type", "struct", "enum",
        "public", "private", "protected", "static", "export", "import", "from",
        "self", "this", "new", "void", "none", "null", "true", "false",
    }
)  # fmt: skip

_IDENTIFIER = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")


def extract_identifiers(text: str | None) -> list[str]:
    """Pull identifier-like names out of a signature, skipping declaration keywords."""
    if not text:
        return []
    found = (m.group(0) for m in _IDENTIFIER.finditer(text))
    return list(dict.fromkeys(name for name in found if len(name) > 1 and name.lower() not in _SIGNATURE_KEYWORDS))


def tokenize_code_with_ast(
    content: str,
    identifiers: Iterable[str] = (),
    symbol_name: str | None = None,
) -> list[str]:
    """Code tokens boosted by AST metadata.

    Each identifier is re-tokenized and appended, and the symbol name's tokens
    are appended three times. Repeats are intentional: BM25 reads them as
    higher term frequency.
    """
    tokens = tokenize_code(content)
    for identifier in identifiers:
        tokens.extend(tokenize_code(identifier))
    if symbol_name:
        symbol_tokens = tokenize_code(symbol_name)
        for _ in range(3):
            tokens.extend(symbol_tokens)
    return tokens
