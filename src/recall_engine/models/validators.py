"""Shared Pydantic types and validators for reuse across models.

Centralises tag normalisation, timestamp coercion, count and score types and
Literal enums so every model speaks the same language.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Annotated, Any, Literal

from dateutil import parser as dateutil_parser
from pydantic import BeforeValidator, Field

# ---------------------------------------------------------------------------
# Tag normalisation
# ---------------------------------------------------------------------------


def normalize_tags(v: Any) -> list[str]:
    """Accept ``str | list | None`` and return a clean ``list[str]``.

    * ``"a, b, c"`` → ``["a", "b", "c"]``
    * ``["a", None, " b "]`` → ``["a", "b"]``
    * ``None`` → ``[]``
    """
    if v is None:
        return []
    if isinstance(v, str):
        return [t.strip() for t in v.split(",") if t.strip()]
    if isinstance(v, (list, tuple, set)):
        return [s for item in v if item is not None and (s := str(item).strip())]
    return []


Tags = Annotated[list[str], BeforeValidator(normalize_tags)]
"""Flexible tag input: accepts str, list, or None and always outputs list[str]."""


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------


def to_epoch(v: Any) -> Any:
    """Coerce ISO-8601 strings and datetimes to epoch seconds.

    Naive datetimes and strings without an offset are read as UTC. Anything
    else is passed through for the float validator to judge.
    """
    if isinstance(v, datetime):
        if v.tzinfo is None:
            v = v.replace(tzinfo=timezone.utc)
        return v.timestamp()
    if isinstance(v, str):
        stripped = v.strip()
        try:
            return float(stripped)
        except ValueError:
            pass
        dt = dateutil_parser.isoparse(stripped)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.timestamp()
    return v


def to_optional_epoch(v: Any) -> Any:
    if v is None or (isinstance(v, str) and not v.strip()):
        return None
    return to_epoch(v)


Timestamp = Annotated[float, BeforeValidator(to_epoch)]
"""Epoch seconds; accepts float, ISO string, or datetime."""

OptionalTimestamp = Annotated[float | None, BeforeValidator(to_optional_epoch)]


# ---------------------------------------------------------------------------
# Numeric types
# ---------------------------------------------------------------------------

NonNegativeInt = Annotated[int, Field(ge=0)]
"""Integer ≥ 0 for counts and offsets."""


def finite_or_none(v: Any) -> Any:
    """Map NaN/inf scores from legacy rows to ``None``."""
    if isinstance(v, float) and not math.isfinite(v):
        return None
    return v


OptionalScore = Annotated[float | None, BeforeValidator(finite_or_none)]


# ---------------------------------------------------------------------------
# Literal enums
# ---------------------------------------------------------------------------

MemoryType = Literal["decision", "error", "dead_end", "pattern", "learning", "observation"]
LinkRelation = Literal["supersedes", "similar_to", "related"]
RetentionTier = Literal["keep", "warn", "delete"]
RetrainInterval = Literal["hourly", "daily"]
