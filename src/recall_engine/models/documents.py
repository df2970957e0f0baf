"""Indexable units: code chunks, documentation sections and memory text."""

from typing import Any

from pydantic import BaseModel, Field


class IndexedUnit(BaseModel):
    """One indexable document.

    ``id`` is assigned by storage and is unique within a corpus. The AST fields
    are only populated for code chunks; they feed term-frequency enrichment and
    the symbol-name boost.
    """

    id: int
    content: str
    symbol_name: str | None = None
    signature: str | None = None
    symbol_type: str | None = None
    file_path: str | None = None
    start_line: int | None = Field(default=None, ge=0)
    end_line: int | None = Field(default=None, ge=0)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)
