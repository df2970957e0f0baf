from .consolidation import (
    ConsolidationAction,
    ConsolidationCandidate,
    ConsolidationHistoryEntry,
    ConsolidationReport,
    ConsolidationStats,
    MemoryLink,
    UndoResult,
)
from .documents import IndexedUnit
from .memory import Memory, MemoryQueryResult
from .results import HybridSearchResult, ScoredDoc

__all__ = [
    "ConsolidationAction",
    "ConsolidationCandidate",
    "ConsolidationHistoryEntry",
    "ConsolidationReport",
    "ConsolidationStats",
    "HybridSearchResult",
    "IndexedUnit",
    "Memory",
    "MemoryLink",
    "MemoryQueryResult",
    "ScoredDoc",
    "UndoResult",
]
