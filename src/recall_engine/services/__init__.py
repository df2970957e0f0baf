"""
Service layer for the recall engine.

- IndexRegistry: one BM25 index per corpus, persisted and rebuilt on demand
- RetrievalService: hybrid BM25 + vector search and working-memory recall
- ConsolidationEngine: reversible near-duplicate merging
"""

from .consolidation_service import ConsolidationEngine
from .index_registry import CORPORA, CorpusBinding, IndexRegistry
from .retrieval_service import RetrievalService

__all__ = [
    "CORPORA",
    "ConsolidationEngine",
    "CorpusBinding",
    "IndexRegistry",
    "RetrievalService",
]
