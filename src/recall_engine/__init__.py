"""Hybrid retrieval and memory-prioritization engine.

Indexes code, documentation and short natural-language memories, ranks them
with BM25 + vector similarity fused by Reciprocal Rank Fusion, and keeps the
memory store compact through reversible consolidation.
"""

__version__ = "0.1.0"
