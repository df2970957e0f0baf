"""Persistence collaborators: abstract interfaces plus in-memory, SQLite and Qdrant backends."""

from .base import CorpusStorage, MemoryNotFoundError, MemoryStore, MetadataStore, PinnedMemoryError, StorageError
from .in_memory import InMemoryCorpusStorage, InMemoryMemoryStore, InMemoryMetadataStore

__all__ = [
    "CorpusStorage",
    "InMemoryCorpusStorage",
    "InMemoryMemoryStore",
    "InMemoryMetadataStore",
    "MemoryNotFoundError",
    "MemoryStore",
    "MetadataStore",
    "PinnedMemoryError",
    "StorageError",
]
