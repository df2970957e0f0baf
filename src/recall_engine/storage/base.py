# Copyright 2024 Heinrich Krupp
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Abstract persistence collaborators.

The engine consumes plain records through these interfaces and never manages
transactions or locks itself; cross-process write serialisation belongs to
the concrete backend or its caller.
"""

from abc import ABC, abstractmethod
from collections.abc import Sequence

from ..models.consolidation import MemoryLink
from ..models.documents import IndexedUnit
from ..models.memory import Memory
from ..models.validators import LinkRelation


class StorageError(Exception):
    """Base exception for storage-related errors."""


class MemoryNotFoundError(KeyError):
    """An explicit lookup named a memory id that does not exist."""


class PinnedMemoryError(Exception):
    """Refused to invalidate or delete a pinned memory."""


class MetadataStore(ABC):
    """String key-value store for persisted index blobs and BPE vocabularies."""

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """Return the stored value or ``None``."""

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        """Insert or replace a value."""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Remove a key; returns whether it existed."""

    async def close(self) -> None:
        """Release resources (no-op by default)."""


class CorpusStorage(ABC):
    """Paged access to the units and embeddings of one corpus."""

    @abstractmethod
    async def fetch_units(self, limit: int, offset: int) -> list[IndexedUnit]:
        """Return a page of units ordered by id."""

    @abstractmethod
    async def get_units(self, ids: Sequence[int]) -> dict[int, IndexedUnit]:
        """Look up units by id; missing ids are simply absent from the result."""

    @abstractmethod
    async def count_embeddings(self) -> int:
        """Number of units that carry an embedding."""

    @abstractmethod
    async def fetch_embeddings(self, limit: int) -> list[tuple[int, list[float]]]:
        """Up to ``limit`` ``(id, embedding)`` rows for brute-force scanning."""


class MemoryStore(CorpusStorage):
    """Memory records plus the link table used by consolidation."""

    @abstractmethod
    async def get_memory(self, memory_id: int) -> Memory | None:
        """Fetch one memory, active or invalidated."""

    @abstractmethod
    async def get_memories(self, ids: Sequence[int]) -> list[Memory]:
        """Fetch several memories, preserving the order of ``ids`` and skipping missing ones."""

    @abstractmethod
    async def get_all_memories(self, include_invalidated: bool = False) -> list[Memory]:
        """All memories, newest first."""

    @abstractmethod
    async def get_pinned_memories(self, pin_threshold: int) -> list[Memory]:
        """Active memories that are invariant or corrected at least ``pin_threshold`` times."""

    @abstractmethod
    async def save_memory(self, memory: Memory) -> Memory:
        """Insert a memory (id 0 or unseen) or replace an existing one.

        Raises:
            EmbeddingValidationError: The embedding has the wrong dimension or non-finite values.
        """

    @abstractmethod
    async def delete_memory(self, memory_id: int, force: bool = False) -> bool:
        """Hard-delete a memory and its links.

        Raises:
            PinnedMemoryError: The memory is pinned and ``force`` is not set.
        """

    @abstractmethod
    async def invalidate_memory(self, memory_id: int, superseded_by: int, at: float, force: bool = False) -> None:
        """Soft-invalidate: set ``valid_until`` and the ``invalidated_by`` back-pointer.

        The memory's own ``valid_until`` is kept in ``superseded_valid_until``.

        Raises:
            MemoryNotFoundError: Unknown id.
            PinnedMemoryError: The memory is pinned and ``force`` is not set.
        """

    @abstractmethod
    async def restore_memory(self, memory_id: int) -> None:
        """Clear a soft-invalidation, putting back the memory's own ``valid_until``.

        Raises:
            MemoryNotFoundError: Unknown id.
        """

    @abstractmethod
    async def record_access(self, memory_ids: Sequence[int], at: float) -> None:
        """Increment access counts and stamp ``last_accessed``."""

    @abstractmethod
    async def create_link(self, link: MemoryLink) -> None:
        """Insert a link; an identical (source, target, relation) link is replaced."""

    @abstractmethod
    async def get_links(
        self,
        relation: LinkRelation | None = None,
        source_id: int | None = None,
        target_id: int | None = None,
    ) -> list[MemoryLink]:
        """Links matching every given filter."""

    @abstractmethod
    async def delete_link(self, source_id: int, target_id: int, relation: LinkRelation) -> bool:
        """Remove one link; returns whether it existed."""
