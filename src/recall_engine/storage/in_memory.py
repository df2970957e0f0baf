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
Process-local storage backends.

Reference implementations of the persistence collaborators, used by tests and
by embedders that keep everything in memory. Records are copied on the way in
and out so callers can never mutate stored state behind the store's back.
"""

import logging
from collections.abc import Sequence

from ..config import settings
from ..models.consolidation import MemoryLink
from ..models.documents import IndexedUnit
from ..models.memory import Memory
from ..models.validators import LinkRelation
from ..utils.embeddings import validate_embedding
from ..utils.working_memory import is_pinned
from .base import CorpusStorage, MemoryNotFoundError, MemoryStore, MetadataStore, PinnedMemoryError

logger = logging.getLogger(__name__)


class InMemoryMetadataStore(MetadataStore):
    """Dict-backed key-value store."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    async def get(self, key: str) -> str | None:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value

    async def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    def keys(self) -> list[str]:
        return sorted(self._data)


class InMemoryCorpusStorage(CorpusStorage):
    """Units and embeddings for a code or docs corpus."""

    def __init__(self, expected_dimension: int | None = None) -> None:
        self.expected_dimension = expected_dimension
        self._units: dict[int, IndexedUnit] = {}
        self._embeddings: dict[int, list[float]] = {}

    def add_unit(self, unit: IndexedUnit, embedding: Sequence[float] | None = None) -> None:
        """Insert or replace a unit.

        Raises:
            EmbeddingValidationError: The embedding has the wrong dimension or non-finite values.
        """
        if embedding is not None:
            validated = validate_embedding(embedding, self.expected_dimension)
            if self.expected_dimension is None:
                self.expected_dimension = len(validated)
            self._embeddings[unit.id] = validated
        else:
            self._embeddings.pop(unit.id, None)
        self._units[unit.id] = unit.model_copy()

    def remove_unit(self, unit_id: int) -> bool:
        self._embeddings.pop(unit_id, None)
        return self._units.pop(unit_id, None) is not None

    def __len__(self) -> int:
        return len(self._units)

    async def fetch_units(self, limit: int, offset: int) -> list[IndexedUnit]:
        ids = sorted(self._units)[offset : offset + limit]
        return [self._units[i].model_copy() for i in ids]

    async def get_units(self, ids: Sequence[int]) -> dict[int, IndexedUnit]:
        return {i: self._units[i].model_copy() for i in ids if i in self._units}

    async def count_embeddings(self) -> int:
        return len(self._embeddings)

    async def fetch_embeddings(self, limit: int) -> list[tuple[int, list[float]]]:
        return [(i, list(self._embeddings[i])) for i in sorted(self._embeddings)[:limit]]


class InMemoryMemoryStore(MemoryStore):
    """Memories, their embeddings and the link table.

    Ids are assigned on insert when a memory arrives with ``id <= 0``. The
    embedding dimension is fixed by ``expected_dimension`` or, failing that,
    by the first embedding saved.
    """

    def __init__(self, expected_dimension: int | None = None, pin_threshold: int | None = None) -> None:
        self.expected_dimension = expected_dimension
        self.pin_threshold = pin_threshold if pin_threshold is not None else settings.working_memory.pin_threshold
        self._memories: dict[int, Memory] = {}
        self._links: dict[tuple[int, int, str], MemoryLink] = {}
        self._next_id = 1

    def __len__(self) -> int:
        return len(self._memories)

    def _require(self, memory_id: int) -> Memory:
        memory = self._memories.get(memory_id)
        if memory is None:
            raise MemoryNotFoundError(memory_id)
        return memory

    # -- CorpusStorage -----------------------------------------------------

    async def fetch_units(self, limit: int, offset: int) -> list[IndexedUnit]:
        ids = sorted(self._memories)[offset : offset + limit]
        return [self._memories[i].to_unit() for i in ids]

    async def get_units(self, ids: Sequence[int]) -> dict[int, IndexedUnit]:
        return {i: self._memories[i].to_unit() for i in ids if i in self._memories}

    async def count_embeddings(self) -> int:
        return sum(1 for m in self._memories.values() if m.embedding and m.is_active)

    async def fetch_embeddings(self, limit: int) -> list[tuple[int, list[float]]]:
        rows = [(i, list(m.embedding)) for i, m in sorted(self._memories.items()) if m.embedding and m.is_active]
        return rows[:limit]

    # -- Memories ----------------------------------------------------------

    async def get_memory(self, memory_id: int) -> Memory | None:
        memory = self._memories.get(memory_id)
        return memory.model_copy(deep=True) if memory is not None else None

    async def get_memories(self, ids: Sequence[int]) -> list[Memory]:
        return [self._memories[i].model_copy(deep=True) for i in ids if i in self._memories]

    async def get_all_memories(self, include_invalidated: bool = False) -> list[Memory]:
        memories = [m for m in self._memories.values() if include_invalidated or m.is_active]
        memories.sort(key=lambda m: (m.created_at, m.id), reverse=True)
        return [m.model_copy(deep=True) for m in memories]

    async def get_pinned_memories(self, pin_threshold: int) -> list[Memory]:
        return [
            m.model_copy(deep=True)
            for m in self._memories.values()
            if m.is_active and is_pinned(m, pin_threshold)
        ]

    async def save_memory(self, memory: Memory) -> Memory:
        if memory.embedding is not None:
            validated = validate_embedding(memory.embedding, self.expected_dimension)
            if self.expected_dimension is None:
                self.expected_dimension = len(validated)
            memory = memory.model_copy(update={"embedding": validated})

        if memory.id <= 0:
            memory = memory.model_copy(update={"id": self._next_id})
        self._next_id = max(self._next_id, memory.id + 1)

        stored = memory.model_copy(deep=True)
        self._memories[stored.id] = stored
        logger.debug(f"Saved memory {stored.id}")
        return stored.model_copy(deep=True)

    async def delete_memory(self, memory_id: int, force: bool = False) -> bool:
        memory = self._memories.get(memory_id)
        if memory is None:
            return False
        if not force and is_pinned(memory, self.pin_threshold):
            raise PinnedMemoryError(f"Memory {memory_id} is pinned")
        del self._memories[memory_id]
        self._links = {
            key: link for key, link in self._links.items() if memory_id not in (link.source_id, link.target_id)
        }
        return True

    async def invalidate_memory(self, memory_id: int, superseded_by: int, at: float, force: bool = False) -> None:
        memory = self._require(memory_id)
        if not force and is_pinned(memory, self.pin_threshold):
            raise PinnedMemoryError(f"Memory {memory_id} is pinned")
        if memory.is_active:
            memory.superseded_valid_until = memory.valid_until
        memory.valid_until = at
        memory.invalidated_by = superseded_by

    async def restore_memory(self, memory_id: int) -> None:
        memory = self._require(memory_id)
        memory.valid_until = memory.superseded_valid_until
        memory.superseded_valid_until = None
        memory.invalidated_by = None

    async def record_access(self, memory_ids: Sequence[int], at: float) -> None:
        for memory_id in memory_ids:
            memory = self._memories.get(memory_id)
            if memory is not None:
                memory.touch(at)

    # -- Links -------------------------------------------------------------

    async def create_link(self, link: MemoryLink) -> None:
        self._links[(link.source_id, link.target_id, link.relation)] = link.model_copy()

    async def get_links(
        self,
        relation: LinkRelation | None = None,
        source_id: int | None = None,
        target_id: int | None = None,
    ) -> list[MemoryLink]:
        return [
            link.model_copy()
            for link in self._links.values()
            if (relation is None or link.relation == relation)
            and (source_id is None or link.source_id == source_id)
            and (target_id is None or link.target_id == target_id)
        ]

    async def delete_link(self, source_id: int, target_id: int, relation: LinkRelation) -> bool:
        return self._links.pop((source_id, target_id, relation), None) is not None
