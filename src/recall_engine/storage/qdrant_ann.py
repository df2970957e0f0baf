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
Qdrant approximate-nearest-neighbour backend.

One collection per corpus (``<prefix>_<corpus>``), Cosine distance, point id
equal to the unit id. Queries return ``(id, distance)`` with
``distance = 1 - score`` so the vector layer can treat every ANN backend the
same way.

The qdrant client is synchronous; calls run in the default executor. Only
transient 5xx server errors are retried; whatever still fails surfaces as
``StorageError``, as does an existing collection with the wrong vector size.
"""

import asyncio
import functools
import logging
from collections.abc import Sequence

from qdrant_client import QdrantClient
from qdrant_client.http import exceptions as qdrant_exceptions
from qdrant_client.models import Distance, PointIdsList, PointStruct, VectorParams
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from ..utils.embeddings import validate_embedding
from .base import StorageError

logger = logging.getLogger(__name__)


def is_retryable_error(exception: BaseException) -> bool:
    """Only 5xx server errors are transient; 4xx and validation errors are not."""
    if isinstance(exception, qdrant_exceptions.UnexpectedResponse):
        return hasattr(exception, "status_code") and 500 <= exception.status_code < 600
    return False


_retry_transient = retry(
    retry=retry_if_exception(is_retryable_error),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=5),
    reraise=True,
)


def _storage_errors(func):
    """Re-raise qdrant client failures as ``StorageError``."""

    @functools.wraps(func)
    async def wrapper(self, *args, **kwargs):
        try:
            return await func(self, *args, **kwargs)
        except (qdrant_exceptions.UnexpectedResponse, qdrant_exceptions.ResponseHandlingException) as e:
            logger.error(f"Qdrant {func.__name__} failed: {e}")
            raise StorageError(f"Qdrant {func.__name__} failed: {e}") from e

    return wrapper


class QdrantAnnBackend:
    """ANN backend over Qdrant in embedded, server or in-memory mode.

    Args:
        vector_size: Embedding dimension shared by every corpus.
        url: Qdrant server URL (server mode).
        path: Local storage path (embedded mode).
        collection_prefix: Prefix for per-corpus collection names.

    With neither ``url`` nor ``path`` the client runs in-memory.
    """

    def __init__(
        self,
        vector_size: int,
        url: str | None = None,
        path: str | None = None,
        collection_prefix: str = "recall",
        client: QdrantClient | None = None,
    ):
        self.vector_size = vector_size
        self.url = url
        self.path = path
        self.collection_prefix = collection_prefix
        self.client = client
        self._collections: set[str] = set()

    def collection_name(self, corpus: str) -> str:
        return f"{self.collection_prefix}_{corpus}"

    async def initialize(self) -> None:
        if self.client is not None:
            return
        loop = asyncio.get_running_loop()
        if self.url:
            self.client = await loop.run_in_executor(None, lambda: QdrantClient(url=self.url))
            logger.info(f"Connected to Qdrant server at {self.url}")
        elif self.path:
            self.client = await loop.run_in_executor(None, lambda: QdrantClient(path=self.path))
            logger.info(f"Initialized Qdrant embedded storage at {self.path}")
        else:
            self.client = await loop.run_in_executor(None, lambda: QdrantClient(location=":memory:"))
            logger.info("Initialized in-memory Qdrant client")

    async def ensure_collection(self, corpus: str) -> str:
        """Create the corpus collection if missing; returns its name.

        Raises:
            StorageError: The existing collection has a different vector size.
        """
        await self.initialize()
        name = self.collection_name(corpus)
        if name in self._collections:
            return name

        loop = asyncio.get_running_loop()
        exists = await loop.run_in_executor(None, self.client.collection_exists, name)
        if exists:
            info = await loop.run_in_executor(None, self.client.get_collection, name)
            size = info.config.params.vectors.size
            if size != self.vector_size:
                raise StorageError(
                    f"Collection '{name}' has vector size {size}, expected {self.vector_size}; "
                    f"re-index the corpus after changing embedding models"
                )
        else:
            await loop.run_in_executor(
                None,
                lambda: self.client.create_collection(
                    collection_name=name,
                    vectors_config=VectorParams(size=self.vector_size, distance=Distance.COSINE),
                ),
            )
            logger.info(f"Created collection '{name}' with vector size {self.vector_size}")
        self._collections.add(name)
        return name

    @_storage_errors
    @_retry_transient
    async def upsert(self, corpus: str, points: Sequence[tuple[int, Sequence[float]]]) -> None:
        """Insert or replace ``(id, vector)`` points.

        Raises:
            EmbeddingValidationError: A vector has the wrong dimension or non-finite values.
        """
        if not points:
            return
        structs = [
            PointStruct(id=point_id, vector=validate_embedding(vector, self.vector_size))
            for point_id, vector in points
        ]
        name = await self.ensure_collection(corpus)
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, lambda: self.client.upsert(collection_name=name, points=structs))
        logger.debug(f"Upserted {len(structs)} points into '{name}'")

    @_storage_errors
    @_retry_transient
    async def delete(self, corpus: str, ids: Sequence[int]) -> None:
        if not ids:
            return
        name = await self.ensure_collection(corpus)
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(
            None,
            lambda: self.client.delete(collection_name=name, points_selector=PointIdsList(points=list(ids))),
        )

    @_storage_errors
    @_retry_transient
    async def query(self, corpus: str, vector: Sequence[float], k: int) -> list[tuple[int, float]]:
        """Nearest ``k`` points as ``(id, distance)``, closest first."""
        name = await self.ensure_collection(corpus)
        loop = asyncio.get_running_loop()
        response = await loop.run_in_executor(
            None,
            lambda: self.client.query_points(collection_name=name, query=list(vector), limit=k, with_payload=False),
        )
        return [(int(point.id), 1.0 - float(point.score)) for point in response.points]

    async def close(self) -> None:
        if self.client is not None:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, self.client.close)
            self.client = None
            self._collections.clear()
