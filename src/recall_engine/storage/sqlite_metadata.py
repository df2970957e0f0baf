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
SQLite key-value metadata store.

Holds the persisted BM25 index blobs and BPE vocabularies in a single
``metadata`` table. Async operations using aiosqlite; one short-lived
connection per call. SQLite failures surface as ``StorageError``.
"""

import logging
import os
import time

import aiosqlite

from .base import MetadataStore, StorageError

logger = logging.getLogger(__name__)


class SQLiteMetadataStore(MetadataStore):
    """Async SQLite key-value store."""

    def __init__(self, db_path: str):
        """
        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = db_path
        self._initialized = False

    async def initialize(self) -> None:
        """Create the schema if it does not exist."""
        if self._initialized:
            return

        directory = os.path.dirname(self.db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    """
                    CREATE TABLE IF NOT EXISTS metadata (
                        key TEXT PRIMARY KEY,
                        value TEXT NOT NULL,
                        updated_at REAL NOT NULL
                    )
                """
                )
                await db.commit()
        except aiosqlite.Error as e:
            logger.error(f"Failed to initialize metadata store at {self.db_path}: {e}")
            raise StorageError(f"Metadata store initialization failed: {e}") from e

        self._initialized = True
        logger.info(f"Metadata store initialized at {self.db_path}")

    async def get(self, key: str) -> str | None:
        if not self._initialized:
            await self.initialize()

        try:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute("SELECT value FROM metadata WHERE key = ?", (key,))
                row = await cursor.fetchone()
        except aiosqlite.Error as e:
            raise StorageError(f"Failed to read metadata key '{key}': {e}") from e
        return row[0] if row else None

    async def set(self, key: str, value: str) -> None:
        if not self._initialized:
            await self.initialize()

        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    """
                    INSERT INTO metadata (key, value, updated_at) VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                """,
                    (key, value, time.time()),
                )
                await db.commit()
        except aiosqlite.Error as e:
            raise StorageError(f"Failed to write metadata key '{key}': {e}") from e

    async def delete(self, key: str) -> bool:
        if not self._initialized:
            await self.initialize()

        try:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute("DELETE FROM metadata WHERE key = ?", (key,))
                await db.commit()
                deleted = cursor.rowcount > 0
        except aiosqlite.Error as e:
            raise StorageError(f"Failed to delete metadata key '{key}': {e}") from e
        return deleted

    async def close(self) -> None:
        # aiosqlite doesn't maintain persistent connections, so nothing to close
        pass
