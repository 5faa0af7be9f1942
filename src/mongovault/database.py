"""
Database access for backup and restore runs.

The orchestrator only sees DatabaseAccess: a source of collection names,
document and index streams on backup, and a destination for documents and
index definitions on restore. MotorDatabase implements it on top of the
asyncio MongoDB driver; tests substitute an in-memory implementation.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import IndexModel
from pymongo.errors import CollectionInvalid

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 1000
DEFAULT_POOL_SIZE = 11

# Index fields that describe server state rather than the index itself
_INDEX_SERVER_FIELDS = frozenset({"key", "v", "ns"})
_ID_INDEX_NAME = "_id_"


class DatabaseAccess(ABC):
    """
    Abstract database endpoint of a run.

    Attributes:
        database_name: Name of the database being transferred.
    """

    database_name: str = ""

    @abstractmethod
    async def list_collection_names(self) -> list[str]:
        """List the collections of the database."""
        pass

    @abstractmethod
    def find(self, collection_name: str, query: dict[str, Any] | None = None) -> AsyncIterator[dict[str, Any]]:
        """Stream the documents of a collection matching a query."""
        pass

    @abstractmethod
    def list_indexes(self, collection_name: str) -> AsyncIterator[dict[str, Any]]:
        """Stream the index definitions of a collection."""
        pass

    @abstractmethod
    async def insert_documents(
        self,
        collection_name: str,
        documents: AsyncIterator[dict[str, Any]],
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> int:
        """
        Insert a stream of documents.

        The collection must exist afterwards, even if the stream is empty.

        Returns:
            Number of inserted documents.
        """
        pass

    @abstractmethod
    async def create_indexes(self, collection_name: str, specs: AsyncIterator[dict[str, Any]]) -> list[str]:
        """
        Create indexes from a stream of index definitions.

        Returns:
            Names of the created indexes.
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release the connection."""
        pass


def index_model_from_spec(spec: dict[str, Any]) -> IndexModel | None:
    """
    Convert a listed index definition into an IndexModel.

    Args:
        spec: Index definition as returned by list_indexes().

    Returns:
        The IndexModel, or None for the implicit _id index.

    Raises:
        ValueError: If the definition has no key.
    """
    if spec.get("name") == _ID_INDEX_NAME:
        return None

    key = spec.get("key")
    if not key:
        raise ValueError(f"Index definition has no key: {spec!r}")

    keys = list(key.items())
    options = {name: value for name, value in spec.items() if name not in _INDEX_SERVER_FIELDS}
    return IndexModel(keys, **options)


class MotorDatabase(DatabaseAccess):
    """
    DatabaseAccess backed by Motor.

    Usage:
        database = MotorDatabase("mongodb://localhost:27017/app")
        names = await database.list_collection_names()
        await database.close()
    """

    def __init__(
        self,
        uri: str,
        database_name: str | None = None,
        **client_options: Any,
    ) -> None:
        """
        Initialize the client. No I/O happens until the first operation.

        Args:
            uri: MongoDB connection URI.
            database_name: Database to use. Defaults to the one in the URI,
                or 'test' when the URI has none.
            **client_options: Extra AsyncIOMotorClient options.
        """
        client_options.setdefault("maxPoolSize", DEFAULT_POOL_SIZE)
        self._client = AsyncIOMotorClient(uri, **client_options)
        if database_name:
            self._db = self._client.get_database(database_name)
        else:
            self._db = self._client.get_default_database("test")
        self.database_name = self._db.name

    async def list_collection_names(self) -> list[str]:
        return sorted(await self._db.list_collection_names())

    async def find(self, collection_name: str, query: dict[str, Any] | None = None) -> AsyncIterator[dict[str, Any]]:
        async for document in self._db[collection_name].find(query or {}):
            yield document

    async def list_indexes(self, collection_name: str) -> AsyncIterator[dict[str, Any]]:
        async for index in self._db[collection_name].list_indexes():
            yield dict(index)

    async def _ensure_collection(self, collection_name: str) -> None:
        if collection_name in await self._db.list_collection_names():
            return
        try:
            await self._db.create_collection(collection_name)
        except CollectionInvalid:
            # Created concurrently by the sibling stream of the same collection
            logger.debug(f"Collection '{collection_name}' already exists")

    async def insert_documents(
        self,
        collection_name: str,
        documents: AsyncIterator[dict[str, Any]],
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> int:
        await self._ensure_collection(collection_name)
        collection = self._db[collection_name]

        inserted = 0
        batch: list[dict[str, Any]] = []
        async for document in documents:
            batch.append(document)
            if len(batch) >= batch_size:
                await collection.insert_many(batch)
                inserted += len(batch)
                batch = []

        if batch:
            await collection.insert_many(batch)
            inserted += len(batch)

        logger.debug(f"Inserted {inserted} document(s) into '{collection_name}'")
        return inserted

    async def create_indexes(self, collection_name: str, specs: AsyncIterator[dict[str, Any]]) -> list[str]:
        await self._ensure_collection(collection_name)

        models = []
        async for spec in specs:
            model = index_model_from_spec(spec)
            if model is not None:
                models.append(model)

        if not models:
            return []
        return await self._db[collection_name].create_indexes(models)

    async def close(self) -> None:
        self._client.close()
