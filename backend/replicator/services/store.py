"""Document store adapter — the capabilities replication needs from MongoDB."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Awaitable, Callable, Collection
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from bson import ObjectId
from pymongo import AsyncMongoClient, ReplaceOne
from pymongo.errors import (
    BulkWriteError,
    CollectionInvalid,
    ConfigurationError,
    OperationFailure,
    PyMongoError,
)
from pymongo.write_concern import WriteConcern

from replicator.config import settings
from replicator.services.errors import StoreConnectionError, StreamError, WriteError

logger = logging.getLogger(__name__)

CHANGE_OPS = ("insert", "update", "replace", "delete")
ID_INDEX = "_id_"
NAMESPACE_EXISTS = 48
# IndexAlreadyExists, IndexOptionsConflict, IndexKeySpecsConflict
INDEX_EXISTS_CODES = {68, 85, 86}
# index_information() fields that describe the index rather than configure it
INDEX_META_FIELDS = {"key", "v", "ns"}


@dataclass
class CollectionInfo:
    name: str
    count: int
    last_modified: datetime | None = None


@dataclass
class UpsertResult:
    upserted_count: int = 0
    modified_count: int = 0


@dataclass
class IndexSpec:
    name: str
    keys: list[tuple[str, Any]]
    # unique, sparse, partialFilterExpression, expireAfterSeconds, collation, ...
    options: dict[str, Any] = field(default_factory=dict)


@dataclass
class ChangeEvent:
    op: str
    collection: str
    document_id: Any
    full_document: dict[str, Any] | None = field(default=None, repr=False)


class StoreConnection(ABC):
    """One open connection to a document store database."""

    role: str = "store"

    @abstractmethod
    async def ping(self) -> None: ...

    @abstractmethod
    async def close(self) -> None: ...

    @abstractmethod
    async def list_collections(self) -> list[CollectionInfo]: ...

    @abstractmethod
    async def collection_exists(self, collection: str) -> bool: ...

    @abstractmethod
    async def ensure_collection(self, collection: str) -> bool:
        """Create the collection. Returns False if it already existed."""

    @abstractmethod
    async def scan(
        self, collection: str, filter: dict[str, Any], skip: int, limit: int,
    ) -> list[dict[str, Any]]:
        """One page of documents ordered by ``_id`` ascending."""

    @abstractmethod
    async def count_where(self, collection: str, filter: dict[str, Any]) -> int: ...

    @abstractmethod
    async def bulk_upsert(self, collection: str, documents: list[dict[str, Any]]) -> UpsertResult:
        """Replace each document wholesale by ``_id``, inserting if absent."""

    @abstractmethod
    async def upsert_one(self, collection: str, document: dict[str, Any]) -> None: ...

    @abstractmethod
    async def delete_one(self, collection: str, document_id: Any) -> None: ...

    @abstractmethod
    async def list_indexes(self, collection: str) -> list[IndexSpec]: ...

    @abstractmethod
    async def create_index(self, collection: str, index: IndexSpec) -> None: ...

    @abstractmethod
    def subscribe_changes(self, collections: Collection[str]) -> AsyncIterator[ChangeEvent]:
        """Infinite stream of mutations on ``collections``.

        ``collections`` is read on every event, so names added to it later are
        picked up without re-subscribing. Raises StreamError on transport loss.
        """


StoreConnector = Callable[[str, str], Awaitable[StoreConnection]]


class MongoStoreConnection(StoreConnection):
    """pymongo async client bound to the URL's default database."""

    def __init__(self, client: AsyncMongoClient, role: str):
        self._client = client
        self._db = client.get_default_database()
        self.role = role

    async def ping(self) -> None:
        await self._db.command("ping")

    async def close(self) -> None:
        await self._client.close()

    async def list_collections(self) -> list[CollectionInfo]:
        infos = []
        for name in await self._db.list_collection_names():
            coll = self._db[name]
            count = await coll.count_documents({})
            latest = await coll.find_one({}, projection={"_id": 1}, sort=[("_id", -1)])
            last_modified = None
            if latest and isinstance(latest["_id"], ObjectId):
                last_modified = latest["_id"].generation_time
            infos.append(CollectionInfo(name=name, count=count, last_modified=last_modified))
        return infos

    async def collection_exists(self, collection: str) -> bool:
        names = await self._db.list_collection_names(filter={"name": collection})
        return collection in names

    async def ensure_collection(self, collection: str) -> bool:
        try:
            await self._db.create_collection(collection)
        except CollectionInvalid:
            return False
        except OperationFailure as e:
            if e.code == NAMESPACE_EXISTS:
                return False
            raise
        return True

    async def scan(
        self, collection: str, filter: dict[str, Any], skip: int, limit: int,
    ) -> list[dict[str, Any]]:
        cursor = (
            self._db[collection]
            .find(filter)
            .sort("_id", 1)
            .hint([("_id", 1)])
            .skip(skip)
            .limit(limit)
        )
        return await cursor.to_list()

    async def count_where(self, collection: str, filter: dict[str, Any]) -> int:
        return await self._db[collection].count_documents(filter)

    def _writer(self, collection: str):
        return self._db[collection].with_options(
            write_concern=WriteConcern(w="majority", wtimeout=settings.write_timeout_ms),
        )

    async def bulk_upsert(self, collection: str, documents: list[dict[str, Any]]) -> UpsertResult:
        if not documents:
            return UpsertResult()
        ops = [ReplaceOne({"_id": doc["_id"]}, doc, upsert=True) for doc in documents]
        try:
            result = await self._writer(collection).bulk_write(ops, ordered=True)
        except BulkWriteError as e:
            raise WriteError(f"Bulk write to {collection} failed", details=e.details) from e
        except PyMongoError as e:
            raise WriteError(f"Bulk write to {collection} failed: {e}") from e
        return UpsertResult(
            upserted_count=result.upserted_count,
            modified_count=result.modified_count,
        )

    async def upsert_one(self, collection: str, document: dict[str, Any]) -> None:
        await self._writer(collection).replace_one({"_id": document["_id"]}, document, upsert=True)

    async def delete_one(self, collection: str, document_id: Any) -> None:
        await self._writer(collection).delete_one({"_id": document_id})

    async def list_indexes(self, collection: str) -> list[IndexSpec]:
        info = await self._db[collection].index_information()
        return [
            IndexSpec(
                name=name,
                keys=list(spec["key"]),
                options={k: v for k, v in spec.items() if k not in INDEX_META_FIELDS},
            )
            for name, spec in info.items()
        ]

    async def create_index(self, collection: str, index: IndexSpec) -> None:
        await self._db[collection].create_index(index.keys, name=index.name, **index.options)

    async def subscribe_changes(self, collections: Collection[str]) -> AsyncIterator[ChangeEvent]:
        # Database-level stream so collections added later need no new subscription
        pipeline = [{"$match": {"operationType": {"$in": list(CHANGE_OPS)}}}]
        try:
            async with await self._db.watch(pipeline, full_document="updateLookup") as stream:
                async for change in stream:
                    coll = change.get("ns", {}).get("coll")
                    if coll not in collections:
                        continue
                    yield ChangeEvent(
                        op=change["operationType"],
                        collection=coll,
                        document_id=change["documentKey"]["_id"],
                        full_document=change.get("fullDocument"),
                    )
        except PyMongoError as e:
            raise StreamError(f"Change stream failed: {e}") from e


async def connect_store(url: str, role: str = "store") -> StoreConnection:
    """Open and ping a connection with replication-friendly preferences."""
    try:
        client = AsyncMongoClient(
            url,
            serverSelectionTimeoutMS=settings.server_selection_timeout_ms,
            connectTimeoutMS=settings.connect_timeout_ms,
            socketTimeoutMS=settings.socket_timeout_ms,
            minPoolSize=settings.min_pool_size,
            maxPoolSize=settings.max_pool_size,
            readPreference="secondaryPreferred",
            w="majority",
            retryWrites=True,
        )
    except (ConfigurationError, ValueError, TypeError) as e:
        raise StoreConnectionError(f"Invalid {role} database URL: {e}") from e

    try:
        conn = MongoStoreConnection(client, role)
        await conn.ping()
    except (ConfigurationError, PyMongoError) as e:
        await client.close()
        raise StoreConnectionError(f"Failed to connect to {role} database: {e}") from e
    logger.info("Connected to %s database", role)
    return conn


async def connect_pair(
    connector: StoreConnector, source_url: str, target_url: str,
) -> tuple[StoreConnection, StoreConnection]:
    """Connect both sides; on any failure close whatever was opened."""
    source = None
    try:
        source = await connector(source_url, "source")
        target = await connector(target_url, "target")
    except Exception:
        if source is not None:
            await _close_quietly(source)
        raise
    return source, target


async def _close_quietly(conn: StoreConnection) -> None:
    try:
        await conn.close()
    except Exception as e:
        logger.warning("Error closing %s connection: %s", conn.role, e)


async def copy_indexes(source: StoreConnection, target: StoreConnection, collection: str) -> int:
    """Mirror secondary indexes onto the target. Returns how many were created."""
    created = 0
    for index in await source.list_indexes(collection):
        if index.name == ID_INDEX:
            continue
        try:
            await target.create_index(collection, index)
            created += 1
        except OperationFailure as e:
            if e.code not in INDEX_EXISTS_CODES:
                raise
            logger.debug("Index %s on %s already exists on target", index.name, collection)
    return created
