"""
Document Store Adapters for the Check-in Scanner

This module implements the Repository pattern for the remote document
store that holds registrations and attendance records. It provides an
abstraction layer between the attendance services and the storage backend,
with an in-memory implementation for tests and development and a Redis
implementation for deployments.
"""

import asyncio
import json
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import redis.asyncio as aioredis
from redis.exceptions import RedisError, WatchError

from .exceptions import CheckinScannerException, ConflictError, NotFoundError, StoreError
from .models import Document, Failure, Result, Success

logger = logging.getLogger(__name__)

REGISTRATIONS = "registrations"
ATTENDANCE = "attendance"

_CLOSED = object()


@dataclass(frozen=True)
class Write:
    """
    A single write inside a batch

    `update` merges fields into an existing document, `set` replaces the
    document (creating it when absent). An update with `expected` only
    applies while the stored fields still equal those values.
    """
    kind: str
    collection: str
    document_id: str
    data: Dict[str, Any] = field(default_factory=dict)
    expected: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def update(cls, collection: str, document_id: str, fields: Dict[str, Any],
               expected: Optional[Dict[str, Any]] = None) -> 'Write':
        return cls("update", collection, document_id, dict(fields), dict(expected or {}))

    @classmethod
    def set(cls, collection: str, document_id: str, data: Dict[str, Any]) -> 'Write':
        return cls("set", collection, document_id, dict(data))


def matches(data: Dict[str, Any], where: Dict[str, Any]) -> bool:
    """Field equality predicate shared by every backend"""
    return all(data.get(name) == value for name, value in where.items())


class Subscription:
    """
    Live query handle

    Iterating yields `Success([Document, ...])` snapshots, or `Failure`
    when the backend reports an error. `close()` ends the iteration and
    releases the backend listener.
    """

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self._close_callbacks: List[Callable[[], Any]] = []

    @property
    def closed(self) -> bool:
        return self._closed

    def on_close(self, callback: Callable[[], Any]) -> None:
        self._close_callbacks.append(callback)

    def push(self, item: Result) -> None:
        if not self._closed:
            self._queue.put_nowait(item)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)
        for callback in self._close_callbacks:
            callback()

    def __aiter__(self):
        return self

    async def __anext__(self) -> Result:
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item


class DocumentStore(ABC):
    """
    Abstract base class for document stores

    Every method is a coroutine except `subscribe` and `new_id`.
    Failures are raised as StoreError; updates against a missing
    document raise NotFoundError, and updates whose `expected` fields no
    longer hold raise ConflictError.
    """

    def new_id(self, collection: str) -> str:
        """Reserve an identifier for a document about to be created"""
        return uuid.uuid4().hex

    @abstractmethod
    async def get(self, collection: str, document_id: str) -> Optional[Document]:
        """
        Fetch one document

        Returns:
            The document, or None when it does not exist
        """

    @abstractmethod
    async def create(self, collection: str, data: Dict[str, Any],
                     document_id: Optional[str] = None) -> str:
        """
        Create a document

        Args:
            collection: Target collection
            data: Document fields
            document_id: Identifier reserved with new_id(), generated when omitted

        Returns:
            The identifier of the created document
        """

    @abstractmethod
    async def set(self, collection: str, document_id: str, data: Dict[str, Any]) -> None:
        """Create or replace a document under a known identifier"""

    @abstractmethod
    async def update(self, collection: str, document_id: str, fields: Dict[str, Any]) -> None:
        """Merge fields into an existing document"""

    @abstractmethod
    async def query(self, collection: str, **where) -> List[Document]:
        """Return documents whose fields equal every keyword given"""

    @abstractmethod
    def subscribe(self, collection: str, **where) -> Subscription:
        """Open a live query; the first item is the current result set"""

    async def batch_write(self, writes: List[Write]) -> None:
        """
        Apply writes in order

        Backends that can, override this to make the batch atomic. Here
        `expected` is checked by a read just before each update.
        """
        for write in writes:
            if write.kind == "update":
                if write.expected:
                    current = await self.get(write.collection, write.document_id)
                    if current is not None and not matches(current.data, write.expected):
                        raise ConflictError(write.collection, write.document_id, write.expected)
                await self.update(write.collection, write.document_id, write.data)
            else:
                await self.set(write.collection, write.document_id, write.data)

    async def close(self) -> None:
        """Release backend resources"""


class InMemoryDocumentStore(DocumentStore):
    """
    In-memory store implementation for testing and development

    Batches are atomic. `fail(operation, details)` makes the named
    operation raise StoreError until `recover(operation)` is called, and
    `calls` records every operation in order.
    """

    def __init__(self, initial_data: Optional[Dict[str, Dict[str, Dict]]] = None):
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {
            name: {doc_id: dict(data) for doc_id, data in documents.items()}
            for name, documents in (initial_data or {}).items()
        }
        self._subscribers: List[Tuple[str, Dict[str, Any], Subscription]] = []
        self.failures: Dict[str, str] = {}
        self.calls: List[Tuple[str, str]] = []

    def fail(self, operation: str, details: str = "backend unavailable") -> None:
        self.failures[operation] = details

    def recover(self, operation: Optional[str] = None) -> None:
        if operation is None:
            self.failures.clear()
        else:
            self.failures.pop(operation, None)

    def _enter(self, operation: str, collection: str) -> None:
        self.calls.append((operation, collection))
        if operation in self.failures:
            raise StoreError(operation, self.failures[operation])

    def _documents(self, collection: str) -> Dict[str, Dict[str, Any]]:
        return self._collections.setdefault(collection, {})

    def _snapshot(self, collection: str, where: Dict[str, Any]) -> List[Document]:
        return [
            Document(doc_id, dict(data))
            for doc_id, data in sorted(self._documents(collection).items())
            if matches(data, where)
        ]

    def _notify(self, collection: str) -> None:
        for name, where, subscription in list(self._subscribers):
            if name == collection:
                subscription.push(Success(self._snapshot(collection, where)))

    async def get(self, collection: str, document_id: str) -> Optional[Document]:
        self._enter("get", collection)
        await asyncio.sleep(0)
        data = self._documents(collection).get(document_id)
        if data is None:
            return None
        return Document(document_id, dict(data))

    async def create(self, collection: str, data: Dict[str, Any],
                     document_id: Optional[str] = None) -> str:
        self._enter("create", collection)
        await asyncio.sleep(0)
        document_id = document_id or self.new_id(collection)
        documents = self._documents(collection)
        if document_id in documents:
            raise StoreError("create", f"document '{document_id}' already exists in '{collection}'")
        documents[document_id] = dict(data)
        self._notify(collection)
        return document_id

    async def set(self, collection: str, document_id: str, data: Dict[str, Any]) -> None:
        self._enter("set", collection)
        await asyncio.sleep(0)
        self._documents(collection)[document_id] = dict(data)
        self._notify(collection)

    async def update(self, collection: str, document_id: str, fields: Dict[str, Any]) -> None:
        self._enter("update", collection)
        await asyncio.sleep(0)
        documents = self._documents(collection)
        if document_id not in documents:
            raise NotFoundError(collection, document_id)
        documents[document_id].update(fields)
        self._notify(collection)

    async def query(self, collection: str, **where) -> List[Document]:
        self._enter("query", collection)
        await asyncio.sleep(0)
        return self._snapshot(collection, where)

    def subscribe(self, collection: str, **where) -> Subscription:
        self._enter("subscribe", collection)
        subscription = Subscription()
        entry = (collection, dict(where), subscription)
        self._subscribers.append(entry)
        subscription.on_close(lambda: self._subscribers.remove(entry))
        subscription.push(Success(self._snapshot(collection, where)))
        return subscription

    async def batch_write(self, writes: List[Write]) -> None:
        self._enter("batch_write", ",".join(w.collection for w in writes))
        await asyncio.sleep(0)
        for write in writes:
            if write.kind != "update":
                continue
            current = self._documents(write.collection).get(write.document_id)
            if current is None:
                raise NotFoundError(write.collection, write.document_id)
            if not matches(current, write.expected):
                raise ConflictError(write.collection, write.document_id, write.expected)

        touched = []
        for write in writes:
            documents = self._documents(write.collection)
            if write.kind == "update":
                documents[write.document_id].update(write.data)
            else:
                documents[write.document_id] = dict(write.data)
            if write.collection not in touched:
                touched.append(write.collection)
        for collection in touched:
            self._notify(collection)

    async def close(self) -> None:
        for _, _, subscription in list(self._subscribers):
            subscription.close()


class RedisDocumentStore(DocumentStore):
    """
    Redis-backed store implementation

    Layout, for a prefix `checkin`:
        checkin:<collection>:<id>     JSON encoded document
        checkin:index:<collection>    set of document ids
        checkin:changes:<collection>  pub/sub channel, one message per write
    Updates and batches run under WATCH/MULTI, so a batch lands whole.
    """

    def __init__(self, client: aioredis.Redis, prefix: str = "checkin"):
        """
        Initialize Redis store

        Args:
            client: redis.asyncio client created with decode_responses=True
            prefix: Key namespace
        """
        self.client = client
        self.prefix = prefix
        self._listeners: Set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, host: str = "localhost", port: int = 6379, db: int = 0,
                      prefix: str = "checkin") -> 'RedisDocumentStore':
        client = aioredis.Redis(host=host, port=port, db=db, decode_responses=True)
        return cls(client, prefix)

    def _key(self, collection: str, document_id: str) -> str:
        return f"{self.prefix}:{collection}:{document_id}"

    def _index(self, collection: str) -> str:
        return f"{self.prefix}:index:{collection}"

    def _channel(self, collection: str) -> str:
        return f"{self.prefix}:changes:{collection}"

    async def get(self, collection: str, document_id: str) -> Optional[Document]:
        try:
            raw = await self.client.get(self._key(collection, document_id))
        except RedisError as e:
            raise StoreError("get", str(e)) from e
        if raw is None:
            return None
        return Document(document_id, json.loads(raw))

    async def create(self, collection: str, data: Dict[str, Any],
                     document_id: Optional[str] = None) -> str:
        document_id = document_id or self.new_id(collection)
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.set(self._key(collection, document_id), json.dumps(data), nx=True)
                pipe.sadd(self._index(collection), document_id)
                pipe.publish(self._channel(collection), document_id)
                created, _, _ = await pipe.execute()
        except RedisError as e:
            raise StoreError("create", str(e)) from e
        if not created:
            raise StoreError("create", f"document '{document_id}' already exists in '{collection}'")
        return document_id

    async def set(self, collection: str, document_id: str, data: Dict[str, Any]) -> None:
        await self.batch_write([Write.set(collection, document_id, data)])

    async def update(self, collection: str, document_id: str, fields: Dict[str, Any]) -> None:
        await self.batch_write([Write.update(collection, document_id, fields)])

    async def query(self, collection: str, **where) -> List[Document]:
        try:
            ids = sorted(await self.client.smembers(self._index(collection)))
            if not ids:
                return []
            raws = await self.client.mget([self._key(collection, doc_id) for doc_id in ids])
        except RedisError as e:
            raise StoreError("query", str(e)) from e

        documents = []
        for doc_id, raw in zip(ids, raws):
            if raw is None:
                continue
            data = json.loads(raw)
            if matches(data, where):
                documents.append(Document(doc_id, data))
        return documents

    async def batch_write(self, writes: List[Write]) -> None:
        watched = [self._key(w.collection, w.document_id) for w in writes if w.kind == "update"]
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                while True:
                    try:
                        documents = {}
                        if watched:
                            await pipe.watch(*watched)
                        for write in writes:
                            key = self._key(write.collection, write.document_id)
                            if write.kind == "update":
                                current = documents.get(key)
                                if current is None:
                                    raw = await pipe.get(key)
                                    if raw is None:
                                        raise NotFoundError(write.collection, write.document_id)
                                    current = json.loads(raw)
                                    if not matches(current, write.expected):
                                        raise ConflictError(write.collection, write.document_id,
                                                            write.expected)
                                current.update(write.data)
                                documents[key] = current
                            else:
                                documents[key] = dict(write.data)

                        pipe.multi()
                        for write in writes:
                            key = self._key(write.collection, write.document_id)
                            pipe.set(key, json.dumps(documents[key]))
                            pipe.sadd(self._index(write.collection), write.document_id)
                            pipe.publish(self._channel(write.collection), write.document_id)
                        await pipe.execute()
                        return
                    except WatchError:
                        logger.debug("Concurrent modification of %s, retrying batch", watched)
                        continue
        except RedisError as e:
            raise StoreError("batch_write", str(e)) from e

    def subscribe(self, collection: str, **where) -> Subscription:
        subscription = Subscription()
        task = asyncio.get_running_loop().create_task(
            self._listen(collection, where, subscription)
        )
        self._listeners.add(task)
        task.add_done_callback(self._listeners.discard)
        subscription.on_close(task.cancel)
        return subscription

    async def _listen(self, collection: str, where: Dict[str, Any],
                      subscription: Subscription) -> None:
        pubsub = self.client.pubsub()
        try:
            await pubsub.subscribe(self._channel(collection))
            await self._push_snapshot(collection, where, subscription)
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                await self._push_snapshot(collection, where, subscription)
        except RedisError as e:
            logger.error("Subscription to %s failed: %s", collection, e)
            subscription.push(Failure(f"Error listening to {collection}: {e}", StoreError("subscribe", str(e))))
        finally:
            await pubsub.aclose()

    async def _push_snapshot(self, collection: str, where: Dict[str, Any],
                             subscription: Subscription) -> None:
        try:
            subscription.push(Success(await self.query(collection, **where)))
        except CheckinScannerException as e:
            subscription.push(Failure(e.message, e))

    async def close(self) -> None:
        listeners = list(self._listeners)
        for task in listeners:
            task.cancel()
        await asyncio.gather(*listeners, return_exceptions=True)
        await self.client.aclose()


class RepositoryFactory:
    """
    Factory class for creating store instances

    Provides a centralized way to pick a backend from configuration.
    """

    @staticmethod
    def create_memory_store(initial_data: Optional[Dict] = None) -> InMemoryDocumentStore:
        return InMemoryDocumentStore(initial_data)

    @staticmethod
    def create_redis_store(**kwargs) -> RedisDocumentStore:
        """
        Create a Redis store

        Args:
            **kwargs: host, port, db and prefix, forwarded to from_settings
        """
        return RedisDocumentStore.from_settings(**kwargs)

    @staticmethod
    def create_store(store_type: str, **kwargs) -> DocumentStore:
        """
        Create a store based on type

        Args:
            store_type: Type of store ('memory' or 'redis')
            **kwargs: Additional arguments for store creation

        Returns:
            DocumentStore instance

        Raises:
            ValueError: If store type is not supported
        """
        if store_type.lower() == 'memory':
            return RepositoryFactory.create_memory_store(kwargs.get('initial_data'))

        elif store_type.lower() == 'redis':
            return RepositoryFactory.create_redis_store(
                host=kwargs.get('host', 'localhost'),
                port=int(kwargs.get('port', 6379)),
                db=int(kwargs.get('db', 0)),
                prefix=kwargs.get('prefix', 'checkin'),
            )

        else:
            raise ValueError(f"Unsupported store type: {store_type}")
