"""
ZoneWatch Redis Incident Source

Stores incident documents in Redis and pushes change notifications over
pub/sub, giving the live-query semantics the subscription layer expects.

Key layout (per collection):
    <prefix>:<collection>:docs     HASH   document id -> JSON document
    <prefix>:<collection>:by_time  ZSET   document id scored by creation epoch seconds
    <prefix>:<collection>:changes  PUBSUB channel; writers publish the document id

A listener is an asyncio task: it subscribes to the change channel, delivers
an initial snapshot, then re-reads the query result after every notification.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import redis.asyncio as redis
from redis.exceptions import (
    AuthenticationError,
    ConnectionError as RedisConnectionError,
    NoPermissionError,
    RedisError,
    ResponseError,
    TimeoutError as RedisTimeoutError,
)

from ..models import QuerySpec
from .source import (
    ErrorCallback,
    IncidentSource,
    ListenerRegistration,
    SnapshotCallback,
    SourceError,
    document_timestamp,
)


logger = logging.getLogger(__name__)


def to_source_error(exc: RedisError) -> SourceError:
    """Translate a redis-py exception into a classified SourceError."""
    # AuthenticationError subclasses ConnectionError, so check it first
    if isinstance(exc, (AuthenticationError, NoPermissionError)):
        code = "permission-denied"
    elif isinstance(exc, (RedisConnectionError, RedisTimeoutError)):
        code = "unavailable"
    elif isinstance(exc, ResponseError):
        code = "permission-denied" if str(exc).startswith("NOPERM") else "invalid-argument"
    else:
        code = "unknown"
    return SourceError(code, str(exc))


class RedisConnectionManager:
    """
    Opens one pooled client on first use and shares it.

    Connecting is attempted `retry_attempts` times with a linearly growing
    delay; the last failure is raised to the caller.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        max_connections: int = 50,
        socket_timeout: float = 5.0,
        retry_attempts: int = 3,
        retry_delay: float = 0.1,
    ):
        self._redis_url = redis_url
        self._max_connections = max_connections
        self._socket_timeout = socket_timeout
        self._retry_attempts = retry_attempts
        self._retry_delay = retry_delay
        self._pool: Optional[redis.ConnectionPool] = None
        self._client: Optional[redis.Redis] = None
        self._lock = asyncio.Lock()

    async def get_client(self) -> redis.Redis:
        """
        Shared client, connecting on first use.

        Raises:
            RedisConnectionError: If every connection attempt failed
        """
        if self._client is None:
            async with self._lock:
                # Another caller may have connected while we waited
                if self._client is None:
                    self._client = await self._connect_with_retry()
        return self._client

    async def _connect(self) -> redis.Redis:
        pool = redis.ConnectionPool.from_url(
            self._redis_url,
            max_connections=self._max_connections,
            socket_timeout=self._socket_timeout,
            decode_responses=True,
        )
        client = redis.Redis(connection_pool=pool)
        try:
            await client.ping()
        except RedisError:
            await pool.disconnect()
            raise
        self._pool = pool
        return client

    async def _connect_with_retry(self) -> redis.Redis:
        last_error: Optional[RedisError] = None
        for attempt in range(1, self._retry_attempts + 1):
            try:
                client = await self._connect()
            except RedisError as e:
                last_error = e
                logger.warning(f"Redis connect attempt {attempt}/{self._retry_attempts} failed: {e}")
                if attempt < self._retry_attempts:
                    await asyncio.sleep(self._retry_delay * attempt)
                continue
            logger.info(f"Redis connected after {attempt} attempt(s)")
            return client

        raise RedisConnectionError(
            f"Could not reach Redis after {self._retry_attempts} attempts"
        ) from last_error

    async def close(self) -> None:
        """Release the shared client and its pool."""
        client, self._client = self._client, None
        pool, self._pool = self._pool, None
        if client is not None:
            await client.aclose()
        if pool is not None:
            await pool.disconnect()


class RedisIncidentSource(IncidentSource):
    """
    Incident source backed by Redis hashes, sorted sets and pub/sub.

    Example:
        source = RedisIncidentSource(redis_url="redis://localhost:6379/0")
        await source.add_document({"location": {...}, "incidentType": "Robo"})
        documents = await source.fetch(QuerySpec.last_days(7))
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        key_prefix: str = "zonewatch",
        client: Optional[redis.Redis] = None,
        poll_timeout_seconds: float = 1.0,
    ):
        """
        Initialize the source.

        Args:
            redis_url: Redis connection URL (ignored when `client` is given)
            key_prefix: Namespace for all keys and channels
            client: Pre-built client (must use decode_responses=True)
            poll_timeout_seconds: How long one pub/sub read waits for a message
        """
        self._connection = None if client is not None else RedisConnectionManager(redis_url)
        self._client = client
        self._prefix = key_prefix
        self._poll_timeout = poll_timeout_seconds
        self._tasks: set[asyncio.Task] = set()

    def docs_key(self, collection: str) -> str:
        return f"{self._prefix}:{collection}:docs"

    def time_index_key(self, collection: str) -> str:
        return f"{self._prefix}:{collection}:by_time"

    def channel(self, collection: str) -> str:
        return f"{self._prefix}:{collection}:changes"

    async def _get_client(self) -> redis.Redis:
        if self._client is not None:
            return self._client
        return await self._connection.get_client()

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def add_document(
        self,
        document: Dict[str, Any],
        collection: str = "reports",
        document_id: Optional[str] = None,
    ) -> str:
        """
        Store one document and notify listeners.

        Documents without a parseable creation time are stamped with now.

        Returns:
            The document id

        Raises:
            SourceError: If Redis rejects the write
        """
        document_id = document_id or str(document.get("id") or uuid.uuid4().hex)
        created_at = document_timestamp(document)
        if created_at is None:
            created_at = datetime.now(timezone.utc)
            document = {**document, "createdAt": created_at.isoformat()}

        payload = json.dumps({**document, "id": document_id}, default=str)

        try:
            client = await self._get_client()
            async with client.pipeline(transaction=True) as pipe:
                pipe.hset(self.docs_key(collection), document_id, payload)
                pipe.zadd(self.time_index_key(collection), {document_id: created_at.timestamp()})
                pipe.publish(self.channel(collection), document_id)
                await pipe.execute()
        except RedisError as e:
            logger.error(f"Failed to store document {document_id}: {e}")
            raise to_source_error(e) from e

        logger.debug(f"Stored document {document_id} in {collection}")
        return document_id

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def _read(self, client: redis.Redis, query: QuerySpec) -> List[Dict[str, Any]]:
        min_score = query.start.timestamp() if query.start else "-inf"
        max_score = query.end.timestamp() if query.end else "+inf"

        document_ids = await client.zrangebyscore(
            self.time_index_key(query.collection), min_score, max_score
        )
        if not document_ids:
            return []

        payloads = await client.hmget(self.docs_key(query.collection), document_ids)
        documents = []
        for document_id, payload in zip(document_ids, payloads):
            if payload is None:
                continue
            try:
                documents.append(json.loads(payload))
            except json.JSONDecodeError:
                logger.warning(f"Skipping unreadable document {document_id}")
        return documents

    async def fetch(self, query: QuerySpec) -> List[Dict[str, Any]]:
        try:
            client = await self._get_client()
            return await self._read(client, query)
        except RedisError as e:
            logger.error(f"Redis query on {query.collection} failed: {e}")
            raise to_source_error(e) from e

    async def health_check(self) -> bool:
        try:
            client = await self._get_client()
            return bool(await client.ping())
        except RedisError:
            return False

    # -------------------------------------------------------------------------
    # Live queries
    # -------------------------------------------------------------------------

    def listen(
        self,
        query: QuerySpec,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback,
    ) -> ListenerRegistration:
        """
        Start a listener task on the running event loop.

        Raises:
            RuntimeError: If called outside a running event loop
        """
        loop = asyncio.get_running_loop()
        task = loop.create_task(self._listen_loop(query, on_snapshot, on_error))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

        def detach() -> None:
            task.cancel()

        return detach

    async def _listen_loop(
        self,
        query: QuerySpec,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback,
    ) -> None:
        pubsub = None
        error: Optional[SourceError] = None
        try:
            client = await self._get_client()
            pubsub = client.pubsub()
            await pubsub.subscribe(self.channel(query.collection))

            on_snapshot(await self._read(client, query))

            while True:
                message = await pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=self._poll_timeout
                )
                if message is None:
                    continue
                on_snapshot(await self._read(client, query))

        except RedisError as e:
            logger.warning(f"Redis listener on {query.collection} failed: {e}")
            error = to_source_error(e)
        except Exception as e:
            # Includes failures raised by the snapshot consumer
            logger.error(f"Redis listener on {query.collection} crashed: {e!r}")
            error = SourceError("unknown", repr(e))
        finally:
            if pubsub is not None:
                try:
                    await pubsub.aclose()
                except RedisError as e:
                    logger.debug(f"Ignoring error while closing pub/sub: {e}")

        # on_error usually detaches, which cancels this task, so report last
        if error is not None:
            on_error(error)

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        if self._connection is not None:
            await self._connection.close()
