"""
Redis access for the order change feed, the analytics sync queue and
operational counters.

One pooled connection serves commands and publishing. Every realtime
subscriber gets its own pub/sub connection from the same pool.
"""

import json
from typing import Any, Optional, Union
from urllib.parse import urlsplit

from redis.asyncio import ConnectionPool, Redis
from redis.asyncio.client import PubSub
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import (
    ConnectionError,
    RedisError,
    TimeoutError,
)

from pharmadelivery.core.config import get_settings
from pharmadelivery.core.logging import get_logger

logger = get_logger(__name__)
settings = get_settings()


def redact_url(url: str) -> str:
    """Drop credentials from a Redis URL before it reaches the logs."""
    parts = urlsplit(url)
    if not parts.password and not parts.username:
        return url
    host = parts.hostname or ""
    if parts.port:
        host = f"{host}:{parts.port}"
    return f"{parts.scheme}://***@{host}{parts.path}"


class RedisClient:
    """
    Pooled async Redis client.

    Commands raise ``ConnectionError`` until :meth:`connect` succeeds.
    Callers that treat Redis as optional catch ``RedisError`` themselves.
    """

    def __init__(self, url: Optional[str] = None, max_connections: Optional[int] = None):
        self._url = url or settings.redis_url
        self._max_connections = max_connections or settings.redis_max_connections
        self._pool: Optional[ConnectionPool] = None
        self._client: Optional[Redis] = None
        self._total_operations = 0

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    async def connect(self) -> None:
        """
        Open the pool and ping the server.

        Raises:
            ConnectionError: If the server cannot be reached
        """
        if self._client is not None:
            return

        # Pub/sub connections block on reads, so they get no socket timeout.
        self._pool = ConnectionPool.from_url(
            self._url,
            max_connections=self._max_connections,
            socket_connect_timeout=5.0,
            health_check_interval=30,
            retry=Retry(ExponentialBackoff(base=0.1, cap=2.0), retries=3),
            decode_responses=True,
        )
        client = Redis(connection_pool=self._pool)

        try:
            await client.ping()
        except (ConnectionError, TimeoutError) as e:
            logger.error(
                "Failed to connect to Redis",
                url=redact_url(self._url),
                error=str(e),
            )
            await client.aclose()
            await self._pool.aclose()
            self._pool = None
            raise ConnectionError(f"Redis connection failed: {e}") from e

        self._client = client
        logger.info(
            "Redis connection established",
            url=redact_url(self._url),
            max_connections=self._max_connections,
        )

    async def disconnect(self) -> None:
        """Close the client and its pool."""
        if self._client is None:
            return

        client, pool = self._client, self._pool
        self._client = None
        self._pool = None
        try:
            await client.aclose()
            if pool is not None:
                await pool.aclose()
        except RedisError as e:
            logger.warning("Error closing Redis connection", error=str(e))
            raise
        logger.info("Redis connection closed", operations=self._total_operations)

    async def health_check(self) -> bool:
        """Return True when the server answers PING."""
        if self._client is None:
            return False

        try:
            return bool(await self._client.ping())
        except RedisError as e:
            logger.warning("Redis health check failed", error=str(e))
            return False

    def _ensure_connected(self) -> None:
        """
        Ensure Redis client is connected.

        Raises:
            ConnectionError: If client is not connected
        """
        if self._client is None:
            raise ConnectionError("Redis client is not connected")

    async def get(self, key: str) -> Optional[str]:
        """Read a string value, or None when the key is missing."""
        self._ensure_connected()

        try:
            self._total_operations += 1
            return await self._client.get(key)

        except RedisError as e:
            logger.error("Redis GET operation failed", key=key, error=str(e))
            raise

    async def incr(self, key: str, amount: int = 1) -> int:
        """Increment a counter and return its new value."""
        self._ensure_connected()

        try:
            self._total_operations += 1
            value = await self._client.incrby(key, amount)
            logger.debug("Redis INCR operation", key=key, amount=amount, new_value=value)
            return value

        except RedisError as e:
            logger.error("Redis INCR operation failed", key=key, error=str(e))
            raise

    async def publish(self, channel: str, message: dict[str, Any]) -> int:
        """
        Publish a JSON message on a channel.

        Args:
            channel: Channel name
            message: JSON-serializable payload

        Returns:
            Number of subscribers that received the message

        Raises:
            ConnectionError: If Redis is not connected
            RedisError: If Redis operation fails
        """
        self._ensure_connected()

        try:
            self._total_operations += 1
            receivers = await self._client.publish(channel, json.dumps(message))
            logger.debug("Redis PUBLISH operation", channel=channel, receivers=receivers)
            return receivers

        except RedisError as e:
            logger.error("Redis PUBLISH operation failed", channel=channel, error=str(e))
            raise

    def pubsub(self) -> PubSub:
        """
        Create a dedicated pub/sub connection.

        The caller owns the returned object and must ``aclose()`` it.

        Raises:
            ConnectionError: If Redis is not connected
        """
        self._ensure_connected()
        return self._client.pubsub(ignore_subscribe_messages=True)

    async def enqueue_unique(self, queue_key: str, members_key: str, value: str) -> bool:
        """
        Append a value to a list unless it was already queued.

        Args:
            queue_key: List holding pending values
            members_key: Set tracking queued values
            value: Value to enqueue

        Returns:
            True if the value was newly queued

        Raises:
            ConnectionError: If Redis is not connected
            RedisError: If Redis operation fails
        """
        self._ensure_connected()

        try:
            self._total_operations += 1
            added = await self._client.sadd(members_key, value)
            if not added:
                return False
            await self._client.rpush(queue_key, value)
            return True

        except RedisError as e:
            logger.error("Redis enqueue failed", queue=queue_key, error=str(e))
            raise

    async def dequeue_many(self, queue_key: str, members_key: str, count: int) -> list[str]:
        """
        Pop up to ``count`` values from the head of a queue.

        Popped values are removed from the membership set so they can be
        queued again later.

        Raises:
            ConnectionError: If Redis is not connected
            RedisError: If Redis operation fails
        """
        self._ensure_connected()

        try:
            self._total_operations += 1
            values = await self._client.lpop(queue_key, count) or []
            if values:
                await self._client.srem(members_key, *values)
            return list(values)

        except RedisError as e:
            logger.error("Redis dequeue failed", queue=queue_key, error=str(e))
            raise

    async def queue_length(self, queue_key: str) -> int:
        """Number of values waiting in a queue."""
        self._ensure_connected()

        try:
            return await self._client.llen(queue_key)

        except RedisError as e:
            logger.error("Redis LLEN operation failed", queue=queue_key, error=str(e))
            raise


class ChannelKeyManager:
    """
    Utility class for Redis key and channel naming.

    Provides methods for generating namespaced channel, queue and metric
    keys so publishers and subscribers always agree on names.
    """

    def __init__(self, namespace: str = "pharmadelivery"):
        """
        Initialize key manager.

        Args:
            namespace: Base namespace for all keys
        """
        self.namespace = namespace

    def make_key(self, *parts: Union[str, int]) -> str:
        """
        Generate key from parts.

        Example:
            >>> manager = ChannelKeyManager("app")
            >>> manager.make_key("order", 123)
            'app:order:123'
        """
        key_parts = [str(part) for part in parts if part not in (None, "")]
        return ":".join([self.namespace] + key_parts)

    def order_channel(self, order_id: Any) -> str:
        """Change feed channel for one order."""
        return self.make_key("order", order_id)

    def run_channel(self, run_id: Any) -> str:
        """Change feed channel for one delivery run."""
        return self.make_key("run", run_id)

    def analytics_queue(self, entity: str) -> str:
        """Pending analytics sync ids for an entity type."""
        return self.make_key("analytics", entity)

    def analytics_members(self, entity: str) -> str:
        """De-duplication set paired with an analytics queue."""
        return self.make_key("analytics", entity, "members")

    def metric_key(self, name: str) -> str:
        """Counter key for an operational metric."""
        return self.make_key("metrics", name)


_redis_client: Optional[RedisClient] = None
_channel_key_manager: Optional[ChannelKeyManager] = None


async def get_redis_client() -> RedisClient:
    """
    Return the process-wide client, connecting on first use.

    Raises:
        ConnectionError: If Redis cannot be reached
    """
    global _redis_client

    if _redis_client is None:
        client = RedisClient()
        await client.connect()
        _redis_client = client

    return _redis_client


def get_channel_key_manager() -> ChannelKeyManager:
    """Return the shared key manager."""
    global _channel_key_manager

    if _channel_key_manager is None:
        _channel_key_manager = ChannelKeyManager()

    return _channel_key_manager


async def close_redis_client() -> None:
    """Disconnect the process-wide client if one was opened."""
    global _redis_client

    if _redis_client is not None:
        await _redis_client.disconnect()
        _redis_client = None
