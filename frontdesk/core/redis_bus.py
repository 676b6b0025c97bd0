"""Frontdesk – Redis connector.

One shared ``redis.asyncio`` client for the decision cache and the learning
queue. Keys always come from ``frontdesk.core.redis_keys``.
"""

import redis.asyncio as redis
import structlog

logger = structlog.get_logger()


class RedisBus:
    """Async Redis connection holder with queue helpers."""

    def __init__(self, redis_url: str = "redis://127.0.0.1:6379/0") -> None:
        self._redis_url = redis_url
        self._client: redis.Redis | None = None

    async def connect(self) -> None:
        """Establish connection to Redis."""
        self._client = redis.from_url(
            self._redis_url,
            decode_responses=True,
            retry_on_timeout=True,
        )
        await self._client.ping()
        logger.info("redis.connected", url=self._redis_url)

    async def disconnect(self) -> None:
        """Gracefully close Redis connection."""
        if self._client:
            await self._client.aclose()
            self._client = None
        logger.info("redis.disconnected")

    async def health_check(self) -> bool:
        """Check Redis connectivity."""
        if not self._client:
            return False
        try:
            return await self._client.ping()
        except (redis.ConnectionError, redis.TimeoutError):
            logger.error("redis.health_check_failed")
            return False

    async def push_to_queue(self, key: str, message: str) -> int:
        """Push a message to a Redis Queue (List)."""
        if not self._client:
            raise RuntimeError("Redis not connected.")
        # RPUSH appends to end of list
        count = await self._client.rpush(key, message)
        logger.debug("redis.queued", key=key, length=count)
        return count

    @property
    def client(self) -> redis.Redis:
        """Direct access to Redis client for advanced operations."""
        if not self._client:
            raise RuntimeError("Redis not connected. Call connect() first.")
        return self._client
