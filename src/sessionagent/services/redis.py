import logging
from typing import List

from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ..settings import get_settings

logger = logging.getLogger(__name__)


class RedisCrudService:
    """Async operations against a Redis instance.

    Reads degrade gracefully: on any Redis error they log and return an
    empty value. Writes raise, so a lost write is visible to the caller.
    """

    def __init__(self, url: str) -> None:
        """Create a Redis client for the given URL (e.g. redis://localhost:6379/0)."""
        self._url = url
        self._client: Redis | None = None

    async def connect(self) -> None:
        """Establish connection to Redis. Idempotent."""
        if self._client is not None:
            return
        self._client = Redis.from_url(
            self._url,
            decode_responses=True,
        )
        try:
            await self._client.ping()
            logger.info("Redis connection established: %s", self._url.split("@")[-1])
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis ping failed: %s", e)
            await self._client.aclose()
            self._client = None
            raise

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.debug("Redis connection closed")

    @property
    def client(self) -> Redis | None:
        """Return the underlying Redis client, or None if not connected."""
        return self._client

    def _writer(self) -> Redis:
        if self._client is None:
            raise RedisConnectionError("Redis client is not connected")
        return self._client

    async def hget(self, key: str, field: str) -> str | None:
        """Return one hash field, or None if missing or on error."""
        if self._client is None:
            return None
        try:
            value = await self._client.hget(key, field)
            return value if value is None else str(value)
        except RedisError as e:
            logger.warning("Redis hget %s/%s failed: %s", key, field, e)
            return None

    async def hset(self, key: str, field: str, value: str) -> None:
        """Upsert one hash field."""
        await self._writer().hset(key, field, value)

    async def incr(self, key: str) -> int:
        """Increment a counter and return the new value."""
        return int(await self._writer().incr(key))

    async def zadd(self, key: str, member: str, score: float) -> None:
        """Add one member to a sorted set."""
        await self._writer().zadd(key, {member: score})

    async def zrevrange(self, key: str, start: int, stop: int) -> List[str]:
        """Members from highest to lowest score, or [] on error."""
        if self._client is None:
            return []
        try:
            return [str(m) for m in await self._client.zrevrange(key, start, stop)]
        except RedisError as e:
            logger.warning("Redis zrevrange %s failed: %s", key, e)
            return []

    async def zcard(self, key: str) -> int:
        """Sorted set size, or 0 on error."""
        if self._client is None:
            return 0
        try:
            return int(await self._client.zcard(key))
        except RedisError as e:
            logger.warning("Redis zcard %s failed: %s", key, e)
            return 0

    async def delete(self, *keys: str) -> None:
        """Delete all keys in one MULTI/EXEC transaction. Missing keys are fine."""
        async with self._writer().pipeline(transaction=True) as pipe:
            for key in keys:
                pipe.delete(key)
            await pipe.execute()


def get_redis_crud_service() -> RedisCrudService | None:
    """Return a Redis CRUD service if redis_url is configured, else None."""
    settings = get_settings()
    if not settings.redis_url or not settings.redis_url.strip():
        return None
    return RedisCrudService(settings.redis_url.strip())
