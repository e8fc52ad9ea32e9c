"""Redis client and shared-cache utilities for facturabot.

Provides Redis connection management and a sliding-window rate limiter that
is shared by every worker process pointing at the same Redis.
"""

import asyncio
import secrets
from dataclasses import dataclass
from datetime import UTC, datetime

from redis.asyncio import ConnectionPool, Redis

from facturabot.config.settings import get_settings
from facturabot.utils.exceptions import ConfigurationError

# Global connection pool
_pool: ConnectionPool | None = None
_client: Redis | None = None
_lock = asyncio.Lock()


def redis_configured() -> bool:
    """Whether a shared cache endpoint is configured."""
    return bool(get_settings().REDIS_URL)


async def get_redis_pool() -> ConnectionPool:
    """Get or create the Redis connection pool.

    Raises:
        ConfigurationError: If REDIS_URL is not set
    """
    global _pool
    if _pool is None:
        async with _lock:
            if _pool is None:
                settings = get_settings()
                if not settings.REDIS_URL:
                    raise ConfigurationError("REDIS_URL is not configured")
                _pool = ConnectionPool.from_url(
                    settings.REDIS_URL,
                    max_connections=settings.REDIS_MAX_CONNECTIONS,
                    decode_responses=True,
                )
    return _pool


async def get_redis_client() -> Redis:
    """Get or create the shared Redis client."""
    global _client
    if _client is None:
        pool = await get_redis_pool()
        async with _lock:
            if _client is None:
                _client = Redis(connection_pool=pool)
    return _client


async def close_redis() -> None:
    """Close Redis connection pool and client.

    Should be called during application shutdown.
    """
    global _pool, _client
    async with _lock:
        if _client is not None:
            await _client.aclose()
            _client = None
        if _pool is not None:
            await _pool.disconnect()
            _pool = None


@dataclass
class RateLimitResult:
    """Result from rate limit check."""

    allowed: bool
    remaining: int
    reset_at: datetime
    retry_after: int | None = None


class RateLimiter:
    """Sliding window rate limiter using Redis sorted sets.

    Every process sharing the Redis instance counts against the same window,
    which caps the aggregate request rate regardless of worker count.
    """

    def __init__(
        self,
        client: Redis | None = None,
        prefix: str = "facturabot:ratelimit",
    ):
        """Initialize rate limiter.

        Args:
            client: Redis client (uses global if None)
            prefix: Key prefix for namespacing
        """
        self._client = client
        self.prefix = prefix

    async def _get_client(self) -> Redis:
        """Get Redis client."""
        if self._client is not None:
            return self._client
        return await get_redis_client()

    def _make_key(self, identifier: str, resource: str) -> str:
        """Create rate limit key."""
        return f"{self.prefix}:{resource}:{identifier}"

    async def check(
        self,
        identifier: str,
        resource: str,
        limit: int,
        window_seconds: int,
    ) -> RateLimitResult:
        """Check if a request is allowed under the rate limit and record it if so.

        Args:
            identifier: Who is making the request (e.g., "global", a tenant id)
            resource: What resource is being accessed
            limit: Maximum requests allowed in window
            window_seconds: Time window in seconds

        Returns:
            RateLimitResult with allowed status and metadata
        """
        client = await self._get_client()
        key = self._make_key(identifier, resource)
        now_ts = datetime.now(UTC).timestamp()
        window_start = now_ts - window_seconds
        request_id = f"{now_ts}:{secrets.token_hex(4)}"

        pipe = client.pipeline()
        pipe.zremrangebyscore(key, 0, window_start)
        pipe.zcard(key)
        pipe.zadd(key, {request_id: now_ts})
        pipe.expire(key, window_seconds)
        results = await pipe.execute()
        current_count = results[1]

        reset_at = datetime.fromtimestamp(now_ts + window_seconds, tz=UTC)

        if current_count >= limit:
            await client.zrem(key, request_id)

            oldest_entry = await client.zrange(key, 0, 0, withscores=True)
            if oldest_entry:
                oldest_ts = oldest_entry[0][1]
                retry_after = int(oldest_ts + window_seconds - now_ts) + 1
            else:
                retry_after = window_seconds

            return RateLimitResult(
                allowed=False,
                remaining=0,
                reset_at=reset_at,
                retry_after=retry_after,
            )

        return RateLimitResult(
            allowed=True,
            remaining=max(0, limit - current_count - 1),
            reset_at=reset_at,
        )

    async def reset(self, identifier: str, resource: str) -> bool:
        """Reset rate limit for identifier.

        Returns:
            True if key existed and was deleted
        """
        client = await self._get_client()
        result = await client.delete(self._make_key(identifier, resource))
        return result > 0
