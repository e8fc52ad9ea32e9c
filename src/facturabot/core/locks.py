"""Distributed locks for tenant-scoped critical sections.

A lock is a key in a shared store holding a random owner token with a TTL.
Acquisition is a single set-if-absent; release deletes the key only when the
caller still owns it, so a holder whose TTL expired can never release a lock
that somebody else has since taken. Long critical sections extend the TTL
the same way, by owner token, and stop when the extension fails.

Usage:
    from facturabot.core.locks import LockKeys, create_lock_service

    locks = create_lock_service()
    keys = LockKeys()

    async with locks.hold(keys.invoice(tenant_id), ttl_seconds=300):
        ...

    result = await locks.with_lock(keys.folio(tenant_id, "A"), allocate)
"""

from __future__ import annotations

import asyncio
import secrets
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol, TypeVar, runtime_checkable
from uuid import UUID

from redis.asyncio import Redis
from redis.exceptions import RedisError

from facturabot.config.settings import LockConfig, Settings, get_settings
from facturabot.core.exceptions import (
    LockLostError,
    LockNotAcquiredError,
    UnsafeLockBackendError,
)
from facturabot.core.logging import get_logger
from facturabot.observability.metrics import record_lock_acquisition

logger = get_logger(__name__)

T = TypeVar("T")

# Compare-and-delete; returns 1 when the caller owned the key
RELEASE_SCRIPT = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
    return redis.call("DEL", KEYS[1])
else
    return 0
end
"""

# Compare-and-expire; returns 1 when the caller owned the key and its TTL was reset
EXTEND_SCRIPT = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
    return redis.call("PEXPIRE", KEYS[1], ARGV[2])
else
    return 0
end
"""


@dataclass
class LockHandle:
    """An acquired lock.

    Attributes:
        key: Lock key in the shared store
        token: Random owner token; only this token can release the lock
        ttl_seconds: Lifetime granted at acquisition
        acquired_at: When the lock was obtained
    """

    key: str
    token: str
    ttl_seconds: float
    acquired_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@runtime_checkable
class LockBackend(Protocol):
    """Storage primitive behind the lock service."""

    name: str

    async def try_acquire(self, key: str, token: str, ttl_seconds: float) -> bool:
        """Set key to token if absent. Returns True when the lock was taken."""
        ...

    async def release(self, key: str, token: str) -> bool:
        """Delete key only if it still holds token."""
        ...

    async def extend(self, key: str, token: str, ttl_seconds: float) -> bool:
        """Reset the TTL of key only if it still holds token."""
        ...

    async def active_keys(self) -> list[str]:
        """Keys currently held."""
        ...


class RedisLockBackend:
    """Lock backend shared by every process using the same Redis."""

    name = "redis"

    def __init__(self, client: Redis, key_prefix: str = "facturabot:lock"):
        self.client = client
        self.key_prefix = key_prefix

    async def try_acquire(self, key: str, token: str, ttl_seconds: float) -> bool:
        result = await self.client.set(
            key, token, nx=True, px=max(1, int(ttl_seconds * 1000))
        )
        return bool(result)

    async def release(self, key: str, token: str) -> bool:
        result = await self.client.eval(RELEASE_SCRIPT, 1, key, token)
        return result == 1

    async def extend(self, key: str, token: str, ttl_seconds: float) -> bool:
        result = await self.client.eval(
            EXTEND_SCRIPT, 1, key, token, max(1, int(ttl_seconds * 1000))
        )
        return result == 1

    async def active_keys(self) -> list[str]:
        return [key async for key in self.client.scan_iter(match=f"{self.key_prefix}:*")]


class InMemoryLockBackend:
    """Process-local lock backend with TTL semantics.

    Only correct when a single worker process handles every request. Other
    processes cannot see these locks.
    """

    name = "memory"

    def __init__(self, clock: Callable[[], float] | None = None):
        self._clock = clock or time.monotonic
        self._locks: dict[str, tuple[str, float]] = {}
        logger.warning(
            "in_memory_lock_backend_selected",
            detail="locks are not shared across processes; run a single worker",
        )

    def _expired(self, key: str) -> bool:
        entry = self._locks.get(key)
        return entry is not None and entry[1] <= self._clock()

    async def try_acquire(self, key: str, token: str, ttl_seconds: float) -> bool:
        if self._expired(key):
            del self._locks[key]
        if key in self._locks:
            return False
        self._locks[key] = (token, self._clock() + ttl_seconds)
        return True

    async def release(self, key: str, token: str) -> bool:
        entry = self._locks.get(key)
        if entry is None or entry[0] != token or self._expired(key):
            return False
        del self._locks[key]
        return True

    async def extend(self, key: str, token: str, ttl_seconds: float) -> bool:
        entry = self._locks.get(key)
        if entry is None or entry[0] != token or self._expired(key):
            return False
        self._locks[key] = (token, self._clock() + ttl_seconds)
        return True

    async def active_keys(self) -> list[str]:
        self.cleanup_expired()
        return list(self._locks)

    def cleanup_expired(self) -> int:
        """Drop expired entries. Returns how many were removed."""
        now = self._clock()
        expired = [key for key, (_, expires_at) in self._locks.items() if expires_at <= now]
        for key in expired:
            del self._locks[key]
        return len(expired)


class LockKeys:
    """Builds lock keys scoped to a tenant."""

    def __init__(self, prefix: str = "facturabot:lock"):
        self.prefix = prefix

    def _tenant(self, tenant_id: UUID | str) -> str:
        return f"{self.prefix}:tenant:{tenant_id}"

    def invoice(self, tenant_id: UUID | str) -> str:
        return f"{self._tenant(tenant_id)}:invoice"

    def folio(self, tenant_id: UUID | str, series: str) -> str:
        return f"{self._tenant(tenant_id)}:folio:{series}"

    def quota(self, tenant_id: UUID | str) -> str:
        return f"{self._tenant(tenant_id)}:quota"

    def usage(self, tenant_id: UUID | str) -> str:
        return f"{self._tenant(tenant_id)}:usage"

    def batch(self, tenant_id: UUID | str) -> str:
        return f"{self._tenant(tenant_id)}:batch"


class LockService:
    """Acquire, release and scope locks on top of a backend.

    Args:
        backend: Lock storage
        config: TTL and retry configuration
        sleep: Awaitable sleep used between attempts
    """

    def __init__(
        self,
        backend: LockBackend,
        config: LockConfig | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.backend = backend
        self.config = config or LockConfig()
        self._sleep = sleep

    async def acquire(self, key: str, ttl_seconds: float | None = None) -> LockHandle | None:
        """Try once to take the lock.

        Returns:
            A handle when acquired, None when the key is held (or the store failed)
        """
        ttl = ttl_seconds if ttl_seconds is not None else self.config.default_ttl_seconds
        token = secrets.token_hex(16)
        try:
            acquired = await self.backend.try_acquire(key, token, ttl)
        except RedisError as e:
            logger.error("lock_backend_error", key=key, operation="acquire", error=str(e))
            record_lock_acquisition(self.backend.name, "error")
            return None

        if not acquired:
            record_lock_acquisition(self.backend.name, "contended")
            logger.debug("lock_contended", key=key)
            return None

        record_lock_acquisition(self.backend.name, "acquired")
        logger.debug("lock_acquired", key=key, ttl_seconds=ttl)
        return LockHandle(key=key, token=token, ttl_seconds=ttl)

    async def release(self, handle: LockHandle) -> bool:
        """Release a lock if the handle still owns it.

        A False result means the TTL expired first. That is logged but not
        raised; the work done under the lock is already finished.
        """
        try:
            released = await self.backend.release(handle.key, handle.token)
        except RedisError as e:
            logger.error(
                "lock_backend_error", key=handle.key, operation="release", error=str(e)
            )
            return False

        if not released:
            held_for = (datetime.now(UTC) - handle.acquired_at).total_seconds()
            logger.warning(
                "lock_lost_before_release",
                key=handle.key,
                ttl_seconds=handle.ttl_seconds,
                held_seconds=round(held_for, 3),
            )
        return released

    async def extend(self, handle: LockHandle, ttl_seconds: float | None = None) -> bool:
        """Reset the lock's TTL if the handle still owns it.

        Returns False when the lock expired (whether or not it was re-taken)
        or the store failed; an expired lock is never revived.
        """
        ttl = ttl_seconds if ttl_seconds is not None else handle.ttl_seconds
        try:
            extended = await self.backend.extend(handle.key, handle.token, ttl)
        except RedisError as e:
            logger.error("lock_backend_error", key=handle.key, operation="extend", error=str(e))
            return False
        if extended:
            logger.debug("lock_extended", key=handle.key, ttl_seconds=ttl)
        return extended

    async def ensure_held(self, handle: LockHandle, ttl_seconds: float | None = None) -> None:
        """Extend the lock, or fail if it is no longer owned.

        Raises:
            LockLostError: If the TTL ran out before the caller got here
        """
        if await self.extend(handle, ttl_seconds):
            return
        held_for = (datetime.now(UTC) - handle.acquired_at).total_seconds()
        logger.warning(
            "lock_lost",
            key=handle.key,
            ttl_seconds=handle.ttl_seconds,
            held_seconds=round(held_for, 3),
        )
        record_lock_acquisition(self.backend.name, "lost")
        raise LockLostError(handle.key)

    def backoff_delay(self, attempt: int) -> float:
        """Delay after the given failed attempt (1-based), capped."""
        delay = self.config.retry_base_delay_seconds * (2 ** (attempt - 1))
        return min(delay, self.config.retry_max_delay_seconds)

    async def acquire_with_retry(
        self,
        key: str,
        ttl_seconds: float | None = None,
        max_attempts: int | None = None,
    ) -> LockHandle:
        """Acquire with capped exponential backoff.

        Raises:
            LockNotAcquiredError: If every attempt found the key held
        """
        attempts = max_attempts if max_attempts is not None else self.config.default_max_attempts
        attempts = max(1, attempts)
        for attempt in range(1, attempts + 1):
            handle = await self.acquire(key, ttl_seconds)
            if handle is not None:
                return handle
            if attempt < attempts:
                await self._sleep(self.backoff_delay(attempt))

        logger.info("lock_not_acquired", key=key, attempts=attempts)
        raise LockNotAcquiredError(key, attempts)

    @asynccontextmanager
    async def hold(
        self,
        key: str,
        ttl_seconds: float | None = None,
        max_attempts: int | None = None,
    ) -> AsyncIterator[LockHandle]:
        """Hold a lock for the duration of the block, releasing on any exit."""
        handle = await self.acquire_with_retry(key, ttl_seconds, max_attempts)
        try:
            yield handle
        finally:
            await self.release(handle)

    async def with_lock(
        self,
        key: str,
        body: Callable[[], Awaitable[T]],
        ttl_seconds: float | None = None,
        max_attempts: int | None = None,
    ) -> T:
        """Run body exactly once while holding the lock.

        Raises:
            LockNotAcquiredError: If the lock could not be obtained
        """
        async with self.hold(key, ttl_seconds, max_attempts):
            return await body()

    async def get_stats(self) -> dict[str, Any]:
        """Backend type and currently held keys."""
        try:
            keys = await self.backend.active_keys()
        except RedisError as e:
            logger.error("lock_backend_error", operation="stats", error=str(e))
            return {"backend": self.backend.name, "active_locks": None, "keys": [], "error": str(e)}
        return {"backend": self.backend.name, "active_locks": len(keys), "keys": sorted(keys)}


def create_lock_service(
    settings: Settings | None = None,
    redis_client: Redis | None = None,
) -> LockService:
    """Select the lock backend for this deployment.

    Redis is used whenever REDIS_URL is set (or a client is passed). Without
    it the in-process backend is used, which a multi-process deployment
    refuses.

    Raises:
        UnsafeLockBackendError: In multi-process mode without a shared cache
    """
    settings = settings or get_settings()
    config = settings.locks

    if redis_client is None and settings.REDIS_URL:
        redis_client = Redis.from_url(
            settings.REDIS_URL,
            max_connections=settings.REDIS_MAX_CONNECTIONS,
            decode_responses=True,
        )

    if redis_client is not None:
        logger.info("lock_backend_selected", backend="redis")
        return LockService(RedisLockBackend(redis_client, config.key_prefix), config)

    if settings.is_multi_process:
        raise UnsafeLockBackendError(
            "DEPLOYMENT_MODE=multi_process requires REDIS_URL; in-process locks "
            "would let two workers allocate the same folio"
        )

    return LockService(InMemoryLockBackend(), config)
