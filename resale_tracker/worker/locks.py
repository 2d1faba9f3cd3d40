"""Per-record locks that serialize price refreshes of the same book.

Batch refreshes, single-book refreshes and alert-driven refreshes all write a
book's price, tier and history. They take the same key so those writes never
interleave.
"""

import asyncio
import logging
import time
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import AsyncIterator, Hashable, Optional
from uuid import uuid4

import redis.asyncio as redis

from resale_tracker.config import settings

logger = logging.getLogger(__name__)

LOCK_KEY_PREFIX = "resale:lock:"

# Delete the key only while it still holds our token
RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


def book_lock_key(book_id: int) -> str:
    return f"book:{book_id}"


class KeyedLock:
    """In-process lock per key (asyncio)."""

    def __init__(self):
        self.locks: dict[Hashable, asyncio.Lock] = defaultdict(asyncio.Lock)

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        async with self.locks[key]:
            yield

    def is_held(self, key: Hashable) -> bool:
        lock = self.locks.get(key)
        return lock is not None and lock.locked()

    async def close(self):
        pass


class RedisKeyedLock:
    """
    Lock per key shared across processes through Redis.

    Features:
    - SET NX EX acquisition with a TTL so a crashed holder cannot block forever
    - Token-checked release
    - Polling wait with a deadline
    """

    def __init__(
        self,
        redis_url: Optional[str] = None,
        ttl_seconds: Optional[int] = None,
        poll_seconds: Optional[float] = None,
    ):
        self.redis_url = redis_url or settings.redis_url
        self.ttl_seconds = ttl_seconds or settings.book_lock_ttl_seconds
        self.poll_seconds = poll_seconds or settings.book_lock_poll_seconds
        self._redis: Optional[redis.Redis] = None

    async def _get_redis(self) -> redis.Redis:
        """Get or create Redis connection."""
        if self._redis is None:
            self._redis = await redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._redis

    async def close(self):
        """Close Redis connection."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def acquire(self, key: Hashable, timeout: Optional[float] = None) -> str:
        """
        Acquire the lock for key, waiting up to timeout seconds (default: TTL).

        Returns:
            Ownership token to pass to release()

        Raises:
            TimeoutError: If the lock could not be acquired in time
        """
        redis_client = await self._get_redis()
        token = uuid4().hex
        deadline = time.monotonic() + (timeout if timeout is not None else self.ttl_seconds)

        while True:
            acquired = await redis_client.set(
                f"{LOCK_KEY_PREFIX}{key}", token, nx=True, ex=self.ttl_seconds
            )
            if acquired:
                return token
            if time.monotonic() >= deadline:
                raise TimeoutError(f"Timed out waiting for lock {key}")
            await asyncio.sleep(self.poll_seconds)

    async def release(self, key: Hashable, token: str) -> bool:
        """Release the lock if token still owns it."""
        redis_client = await self._get_redis()
        released = await redis_client.eval(RELEASE_SCRIPT, 1, f"{LOCK_KEY_PREFIX}{key}", token)
        if not released:
            logger.warning(f"Lock {key} expired or was taken over before release")
        return bool(released)

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        token = await self.acquire(key)
        try:
            yield
        finally:
            await self.release(key, token)


def create_book_locks():
    """Build the lock backend selected by settings.book_lock_backend."""
    backend = settings.book_lock_backend.lower()
    if backend == "redis":
        return RedisKeyedLock()
    if backend != "local":
        raise ValueError(f"Unknown book lock backend: {settings.book_lock_backend}")
    return KeyedLock()
