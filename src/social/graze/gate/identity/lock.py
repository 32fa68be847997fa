"""
Distributed lock around first-time account creation.

Two browsers completing a first login for the same external identity at the
same moment would both miss the user lookup and both try to create an
account. The lock makes creation single-flight across every instance sharing
the Redis store: the key `lock:auth:<provider>:<subject>` is set only if
absent, and expires on its own if the holder dies mid-creation.
"""

import contextlib
import logging
from typing import AsyncIterator, Optional

import redis.asyncio as redis

logger = logging.getLogger(__name__)

DEFAULT_IDENTITY_LOCK_TTL = 30


class IdentityLockException(Exception):
    @staticmethod
    def in_progress(provider: str, subject: str) -> "IdentityLockException":
        return IdentityLockException(
            f"error-identity-lock-1000 Account creation already in progress for {provider}"
        )


def lock_key(provider: str, subject: str) -> str:
    return f"lock:auth:{provider}:{subject}"


class IdentityResolutionLock:
    def __init__(
        self, redis_client: redis.Redis, ttl_seconds: int = DEFAULT_IDENTITY_LOCK_TTL
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self._redis = redis_client
        self._ttl = ttl_seconds

    async def try_acquire(
        self, provider: str, subject: str, ttl_seconds: Optional[int] = None
    ) -> bool:
        """Atomically take the lock; False if another attempt holds it."""
        if ttl_seconds is None:
            ttl_seconds = self._ttl
        elif ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        acquired = await self._redis.set(
            lock_key(provider, subject), "1", nx=True, ex=ttl_seconds
        )
        return bool(acquired)

    async def release(self, provider: str, subject: str) -> None:
        await self._redis.delete(lock_key(provider, subject))

    @contextlib.asynccontextmanager
    async def hold(self, provider: str, subject: str) -> AsyncIterator[None]:
        """
        Hold the lock for the duration of the block.

        Raises:
            IdentityLockException: If another attempt already holds the lock
        """
        if not await self.try_acquire(provider, subject):
            raise IdentityLockException.in_progress(provider, subject)
        try:
            yield
        finally:
            await self.release(provider, subject)
