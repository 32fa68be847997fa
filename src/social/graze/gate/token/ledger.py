"""
Redis-backed allow-list of live token ids.

A token is only honoured while its entry exists. Entries are keyed
`allow:<kind>:<token_id>`, hold the owning subject, and expire with the token
itself, so Redis eviction is the cleanup mechanism. Deleting an entry revokes
the token on every instance immediately; nothing is cached in-process.
"""

import logging
from typing import Optional

import redis.asyncio as redis

from social.graze.gate.token.claims import TokenClaims, TokenKind

logger = logging.getLogger(__name__)


def allow_key(kind: TokenKind, token_id: str) -> str:
    return f"allow:{kind.value}:{token_id}"


class AllowListLedger:
    def __init__(self, redis_client: redis.Redis) -> None:
        self._redis = redis_client

    async def register(
        self, kind: TokenKind, token_id: str, subject: str, ttl_seconds: int
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        await self._redis.set(allow_key(kind, token_id), subject, ex=ttl_seconds)

    async def register_pair(
        self, access: TokenClaims, refresh: TokenClaims
    ) -> None:
        """
        Allow-list an access/refresh pair in a single MULTI/EXEC transaction.

        Either both entries are written or the transaction raises and neither
        is, so a pair can never be issued with only one leg allowed.
        """
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.set(
                allow_key(access.kind, access.token_id),
                access.subject,
                ex=access.lifetime,
            )
            pipe.set(
                allow_key(refresh.kind, refresh.token_id),
                refresh.subject,
                ex=refresh.lifetime,
            )
            await pipe.execute()

    async def is_allowed(self, kind: TokenKind, token_id: str) -> bool:
        return await self._redis.exists(allow_key(kind, token_id)) == 1

    async def revoke(self, kind: TokenKind, token_id: str) -> None:
        # DEL on a missing key returns 0, so this is idempotent.
        await self._redis.delete(allow_key(kind, token_id))

    async def consume(self, kind: TokenKind, token_id: str) -> Optional[str]:
        """
        Atomically read and delete an entry, returning the subject it held.

        Returns None when the entry does not exist. Two concurrent callers can
        never both receive the subject.
        """
        key = allow_key(kind, token_id)
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.get(key)
            pipe.delete(key)
            value, _ = await pipe.execute()

        if value is None:
            return None
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value
