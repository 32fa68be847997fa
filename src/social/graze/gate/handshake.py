"""
OAuth Handshake Guard

Protects the authorization-code round trip with two values generated when a
login begins:

- `state` binds the provider callback to the browser flow that started it
  (cross-site request forgery protection).
- `nonce` is sent to the provider and comes back inside the signed ID token,
  binding the provider's assertion to this flow (ID token replay protection).

A handshake record is consumed the first time it is completed, so a captured
callback URL cannot be replayed. Records expire after a bounded login window.

Two storage strategies share one contract:
- `RedisHandshakeGuard` keeps `state:<state> -> nonce` in Redis.
- `SessionHandshakeGuard` keeps the pair in a caller-owned mapping, typically
  the browser's encrypted session cookie.
"""

import hmac
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Callable, MutableMapping, Optional, Protocol

import redis.asyncio as redis

from social.graze.gate.result import Err, Ok, Result, Unauthorized

logger = logging.getLogger(__name__)

DEFAULT_HANDSHAKE_TTL = 600


def generate_handshake_value() -> str:
    # 32 bytes of entropy, url-safe
    return secrets.token_urlsafe(32)


def state_key(state: str) -> str:
    return f"state:{state}"


@dataclass(frozen=True)
class Handshake:
    state: str
    nonce: str


class HandshakeGuard(Protocol):
    async def begin(self) -> Handshake: ...

    async def complete(
        self, state: Optional[str], nonce: Optional[str] = None
    ) -> Result[str, Unauthorized]: ...


def _check_nonce(stored: str, received: Optional[str]) -> Result[str, Unauthorized]:
    if received is not None and not hmac.compare_digest(
        stored.encode("utf-8"), received.encode("utf-8")
    ):
        return Err(Unauthorized.NONCE_MISMATCH)
    return Ok(stored)


class RedisHandshakeGuard:
    """Handshake records stored in Redis with a TTL."""

    def __init__(
        self, redis_client: redis.Redis, ttl_seconds: int = DEFAULT_HANDSHAKE_TTL
    ) -> None:
        self._redis = redis_client
        self._ttl = ttl_seconds

    async def begin(self) -> Handshake:
        handshake = Handshake(
            state=generate_handshake_value(), nonce=generate_handshake_value()
        )
        await self._redis.set(state_key(handshake.state), handshake.nonce, ex=self._ttl)
        return handshake

    async def complete(
        self, state: Optional[str], nonce: Optional[str] = None
    ) -> Result[str, Unauthorized]:
        """
        Consume the record for `state` and return the nonce it held.

        The lookup and the delete run in one transaction, so of two concurrent
        callbacks carrying the same state only one succeeds. When `nonce` is
        given it must match the stored value.
        """
        if not state:
            return Err(Unauthorized.INVALID_STATE)

        key = state_key(state)
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.get(key)
            pipe.delete(key)
            stored, _ = await pipe.execute()

        if stored is None:
            logger.warning("Handshake state not found or already used: %s...", state[:8])
            return Err(Unauthorized.INVALID_STATE)

        if isinstance(stored, bytes):
            stored = stored.decode("utf-8")
        return _check_nonce(stored, nonce)


class SessionHandshakeGuard:
    """
    Handshake records stored in the caller's session.

    The session is any mutable mapping owned by the caller; the guard writes a
    single entry under `session_key`. Only one login attempt can be in flight
    per session: beginning a new one replaces the previous record.
    """

    session_key = "oauth_handshake"

    def __init__(
        self,
        session: MutableMapping,
        ttl_seconds: int = DEFAULT_HANDSHAKE_TTL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._session = session
        self._ttl = ttl_seconds
        self._clock = clock

    async def begin(self) -> Handshake:
        handshake = Handshake(
            state=generate_handshake_value(), nonce=generate_handshake_value()
        )
        self._session[self.session_key] = {
            "state": handshake.state,
            "nonce": handshake.nonce,
            "expires_at": int(self._clock()) + self._ttl,
        }
        return handshake

    async def complete(
        self, state: Optional[str], nonce: Optional[str] = None
    ) -> Result[str, Unauthorized]:
        record = self._session.pop(self.session_key, None)
        if not state or not isinstance(record, dict):
            return Err(Unauthorized.INVALID_STATE)

        stored_state = record.get("state")
        stored_nonce = record.get("nonce")
        expires_at = record.get("expires_at", 0)
        if not isinstance(stored_state, str) or not isinstance(stored_nonce, str):
            return Err(Unauthorized.INVALID_STATE)
        if not hmac.compare_digest(stored_state.encode("utf-8"), state.encode("utf-8")):
            return Err(Unauthorized.INVALID_STATE)
        if expires_at <= self._clock():
            return Err(Unauthorized.INVALID_STATE)

        return _check_nonce(stored_nonce, nonce)
