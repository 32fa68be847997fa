"""
Login Flow

Composes the handshake guard, identity provider, identity store, identity
resolution lock and token lifecycle manager into the authorization-code login:

1. `begin`: start a handshake and build the provider authorization URL
2. `complete`: consume the handshake, verify the provider's ID token against
   the stored nonce, find or create the local user, then either issue a token
   pair or ask the user to accept the terms
3. `accept_terms`: record acceptance for a user who was sent to the terms
   page, then issue a token pair

First-time account creation runs under the identity resolution lock. If the
lock is held by a concurrent attempt the login is refused; if the insert loses
a uniqueness race anyway, the flow re-reads the winner's row.

Users sent to the terms page carry a single-use ticket (`terms:<ticket>`),
so accepting the terms cannot be used to mint tokens for an arbitrary user id.
"""

import hmac
import logging
import secrets
from dataclasses import dataclass
from typing import Optional, Union

import redis.asyncio as redis

from social.graze.gate.handshake import HandshakeGuard
from social.graze.gate.identity.lock import (
    IdentityLockException,
    IdentityResolutionLock,
)
from social.graze.gate.identity.store import (
    IdentityConflictException,
    IdentityNotFoundException,
    IdentityStore,
)
from social.graze.gate.model.user import User
from social.graze.gate.provider.google import (
    GoogleIdentityProvider,
    ProviderException,
    ProviderIdentity,
)
from social.graze.gate.result import Err, Ok, Result, Unauthorized
from social.graze.gate.token.lifecycle import TokenLifecycleManager, TokenPair

logger = logging.getLogger(__name__)

DEFAULT_TERMS_TICKET_TTL = 600


def terms_key(ticket: str) -> str:
    return f"terms:{ticket}"


@dataclass(frozen=True)
class Authenticated:
    user: User
    tokens: TokenPair


@dataclass(frozen=True)
class TermsRequired:
    user: User
    ticket: str


LoginOutcome = Union[Authenticated, TermsRequired]


class LoginFlow:
    def __init__(
        self,
        redis_client: redis.Redis,
        provider: GoogleIdentityProvider,
        identity_store: IdentityStore,
        identity_lock: IdentityResolutionLock,
        lifecycle: TokenLifecycleManager,
        terms_ticket_ttl: int = DEFAULT_TERMS_TICKET_TTL,
    ) -> None:
        self._redis = redis_client
        self._provider = provider
        self._identity_store = identity_store
        self._identity_lock = identity_lock
        self._lifecycle = lifecycle
        self._terms_ticket_ttl = terms_ticket_ttl

    async def begin(self, guard: HandshakeGuard) -> str:
        handshake = await guard.begin()
        return self._provider.authorization_url(handshake.state, handshake.nonce)

    async def complete(
        self, guard: HandshakeGuard, code: Optional[str], state: Optional[str]
    ) -> Result[LoginOutcome, Unauthorized]:
        if not code or not state:
            return Err(Unauthorized.MISSING)

        handshake = await guard.complete(state)
        if isinstance(handshake, Err):
            return handshake

        try:
            identity = await self._provider.identify(code, handshake.value)
        except ProviderException as e:
            logger.warning("Provider refused login: %s", e)
            return Err(Unauthorized.PROVIDER_REJECTED)

        user = await self._identity_store.find_identity(
            identity.provider, identity.subject
        )
        if user is None:
            resolved = await self._create_identity(identity)
            if isinstance(resolved, Err):
                return resolved
            user = resolved.value

        if not user.terms_accepted:
            ticket = await self._issue_terms_ticket(user)
            return Ok(TermsRequired(user=user, ticket=ticket))

        await self._identity_store.touch_last_seen(user.id)
        tokens = await self._lifecycle.issue_pair(user.id)
        return Ok(Authenticated(user=user, tokens=tokens))

    async def _create_identity(
        self, identity: ProviderIdentity
    ) -> Result[User, Unauthorized]:
        try:
            async with self._identity_lock.hold(identity.provider, identity.subject):
                try:
                    user = await self._identity_store.create_identity(
                        identity.email, identity.provider, identity.subject
                    )
                except IdentityConflictException:
                    user = await self._identity_store.find_identity(
                        identity.provider, identity.subject
                    )
        except IdentityLockException as e:
            logger.info("%s", e)
            return Err(Unauthorized.IN_PROGRESS)

        if user is None:
            logger.error("Identity conflict but no user found for %s", identity.provider)
            return Err(Unauthorized.UNKNOWN_USER)

        return Ok(user)

    async def _issue_terms_ticket(self, user: User) -> str:
        ticket = secrets.token_urlsafe(32)
        await self._redis.set(terms_key(ticket), user.id, ex=self._terms_ticket_ttl)
        return ticket

    async def _consume_terms_ticket(self, ticket: str) -> Optional[str]:
        key = terms_key(ticket)
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.get(key)
            pipe.delete(key)
            user_id, _ = await pipe.execute()
        if isinstance(user_id, bytes):
            return user_id.decode("utf-8")
        return user_id

    async def accept_terms(
        self, user_id: Optional[str], ticket: Optional[str]
    ) -> Result[Authenticated, Unauthorized]:
        if not user_id or not ticket:
            return Err(Unauthorized.MISSING)

        ticket_user_id = await self._consume_terms_ticket(ticket)
        if ticket_user_id is None or not hmac.compare_digest(
            ticket_user_id.encode("utf-8"), user_id.encode("utf-8")
        ):
            return Err(Unauthorized.INVALID_STATE)

        try:
            user = await self._identity_store.mark_terms_accepted(user_id)
        except IdentityNotFoundException:
            return Err(Unauthorized.UNKNOWN_USER)

        tokens = await self._lifecycle.issue_pair(user.id)
        return Ok(Authenticated(user=user, tokens=tokens))
