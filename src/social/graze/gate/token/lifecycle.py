"""
Token Lifecycle Management

This module orchestrates the token codec and the allow-list ledger to issue,
validate, rotate and revoke the gateway's JWTs.

Every token is checked twice when presented:
1. The codec verifies the signature and the expiry.
2. The ledger confirms the token id is still allow-listed.

The second check is what makes logout and revocation take effect immediately,
even though the signature of a revoked token stays valid until it expires.

Ledger TTLs are derived from the signed claims (`exp - iat`), never from a
separate setting, so an entry lives exactly as long as the token it backs.

Refused credentials are returned as `Err(Unauthorized)`. Store failures are not
results: they propagate to the caller as exceptions.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from ulid import ULID

from social.graze.gate.result import Err, Ok, Result, Unauthorized
from social.graze.gate.token.claims import TokenClaims, TokenKind
from social.graze.gate.token.codec import TokenCodec, TokenCodecException
from social.graze.gate.token.ledger import AllowListLedger

logger = logging.getLogger(__name__)

DEFAULT_ACCESS_TOKEN_EXPIRY = 15 * 60
DEFAULT_REFRESH_TOKEN_EXPIRY = 7 * 24 * 60 * 60

_CODEC_REASONS = {
    "invalid_signature": Unauthorized.INVALID_SIGNATURE,
    "expired": Unauthorized.EXPIRED,
    "malformed": Unauthorized.MALFORMED,
}


@dataclass(frozen=True)
class IssuedToken:
    """A signed token together with the claims it carries."""

    token: str
    claims: TokenClaims

    @property
    def max_age(self) -> int:
        return self.claims.lifetime


@dataclass(frozen=True)
class TokenPair:
    access: IssuedToken
    refresh: IssuedToken

    @property
    def access_token(self) -> str:
        return self.access.token

    @property
    def refresh_token(self) -> str:
        return self.refresh.token


class TokenLifecycleManager:
    """
    Issues, validates, rotates and revokes access/refresh token pairs.

    Args:
        codec: Signs and verifies tokens
        ledger: Redis allow-list of live token ids
        access_token_expiry: Access token lifetime in seconds
        refresh_token_expiry: Refresh token lifetime in seconds
    """

    def __init__(
        self,
        codec: TokenCodec,
        ledger: AllowListLedger,
        access_token_expiry: int = DEFAULT_ACCESS_TOKEN_EXPIRY,
        refresh_token_expiry: int = DEFAULT_REFRESH_TOKEN_EXPIRY,
    ) -> None:
        if access_token_expiry <= 0 or refresh_token_expiry <= 0:
            raise ValueError("token expiry must be positive")
        self._codec = codec
        self._ledger = ledger
        self.access_token_expiry = access_token_expiry
        self.refresh_token_expiry = refresh_token_expiry

    def _claims(self, subject: str, kind: TokenKind, now: int) -> TokenClaims:
        lifetime = (
            self.access_token_expiry
            if kind is TokenKind.ACCESS
            else self.refresh_token_expiry
        )
        return TokenClaims(
            subject=subject,
            token_id=str(ULID()),
            kind=kind,
            issued_at=now,
            expires_at=now + lifetime,
        )

    async def issue_pair(self, subject: str) -> TokenPair:
        """
        Issue a new access/refresh pair for a subject.

        Both tokens are signed before anything is written, then registered in
        one transaction. The pair is returned only after the ledger write
        succeeds; if it fails, the exception propagates and no token leaves
        this method.
        """
        if not subject:
            raise ValueError("subject is required")

        now = self._codec.now()
        access_claims = self._claims(subject, TokenKind.ACCESS, now)
        refresh_claims = self._claims(subject, TokenKind.REFRESH, now)

        access_token = self._codec.sign(access_claims)
        refresh_token = self._codec.sign(refresh_claims)

        await self._ledger.register_pair(access_claims, refresh_claims)

        logger.debug(
            "Issued token pair for %s (access %s, refresh %s)",
            subject,
            access_claims.token_id,
            refresh_claims.token_id,
        )
        return TokenPair(
            access=IssuedToken(access_token, access_claims),
            refresh=IssuedToken(refresh_token, refresh_claims),
        )

    async def validate(
        self, token: Optional[str], kind: Optional[TokenKind] = None
    ) -> Result[TokenClaims, Unauthorized]:
        """
        Verify a token's signature and expiry, then check the allow-list.

        Args:
            token: Serialized token as presented by the client
            kind: When given, the token must be of this kind

        Returns:
            Ok(claims) when the token is valid and allow-listed, otherwise
            Err(Unauthorized)
        """
        if not token:
            return Err(Unauthorized.MISSING)

        try:
            claims = self._codec.verify(token)
        except TokenCodecException as e:
            return Err(_CODEC_REASONS.get(e.reason, Unauthorized.MALFORMED))

        if kind is not None and claims.kind is not kind:
            return Err(Unauthorized.WRONG_KIND)

        if not await self._ledger.is_allowed(claims.kind, claims.token_id):
            return Err(Unauthorized.REVOKED)

        return Ok(claims)

    async def _issue_access(self, subject: str) -> IssuedToken:
        claims = self._claims(subject, TokenKind.ACCESS, self._codec.now())
        token = self._codec.sign(claims)
        await self._ledger.register(
            claims.kind, claims.token_id, claims.subject, claims.lifetime
        )
        return IssuedToken(token, claims)

    async def rotate(
        self, refresh_token: Optional[str]
    ) -> Result[IssuedToken, Unauthorized]:
        """
        Mint a new access token from a refresh token.

        The refresh token is left allow-listed and can be used again until it
        expires or is revoked.
        """
        validated = await self.validate(refresh_token, TokenKind.REFRESH)
        if isinstance(validated, Err):
            return validated

        access = await self._issue_access(validated.value.subject)
        logger.debug(
            "Rotated access token %s from refresh token %s",
            access.claims.token_id,
            validated.value.token_id,
        )
        return Ok(access)

    async def rotate_pair(
        self, refresh_token: Optional[str]
    ) -> Result[TokenPair, Unauthorized]:
        """
        Exchange a refresh token for a fresh pair, retiring the old refresh token.

        The old refresh entry is consumed atomically before the new pair is
        issued, so replaying the same refresh token fails even when two
        requests race.
        """
        validated = await self.validate(refresh_token, TokenKind.REFRESH)
        if isinstance(validated, Err):
            return validated

        claims = validated.value
        if await self._ledger.consume(claims.kind, claims.token_id) is None:
            return Err(Unauthorized.REVOKED)

        return Ok(await self.issue_pair(claims.subject))

    async def revoke_pair(
        self, access_token_id: Optional[str], refresh_token_id: Optional[str]
    ) -> None:
        """
        Remove both ledger entries. Never raises.

        Missing entries are not an error, and store failures are logged and
        swallowed: a partial revocation is better than refusing a logout.
        """
        for kind, token_id in (
            (TokenKind.ACCESS, access_token_id),
            (TokenKind.REFRESH, refresh_token_id),
        ):
            if not token_id:
                continue
            try:
                await self._ledger.revoke(kind, token_id)
            except Exception:
                logger.exception("Unable to revoke %s token %s", kind.value, token_id)

    def _token_id(self, token: Optional[str], kind: TokenKind) -> Optional[str]:
        if not token:
            return None
        try:
            claims = self._codec.verify(token, check_expiry=False)
        except TokenCodecException:
            return None
        if claims.kind is not kind:
            return None
        return claims.token_id

    async def revoke_tokens(
        self, access_token: Optional[str], refresh_token: Optional[str]
    ) -> None:
        """
        Revoke the tokens a client presents at logout. Never raises.

        Expired tokens are still revoked (their signature is checked, their
        expiry is not). Tokens that fail to decode are skipped.
        """
        await self.revoke_pair(
            self._token_id(access_token, TokenKind.ACCESS),
            self._token_id(refresh_token, TokenKind.REFRESH),
        )
