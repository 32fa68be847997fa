"""
Google OpenID Connect client.

Implements the provider side of the authorization-code flow:
1. Build the authorization URL carrying the handshake state and nonce
2. Exchange the authorization code for Google's access and ID tokens
3. Verify the ID token (signature against Google's published keys, issuer,
   audience, expiry and nonce) and extract the external identity

Only `(subject, email, email_verified)` leaves this module; Google's own
tokens are not stored.
"""

import hmac
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlencode

from aiohttp import ClientSession, FormData
from jwcrypto import jwk, jwt
from jwcrypto.common import JWException

logger = logging.getLogger(__name__)

GOOGLE_PROVIDER = "google"
GOOGLE_AUTHORIZATION_ENDPOINT = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_ENDPOINT = "https://oauth2.googleapis.com/token"
GOOGLE_JWKS_URI = "https://www.googleapis.com/oauth2/v3/certs"
GOOGLE_ISSUERS = frozenset({"https://accounts.google.com", "accounts.google.com"})


class ProviderException(Exception):
    """
    Exception raised when the identity provider rejects or fails a login.

    Provides static methods for the specific failure cases.
    """

    @staticmethod
    def token_exchange_failed(status: int) -> "ProviderException":
        return ProviderException(
            f"error-provider-1000 Code exchange failed with status {status}"
        )

    @staticmethod
    def token_response_incomplete() -> "ProviderException":
        return ProviderException(
            "error-provider-1001 Token response missing access_token or id_token"
        )

    @staticmethod
    def keys_unavailable(status: int) -> "ProviderException":
        return ProviderException(
            f"error-provider-1002 Unable to fetch provider keys (status {status})"
        )

    @staticmethod
    def invalid_id_token(msg: str) -> "ProviderException":
        return ProviderException(f"error-provider-1003 Invalid ID token: {msg}")

    @staticmethod
    def nonce_mismatch() -> "ProviderException":
        return ProviderException("error-provider-1004 ID token nonce mismatch")


@dataclass(frozen=True)
class ProviderTokens:
    access_token: str
    id_token: str
    refresh_token: Optional[str] = None


@dataclass(frozen=True)
class ProviderIdentity:
    subject: str
    email: str
    email_verified: bool
    provider: str = GOOGLE_PROVIDER


class GoogleIdentityProvider:
    """
    Google OAuth 2.0 / OpenID Connect client.

    Args:
        http_session: Shared aiohttp client session
        client_id: OAuth client id, also the expected ID token audience
        client_secret: OAuth client secret
        redirect_uri: Callback URL registered with Google
        jwks: Preloaded verification keys; fetched from Google when None
        clock: Returns the current Unix time in seconds
    """

    name = GOOGLE_PROVIDER

    def __init__(
        self,
        http_session: ClientSession,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        jwks: Optional[jwk.JWKSet] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._http_session = http_session
        self._client_id = client_id
        self._client_secret = client_secret
        self._redirect_uri = redirect_uri
        self._jwks = jwks
        self._static_keys = jwks is not None
        self._clock = clock

    def authorization_url(self, state: str, nonce: str) -> str:
        query = {
            "client_id": self._client_id,
            "redirect_uri": self._redirect_uri,
            "response_type": "code",
            "scope": "openid email profile",
            "state": state,
            "nonce": nonce,
            "access_type": "offline",
            "prompt": "consent",
        }
        return f"{GOOGLE_AUTHORIZATION_ENDPOINT}?{urlencode(query)}"

    async def exchange_code(self, code: str) -> ProviderTokens:
        """
        Exchange an authorization code at Google's token endpoint.

        Raises:
            ProviderException: If Google refuses the code or omits a token
        """
        data = FormData(
            {
                "grant_type": "authorization_code",
                "code": code,
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "redirect_uri": self._redirect_uri,
            }
        )
        async with self._http_session.post(GOOGLE_TOKEN_ENDPOINT, data=data) as resp:
            if resp.status != 200:
                raise ProviderException.token_exchange_failed(resp.status)
            body: Dict[str, Any] = await resp.json()

        access_token = body.get("access_token")
        id_token = body.get("id_token")
        if not access_token or not id_token:
            raise ProviderException.token_response_incomplete()

        return ProviderTokens(
            access_token=access_token,
            id_token=id_token,
            refresh_token=body.get("refresh_token"),
        )

    async def _signing_keys(self, refresh: bool = False) -> jwk.JWKSet:
        if self._jwks is not None and not refresh:
            return self._jwks

        async with self._http_session.get(GOOGLE_JWKS_URI) as resp:
            if resp.status != 200:
                raise ProviderException.keys_unavailable(resp.status)
            self._jwks = jwk.JWKSet.from_json(await resp.text())
        return self._jwks

    async def verify_id_token(self, id_token: str, nonce: str) -> ProviderIdentity:
        """
        Verify a Google ID token and return the identity it asserts.

        Args:
            id_token: Serialized ID token from the token response
            nonce: Nonce stored when the handshake began

        Raises:
            ProviderException: If the token fails any check
        """
        keys = await self._signing_keys()
        try:
            validated = jwt.JWT(
                jwt=id_token, key=keys, algs=["RS256"], check_claims=False
            )
        except JWException as e:
            if self._static_keys:
                raise ProviderException.invalid_id_token(str(e))
            # Google rotates its keys; retry once with a fresh key set.
            keys = await self._signing_keys(refresh=True)
            try:
                validated = jwt.JWT(
                    jwt=id_token, key=keys, algs=["RS256"], check_claims=False
                )
            except (JWException, ValueError) as e:
                raise ProviderException.invalid_id_token(str(e))
        except ValueError as e:
            raise ProviderException.invalid_id_token(str(e))

        claims: Dict[str, Any] = json.loads(validated.claims)

        if claims.get("iss") not in GOOGLE_ISSUERS:
            raise ProviderException.invalid_id_token("issuer")

        audience = claims.get("aud")
        audiences = audience if isinstance(audience, list) else [audience]
        if self._client_id not in audiences:
            raise ProviderException.invalid_id_token("audience")

        expires_at = claims.get("exp")
        if not isinstance(expires_at, (int, float)) or expires_at <= self._clock():
            raise ProviderException.invalid_id_token("expired")

        token_nonce = claims.get("nonce")
        if not isinstance(token_nonce, str) or not hmac.compare_digest(
            token_nonce.encode("utf-8"), nonce.encode("utf-8")
        ):
            raise ProviderException.nonce_mismatch()

        subject = claims.get("sub")
        email = claims.get("email")
        if not subject or not email:
            raise ProviderException.invalid_id_token("missing sub or email")

        return ProviderIdentity(
            subject=subject,
            email=email,
            email_verified=bool(claims.get("email_verified", False)),
        )

    async def identify(self, code: str, nonce: str) -> ProviderIdentity:
        tokens = await self.exchange_code(code)
        return await self.verify_id_token(tokens.id_token, nonce)
