"""
Request helpers shared by the HTTP handlers.

- `authenticate` is the access-token guard: an explicit function from a
  request to `Ok(AuthenticatedRequest)` or `Err(Unauthorized)`, called by each
  protected handler.
- Cookie helpers set and clear the token cookies with the attributes the web
  client expects (httpOnly, SameSite=Lax, Secure in production, Max-Age equal
  to the token lifetime).
- Handshake helpers choose the configured handshake storage and, for the
  session strategy, load and save the Fernet-encrypted handshake cookie.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from aiohttp import web
from cryptography.fernet import InvalidToken

from social.graze.gate.app.config import (
    ACCESS_TOKEN_COOKIE,
    HANDSHAKE_COOKIE,
    REFRESH_TOKEN_COOKIE,
    RedisClientAppKey,
    Settings,
    SettingsAppKey,
    TokenLifecycleAppKey,
)
from social.graze.gate.handshake import (
    HandshakeGuard,
    RedisHandshakeGuard,
    SessionHandshakeGuard,
)
from social.graze.gate.result import Err, Ok, Result, Unauthorized
from social.graze.gate.token.claims import TokenClaims, TokenKind
from social.graze.gate.token.lifecycle import IssuedToken, TokenPair

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthenticatedRequest:
    """A request whose access token passed signature, expiry and allow-list checks."""

    request: web.Request
    claims: TokenClaims

    @property
    def user_id(self) -> str:
        return self.claims.subject


def bearer_token(request: web.Request) -> Optional[str]:
    authorization: Optional[str] = request.headers.getone("Authorization", None)
    if (
        authorization is None
        or not authorization.startswith("Bearer ")
        or len(authorization) < 8
    ):
        return None
    return authorization[7:]


def access_token_from_request(request: web.Request) -> Optional[str]:
    """The access token from the Authorization header, else from its cookie."""
    return bearer_token(request) or request.cookies.get(ACCESS_TOKEN_COOKIE)


async def authenticate(
    request: web.Request,
) -> Result[AuthenticatedRequest, Unauthorized]:
    lifecycle = request.app[TokenLifecycleAppKey]
    validated = await lifecycle.validate(
        access_token_from_request(request), TokenKind.ACCESS
    )
    if isinstance(validated, Err):
        return validated
    return Ok(AuthenticatedRequest(request=request, claims=validated.value))


async def read_body(request: web.Request) -> Dict[str, Any]:
    """
    Parse a JSON or form body into a dict.

    Raises:
        web.HTTPBadRequest: If the body is not valid JSON or form data
    """
    if not request.can_read_body:
        return {}
    if request.content_type == "application/json":
        try:
            body = await request.json()
        except json.JSONDecodeError:
            raise bad_request("Malformed JSON body")
        if not isinstance(body, dict):
            raise bad_request("Expected a JSON object")
        return body
    data = await request.post()
    return {key: value for key, value in data.items() if isinstance(value, str)}


def bad_request(message: str) -> web.HTTPBadRequest:
    return web.HTTPBadRequest(
        body=json.dumps({"success": False, "message": message}),
        content_type="application/json",
    )


def unauthorized(message: str, reason: Optional[Unauthorized] = None) -> web.HTTPUnauthorized:
    payload: Dict[str, Any] = {"success": False, "message": message}
    if reason is not None:
        payload["reason"] = reason.value
    return web.HTTPUnauthorized(
        body=json.dumps(payload),
        content_type="application/json",
    )


def set_token_cookie(
    response: web.StreamResponse, settings: Settings, name: str, issued: IssuedToken
) -> None:
    response.set_cookie(
        name,
        issued.token,
        max_age=issued.max_age,
        path="/",
        httponly=True,
        secure=settings.cookie_secure,
        samesite="Lax",
    )


def set_token_pair_cookies(
    response: web.StreamResponse, settings: Settings, tokens: TokenPair
) -> None:
    set_token_cookie(response, settings, ACCESS_TOKEN_COOKIE, tokens.access)
    set_token_cookie(response, settings, REFRESH_TOKEN_COOKIE, tokens.refresh)


def clear_token_cookies(response: web.StreamResponse) -> None:
    response.del_cookie(ACCESS_TOKEN_COOKIE, path="/")
    response.del_cookie(REFRESH_TOKEN_COOKIE, path="/")


def load_handshake_session(request: web.Request, settings: Settings) -> Dict[str, Any]:
    cookie = request.cookies.get(HANDSHAKE_COOKIE)
    if not cookie:
        return {}
    try:
        data = settings.encryption_key.decrypt(
            cookie.encode("utf-8"), ttl=settings.handshake_ttl
        )
        session = json.loads(data)
    except (InvalidToken, ValueError):
        logger.info("Discarding unreadable handshake cookie")
        return {}
    return session if isinstance(session, dict) else {}


def save_handshake_session(
    response: web.StreamResponse, settings: Settings, session: Dict[str, Any]
) -> None:
    if not session:
        response.del_cookie(HANDSHAKE_COOKIE, path="/auth")
        return
    token = settings.encryption_key.encrypt(json.dumps(session).encode("utf-8"))
    response.set_cookie(
        HANDSHAKE_COOKIE,
        token.decode("utf-8"),
        max_age=settings.handshake_ttl,
        path="/auth",
        httponly=True,
        secure=settings.cookie_secure,
        samesite="Lax",
    )


def handshake_guard(
    request: web.Request,
) -> Tuple[HandshakeGuard, Optional[Dict[str, Any]]]:
    """
    Build the configured handshake guard for this request.

    Returns the guard and, for session storage, the session dict the handler
    must write back with `save_handshake_session`; None for Redis storage.
    """
    settings = request.app[SettingsAppKey]
    if settings.handshake_storage == "session":
        session = load_handshake_session(request, settings)
        return SessionHandshakeGuard(session, settings.handshake_ttl), session
    return (
        RedisHandshakeGuard(request.app[RedisClientAppKey], settings.handshake_ttl),
        None,
    )
