"""
OAuth Login and Token Handlers

Login flow with Google:
1. Browser hits GET /auth/google; a handshake (state, nonce) is stored and the
   browser is redirected to Google
2. Google redirects back to GET /auth/callback with a code and the state
3. The handshake is consumed, the ID token verified, the user resolved
4. New users, and users who have not accepted the terms, go to the terms page;
   everyone else receives token cookies and goes to the dashboard

The handlers in this module provide the following endpoints:
- GET /auth/google - Begin the login handshake
- GET /auth/callback - OAuth callback from Google
- POST /auth/refresh - Mint a new access token from a refresh token
- POST /auth/logout - Revoke the presented tokens and clear cookies
"""

import logging
from typing import Any, Dict
from urllib.parse import urlencode

import sentry_sdk
from aiohttp import web

from social.graze.gate.app.config import (
    ACCESS_TOKEN_COOKIE,
    REFRESH_TOKEN_COOKIE,
    HealthGaugeAppKey,
    LoginFlowAppKey,
    SettingsAppKey,
    TelegrafStatsdClientAppKey,
    TokenLifecycleAppKey,
)
from social.graze.gate.app.handlers.helpers import (
    access_token_from_request,
    clear_token_cookies,
    handshake_guard,
    read_body,
    save_handshake_session,
    set_token_cookie,
    set_token_pair_cookies,
    unauthorized,
)
from social.graze.gate.login import Authenticated, TermsRequired
from social.graze.gate.result import Err

logger = logging.getLogger(__name__)


def frontend_redirect(settings, path: str, query: Dict[str, Any]) -> web.HTTPFound:
    location = f"{settings.frontend_url.rstrip('/')}{path}"
    if query:
        location = f"{location}?{urlencode(query)}"
    return web.HTTPFound(location)


async def handle_google_login(request: web.Request):
    """
    Begin the login handshake and redirect to Google.

    Raises:
        HTTPFound: To Google's authorization endpoint
    """
    settings = request.app[SettingsAppKey]
    login_flow = request.app[LoginFlowAppKey]

    guard, session = handshake_guard(request)
    authorization_url = await login_flow.begin(guard)

    redirect = web.HTTPFound(authorization_url)
    if session is not None:
        save_handshake_session(redirect, settings, session)
    raise redirect


async def handle_callback(request: web.Request):
    """
    Handle the OAuth callback from Google.

    Query Parameters:
        code: Authorization code to exchange
        state: Handshake state issued by /auth/google
        error: Set by Google when the user declined

    Raises:
        HTTPFound: To the dashboard, the terms page or the login error page
    """
    settings = request.app[SettingsAppKey]
    login_flow = request.app[LoginFlowAppKey]
    statsd_client = request.app[TelegrafStatsdClientAppKey]

    code = request.query.get("code")
    state = request.query.get("state")

    guard, session = handshake_guard(request)

    try:
        if request.query.get("error"):
            outcome = None
        else:
            outcome = await login_flow.complete(guard, code, state)
    except Exception as e:
        logger.exception("login callback error")
        sentry_sdk.capture_exception(e)
        await request.app[HealthGaugeAppKey].womp()
        redirect = frontend_redirect(settings, "/login", {"error": "server_error"})
        if session is not None:
            save_handshake_session(redirect, settings, session)
        raise redirect

    if outcome is None or isinstance(outcome, Err):
        reason = "provider_error" if outcome is None else outcome.reason.value
        statsd_client.increment(
            "gate.login.failed", 1, tag_dict={"reason": reason}
        )
        logger.info("Login refused: %s", reason)
        redirect = frontend_redirect(settings, "/login", {"error": "auth_failed"})
    elif isinstance(outcome.value, TermsRequired):
        statsd_client.increment("gate.login.terms_required", 1)
        redirect = frontend_redirect(
            settings,
            "/terms",
            {"user_id": outcome.value.user.id, "ticket": outcome.value.ticket},
        )
    else:
        authenticated: Authenticated = outcome.value
        statsd_client.increment("gate.login.success", 1)
        redirect = frontend_redirect(settings, "/dashboard", {})
        set_token_pair_cookies(redirect, settings, authenticated.tokens)

    if session is not None:
        save_handshake_session(redirect, settings, session)
    raise redirect


async def handle_refresh(request: web.Request):
    """
    Mint a new access token from a refresh token.

    The refresh token is read from the body (`refresh_token`) or, failing
    that, from the refresh cookie. With refresh token rotation enabled the
    refresh token is replaced too.

    Returns:
        200 with the new access token, 401 when the refresh token is refused
    """
    settings = request.app[SettingsAppKey]
    lifecycle = request.app[TokenLifecycleAppKey]
    statsd_client = request.app[TelegrafStatsdClientAppKey]

    body = await read_body(request)
    refresh_token = body.get("refresh_token") or request.cookies.get(
        REFRESH_TOKEN_COOKIE
    )
    if not isinstance(refresh_token, str) or not refresh_token:
        raise unauthorized("Refresh token is required")

    if settings.refresh_token_rotation:
        rotated = await lifecycle.rotate_pair(refresh_token)
        if isinstance(rotated, Err):
            statsd_client.increment(
                "gate.refresh.failed", 1, tag_dict={"reason": rotated.reason.value}
            )
            raise unauthorized("Failed to refresh token", rotated.reason)
        response = web.json_response(
            {
                "success": True,
                "accessToken": rotated.value.access_token,
                "refreshToken": rotated.value.refresh_token,
            }
        )
        set_token_pair_cookies(response, settings, rotated.value)
    else:
        rotated = await lifecycle.rotate(refresh_token)
        if isinstance(rotated, Err):
            statsd_client.increment(
                "gate.refresh.failed", 1, tag_dict={"reason": rotated.reason.value}
            )
            raise unauthorized("Failed to refresh token", rotated.reason)
        response = web.json_response({"success": True, "accessToken": rotated.value.token})
        set_token_cookie(response, settings, ACCESS_TOKEN_COOKIE, rotated.value)

    statsd_client.increment("gate.refresh.success", 1)
    return response


async def handle_logout(request: web.Request):
    """
    Revoke the caller's tokens and clear the token cookies.

    Always answers 200: a logout that only partly revokes is still better
    than one that leaves the browser holding its cookies.
    """
    lifecycle = request.app[TokenLifecycleAppKey]
    statsd_client = request.app[TelegrafStatsdClientAppKey]

    try:
        body = await read_body(request)
        refresh_token = body.get("refresh_token") or request.cookies.get(
            REFRESH_TOKEN_COOKIE
        )
        access_token = access_token_from_request(request) or body.get(
            ACCESS_TOKEN_COOKIE
        )
        await lifecycle.revoke_tokens(
            access_token if isinstance(access_token, str) else None,
            refresh_token if isinstance(refresh_token, str) else None,
        )
    except Exception as e:
        logger.exception("logout error")
        sentry_sdk.capture_exception(e)

    statsd_client.increment("gate.logout", 1)
    response = web.json_response({"success": True})
    clear_token_cookies(response)
    return response
