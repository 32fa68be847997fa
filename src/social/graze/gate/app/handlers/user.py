import logging

from aiohttp import web

from social.graze.gate.app.config import (
    IdentityStoreAppKey,
    LoginFlowAppKey,
    SettingsAppKey,
    TelegrafStatsdClientAppKey,
)
from social.graze.gate.app.handlers.helpers import (
    authenticate,
    bad_request,
    read_body,
    set_token_pair_cookies,
    unauthorized,
)
from social.graze.gate.result import Err, Unauthorized

logger = logging.getLogger(__name__)


def _isoformat(value):
    return value.isoformat() if value is not None else None


async def handle_profile(request: web.Request):
    """Return the authenticated user's profile. Requires a valid access token."""
    authenticated = await authenticate(request)
    if isinstance(authenticated, Err):
        raise unauthorized("Invalid or expired token", authenticated.reason)

    user = await request.app[IdentityStoreAppKey].get_user(authenticated.value.user_id)
    if user is None:
        raise unauthorized("User not found", Unauthorized.UNKNOWN_USER)

    return web.json_response(
        {
            "success": True,
            "data": {
                "id": user.id,
                "email": user.email,
                "provider": user.provider,
                "termsAccepted": user.terms_accepted,
                "termsAcceptedAt": _isoformat(user.terms_accepted_at),
                "createdAt": _isoformat(user.created_at),
                "updatedAt": _isoformat(user.updated_at),
            },
        }
    )


async def handle_terms(request: web.Request):
    """
    Accept the terms for a user sent to the terms page, then log them in.

    Body: `user_id` and `ticket`, both from the terms page redirect.
    """
    settings = request.app[SettingsAppKey]
    login_flow = request.app[LoginFlowAppKey]
    statsd_client = request.app[TelegrafStatsdClientAppKey]

    body = await read_body(request)
    user_id = body.get("user_id")
    ticket = body.get("ticket")
    if not isinstance(user_id, str) or not user_id:
        raise bad_request("User ID is required")
    if not isinstance(ticket, str) or not ticket:
        raise bad_request("Terms ticket is required")

    accepted = await login_flow.accept_terms(user_id, ticket)
    if isinstance(accepted, Err):
        statsd_client.increment(
            "gate.terms.failed", 1, tag_dict={"reason": accepted.reason.value}
        )
        raise unauthorized("Unable to accept terms", accepted.reason)

    statsd_client.increment("gate.terms.accepted", 1)
    response = web.json_response(
        {
            "success": True,
            "redirect": f"{settings.frontend_url.rstrip('/')}/dashboard",
        }
    )
    set_token_pair_cookies(response, settings, accepted.value.tokens)
    return response
