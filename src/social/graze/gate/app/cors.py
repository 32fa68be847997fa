from typing import Dict, Iterable, Optional
from urllib.parse import urlparse

from aiohttp import web

from social.graze.gate.app.config import SettingsAppKey


def get_cors_headers(
    origin_value: Optional[str], allowed_origins: Iterable[str], debug: bool
) -> Dict[str, str]:
    """Return CORS headers for a credentialed request from `origin_value`."""
    allowed_debug_hosts = {
        "localhost",
        "127.0.0.1",
    }

    headers = {
        "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
        "Access-Control-Allow-Headers": (
            "Keep-Alive, User-Agent, X-Requested-With, "
            "If-Modified-Since, Cache-Control, Content-Type, "
            "Authorization"
        ),
        "Vary": "Origin",
    }

    if not origin_value:
        return headers

    parsed = urlparse(origin_value)
    base = (
        f"{parsed.scheme}://{parsed.netloc}"
        if parsed.scheme and parsed.netloc
        else origin_value
    )

    # Cookies are sent cross-origin, so the origin is echoed, never "*".
    if base in set(allowed_origins) or (debug and parsed.hostname in allowed_debug_hosts):
        headers["Access-Control-Allow-Origin"] = origin_value
        headers["Access-Control-Allow-Credentials"] = "true"

    return headers


@web.middleware
async def cors_middleware(request: web.Request, handler):
    settings = request.app[SettingsAppKey]
    headers = get_cors_headers(
        request.headers.get("Origin"), settings.allowed_domains, settings.debug
    )

    if request.method == "OPTIONS":
        return web.Response(status=204, headers=headers)

    try:
        response = await handler(request)
    except web.HTTPException as e:
        e.headers.update(headers)
        raise
    response.headers.update(headers)
    return response
