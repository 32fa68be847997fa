import asyncio
import contextlib
import logging
from time import perf_counter
from typing import Optional

import aiohttp
import redis.asyncio as redis
import sentry_sdk
from aio_statsd import TelegrafStatsdClient
from aiohttp import web
from sentry_sdk.integrations.aiohttp import AioHttpIntegration
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from social.graze.gate.app.config import (
    DatabaseAppKey,
    DatabaseSessionMakerAppKey,
    HealthGaugeAppKey,
    IdentityProviderAppKey,
    IdentityStoreAppKey,
    LoginFlowAppKey,
    RedisClientAppKey,
    SessionAppKey,
    Settings,
    SettingsAppKey,
    TelegrafStatsdClientAppKey,
    TickHealthTaskAppKey,
    TokenLifecycleAppKey,
)
from social.graze.gate.app.cors import cors_middleware
from social.graze.gate.app.handlers.auth import (
    handle_callback,
    handle_google_login,
    handle_logout,
    handle_refresh,
)
from social.graze.gate.app.handlers.internal import (
    handle_internal_alive,
    handle_internal_ready,
)
from social.graze.gate.app.handlers.user import handle_profile, handle_terms
from social.graze.gate.app.tasks import tick_health_task
from social.graze.gate.identity.lock import IdentityResolutionLock
from social.graze.gate.identity.store import SqlIdentityStore
from social.graze.gate.login import LoginFlow
from social.graze.gate.model.health import HealthGauge
from social.graze.gate.provider.google import GoogleIdentityProvider
from social.graze.gate.token.codec import TokenCodec, symmetric_key
from social.graze.gate.token.ledger import AllowListLedger
from social.graze.gate.token.lifecycle import TokenLifecycleManager

logger = logging.getLogger(__name__)


def build_token_codec(settings: Settings) -> TokenCodec:
    """
    Build the token codec from the configured keys.

    The first active signing key from the JWK Set signs; every key in the set
    verifies. Without a JWK Set, an HS256 key derived from jwt_secret is used.
    """
    signing_key_id = next(iter(settings.active_signing_keys), None)
    if signing_key_id is not None:
        signing_key = settings.json_web_keys.get_key(signing_key_id)
        if signing_key is None:
            raise Exception("No active signing key available")
        return TokenCodec(
            signing_key, settings.json_web_keys, settings.token_algorithms
        )

    if settings.jwt_secret:
        return TokenCodec(symmetric_key(settings.jwt_secret), None, ["HS256"])

    raise Exception("No active signing keys configured")


def wire_components(app: web.Application) -> None:
    """
    Construct the core components from the shared resources already in `app`.

    Expects the settings, Redis client, HTTP session and identity store to be
    set. Each component receives its collaborators explicitly.
    """
    settings = app[SettingsAppKey]
    redis_client = app[RedisClientAppKey]

    lifecycle = TokenLifecycleManager(
        build_token_codec(settings),
        AllowListLedger(redis_client),
        access_token_expiry=settings.access_token_expiry,
        refresh_token_expiry=settings.refresh_token_expiry,
    )
    identity_lock = IdentityResolutionLock(redis_client, settings.identity_lock_ttl)

    if IdentityProviderAppKey not in app:
        app[IdentityProviderAppKey] = GoogleIdentityProvider(
            app[SessionAppKey],
            settings.google_client_id,
            settings.google_client_secret,
            settings.callback_url,
        )

    app[TokenLifecycleAppKey] = lifecycle
    app[LoginFlowAppKey] = LoginFlow(
        redis_client,
        app[IdentityProviderAppKey],
        app[IdentityStoreAppKey],
        identity_lock,
        lifecycle,
        terms_ticket_ttl=settings.handshake_ttl,
    )


async def background_tasks(app):
    logger.info("Starting up")
    settings: Settings = app[SettingsAppKey]

    engine = create_async_engine(str(settings.pg_dsn))
    app[DatabaseAppKey] = engine
    database_session = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False
    )
    app[DatabaseSessionMakerAppKey] = database_session
    app[IdentityStoreAppKey] = SqlIdentityStore(database_session)

    trace_config = aiohttp.TraceConfig()

    if settings.debug:

        async def on_request_start(
            session, trace_config_ctx, params: aiohttp.TraceRequestStartParams
        ):
            logging.info("Starting request: %s %s", params.method, params.url)

        async def on_request_end(session, trace_config_ctx, params):
            logging.info("Ending request: %s %s", params.method, params.url)

        trace_config.on_request_start.append(on_request_start)
        trace_config.on_request_end.append(on_request_end)

    app[SessionAppKey] = aiohttp.ClientSession(
        trace_configs=[trace_config], timeout=aiohttp.ClientTimeout(total=10)
    )

    app[RedisClientAppKey] = redis.Redis(
        connection_pool=redis.ConnectionPool.from_url(str(settings.redis_dsn))
    )

    statsd_client = TelegrafStatsdClient(
        host=settings.statsd_host, port=settings.statsd_port, debug=settings.debug
    )
    await statsd_client.connect()
    app[TelegrafStatsdClientAppKey] = statsd_client

    wire_components(app)

    logger.info("Startup complete")

    app[TickHealthTaskAppKey] = asyncio.create_task(tick_health_task(app))

    yield

    logger.info("Shutting down background tasks")

    app[TickHealthTaskAppKey].cancel()

    with contextlib.suppress(asyncio.exceptions.CancelledError):
        await app[TickHealthTaskAppKey]

    await app[DatabaseAppKey].dispose()
    await app[SessionAppKey].close()
    await app[RedisClientAppKey].aclose()
    await app[TelegrafStatsdClientAppKey].close()


def _route_name(request: web.Request) -> str:
    # Tag by route template so that unmatched paths do not create new series.
    route = request.match_info.route
    if route.resource is None:
        return "unmatched"
    return route.resource.canonical


@web.middleware
async def sentry_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except Exception as e:
        logger.exception("Unhandled error on %s %s", request.method, request.path)
        sentry_sdk.capture_exception(e)
        await request.app[HealthGaugeAppKey].womp()
        raise


@web.middleware
async def statsd_middleware(request: web.Request, handler):
    statsd_client = request.app[TelegrafStatsdClientAppKey]
    tags = {"path": _route_name(request), "method": request.method}
    started = perf_counter()
    status = 500

    try:
        response = await handler(request)
        status = response.status
        return response
    except web.HTTPException as e:
        status = e.status
        raise
    except Exception as e:
        statsd_client.increment(
            "gate.server.request.exception",
            1,
            tag_dict={**tags, "exception": type(e).__name__},
        )
        raise
    finally:
        statsd_client.timer(
            "gate.server.request.time", perf_counter() - started, tag_dict=tags
        )
        statsd_client.increment(
            "gate.server.request.count", 1, tag_dict={**tags, "status": status}
        )


def create_app(settings: Settings) -> web.Application:
    """Create the application with its routes and middleware, without resources."""
    app = web.Application(
        middlewares=[statsd_middleware, cors_middleware, sentry_middleware]
    )

    app[SettingsAppKey] = settings
    app[HealthGaugeAppKey] = HealthGauge()

    app.add_routes(
        [
            web.get("/auth/google", handle_google_login),
            web.get("/auth/callback", handle_callback),
            web.post("/auth/refresh", handle_refresh),
            web.post("/auth/logout", handle_logout),
        ]
    )

    app.add_routes(
        [
            web.get("/user/profile", handle_profile),
            web.post("/user/terms", handle_terms),
        ]
    )

    app.add_routes(
        [
            web.get("/internal/alive", handle_internal_alive),
            web.get("/internal/ready", handle_internal_ready),
        ]
    )

    return app


async def start_web_server(settings: Optional[Settings] = None):

    if settings is None:
        settings = Settings()  # type: ignore
    if settings.sentry_dsn:
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            send_default_pii=False,
            integrations=[AioHttpIntegration()],
        )

    app = create_app(settings)
    app.cleanup_ctx.append(background_tasks)

    return app
