from aiohttp import web

from social.graze.gate.app.config import HealthGaugeAppKey, RedisClientAppKey


async def handle_internal_ready(request: web.Request):
    health_gauge = request.app[HealthGaugeAppKey]
    if not await health_gauge.is_healthy():
        return web.Response(status=503)
    # Every token check goes through Redis; without it the service is not ready.
    try:
        await request.app[RedisClientAppKey].ping()
    except Exception:
        await health_gauge.womp()
        return web.Response(status=503)
    return web.Response(status=200)


async def handle_internal_alive(request: web.Request):
    return web.Response(status=200)
