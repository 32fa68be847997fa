"""
HTTP tests for the gateway's routes.

Each test builds the application with `create_app`, injects fakeredis, a mock
StatsD client, the in-memory identity store and the fake provider, then wires
the real components with `wire_components` and drives the routes through
aiohttp's test client.
"""

from urllib.parse import parse_qs, urlparse

import pytest
import pytest_asyncio
from aiohttp.test_utils import TestClient, TestServer

from social.graze.gate.app.config import (
    HANDSHAKE_COOKIE,
    HealthGaugeAppKey,
    IdentityProviderAppKey,
    IdentityStoreAppKey,
    RedisClientAppKey,
    Settings,
    TelegrafStatsdClientAppKey,
    TokenLifecycleAppKey,
)
from social.graze.gate.app.cors import get_cors_headers
from social.graze.gate.app.server import create_app, wire_components
from tests.test_helpers import FakeIdentityProvider, InMemoryIdentityStore, make_user

FRONTEND_URL = "http://localhost:3000"


@pytest.fixture
def identity_store():
    return InMemoryIdentityStore()


@pytest.fixture
def provider():
    return FakeIdentityProvider()


@pytest_asyncio.fixture
async def make_client(
    fake_redis_client, mock_statsd, signing_key, json_web_keys, identity_store, provider
):
    clients = []

    async def factory(**overrides) -> TestClient:
        options = {
            "environment": "test",
            "frontend_url": FRONTEND_URL,
            "allowed_domains": [FRONTEND_URL],
            "json_web_keys": json_web_keys,
            "active_signing_keys": [signing_key.get("kid")],
            "token_algorithms": ["ES256"],
        }
        options.update(overrides)
        app = create_app(Settings(**options))
        app[RedisClientAppKey] = fake_redis_client
        app[TelegrafStatsdClientAppKey] = mock_statsd
        app[IdentityStoreAppKey] = identity_store
        app[IdentityProviderAppKey] = provider
        wire_components(app)

        client = TestClient(TestServer(app))
        await client.start_server()
        clients.append(client)
        return client

    yield factory

    for client in clients:
        await client.close()


@pytest_asyncio.fixture
async def client(make_client):
    return await make_client()


def redirect_query(response):
    query = parse_qs(urlparse(response.headers["Location"]).query)
    return {name: values[0] for name, values in query.items()}


async def start_login(client) -> str:
    resp = await client.get("/auth/google", allow_redirects=False)
    assert resp.status == 302
    return redirect_query(resp)["state"]


async def issue_pair(client, user):
    return await client.app[TokenLifecycleAppKey].issue_pair(user.id)


class TestLogin:
    async def test_login_redirects_to_provider(self, client, fake_redis_client):
        resp = await client.get("/auth/google", allow_redirects=False)

        assert resp.status == 302
        location = urlparse(resp.headers["Location"])
        assert location.netloc == "accounts.example.com"
        state = redirect_query(resp)["state"]
        assert await fake_redis_client.exists(f"state:{state}") == 1

    async def test_new_user_is_sent_to_terms(self, client, identity_store):
        state = await start_login(client)

        resp = await client.get(
            "/auth/callback",
            params={"code": "code-1", "state": state},
            allow_redirects=False,
        )

        assert resp.status == 302
        assert resp.headers["Location"].startswith(f"{FRONTEND_URL}/terms?")
        query = redirect_query(resp)
        assert query["user_id"] == identity_store.created[0].id
        assert query["ticket"]
        assert "access_token" not in resp.cookies

    async def test_returning_user_goes_to_dashboard(self, client, identity_store, mock_statsd):
        identity_store.add(make_user(terms_accepted=True))
        state = await start_login(client)

        resp = await client.get(
            "/auth/callback",
            params={"code": "code-1", "state": state},
            allow_redirects=False,
        )

        assert resp.status == 302
        assert resp.headers["Location"] == f"{FRONTEND_URL}/dashboard"
        access = resp.cookies["access_token"]
        assert access["max-age"] == "900"
        assert access["httponly"]
        assert access["samesite"] == "Lax"
        assert access["path"] == "/"
        assert resp.cookies["refresh_token"]["max-age"] == "604800"
        assert mock_statsd.count("gate.login.success") == 1

    async def test_provider_error_param(self, client, mock_statsd):
        state = await start_login(client)

        resp = await client.get(
            "/auth/callback",
            params={"error": "access_denied", "state": state},
            allow_redirects=False,
        )

        assert resp.headers["Location"] == f"{FRONTEND_URL}/login?error=auth_failed"
        assert mock_statsd.count("gate.login.failed") == 1

    async def test_forged_state(self, client, provider):
        await start_login(client)

        resp = await client.get(
            "/auth/callback",
            params={"code": "code-1", "state": "forged"},
            allow_redirects=False,
        )

        assert resp.headers["Location"] == f"{FRONTEND_URL}/login?error=auth_failed"
        assert provider.calls == []

    async def test_callback_replay(self, client):
        state = await start_login(client)
        params = {"code": "code-1", "state": state}

        await client.get("/auth/callback", params=params, allow_redirects=False)
        resp = await client.get("/auth/callback", params=params, allow_redirects=False)

        assert resp.headers["Location"] == f"{FRONTEND_URL}/login?error=auth_failed"

    async def test_store_outage(self, client, identity_store):
        identity_store.error = ConnectionError("database down")
        state = await start_login(client)

        resp = await client.get(
            "/auth/callback",
            params={"code": "code-1", "state": state},
            allow_redirects=False,
        )

        assert resp.headers["Location"] == f"{FRONTEND_URL}/login?error=server_error"
        assert client.app[HealthGaugeAppKey].value == 1

    async def test_session_handshake_storage(self, make_client, fake_redis_client):
        client = await make_client(handshake_storage="session")

        resp = await client.get("/auth/google", allow_redirects=False)
        assert HANDSHAKE_COOKIE in resp.cookies
        assert resp.cookies[HANDSHAKE_COOKIE]["path"] == "/auth"
        state = redirect_query(resp)["state"]
        assert await fake_redis_client.exists(f"state:{state}") == 0

        params = {"code": "code-1", "state": state}
        resp = await client.get("/auth/callback", params=params, allow_redirects=False)
        assert resp.headers["Location"].startswith(f"{FRONTEND_URL}/terms?")

        resp = await client.get("/auth/callback", params=params, allow_redirects=False)
        assert resp.headers["Location"] == f"{FRONTEND_URL}/login?error=auth_failed"


class TestTerms:
    async def test_accept_terms_logs_in(self, client):
        state = await start_login(client)
        resp = await client.get(
            "/auth/callback",
            params={"code": "code-1", "state": state},
            allow_redirects=False,
        )
        query = redirect_query(resp)

        resp = await client.post(
            "/user/terms", json={"user_id": query["user_id"], "ticket": query["ticket"]}
        )

        assert resp.status == 200
        body = await resp.json()
        assert body == {"success": True, "redirect": f"{FRONTEND_URL}/dashboard"}
        assert resp.cookies["access_token"].value
        assert resp.cookies["refresh_token"].value

        resp = await client.get("/user/profile")
        assert resp.status == 200
        profile = await resp.json()
        assert profile["data"]["id"] == query["user_id"]
        assert profile["data"]["termsAccepted"] is True

    async def test_form_body(self, client):
        state = await start_login(client)
        resp = await client.get(
            "/auth/callback",
            params={"code": "code-1", "state": state},
            allow_redirects=False,
        )
        query = redirect_query(resp)

        resp = await client.post(
            "/user/terms", data={"user_id": query["user_id"], "ticket": query["ticket"]}
        )

        assert resp.status == 200

    @pytest.mark.parametrize("body", [{}, {"user_id": "u"}, {"ticket": "t"}])
    async def test_missing_fields(self, client, body):
        resp = await client.post("/user/terms", json=body)

        assert resp.status == 400
        assert (await resp.json())["success"] is False

    async def test_invalid_ticket(self, client, identity_store):
        user = identity_store.add(make_user())

        resp = await client.post("/user/terms", json={"user_id": user.id, "ticket": "forged"})

        assert resp.status == 401
        assert (await resp.json())["reason"] == "invalid_state"
        assert not user.terms_accepted


class TestProfile:
    async def test_profile_with_bearer_token(self, client, identity_store):
        user = identity_store.add(make_user(terms_accepted=True))
        pair = await issue_pair(client, user)

        resp = await client.get(
            "/user/profile", headers={"Authorization": f"Bearer {pair.access_token}"}
        )

        assert resp.status == 200
        data = (await resp.json())["data"]
        assert data["id"] == user.id
        assert data["email"] == "user@example.com"
        assert data["provider"] == "google"
        assert data["termsAcceptedAt"] is not None

    async def test_missing_token(self, client):
        resp = await client.get("/user/profile")

        assert resp.status == 401
        assert (await resp.json())["reason"] == "missing"

    async def test_refresh_token_is_not_an_access_token(self, client, identity_store):
        user = identity_store.add(make_user(terms_accepted=True))
        pair = await issue_pair(client, user)

        resp = await client.get(
            "/user/profile", headers={"Authorization": f"Bearer {pair.refresh_token}"}
        )

        assert resp.status == 401
        assert (await resp.json())["reason"] == "wrong_kind"

    async def test_unknown_user(self, client):
        pair = await client.app[TokenLifecycleAppKey].issue_pair("deleted-user")

        resp = await client.get(
            "/user/profile", headers={"Authorization": f"Bearer {pair.access_token}"}
        )

        assert resp.status == 401
        assert (await resp.json())["reason"] == "unknown_user"


class TestRefresh:
    async def test_refresh_from_body(self, client, identity_store):
        user = identity_store.add(make_user(terms_accepted=True))
        pair = await issue_pair(client, user)

        resp = await client.post("/auth/refresh", json={"refresh_token": pair.refresh_token})

        assert resp.status == 200
        body = await resp.json()
        assert body["success"] is True
        assert "refreshToken" not in body
        assert resp.cookies["access_token"].value == body["accessToken"]

        resp = await client.get(
            "/user/profile", headers={"Authorization": f"Bearer {body['accessToken']}"}
        )
        assert resp.status == 200

    async def test_refresh_from_cookie(self, client, identity_store):
        user = identity_store.add(make_user(terms_accepted=True))
        pair = await issue_pair(client, user)
        client.session.cookie_jar.update_cookies({"refresh_token": pair.refresh_token})

        resp = await client.post("/auth/refresh")

        assert resp.status == 200

    async def test_missing_refresh_token(self, client):
        resp = await client.post("/auth/refresh", json={})

        assert resp.status == 401
        assert (await resp.json())["success"] is False

    async def test_access_token_rejected(self, client, identity_store):
        user = identity_store.add(make_user(terms_accepted=True))
        pair = await issue_pair(client, user)

        resp = await client.post("/auth/refresh", json={"refresh_token": pair.access_token})

        assert resp.status == 401
        assert (await resp.json())["reason"] == "wrong_kind"

    async def test_malformed_json(self, client):
        resp = await client.post(
            "/auth/refresh",
            data="{not json",
            headers={"Content-Type": "application/json"},
        )

        assert resp.status == 400

    async def test_rotation(self, make_client, identity_store):
        client = await make_client(refresh_token_rotation=True)
        user = identity_store.add(make_user(terms_accepted=True))
        pair = await issue_pair(client, user)

        resp = await client.post("/auth/refresh", json={"refresh_token": pair.refresh_token})
        assert resp.status == 200
        body = await resp.json()
        assert body["refreshToken"] != pair.refresh_token

        resp = await client.post("/auth/refresh", json={"refresh_token": pair.refresh_token})
        assert resp.status == 401
        assert (await resp.json())["reason"] == "revoked"


class TestLogout:
    async def test_logout_revokes_tokens(self, client, identity_store):
        user = identity_store.add(make_user(terms_accepted=True))
        pair = await issue_pair(client, user)
        headers = {"Authorization": f"Bearer {pair.access_token}"}

        resp = await client.post(
            "/auth/logout", json={"refresh_token": pair.refresh_token}, headers=headers
        )

        assert resp.status == 200
        assert await resp.json() == {"success": True}
        assert resp.cookies["access_token"]["max-age"] == "0"
        assert resp.cookies["refresh_token"]["max-age"] == "0"

        resp = await client.get("/user/profile", headers=headers)
        assert resp.status == 401
        assert (await resp.json())["reason"] == "revoked"

        resp = await client.post("/auth/refresh", json={"refresh_token": pair.refresh_token})
        assert resp.status == 401

    async def test_logout_without_tokens(self, client):
        resp = await client.post("/auth/logout")

        assert resp.status == 200
        assert await resp.json() == {"success": True}

    async def test_logout_with_garbage(self, client):
        resp = await client.post(
            "/auth/logout",
            data="{not json",
            headers={"Content-Type": "application/json", "Authorization": "Bearer junk"},
        )

        assert resp.status == 200


class TestInternal:
    async def test_alive(self, client):
        resp = await client.get("/internal/alive")
        assert resp.status == 200

    async def test_ready(self, client):
        resp = await client.get("/internal/ready")
        assert resp.status == 200

    async def test_not_ready_after_error_burst(self, client):
        await client.app[HealthGaugeAppKey].womp(101)

        resp = await client.get("/internal/ready")

        assert resp.status == 503


class TestMiddleware:
    async def test_cors_preflight(self, client):
        resp = await client.options(
            "/auth/refresh", headers={"Origin": FRONTEND_URL}
        )

        assert resp.status == 204
        assert resp.headers["Access-Control-Allow-Origin"] == FRONTEND_URL
        assert resp.headers["Access-Control-Allow-Credentials"] == "true"

    async def test_cors_unknown_origin(self, client):
        resp = await client.get(
            "/internal/alive", headers={"Origin": "https://evil.example.com"}
        )

        assert "Access-Control-Allow-Origin" not in resp.headers

    async def test_request_metrics(self, client, mock_statsd):
        await client.get("/internal/alive")

        assert mock_statsd.count("gate.server.request.count") == 1
        assert "gate.server.request.time" in mock_statsd.timers


def test_cors_headers_debug_hosts():
    headers = get_cors_headers("http://localhost:5173", [], debug=True)
    assert headers["Access-Control-Allow-Origin"] == "http://localhost:5173"

    headers = get_cors_headers("http://localhost:5173", [], debug=False)
    assert "Access-Control-Allow-Origin" not in headers
