"""
Shared test configuration and fixtures for Gate tests.

Provides the Redis (fakeredis and real), PostgreSQL, signing key, clock and
metrics fixtures used across the test files.
"""

import os
import uuid

import pytest
import pytest_asyncio
from jwcrypto import jwk
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from ulid import ULID

from social.graze.gate.model.base import Base
from social.graze.gate.token.codec import TokenCodec
from social.graze.gate.token.ledger import AllowListLedger
from social.graze.gate.token.lifecycle import TokenLifecycleManager

# Try to import Redis testing dependencies
try:
    import redis.asyncio as redis
    import fakeredis.aioredis

    REDIS_AVAILABLE = True
except ImportError:
    redis = None
    fakeredis = None
    REDIS_AVAILABLE = False


class FakeClock:
    """A settable Unix clock for expiry tests."""

    def __init__(self, now: int = 1_750_000_000) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += seconds


class MockStatsdClient:
    """Mock StatsD client for testing metrics collection."""

    def __init__(self):
        self.gauges = {}
        self.increments = {}
        self.timers = {}

    def gauge(self, metric_name, value, tag_dict=None):
        self.gauges[metric_name] = {"value": value, "tags": tag_dict or {}}

    def increment(self, metric_name, value=1, tag_dict=None):
        key = (metric_name, tuple(sorted((tag_dict or {}).items())))
        self.increments[key] = self.increments.get(key, 0) + value

    def timer(self, metric_name, value, tag_dict=None):
        self.timers[metric_name] = {"value": value, "tags": tag_dict or {}}

    def count(self, metric_name) -> int:
        return sum(
            value for (name, _), value in self.increments.items() if name == metric_name
        )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def signing_key():
    return jwk.JWK.generate(kty="EC", crv="P-256", kid=str(ULID()), alg="ES256")


@pytest.fixture
def json_web_keys(signing_key):
    keys = jwk.JWKSet()
    keys.add(signing_key)
    return keys


@pytest.fixture
def codec(signing_key, json_web_keys, clock):
    return TokenCodec(signing_key, json_web_keys, ["ES256"], clock=clock)


@pytest.fixture
def mock_statsd():
    return MockStatsdClient()


@pytest_asyncio.fixture
async def fake_redis_client():
    """Provide fake Redis client for unit tests."""
    if not REDIS_AVAILABLE or fakeredis is None:
        pytest.skip("fakeredis not available")

    client = fakeredis.aioredis.FakeRedis(decode_responses=False)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def ledger(fake_redis_client):
    return AllowListLedger(fake_redis_client)


@pytest.fixture
def lifecycle(codec, ledger):
    return TokenLifecycleManager(
        codec, ledger, access_token_expiry=900, refresh_token_expiry=604800
    )


# Test database configuration
TEST_DB_HOST = os.getenv("TEST_DB_HOST", "postgres")
TEST_DB_PORT = os.getenv("TEST_DB_PORT", "5432")
TEST_DB_USER = os.getenv("TEST_DB_USER", "postgres")
TEST_DB_PASSWORD = os.getenv("TEST_DB_PASSWORD", "password")

# Admin URL for database creation/deletion (connects to postgres database)
ADMIN_DATABASE_URL = f"postgresql+asyncpg://{TEST_DB_USER}:{TEST_DB_PASSWORD}@{TEST_DB_HOST}:{TEST_DB_PORT}/postgres"


async def check_postgres_available():
    """Check if PostgreSQL is available for testing."""
    try:
        admin_engine = create_async_engine(ADMIN_DATABASE_URL, echo=False)
        async with admin_engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        await admin_engine.dispose()
        return True
    except Exception:
        return False


@pytest_asyncio.fixture(scope="function")
async def test_database():
    """Create and clean up test database for each test function."""
    if not await check_postgres_available():
        pytest.skip("PostgreSQL database not available for testing")

    unique_db_name = f"gate_test_{uuid.uuid4().hex[:8]}"
    unique_db_url = (
        f"postgresql+asyncpg://{TEST_DB_USER}:{TEST_DB_PASSWORD}@"
        f"{TEST_DB_HOST}:{TEST_DB_PORT}/{unique_db_name}"
    )

    admin_engine = create_async_engine(
        ADMIN_DATABASE_URL, echo=False, isolation_level="AUTOCOMMIT"
    )

    try:
        async with admin_engine.connect() as conn:
            await conn.execute(text(f"CREATE DATABASE {unique_db_name}"))

        yield unique_db_url

    finally:
        async with admin_engine.connect() as conn:
            await conn.execute(text(f"DROP DATABASE IF EXISTS {unique_db_name}"))
        await admin_engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def engine(test_database):
    """Create async SQLAlchemy engine for testing with PostgreSQL."""
    engine = create_async_engine(test_database, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(session_maker):
    """Create async database session for testing."""
    async with session_maker() as session:
        yield session


# Redis test configuration and fixtures
TEST_REDIS_HOST = os.getenv("TEST_REDIS_HOST", "valkey")
TEST_REDIS_PORT = int(os.getenv("TEST_REDIS_PORT", "6379"))
TEST_REDIS_DB = int(os.getenv("TEST_REDIS_DB", "15"))  # Use a separate test DB


async def check_redis_available():
    """Check if Redis is available for testing."""
    if not REDIS_AVAILABLE or redis is None:
        return False

    try:
        redis_client = redis.Redis(
            host=TEST_REDIS_HOST,
            port=TEST_REDIS_PORT,
            db=TEST_REDIS_DB,
            decode_responses=False,
        )
        await redis_client.ping()
        await redis_client.aclose()
        return True
    except Exception:
        return False


@pytest_asyncio.fixture
async def redis_client():
    """Provide real Redis client for integration tests."""
    if not await check_redis_available():
        pytest.skip("Redis server not available for testing")

    client = redis.Redis(
        host=TEST_REDIS_HOST,
        port=TEST_REDIS_PORT,
        db=TEST_REDIS_DB,
        decode_responses=False,
    )

    await client.flushdb()

    yield client

    await client.flushdb()
    await client.aclose()
