"""
Configuration Module for the Gate Service

This module defines the configuration system for the Gate login gateway, using
Pydantic for settings validation and dependency injection through AppKeys.

The configuration follows these principles:
1. Environment-based configuration with sensible defaults
2. Strong validation and typing through Pydantic
3. A single immutable settings object, built once at startup and passed by
   reference to every component that needs it
4. Dependency injection using aiohttp's app context

Key configuration areas include:
- Service identification and networking
- Database and cache connections
- Token signing keys and token lifetimes
- OAuth handshake storage and identity provider credentials
- Monitoring and observability
"""

import asyncio
import base64
import logging
import re
from typing import Annotated, Final, List, Literal, Optional

from aio_statsd import TelegrafStatsdClient
from aiohttp import ClientSession, web
from cryptography.fernet import Fernet
from jwcrypto import jwk
from pydantic import (
    AliasChoices,
    Field,
    PostgresDsn,
    RedisDsn,
    field_validator,
)
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict
from redis import asyncio as redis
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
)

from social.graze.gate.identity.store import IdentityStore
from social.graze.gate.login import LoginFlow
from social.graze.gate.model.health import HealthGauge
from social.graze.gate.provider.google import GoogleIdentityProvider
from social.graze.gate.token.codec import MIN_SECRET_BYTES
from social.graze.gate.token.lifecycle import TokenLifecycleManager

logger = logging.getLogger(__name__)

_DURATION_UNITS = {"s": 1, "m": 60, "h": 60 * 60, "d": 60 * 60 * 24}
_DURATION_PATTERN = re.compile(r"^\s*(\d+)\s*([smhd]?)\s*$")


def parse_duration(value) -> int:
    """
    Parse a duration into whole seconds.

    Accepts integers (seconds) and strings such as "900", "15m", "12h" or "7d".

    Raises:
        ValueError: If the value is not a recognised duration
    """
    if isinstance(value, bool):
        raise ValueError("duration must be a number of seconds or a string like 15m")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        match = _DURATION_PATTERN.match(value)
        if match is not None:
            amount, unit = match.groups()
            return int(amount) * _DURATION_UNITS[unit or "s"]
    raise ValueError(f"invalid duration: {value!r}")


class Settings(BaseSettings):
    """
    Application settings for the Gate service.

    Values are loaded from environment variables, with aliases where an
    established variable name already exists (for example PG_DSN or
    DATABASE_URL). The object is frozen once constructed: components receive
    it by reference and must not mutate it.
    """

    model_config = SettingsConfigDict(frozen=True, arbitrary_types_allowed=True)

    # Environment and debugging settings
    debug: bool = False
    """
    Enable debug mode for verbose logging and development features.
    Set with DEBUG=true environment variable.
    """

    environment: str = "development"
    """
    Deployment environment name. "production" turns on Secure cookies.
    Set with ENVIRONMENT environment variable.
    """

    allowed_domains: Annotated[List[str], NoDecode] = [
        "http://localhost:3000",
    ]
    """
    Origins allowed to make credentialed cross-origin requests.
    Set with ALLOWED_DOMAINS environment variable as comma-separated values.
    """

    # Network and service identification settings
    http_port: int = Field(alias="port", default=3001)
    """
    HTTP port for the service to listen on.
    Set with PORT environment variable.
    """

    external_hostname: str = "localhost:3001"
    """
    Public hostname for the service, used for generating callback URLs.
    Set with EXTERNAL_HOSTNAME environment variable.
    """

    frontend_url: str = "http://localhost:3000"
    """
    Base URL of the web client. Login outcomes redirect below it
    (/dashboard, /terms, /login?error=auth_failed).
    Set with FRONTEND_URL environment variable.
    """

    # Monitoring and error reporting
    sentry_dsn: Optional[str] = None
    """
    Sentry DSN for error reporting. Optional, no error reporting if not set.
    Set with SENTRY_DSN environment variable.
    """

    # Database and cache connections
    redis_dsn: RedisDsn = Field(
        "redis://valkey:6379/1?decode_responses=True&socket_timeout=5&socket_connect_timeout=5",
        validation_alias=AliasChoices("redis_dsn", "redis_url"),
    )  # type: ignore
    """
    Redis connection string for the token allow-list, handshake records and
    identity locks. Timeouts are set through the query string.
    Set with REDIS_DSN or REDIS_URL environment variables.
    """

    pg_dsn: PostgresDsn = Field(
        "postgresql+asyncpg://postgres:password@db/gate",
        validation_alias=AliasChoices("pg_dsn", "database_url"),
    )  # type: ignore
    """
    PostgreSQL connection string for the users table.
    Set with PG_DSN or DATABASE_URL environment variables.
    """

    # Token signing settings
    json_web_keys: Annotated[jwk.JWKSet, NoDecode] = jwk.JWKSet()
    """
    JSON Web Key Set containing the token signing keys.
    Can be set to a JWKSet object or path to a JSON file containing keys.
    Set with JSON_WEB_KEYS environment variable.
    """

    active_signing_keys: Annotated[List[str], NoDecode] = list()
    """
    Key IDs (kid) from json_web_keys used for signing. The first one signs new
    tokens; all keys in json_web_keys verify.
    Set with ACTIVE_SIGNING_KEYS environment variable as comma-separated values.
    """

    jwt_secret: Optional[str] = None
    """
    Shared secret for HS256 signing, used when no JWK Set is configured.
    Must be at least 32 bytes.
    Set with JWT_SECRET environment variable.
    """

    token_algorithms: Annotated[List[str], NoDecode] = ["ES256", "HS256"]
    """
    Algorithms accepted when verifying tokens.
    Set with TOKEN_ALGORITHMS environment variable as comma-separated values.
    """

    access_token_expiry: int = Field(
        900, validation_alias=AliasChoices("access_token_expiry", "jwt_expires_in")
    )
    """
    Lifetime of access tokens in seconds (or a string such as 15m).
    Set with ACCESS_TOKEN_EXPIRY or JWT_EXPIRES_IN environment variables.
    Default: 900 (15 minutes)
    """

    refresh_token_expiry: int = Field(
        604800,
        validation_alias=AliasChoices(
            "refresh_token_expiry", "jwt_refresh_expires_in"
        ),
    )
    """
    Lifetime of refresh tokens in seconds (or a string such as 7d).
    Set with REFRESH_TOKEN_EXPIRY or JWT_REFRESH_EXPIRES_IN environment variables.
    Default: 604800 (7 days)
    """

    refresh_token_rotation: bool = False
    """
    Replace the refresh token on every refresh. When false, one refresh token
    mints access tokens until it expires or is revoked.
    Set with REFRESH_TOKEN_ROTATION environment variable.
    """

    # OAuth handshake and identity settings
    handshake_storage: Literal["redis", "session"] = "redis"
    """
    Where OAuth state/nonce pairs live between login and callback: in Redis,
    or in an encrypted cookie session held by the browser.
    Set with HANDSHAKE_STORAGE environment variable.
    """

    handshake_ttl: int = 600
    """
    Lifetime in seconds of an in-flight login attempt.
    Set with HANDSHAKE_TTL environment variable.
    """

    identity_lock_ttl: int = 30
    """
    Lifetime in seconds of the lock guarding first-time account creation.
    Set with IDENTITY_LOCK_TTL environment variable.
    """

    encryption_key: Fernet = Fernet(Fernet.generate_key())
    """
    Fernet symmetric encryption key for the handshake session cookie.
    Can be set to a Fernet object or base64-encoded key string.
    Set with ENCRYPTION_KEY environment variable.
    """

    google_client_id: str = ""
    """OAuth client id registered with Google. Set with GOOGLE_CLIENT_ID."""

    google_client_secret: str = ""
    """OAuth client secret registered with Google. Set with GOOGLE_CLIENT_SECRET."""

    google_redirect_uri: Optional[str] = None
    """
    Callback URL registered with Google. Defaults to
    http(s)://<external_hostname>/auth/callback.
    Set with GOOGLE_REDIRECT_URI environment variable.
    """

    # Monitoring and observability settings
    statsd_host: str = Field(alias="TELEGRAF_HOST", default="telegraf")
    """
    StatsD/Telegraf host for metrics collection.
    Set with TELEGRAF_HOST environment variable.
    """

    statsd_port: int = Field(alias="TELEGRAF_PORT", default=8125)
    """
    StatsD/Telegraf port for metrics collection.
    Set with TELEGRAF_PORT environment variable.
    """

    @property
    def cookie_secure(self) -> bool:
        return self.environment == "production"

    @property
    def callback_url(self) -> str:
        if self.google_redirect_uri:
            return self.google_redirect_uri
        scheme = "https" if self.cookie_secure else "http"
        return f"{scheme}://{self.external_hostname}/auth/callback"

    @field_validator(
        "allowed_domains", "active_signing_keys", "token_algorithms", mode="before"
    )
    @classmethod
    def split_comma_separated(cls, v):
        """Accept comma-separated strings for list settings."""
        if isinstance(v, str):
            return [item.strip() for item in v.split(",") if item.strip()]
        return v

    @field_validator("access_token_expiry", "refresh_token_expiry", mode="before")
    @classmethod
    def decode_duration(cls, v) -> int:
        seconds = parse_duration(v)
        if seconds <= 0:
            raise ValueError("token expiry must be positive")
        return seconds

    @field_validator("json_web_keys", mode="before")
    @classmethod
    def decode_json_web_keys(cls, v) -> jwk.JWKSet:
        """Load the signing key set from a JWKSet or a path to its JSON file."""
        if isinstance(v, jwk.JWKSet):
            return v
        elif isinstance(v, str):
            with open(v) as fd:
                data = fd.read()
                return jwk.JWKSet.from_json(data)
        raise ValueError(
            "json_web_keys must be a JWKSet object or a valid JSON file path"
        )

    @field_validator("jwt_secret")
    @classmethod
    def check_jwt_secret(cls, v: Optional[str]) -> Optional[str]:
        if v and len(v.encode("utf-8")) < MIN_SECRET_BYTES:
            raise ValueError(
                f"jwt_secret must be at least {MIN_SECRET_BYTES} bytes for HS256"
            )
        return v

    @field_validator("encryption_key", mode="before")
    @classmethod
    def decode_encryption_key(cls, v) -> Fernet:
        """The handshake cookie key, as a Fernet object or a base64-encoded key."""
        if isinstance(v, Fernet):
            return v
        elif isinstance(v, str):
            key_data = base64.b64decode(v)
            return Fernet(key_data)
        raise ValueError(
            "encryption_key must be a Fernet object or a base64-encoded key string"
        )


# Cookie names shared with the web client
ACCESS_TOKEN_COOKIE = "access_token"
REFRESH_TOKEN_COOKIE = "refresh_token"
HANDSHAKE_COOKIE = "gate_handshake"

# Application context keys for dependency injection
SettingsAppKey: Final = web.AppKey("settings", Settings)
"""AppKey for accessing the application settings"""

DatabaseAppKey: Final = web.AppKey("database", AsyncEngine)
"""AppKey for accessing the SQLAlchemy async database engine"""

DatabaseSessionMakerAppKey: Final = web.AppKey(
    "database_session_maker", async_sessionmaker[AsyncSession]
)
"""AppKey for accessing the SQLAlchemy async session factory"""

SessionAppKey: Final = web.AppKey("http_session", ClientSession)
"""AppKey for accessing the shared aiohttp client session"""

RedisClientAppKey: Final = web.AppKey("redis_client", redis.Redis)
"""AppKey for accessing the Redis client"""

TokenLifecycleAppKey: Final = web.AppKey("token_lifecycle", TokenLifecycleManager)
"""AppKey for the token lifecycle manager"""

IdentityStoreAppKey: Final = web.AppKey("identity_store", IdentityStore)
"""AppKey for the user identity store"""

IdentityProviderAppKey: Final = web.AppKey(
    "identity_provider", GoogleIdentityProvider
)
"""AppKey for the external OpenID Connect identity provider"""

LoginFlowAppKey: Final = web.AppKey("login_flow", LoginFlow)
"""AppKey for the login flow orchestrating handshake, identity and tokens"""

HealthGaugeAppKey: Final = web.AppKey("health_gauge", HealthGauge)
"""AppKey for accessing the health monitoring gauge"""

TickHealthTaskAppKey: Final = web.AppKey("tick_health_task", asyncio.Task[None])
"""AppKey for the background task that monitors service health"""

TelegrafStatsdClientAppKey: Final = web.AppKey(
    "telegraf_statsd_client", TelegrafStatsdClient
)
"""AppKey for the Telegraf/StatsD metrics client"""
