"""
User identity persistence.

`IdentityStore` is the seam the login flow depends on. `SqlIdentityStore`
implements it on PostgreSQL through SQLAlchemy's async session.
"""

import logging
from typing import Optional, Protocol

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from ulid import ULID

from social.graze.gate.model.base import utcnow
from social.graze.gate.model.user import User

logger = logging.getLogger(__name__)


class IdentityConflictException(Exception):
    """
    Raised when creating an identity that already exists.

    Callers recover by looking the identity up again.
    """

    @staticmethod
    def duplicate(provider: str) -> "IdentityConflictException":
        return IdentityConflictException(
            f"error-identity-store-1000 Identity already exists for provider {provider}"
        )


class IdentityNotFoundException(Exception):
    @staticmethod
    def user(user_id: str) -> "IdentityNotFoundException":
        return IdentityNotFoundException(
            f"error-identity-store-1001 User not found: {user_id}"
        )


class IdentityStore(Protocol):
    async def find_identity(self, provider: str, subject: str) -> Optional[User]: ...

    async def create_identity(self, email: str, provider: str, subject: str) -> User: ...

    async def get_user(self, user_id: str) -> Optional[User]: ...

    async def mark_terms_accepted(self, user_id: str) -> User: ...

    async def touch_last_seen(self, user_id: str) -> None: ...


class SqlIdentityStore:
    def __init__(self, session_maker: async_sessionmaker[AsyncSession]) -> None:
        self._session_maker = session_maker

    async def find_identity(self, provider: str, subject: str) -> Optional[User]:
        async with self._session_maker() as database_session:
            stmt = select(User).where(
                User.provider == provider, User.provider_subject == subject
            )
            return (await database_session.scalars(stmt)).first()

    async def get_user(self, user_id: str) -> Optional[User]:
        async with self._session_maker() as database_session:
            return await database_session.get(User, user_id)

    async def create_identity(self, email: str, provider: str, subject: str) -> User:
        """
        Insert a new user for an external identity.

        Raises:
            IdentityConflictException: If (provider, subject) is already taken
        """
        now = utcnow()
        user = User(
            id=str(ULID()),
            email=email,
            provider=provider,
            provider_subject=subject,
            terms_accepted=False,
            terms_accepted_at=None,
            created_at=now,
            updated_at=now,
        )
        async with self._session_maker() as database_session:
            try:
                async with database_session.begin():
                    database_session.add(user)
            except IntegrityError as e:
                raise IdentityConflictException.duplicate(provider) from e
        logger.info("Created user %s for provider %s", user.id, provider)
        return user

    async def mark_terms_accepted(self, user_id: str) -> User:
        """
        Record that a user accepted the terms.

        Raises:
            IdentityNotFoundException: If the user does not exist
        """
        now = utcnow()
        async with self._session_maker() as database_session:
            async with database_session.begin():
                user = await database_session.get(User, user_id)
                if user is None:
                    raise IdentityNotFoundException.user(user_id)
                if not user.terms_accepted:
                    user.terms_accepted = True
                    user.terms_accepted_at = now
                user.updated_at = now
            return user

    async def touch_last_seen(self, user_id: str) -> None:
        async with self._session_maker() as database_session:
            async with database_session.begin():
                await database_session.execute(
                    update(User).where(User.id == user_id).values(updated_at=utcnow())
                )
