"""User identity records.

Links an external identity (provider + provider subject) to a local user id.
The pair is unique; the identity resolution lock exists to keep concurrent
first logins from racing into that constraint.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from social.graze.gate.model.base import Base, str512, timestamptz, ulidpk


class User(Base):
    """A local account bound to one external identity."""

    __tablename__ = "users"

    id: Mapped[ulidpk]
    email: Mapped[str512]
    provider: Mapped[str] = mapped_column(String(64), nullable=False)
    provider_subject: Mapped[str512]
    terms_accepted: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    terms_accepted_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[timestamptz]
    updated_at: Mapped[timestamptz]

    __table_args__ = (
        Index(
            "idx_users_provider_subject", "provider", "provider_subject", unique=True
        ),
        Index("idx_users_email", "email"),
    )
