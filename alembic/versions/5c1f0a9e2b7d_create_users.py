"""create users

Revision ID: 5c1f0a9e2b7d
Revises:
Create Date: 2025-09-09 10:21:56.041000

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "5c1f0a9e2b7d"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(26), primary_key=True),
        sa.Column("email", sa.String(512), nullable=False),
        sa.Column("provider", sa.String(64), nullable=False),
        sa.Column("provider_subject", sa.String(512), nullable=False),
        sa.Column(
            "terms_accepted", sa.Boolean, nullable=False, server_default=sa.false()
        ),
        sa.Column("terms_accepted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    # One local account per external identity.
    op.create_index(
        "idx_users_provider_subject",
        "users",
        ["provider", "provider_subject"],
        unique=True,
    )
    op.create_index("idx_users_email", "users", ["email"])


def downgrade() -> None:
    op.drop_index("idx_users_email", table_name="users")
    op.drop_index("idx_users_provider_subject", table_name="users")
    op.drop_table("users")
