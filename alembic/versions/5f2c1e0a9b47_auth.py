"""auth

Revision ID: 5f2c1e0a9b47
Revises:
Create Date: 2026-10-19 19:52:10.418233

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "5f2c1e0a9b47"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(26), primary_key=True),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("email_verified", sa.DateTime(timezone=True), nullable=True),
        sa.Column("image", sa.String(512), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("idx_users_email", "users", ["email"], unique=True)

    op.create_table(
        "accounts",
        sa.Column("provider", sa.String(64), primary_key=True),
        sa.Column("provider_account_id", sa.String(255), primary_key=True),
        sa.Column("user_id", sa.String(26), nullable=False),
        sa.Column("type", sa.String(16), nullable=False),
        sa.Column("access_token", sa.Text, nullable=True),
        sa.Column("refresh_token", sa.Text, nullable=True),
        sa.Column("expires_at", sa.Integer, nullable=True),
        sa.Column("token_type", sa.String(32), nullable=True),
        sa.Column("scope", sa.String(512), nullable=True),
        sa.Column("id_token", sa.Text, nullable=True),
    )
    op.create_index("idx_accounts_user_id", "accounts", ["user_id"])

    op.create_table(
        "verification_tokens",
        sa.Column("identifier", sa.String(255), primary_key=True),
        sa.Column("token", sa.String(64), primary_key=True),
        sa.Column("expires", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "idx_verification_tokens_expires", "verification_tokens", ["expires"]
    )


def downgrade() -> None:
    op.drop_table("verification_tokens")
    op.drop_table("accounts")
    op.drop_table("users")
