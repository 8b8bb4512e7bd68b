"""Authentication data models owned by the database adapter.

Provides SQLAlchemy models for users, the provider accounts linked to them,
and the one-time verification tokens issued by the magic-link provider.
"""
from datetime import datetime
from typing import Optional
from sqlalchemy import DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from st.shipfa.starter.model.base import Base, str255, str512, ulidpk


class User(Base):
    """Application user.

    A user is created the first time someone signs in, either through an
    OAuth provider or by following a magic link. The email address is the
    join key between providers.
    """
    __tablename__ = "users"

    id: Mapped[ulidpk]
    name: Mapped[Optional[str255]] = mapped_column(nullable=True)
    email: Mapped[Optional[str255]] = mapped_column(nullable=True)
    email_verified: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    image: Mapped[Optional[str512]] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )

    __table_args__ = (Index("idx_users_email", "email", unique=True),)


class Account(Base):
    """Provider account linked to a user.

    One row per (provider, provider account id). OAuth accounts keep the
    tokens returned by the token endpoint; email accounts only record that
    the address was verified.
    """
    __tablename__ = "accounts"

    provider: Mapped[str] = mapped_column(String(64), primary_key=True)
    provider_account_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(26), nullable=False)
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    access_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    refresh_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    expires_at: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    token_type: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    scope: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    id_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (Index("idx_accounts_user_id", "user_id"),)


class VerificationToken(Base):
    """Magic-link verification token.

    Only the hash of the token is stored. Rows are deleted when used and
    swept by a background task once expired.
    """
    __tablename__ = "verification_tokens"

    identifier: Mapped[str] = mapped_column(String(255), primary_key=True)
    token: Mapped[str] = mapped_column(String(64), primary_key=True)
    expires: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )

    __table_args__ = (Index("idx_verification_tokens_expires", "expires"),)
