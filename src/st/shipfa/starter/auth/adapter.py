"""
Database adapter for the authentication routes.

The adapter is the only place users, linked accounts and verification tokens
are persisted. It is optional: when no database is configured the routes run
without one, users are not stored, and the email provider is disabled.
"""

from datetime import datetime, timezone
import logging
from typing import Any, Dict, Optional, Protocol, TypedDict
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from ulid import ULID

from st.shipfa.starter.model.user import Account, User, VerificationToken

logger = logging.getLogger(__name__)


class AdapterUser(TypedDict):
    id: str
    name: Optional[str]
    email: Optional[str]
    email_verified: Optional[datetime]
    image: Optional[str]


class AdapterAccount(TypedDict, total=False):
    user_id: str
    type: str
    provider: str
    provider_account_id: str
    access_token: Optional[str]
    refresh_token: Optional[str]
    expires_at: Optional[int]
    token_type: Optional[str]
    scope: Optional[str]
    id_token: Optional[str]


class VerificationTokenRecord(TypedDict):
    identifier: str
    token: str
    expires: datetime


class Adapter(Protocol):
    async def create_user(self, user: Dict[str, Any]) -> AdapterUser: ...

    async def get_user(self, user_id: str) -> Optional[AdapterUser]: ...

    async def get_user_by_email(self, email: str) -> Optional[AdapterUser]: ...

    async def get_user_by_account(
        self, provider: str, provider_account_id: str
    ) -> Optional[AdapterUser]: ...

    async def update_user(self, user: Dict[str, Any]) -> AdapterUser: ...

    async def link_account(self, account: AdapterAccount) -> None: ...

    async def create_verification_token(
        self, record: VerificationTokenRecord
    ) -> VerificationTokenRecord: ...

    async def use_verification_token(
        self, identifier: str, token: str
    ) -> Optional[VerificationTokenRecord]: ...

    async def delete_expired_verification_tokens(self, now: datetime) -> int: ...


def _user_dict(user: User) -> AdapterUser:
    return AdapterUser(
        id=user.id,
        name=user.name,
        email=user.email,
        email_verified=user.email_verified,
        image=user.image,
    )


class SQLAlchemyAdapter:
    """
    Adapter backed by the SQLAlchemy models in ``model.user``.

    The session maker must be created with ``expire_on_commit=False``; records
    are read after their transaction commits.
    """

    def __init__(self, database_session_maker: async_sessionmaker[AsyncSession]):
        self.database_session_maker = database_session_maker

    async def create_user(self, user: Dict[str, Any]) -> AdapterUser:
        record = User(
            id=str(ULID()),
            name=user.get("name"),
            email=user.get("email"),
            email_verified=user.get("email_verified"),
            image=user.get("image"),
            created_at=user.get("created_at") or datetime.now(timezone.utc),
        )
        async with self.database_session_maker() as database_session:
            async with database_session.begin():
                database_session.add(record)
        logger.debug("Created user %s", record.id)
        return _user_dict(record)

    async def get_user(self, user_id: str) -> Optional[AdapterUser]:
        async with self.database_session_maker() as database_session:
            user = await database_session.get(User, user_id)
            return None if user is None else _user_dict(user)

    async def get_user_by_email(self, email: str) -> Optional[AdapterUser]:
        async with self.database_session_maker() as database_session:
            stmt = select(User).where(User.email == email)
            user: Optional[User] = (await database_session.scalars(stmt)).first()
            return None if user is None else _user_dict(user)

    async def get_user_by_account(
        self, provider: str, provider_account_id: str
    ) -> Optional[AdapterUser]:
        async with self.database_session_maker() as database_session:
            stmt = (
                select(User)
                .join(Account, Account.user_id == User.id)
                .where(
                    Account.provider == provider,
                    Account.provider_account_id == provider_account_id,
                )
            )
            user: Optional[User] = (await database_session.scalars(stmt)).first()
            return None if user is None else _user_dict(user)

    async def update_user(self, user: Dict[str, Any]) -> AdapterUser:
        async with self.database_session_maker() as database_session:
            async with database_session.begin():
                record = await database_session.get(User, user["id"])
                if record is None:
                    raise ValueError(f"User not found: {user['id']}")
                for field_name in ("name", "email", "email_verified", "image"):
                    if field_name in user:
                        setattr(record, field_name, user[field_name])
            return _user_dict(record)

    async def link_account(self, account: AdapterAccount) -> None:
        record = Account(
            provider=account["provider"],
            provider_account_id=account["provider_account_id"],
            user_id=account["user_id"],
            type=account["type"],
            access_token=account.get("access_token"),
            refresh_token=account.get("refresh_token"),
            expires_at=account.get("expires_at"),
            token_type=account.get("token_type"),
            scope=account.get("scope"),
            id_token=account.get("id_token"),
        )
        async with self.database_session_maker() as database_session:
            async with database_session.begin():
                database_session.add(record)

    async def create_verification_token(
        self, record: VerificationTokenRecord
    ) -> VerificationTokenRecord:
        async with self.database_session_maker() as database_session:
            async with database_session.begin():
                database_session.add(
                    VerificationToken(
                        identifier=record["identifier"],
                        token=record["token"],
                        expires=record["expires"],
                    )
                )
        return record

    async def use_verification_token(
        self, identifier: str, token: str
    ) -> Optional[VerificationTokenRecord]:
        # A single DELETE ... RETURNING, so concurrent callers cannot both claim the token.
        async with self.database_session_maker() as database_session:
            async with database_session.begin():
                stmt = (
                    delete(VerificationToken)
                    .where(
                        VerificationToken.identifier == identifier,
                        VerificationToken.token == token,
                    )
                    .returning(
                        VerificationToken.identifier,
                        VerificationToken.token,
                        VerificationToken.expires,
                    )
                )
                row = (await database_session.execute(stmt)).first()

        if row is None:
            return None

        return VerificationTokenRecord(
            identifier=row.identifier,
            token=row.token,
            expires=row.expires,
        )

    async def delete_expired_verification_tokens(self, now: datetime) -> int:
        async with self.database_session_maker() as database_session:
            async with database_session.begin():
                stmt = delete(VerificationToken).where(VerificationToken.expires < now)
                result = await database_session.execute(stmt)
                return result.rowcount
