"""PostgreSQL UserStore over async SQLAlchemy.

Learn: Each method opens its own short-lived session from the pool.
Two operations carry the concurrency guarantees of the auth layer:

- consume_action_token: one transaction, SELECT ... FOR UPDATE on the
  user row then the token row (always in that order, so concurrent
  consumers queue instead of deadlocking), re-check the token is still
  live, then null the token and mutate the user. Commit or roll back
  together — never a consumed token with an untouched user.
- upsert_action_token: INSERT ... ON CONFLICT (user_id, action_type)
  DO UPDATE, so re-issuing replaces the row instead of duplicating it.
- regenerate_verify_token: the same upsert, but only after locking the
  user row and re-checking it is still unverified, so a resend racing a
  verify can never leave a verified user holding a live token.

Driver errors surface as StoreError; the message stays in the logs.
"""

import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Iterable, Optional

from sqlalchemy import func, insert, select, text
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from warden.db.models import Permission, Role, RolePermission, User, UserActionToken
from warden.stores.base import (
    AccountVerifiedError,
    ActionTokenRecord,
    ActionTokenStateError,
    ActionType,
    EmailTakenError,
    NewActionToken,
    NewUser,
    RoleType,
    StoreError,
    UserMutation,
    UserRecord,
)


def _user_record(user: User) -> UserRecord:
    return UserRecord(
        id=user.id,
        role_id=user.role_id,
        name=user.name,
        email=user.email,
        password_hash=user.password_hash,
        is_verified=user.is_verified,
        created_at=user.created_at,
        updated_at=user.updated_at,
    )


def _token_record(row: UserActionToken) -> ActionTokenRecord:
    return ActionTokenRecord(
        id=row.id,
        user_id=row.user_id,
        token=row.token,
        action_type=ActionType(row.action_type),
        used_at=row.used_at,
        expires_at=row.expires_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class SqlUserStore:
    """UserStore backed by PostgreSQL."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._sessions = session_factory

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._sessions() as session:
                yield session
        except (SQLAlchemyError, OSError) as e:
            raise StoreError(str(e)) from e

    # ─── Users and roles ──────────────────────────────────

    async def get_user_by_id(self, user_id: uuid.UUID) -> Optional[UserRecord]:
        async with self._session() as session:
            user = await session.get(User, user_id)
            return _user_record(user) if user else None

    async def get_user_by_email(self, email: str) -> Optional[UserRecord]:
        async with self._session() as session:
            result = await session.execute(select(User).where(User.email == email))
            user = result.scalars().first()
            return _user_record(user) if user else None

    async def get_role_id_by_name(self, role: RoleType) -> Optional[uuid.UUID]:
        async with self._session() as session:
            result = await session.execute(select(Role.id).where(Role.name == role))
            return result.scalar_one_or_none()

    async def get_role_name_by_id(self, role_id: uuid.UUID) -> Optional[RoleType]:
        async with self._session() as session:
            result = await session.execute(select(Role.name).where(Role.id == role_id))
            name = result.scalar_one_or_none()
            return RoleType(name) if name is not None else None

    async def get_permissions_by_role(self, role_id: uuid.UUID) -> set[str]:
        async with self._session() as session:
            result = await session.execute(
                select(Permission.name)
                .join(RolePermission, RolePermission.permission_id == Permission.id)
                .where(RolePermission.role_id == role_id)
            )
            return set(result.scalars().all())

    async def create_user(self, new_user: NewUser, token: NewActionToken) -> UserRecord:
        """Insert the user and its first action token in one transaction."""
        async with self._session() as session:
            try:
                async with session.begin():
                    result = await session.execute(
                        insert(User)
                        .values(
                            role_id=new_user.role_id,
                            name=new_user.name,
                            email=new_user.email,
                            password_hash=new_user.password_hash,
                        )
                        .returning(User)
                    )
                    user = result.scalar_one()
                    session.add(
                        UserActionToken(
                            user_id=user.id,
                            token=token.token,
                            action_type=token.action_type,
                            expires_at=token.expires_at,
                        )
                    )
            except IntegrityError as e:
                if "email" in str(e.orig):
                    raise EmailTakenError(new_user.email) from e
                raise StoreError(str(e)) from e
            return _user_record(user)

    # ─── Action tokens ────────────────────────────────────

    async def get_action_token_by_value(self, token: str) -> Optional[ActionTokenRecord]:
        async with self._session() as session:
            result = await session.execute(
                select(UserActionToken).where(
                    UserActionToken.token == token,
                    UserActionToken.used_at.is_(None),
                )
            )
            row = result.scalars().first()
            return _token_record(row) if row else None

    async def consume_action_token(
        self,
        action_token_id: uuid.UUID,
        user_id: uuid.UUID,
        mutation: UserMutation,
        now: datetime,
    ) -> UserRecord:
        async with self._session() as session:
            async with session.begin():
                user = (
                    await session.execute(
                        select(User).where(User.id == user_id).with_for_update()
                    )
                ).scalar_one_or_none()
                row = (
                    await session.execute(
                        select(UserActionToken)
                        .where(
                            UserActionToken.id == action_token_id,
                            UserActionToken.user_id == user_id,
                        )
                        .with_for_update()
                    )
                ).scalar_one_or_none()

                if user is None or row is None or row.used_at is not None or row.token is None:
                    raise ActionTokenStateError("consumed")
                if row.expires_at is None or row.expires_at <= now:
                    raise ActionTokenStateError("expired")

                row.token = None
                row.expires_at = None
                row.used_at = now
                row.updated_at = now
                for column, value in mutation.values().items():
                    setattr(user, column, value)
                user.updated_at = now
            return _user_record(user)

    async def upsert_action_token(
        self,
        user_id: uuid.UUID,
        action_type: ActionType,
        token: str,
        expires_at: datetime,
    ) -> ActionTokenRecord:
        async with self._session() as session:
            async with session.begin():
                row = await self._upsert(session, user_id, action_type, token, expires_at)
            return _token_record(row)

    async def regenerate_verify_token(
        self, user_id: uuid.UUID, token: str, expires_at: datetime
    ) -> ActionTokenRecord:
        """Upsert a verify-account token while the user row is locked and unverified."""
        async with self._session() as session:
            async with session.begin():
                user = (
                    await session.execute(
                        select(User).where(User.id == user_id).with_for_update()
                    )
                ).scalar_one_or_none()
                if user is None:
                    raise StoreError(f"user {user_id} does not exist")
                if user.is_verified:
                    raise AccountVerifiedError(str(user_id))
                row = await self._upsert(
                    session, user_id, ActionType.VERIFY_ACCOUNT, token, expires_at
                )
            return _token_record(row)

    @staticmethod
    async def _upsert(
        session: AsyncSession,
        user_id: uuid.UUID,
        action_type: ActionType,
        token: str,
        expires_at: datetime,
    ) -> UserActionToken:
        stmt = pg_insert(UserActionToken).values(
            user_id=user_id,
            action_type=action_type,
            token=token,
            expires_at=expires_at,
        )
        stmt = stmt.on_conflict_do_update(
            constraint="uq_user_action_tokens_user_action",
            set_={
                "token": stmt.excluded.token,
                "expires_at": stmt.excluded.expires_at,
                "used_at": None,
                "updated_at": func.now(),
            },
        ).returning(UserActionToken)
        result = await session.execute(
            stmt, execution_options={"populate_existing": True}
        )
        return result.scalar_one()

    async def ping(self) -> None:
        async with self._session() as session:
            await session.execute(text("SELECT 1"))

    # ─── Operator ─────────────────────────────────────────

    async def seed_roles(self, matrix: dict[RoleType, Iterable[str]]) -> int:
        """Insert missing roles, permissions and grants. Returns grants added."""
        added = 0
        async with self._session() as session:
            async with session.begin():
                for role, permissions in matrix.items():
                    await session.execute(
                        pg_insert(Role).values(name=role).on_conflict_do_nothing(
                            index_elements=["name"]
                        )
                    )
                    role_id = (
                        await session.execute(select(Role.id).where(Role.name == role))
                    ).scalar_one()
                    for name in sorted(permissions):
                        await session.execute(
                            pg_insert(Permission).values(name=name).on_conflict_do_nothing(
                                index_elements=["name"]
                            )
                        )
                        permission_id = (
                            await session.execute(
                                select(Permission.id).where(Permission.name == name)
                            )
                        ).scalar_one()
                        result = await session.execute(
                            pg_insert(RolePermission)
                            .values(role_id=role_id, permission_id=permission_id)
                            .on_conflict_do_nothing()
                        )
                        added += result.rowcount
        return added
