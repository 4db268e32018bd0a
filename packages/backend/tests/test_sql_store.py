"""PostgreSQL UserStore tests — row locks, upsert, unique email.

Learn: These need a real database. Set WARDEN_TEST_DATABASE_URL to a
throwaway database (postgresql+asyncpg://...); the schema is created
before and dropped after each test.
"""

import asyncio
import os
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine

from warden.auth.permissions import DEFAULT_ROLE_PERMISSIONS
from warden.db.engine import build_session_factory
from warden.db.models import Base
from warden.stores.base import (
    AccountVerifiedError,
    ActionTokenStateError,
    ActionType,
    EmailTakenError,
    NewActionToken,
    NewUser,
    RoleType,
    UserMutation,
)
from warden.stores.sql import SqlUserStore

TEST_DB_URL = os.environ.get("WARDEN_TEST_DATABASE_URL")

pytestmark = pytest.mark.skipif(
    not TEST_DB_URL, reason="WARDEN_TEST_DATABASE_URL not set"
)


@pytest_asyncio.fixture()
async def store():
    engine = create_async_engine(TEST_DB_URL, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    sql_store = SqlUserStore(build_session_factory(engine))
    await sql_store.seed_roles(DEFAULT_ROLE_PERMISSIONS)
    try:
        yield sql_store
    finally:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
        await engine.dispose()


def _later(hours: int = 1) -> datetime:
    return datetime.now(timezone.utc) + timedelta(hours=hours)


async def _create(store, email="dana@example.com", token="t" * 32):
    role_id = await store.get_role_id_by_name(RoleType.USER)
    return await store.create_user(
        NewUser(role_id=role_id, name="dana", email=email, password_hash="h"),
        NewActionToken(token=token, action_type=ActionType.VERIFY_ACCOUNT, expires_at=_later(24)),
    )


@pytest.mark.asyncio
async def test_seed_is_idempotent(store):
    """Seeding twice adds no grants."""
    assert await store.seed_roles(DEFAULT_ROLE_PERMISSIONS) == 0
    admin = await store.get_role_id_by_name(RoleType.ADMIN)
    assert await store.get_permissions_by_role(admin) == set(DEFAULT_ROLE_PERMISSIONS[RoleType.ADMIN])


@pytest.mark.asyncio
async def test_create_user_with_token(store):
    """The user and its verify token land together."""
    user = await _create(store)
    assert user.is_verified is False
    assert (await store.get_user_by_email("dana@example.com")).id == user.id
    record = await store.get_action_token_by_value("t" * 32)
    assert record.user_id == user.id
    assert record.action_type == ActionType.VERIFY_ACCOUNT


@pytest.mark.asyncio
async def test_duplicate_email(store):
    """The unique index reports a taken email."""
    await _create(store)
    with pytest.raises(EmailTakenError):
        await _create(store, token="u" * 32)


@pytest.mark.asyncio
async def test_upsert_replaces_row(store):
    """Upsert keeps the row id and swaps the value."""
    user = await _create(store)
    first = await store.upsert_action_token(user.id, ActionType.RESET_PASSWORD, "a" * 32, _later())
    second = await store.upsert_action_token(user.id, ActionType.RESET_PASSWORD, "b" * 32, _later(2))
    assert first.id == second.id
    assert second.token == "b" * 32
    assert await store.get_action_token_by_value("a" * 32) is None


@pytest.mark.asyncio
async def test_consume_is_single_use_under_concurrency(store):
    """Row locks let exactly one consumer through."""
    user = await _create(store)
    record = await store.get_action_token_by_value("t" * 32)
    now = datetime.now(timezone.utc)

    results = await asyncio.gather(
        *[
            store.consume_action_token(record.id, user.id, UserMutation.verify(), now)
            for _ in range(4)
        ],
        return_exceptions=True,
    )
    winners = [r for r in results if not isinstance(r, Exception)]
    assert len(winners) == 1
    assert winners[0].is_verified is True
    assert all(
        isinstance(r, ActionTokenStateError) and r.reason == "consumed"
        for r in results
        if isinstance(r, Exception)
    )
    assert await store.get_action_token_by_value("t" * 32) is None


@pytest.mark.asyncio
async def test_consume_expired_row(store):
    """The locked re-check catches expiry."""
    user = await _create(store)
    record = await store.get_action_token_by_value("t" * 32)
    with pytest.raises(ActionTokenStateError) as exc:
        await store.consume_action_token(
            record.id, user.id, UserMutation.verify(), _later(48)
        )
    assert exc.value.reason == "expired"


@pytest.mark.asyncio
async def test_regenerate_verify_token_for_unverified_user(store):
    """The locked regenerate replaces the verify token in place."""
    user = await _create(store)
    record = await store.regenerate_verify_token(user.id, "r" * 32, _later(24))
    assert record.token == "r" * 32
    assert await store.get_action_token_by_value("t" * 32) is None


@pytest.mark.asyncio
async def test_regenerate_verify_token_after_verify(store):
    """Once the user row is verified, regenerate refuses and leaves the row spent."""
    user = await _create(store)
    record = await store.get_action_token_by_value("t" * 32)
    await store.consume_action_token(
        record.id, user.id, UserMutation.verify(), datetime.now(timezone.utc)
    )

    with pytest.raises(AccountVerifiedError):
        await store.regenerate_verify_token(user.id, "r" * 32, _later(24))
    assert await store.get_action_token_by_value("r" * 32) is None
