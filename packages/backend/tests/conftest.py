"""Test fixtures — the full app over in-memory stores.

Learn: Testing pattern for the auth layer:

1. Each test gets fresh MemoryUserStore / MemoryCounterStore instances,
   seeded with the default role → permission matrix.
2. create_app(services=...) hangs the container on app.state directly;
   httpx's ASGITransport doesn't run lifespan, so nothing connects to
   PostgreSQL or Redis.
3. LogNotifier keeps every issued action token in memory, standing in for
   the user's inbox.

PostgreSQL-backed store tests live in test_sql_store.py and only run when
WARDEN_TEST_DATABASE_URL is set.
"""

import base64

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from warden.auth.jwt import issue_token
from warden.auth.password import hash_password
from warden.auth.permissions import DEFAULT_ROLE_PERMISSIONS
from warden.config import Settings
from warden.main import create_app
from warden.services.container import Services
from warden.services.notifier import LogNotifier
from warden.stores.base import RoleType
from warden.stores.memory import MemoryCounterStore, MemoryUserStore

TEST_SECRET = "test-secret-key-that-is-at-least-32-bytes-long"
BASIC_USER = "svc-test"
BASIC_PASS = "svc-test-password"
PASSWORD = "correct-horse"


def make_settings(**overrides) -> Settings:
    values = dict(
        jwt_secret=TEST_SECRET,
        auth_basic_username=BASIC_USER,
        auth_basic_password=BASIC_PASS,
        bcrypt_rounds=4,
        rate_limiter_max=1000,
        rate_limiter_duration=60,
        store_timeout_seconds=1.0,
        environment="test",
        log_level="WARNING",
        log_json=False,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


def basic_header(user: str, password: str) -> str:
    return "Basic " + base64.b64encode(f"{user}:{password}".encode()).decode()


@pytest.fixture()
def settings() -> Settings:
    return make_settings()


@pytest.fixture()
def user_store() -> MemoryUserStore:
    store = MemoryUserStore()
    store.seed_roles(DEFAULT_ROLE_PERMISSIONS)
    return store


@pytest.fixture()
def counter_store() -> MemoryCounterStore:
    return MemoryCounterStore()


@pytest.fixture()
def notifier() -> LogNotifier:
    return LogNotifier()


@pytest.fixture()
def services(settings, user_store, counter_store, notifier) -> Services:
    return Services.build(settings, user_store, counter_store, notifier)


@pytest.fixture()
def app(services):
    return create_app(services=services)


@pytest_asyncio.fixture()
async def client(app):
    """HTTP client against the in-memory app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture()
def verified_user(user_store):
    """A verified account with the plain `user` role."""
    return user_store.add_user(
        "alice@example.com", hash_password(PASSWORD, rounds=4), name="alice"
    )


@pytest.fixture()
def admin_user(user_store):
    return user_store.add_user(
        "root@example.com",
        hash_password(PASSWORD, rounds=4),
        role=RoleType.ADMIN,
        name="root",
    )


@pytest.fixture()
def user_token(verified_user) -> str:
    return issue_token(str(verified_user.id), TEST_SECRET.encode(), 60)
