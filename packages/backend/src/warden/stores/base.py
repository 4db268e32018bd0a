"""Store interfaces and the records they exchange.

Learn: The auth layer talks to two narrow capabilities, never to a
database driver directly:

- UserStore    → users, roles, permissions, action tokens (PostgreSQL in
                 production, MemoryUserStore in tests)
- CounterStore → atomic counters with expiry (Redis in production,
                 MemoryCounterStore in tests)

Records are frozen dataclasses, so an identity attached to a request is
an immutable snapshot rather than a live ORM object bound to a session.

Every store failure is a StoreError. Callers bound each store call with
with_deadline() so a hung connection turns into StoreTimeoutError
instead of a hung request.
"""

import asyncio
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Awaitable, Optional, Protocol, TypeVar

T = TypeVar("T")


class RoleType(str, Enum):
    ADMIN = "admin"
    USER = "user"


class ActionType(str, Enum):
    VERIFY_ACCOUNT = "verify-account"
    RESET_PASSWORD = "reset-password"


# ─── Errors ──────────────────────────────────────────────


class StoreError(Exception):
    """Raised when a store call fails (connection, driver, integrity)."""


class StoreTimeoutError(StoreError):
    """Raised when a store call exceeds its deadline."""


class EmailTakenError(Exception):
    """Raised by create_user when the email is already registered."""


class AccountVerifiedError(Exception):
    """Raised by regenerate_verify_token when the locked user row is already verified."""


class ActionTokenStateError(Exception):
    """Raised by consume_action_token when the locked row is no longer live.

    reason is "consumed" (used, replaced or gone) or "expired".
    """

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


# ─── Records ─────────────────────────────────────────────


@dataclass(frozen=True)
class UserRecord:
    id: uuid.UUID
    role_id: uuid.UUID
    name: str
    email: str
    password_hash: str
    is_verified: bool
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class NewUser:
    role_id: uuid.UUID
    name: str
    email: str
    password_hash: str


@dataclass(frozen=True)
class ActionTokenRecord:
    id: uuid.UUID
    user_id: uuid.UUID
    token: Optional[str]
    action_type: ActionType
    used_at: Optional[datetime]
    expires_at: Optional[datetime]
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class NewActionToken:
    token: str
    action_type: ActionType
    expires_at: datetime


@dataclass(frozen=True)
class UserMutation:
    """User-row change applied in the same transaction as a token consume."""

    is_verified: Optional[bool] = None
    password_hash: Optional[str] = None

    @classmethod
    def verify(cls) -> "UserMutation":
        return cls(is_verified=True)

    @classmethod
    def set_password(cls, password_hash: str) -> "UserMutation":
        return cls(password_hash=password_hash)

    def values(self) -> dict:
        """Column → value for the fields this mutation actually sets."""
        changes = {}
        if self.is_verified is not None:
            changes["is_verified"] = self.is_verified
        if self.password_hash is not None:
            changes["password_hash"] = self.password_hash
        return changes


# ─── Interfaces ──────────────────────────────────────────


class UserStore(Protocol):
    async def get_user_by_id(self, user_id: uuid.UUID) -> Optional[UserRecord]: ...

    async def get_user_by_email(self, email: str) -> Optional[UserRecord]: ...

    async def get_role_id_by_name(self, role: RoleType) -> Optional[uuid.UUID]: ...

    async def get_role_name_by_id(self, role_id: uuid.UUID) -> Optional[RoleType]: ...

    async def get_permissions_by_role(self, role_id: uuid.UUID) -> set[str]: ...

    async def create_user(
        self, new_user: NewUser, token: NewActionToken
    ) -> UserRecord: ...

    async def get_action_token_by_value(
        self, token: str
    ) -> Optional[ActionTokenRecord]: ...

    async def consume_action_token(
        self,
        action_token_id: uuid.UUID,
        user_id: uuid.UUID,
        mutation: UserMutation,
        now: datetime,
    ) -> UserRecord: ...

    async def upsert_action_token(
        self,
        user_id: uuid.UUID,
        action_type: ActionType,
        token: str,
        expires_at: datetime,
    ) -> ActionTokenRecord: ...

    async def regenerate_verify_token(
        self, user_id: uuid.UUID, token: str, expires_at: datetime
    ) -> ActionTokenRecord: ...

    async def ping(self) -> None: ...


class CounterStore(Protocol):
    async def increment(self, key: str) -> int: ...

    async def expire_if_no_ttl(self, key: str, seconds: int) -> bool: ...

    async def increment_with_expiry(self, key: str, seconds: int) -> int: ...

    async def get(self, key: str) -> Optional[int]: ...

    async def ttl(self, key: str) -> Optional[int]: ...

    async def delete(self, key: str) -> bool: ...

    async def ping(self) -> None: ...


async def with_deadline(awaitable: Awaitable[T], timeout: Optional[float]) -> T:
    """Await a store call, converting a missed deadline into StoreTimeoutError."""
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError as e:
        raise StoreTimeoutError(f"store call exceeded {timeout}s") from e
