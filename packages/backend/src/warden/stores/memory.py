"""In-memory store implementations.

Learn: These mirror the PostgreSQL and Redis stores closely enough to run
the full HTTP stack in tests and local development without either
service:

- Row-level locking is an asyncio.Lock per user id, held for the whole
  consume or regenerate, the same serialisation SELECT ... FOR UPDATE gives.
- Every call yields to the event loop (plus optional latency), so
  concurrent requests genuinely interleave.
- `unavailable = True` makes every call raise StoreError, for fail-closed
  tests.
"""

import asyncio
import time
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

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


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _Simulated:
    """Shared I/O simulation: yield, optional latency, optional outage."""

    def __init__(self, latency: float = 0.0):
        self.latency = latency
        self.unavailable = False

    async def _io(self) -> None:
        await asyncio.sleep(self.latency)
        if self.unavailable:
            raise StoreError("store unavailable")

    async def ping(self) -> None:
        await self._io()


class MemoryUserStore(_Simulated):
    """UserStore backed by dicts."""

    def __init__(self, latency: float = 0.0):
        super().__init__(latency)
        self._roles: dict[uuid.UUID, RoleType] = {}
        self._permissions: dict[uuid.UUID, set[str]] = {}
        self._users: dict[uuid.UUID, UserRecord] = {}
        self._tokens: dict[uuid.UUID, ActionTokenRecord] = {}
        self._locks: dict[uuid.UUID, asyncio.Lock] = {}

    # ─── Seeding helpers (sync, test/dev only) ────────────

    def add_role(self, role: RoleType, permissions: Iterable[str]) -> uuid.UUID:
        role_id = uuid.uuid4()
        self._roles[role_id] = role
        self._permissions[role_id] = set(permissions)
        return role_id

    def seed_roles(self, matrix: dict[RoleType, Iterable[str]]) -> None:
        for role, permissions in matrix.items():
            self.add_role(role, permissions)

    def role_id(self, role: RoleType) -> uuid.UUID:
        for role_id, name in self._roles.items():
            if name == role:
                return role_id
        raise KeyError(role)

    def add_user(
        self,
        email: str,
        password_hash: str,
        *,
        role: RoleType = RoleType.USER,
        name: str = "user",
        is_verified: bool = True,
    ) -> UserRecord:
        user = UserRecord(
            id=uuid.uuid4(),
            role_id=self.role_id(role),
            name=name,
            email=email,
            password_hash=password_hash,
            is_verified=is_verified,
            created_at=_utcnow(),
            updated_at=_utcnow(),
        )
        self._users[user.id] = user
        return user

    def delete_user(self, user_id: uuid.UUID) -> None:
        self._users.pop(user_id, None)
        # ON DELETE CASCADE
        for token_id in [t.id for t in self._tokens.values() if t.user_id == user_id]:
            del self._tokens[token_id]

    def tokens_for(
        self, user_id: uuid.UUID, action_type: Optional[ActionType] = None
    ) -> list[ActionTokenRecord]:
        return [
            t
            for t in self._tokens.values()
            if t.user_id == user_id
            and (action_type is None or t.action_type == action_type)
        ]

    # ─── Users and roles ──────────────────────────────────

    async def get_user_by_id(self, user_id: uuid.UUID) -> Optional[UserRecord]:
        await self._io()
        return self._users.get(user_id)

    async def get_user_by_email(self, email: str) -> Optional[UserRecord]:
        await self._io()
        return next((u for u in self._users.values() if u.email == email), None)

    async def get_role_id_by_name(self, role: RoleType) -> Optional[uuid.UUID]:
        await self._io()
        try:
            return self.role_id(role)
        except KeyError:
            return None

    async def get_role_name_by_id(self, role_id: uuid.UUID) -> Optional[RoleType]:
        await self._io()
        return self._roles.get(role_id)

    async def get_permissions_by_role(self, role_id: uuid.UUID) -> set[str]:
        await self._io()
        return set(self._permissions.get(role_id, ()))

    async def create_user(self, new_user: NewUser, token: NewActionToken) -> UserRecord:
        await self._io()
        if any(u.email == new_user.email for u in self._users.values()):
            raise EmailTakenError(new_user.email)
        now = _utcnow()
        user = UserRecord(
            id=uuid.uuid4(),
            role_id=new_user.role_id,
            name=new_user.name,
            email=new_user.email,
            password_hash=new_user.password_hash,
            is_verified=False,
            created_at=now,
            updated_at=now,
        )
        self._users[user.id] = user
        self._put_token(user.id, token.action_type, token.token, token.expires_at, now)
        return user

    # ─── Action tokens ────────────────────────────────────

    async def get_action_token_by_value(self, token: str) -> Optional[ActionTokenRecord]:
        await self._io()
        return next(
            (
                t
                for t in self._tokens.values()
                if t.token == token and t.used_at is None
            ),
            None,
        )

    async def consume_action_token(
        self,
        action_token_id: uuid.UUID,
        user_id: uuid.UUID,
        mutation: UserMutation,
        now: datetime,
    ) -> UserRecord:
        async with self._locks.setdefault(user_id, asyncio.Lock()):
            await self._io()
            row = self._tokens.get(action_token_id)
            user = self._users.get(user_id)
            if (
                row is None
                or user is None
                or row.user_id != user_id
                or row.used_at is not None
                or row.token is None
            ):
                raise ActionTokenStateError("consumed")
            if row.expires_at is None or row.expires_at <= now:
                raise ActionTokenStateError("expired")

            user = replace(user, updated_at=now, **mutation.values())
            self._tokens[row.id] = replace(
                row, token=None, expires_at=None, used_at=now, updated_at=now
            )
            self._users[user.id] = user
            return user

    async def upsert_action_token(
        self,
        user_id: uuid.UUID,
        action_type: ActionType,
        token: str,
        expires_at: datetime,
    ) -> ActionTokenRecord:
        await self._io()
        if user_id not in self._users:
            raise StoreError("foreign key violation: user does not exist")
        return self._put_token(user_id, action_type, token, expires_at, _utcnow())

    async def regenerate_verify_token(
        self, user_id: uuid.UUID, token: str, expires_at: datetime
    ) -> ActionTokenRecord:
        async with self._locks.setdefault(user_id, asyncio.Lock()):
            await self._io()
            user = self._users.get(user_id)
            if user is None:
                raise StoreError("foreign key violation: user does not exist")
            if user.is_verified:
                raise AccountVerifiedError(str(user_id))
            return self._put_token(
                user_id, ActionType.VERIFY_ACCOUNT, token, expires_at, _utcnow()
            )

    def _put_token(
        self,
        user_id: uuid.UUID,
        action_type: ActionType,
        token: str,
        expires_at: datetime,
        now: datetime,
    ) -> ActionTokenRecord:
        existing = next(iter(self.tokens_for(user_id, action_type)), None)
        if existing is None:
            row = ActionTokenRecord(
                id=uuid.uuid4(),
                user_id=user_id,
                token=token,
                action_type=action_type,
                used_at=None,
                expires_at=expires_at,
                created_at=now,
                updated_at=now,
            )
        else:
            row = replace(
                existing,
                token=token,
                expires_at=expires_at,
                used_at=None,
                updated_at=now,
            )
        self._tokens[row.id] = row
        return row


class MemoryCounterStore(_Simulated):
    """CounterStore with Redis INCR/EXPIRE semantics and an injectable clock."""

    def __init__(self, clock: Callable[[], float] = time.monotonic, latency: float = 0.0):
        super().__init__(latency)
        self._clock = clock
        # key → [count, expires_at or None]
        self._counters: dict[str, list] = {}

    def _live(self, key: str) -> Optional[list]:
        entry = self._counters.get(key)
        if entry is not None and entry[1] is not None and entry[1] <= self._clock():
            del self._counters[key]
            return None
        return entry

    def _incr(self, key: str) -> int:
        entry = self._live(key)
        if entry is None:
            entry = self._counters[key] = [0, None]
        entry[0] += 1
        return entry[0]

    def _expire_nx(self, key: str, seconds: int) -> bool:
        entry = self._live(key)
        if entry is None or entry[1] is not None:
            return False
        entry[1] = self._clock() + seconds
        return True

    async def increment(self, key: str) -> int:
        await self._io()
        return self._incr(key)

    async def expire_if_no_ttl(self, key: str, seconds: int) -> bool:
        await self._io()
        return self._expire_nx(key, seconds)

    async def increment_with_expiry(self, key: str, seconds: int) -> int:
        await self._io()
        count = self._incr(key)
        self._expire_nx(key, seconds)
        return count

    async def get(self, key: str) -> Optional[int]:
        await self._io()
        entry = self._live(key)
        return None if entry is None else entry[0]

    async def ttl(self, key: str) -> Optional[int]:
        """Remaining seconds; -1 when the key has no expiry; None when absent."""
        await self._io()
        entry = self._live(key)
        if entry is None:
            return None
        if entry[1] is None:
            return -1
        return max(0, int(entry[1] - self._clock()))

    async def delete(self, key: str) -> bool:
        await self._io()
        return self._counters.pop(key, None) is not None
