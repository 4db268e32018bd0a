"""Redis CounterStore — shared fixed-window counters.

Learn: INCR creates a missing key at 1, so "count == 1" means this call
created the window. The window's TTL is set with EXPIRE ... NX, which
only applies when the key has no TTL yet.

increment() + expire_if_no_ttl() are two round trips: a crash between
them leaves a counter with no TTL (a permanent block until cleared by
`warden ratelimit reset`). increment_with_expiry() sends both commands
in one MULTI/EXEC transaction so that window can't occur.

EXPIRE NX needs Redis >= 7.0.
"""

from typing import Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from warden.stores.base import StoreError


class RedisCounterStore:
    """CounterStore backed by a Redis connection pool."""

    def __init__(self, client: aioredis.Redis):
        self._redis = client

    @classmethod
    def from_url(cls, url: str, *, socket_timeout: float = 5.0) -> "RedisCounterStore":
        client = aioredis.from_url(
            url,
            encoding="utf-8",
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        return cls(client)

    async def close(self) -> None:
        await self._redis.aclose()

    async def increment(self, key: str) -> int:
        try:
            return int(await self._redis.incr(key))
        except RedisError as e:
            raise StoreError(f"redis incr failed: {e}") from e

    async def expire_if_no_ttl(self, key: str, seconds: int) -> bool:
        try:
            return bool(await self._redis.expire(key, seconds, nx=True))
        except RedisError as e:
            raise StoreError(f"redis expire failed: {e}") from e

    async def increment_with_expiry(self, key: str, seconds: int) -> int:
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.incr(key)
                pipe.expire(key, seconds, nx=True)
                count, _ = await pipe.execute()
            return int(count)
        except RedisError as e:
            raise StoreError(f"redis incr/expire failed: {e}") from e

    async def get(self, key: str) -> Optional[int]:
        try:
            value = await self._redis.get(key)
        except RedisError as e:
            raise StoreError(f"redis get failed: {e}") from e
        return None if value is None else int(value)

    async def ttl(self, key: str) -> Optional[int]:
        """Remaining seconds; -1 when the key has no expiry; None when absent."""
        try:
            remaining = await self._redis.ttl(key)
        except RedisError as e:
            raise StoreError(f"redis ttl failed: {e}") from e
        return None if remaining == -2 else int(remaining)

    async def delete(self, key: str) -> bool:
        try:
            return bool(await self._redis.delete(key))
        except RedisError as e:
            raise StoreError(f"redis delete failed: {e}") from e

    async def ping(self) -> None:
        try:
            await self._redis.ping()
        except RedisError as e:
            raise StoreError(f"redis ping failed: {e}") from e
