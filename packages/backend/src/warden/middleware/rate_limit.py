"""Rate limiting — fixed-window counter per route + client IP.

Learn: Each (path, IP) pair gets a counter key like
"rate_limit:/api/auth/login:ip-10.0.0.7". Every request increments it;
the increment that creates the key also starts its TTL (the window).
Past `max_requests` within the window → 429.

This is a fixed window, not a sliding one: up to 2× max requests can
pass around a window boundary (max at the end of one window, max more at
the start of the next). That imprecision is accepted.

Unlike a best-effort limiter, a counter-store failure is NOT waved
through — the request fails with 500 (fail closed).

Two increment modes:
- atomic (default): INCR + EXPIRE NX in one transaction
- reference: INCR, then EXPIRE NX if the count is 1 — a crash between
  the two leaves a counter without TTL until `warden ratelimit reset`
"""

from dataclasses import dataclass
from typing import Optional

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from warden.errors import InfrastructureError, RateLimitError, WardenError
from warden.stores.base import CounterStore, StoreError, with_deadline

logger = structlog.get_logger()


def counter_key(route_key: str, client_key: str) -> str:
    return f"rate_limit:{route_key}:ip-{client_key}"


@dataclass(frozen=True)
class RateLimitDecision:
    count: int
    limit: int

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)


class FixedWindowRateLimiter:
    """Fixed-window limiter over a shared CounterStore."""

    def __init__(
        self,
        store: CounterStore,
        max_requests: int,
        window_seconds: int,
        *,
        atomic: bool = True,
        timeout: Optional[float] = None,
    ):
        self.store = store
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.atomic = atomic
        self.timeout = timeout

    async def allow(self, route_key: str, client_key: str) -> RateLimitDecision:
        """Count this request; raise RateLimitError past the limit."""
        key = counter_key(route_key, client_key)
        try:
            count = await self._increment(key)
        except StoreError as e:
            logger.error("rate_limit.store_error", key=key, error=str(e))
            raise InfrastructureError() from e

        if count > self.max_requests:
            logger.info("rate_limit.exceeded", key=key, count=count)
            raise RateLimitError(retry_after=self.window_seconds)
        return RateLimitDecision(count=count, limit=self.max_requests)

    async def _increment(self, key: str) -> int:
        if self.atomic:
            return await with_deadline(
                self.store.increment_with_expiry(key, self.window_seconds),
                self.timeout,
            )
        count = await with_deadline(self.store.increment(key), self.timeout)
        if count == 1:
            await with_deadline(
                self.store.expire_if_no_ttl(key, self.window_seconds), self.timeout
            )
        return count


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Applies the app's FixedWindowRateLimiter to every request."""

    async def dispatch(self, request: Request, call_next) -> Response:
        limiter: FixedWindowRateLimiter = request.app.state.services.limiter
        client_ip = request.client.host if request.client else "unknown"

        try:
            decision = await limiter.allow(request.url.path, client_ip)
        except RateLimitError as e:
            return e.to_response(headers={"Retry-After": str(e.retry_after)})
        except WardenError as e:
            return e.to_response()

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(decision.limit)
        response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
        return response
