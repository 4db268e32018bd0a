"""Component container — every stage built once from explicit settings.

Learn: create_app() builds a Services and hangs it on app.state; the
FastAPI dependencies and the rate-limit middleware read it from there.
Nothing reads configuration from module globals, so tests can build a
container around in-memory stores with whatever settings they need.
"""

from dataclasses import dataclass

from warden.auth.identity import IdentityResolver
from warden.auth.permissions import PermissionGate
from warden.config import Settings
from warden.middleware.rate_limit import FixedWindowRateLimiter
from warden.services.accounts import AccountService
from warden.services.action_tokens import ActionTokenService
from warden.services.notifier import Notifier
from warden.stores.base import CounterStore, UserStore


@dataclass
class Services:
    settings: Settings
    user_store: UserStore
    counter_store: CounterStore
    notifier: Notifier
    resolver: IdentityResolver
    gate: PermissionGate
    limiter: FixedWindowRateLimiter
    action_tokens: ActionTokenService
    accounts: AccountService

    @classmethod
    def build(
        cls,
        settings: Settings,
        user_store: UserStore,
        counter_store: CounterStore,
        notifier: Notifier,
    ) -> "Services":
        timeout = settings.store_timeout_seconds
        action_tokens = ActionTokenService(user_store, settings)
        return cls(
            settings=settings,
            user_store=user_store,
            counter_store=counter_store,
            notifier=notifier,
            resolver=IdentityResolver(
                user_store,
                settings.jwt_secret_bytes,
                timeout,
                algorithm=settings.jwt_algorithm,
            ),
            gate=PermissionGate(user_store, timeout),
            limiter=FixedWindowRateLimiter(
                counter_store,
                settings.rate_limiter_max,
                settings.rate_limiter_duration,
                atomic=settings.rate_limiter_atomic,
                timeout=timeout,
            ),
            action_tokens=action_tokens,
            accounts=AccountService(user_store, action_tokens, notifier, settings),
        )
