"""Action-token lifecycle — single-use, expiring tokens for sensitive transitions.

Learn: One row per (user, action type), moving through:

    Absent ──issue──▶ Active ──time──▶ Expired
                        │                 │
                     consume          regenerate (verify-account only,
                        ▼              while the user is unverified)
                     Consumed             │
                        ▲                 ▼
                        └── regenerate ── Active

- issue / regenerate upsert the row: new token + expiry, used_at cleared
- lookup ignores used rows, so a consumed token looks exactly like one
  that never existed (TokenKeyInvalid)
- expired tokens are reported as TokenKeyExpired — unlike session JWTs,
  the product flow ("request a new link") needs that distinction
- consume re-checks the row under a row lock and applies the user change
  in the same transaction, so two concurrent consumers can't both win
"""

import secrets
import string
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import structlog

from warden.config import Settings
from warden.errors import (
    BadRequestError,
    ErrorMessage,
    InfrastructureError,
    TokenLifecycleError,
)
from warden.stores.base import (
    AccountVerifiedError,
    ActionTokenRecord,
    ActionTokenStateError,
    ActionType,
    StoreError,
    UserMutation,
    UserRecord,
    UserStore,
    with_deadline,
)

logger = structlog.get_logger()

TOKEN_LENGTH = 32
_ALPHABET = string.ascii_letters + string.digits


def generate_token(length: int = TOKEN_LENGTH) -> str:
    """Random alphanumeric token from the OS CSPRNG."""
    return "".join(secrets.choice(_ALPHABET) for _ in range(length))


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class IssuedToken:
    """A freshly issued raw token and the row it was stored in."""

    token: str
    record: ActionTokenRecord

    @property
    def expires_at(self) -> datetime:
        return self.record.expires_at


class ActionTokenService:
    """Issues, validates, consumes and regenerates action tokens."""

    def __init__(self, store: UserStore, settings: Settings):
        self.store = store
        self.timeout = settings.store_timeout_seconds
        self.ttls = {
            ActionType.VERIFY_ACCOUNT: timedelta(hours=settings.verify_token_ttl_hours),
            ActionType.RESET_PASSWORD: timedelta(hours=settings.reset_token_ttl_hours),
        }

    async def _call(self, awaitable):
        try:
            return await with_deadline(awaitable, self.timeout)
        except StoreError as e:
            logger.error("action_token.store_error", error=str(e))
            raise InfrastructureError() from e

    def expiry_for(self, action_type: ActionType, now: Optional[datetime] = None) -> datetime:
        return (now or utcnow()) + self.ttls[action_type]

    # ─── Issue ────────────────────────────────────────────

    async def issue(
        self,
        user_id: uuid.UUID,
        action_type: ActionType,
        *,
        now: Optional[datetime] = None,
    ) -> IssuedToken:
        """Create or replace the (user, action) token row with a fresh token."""
        token = generate_token()
        record = await self._call(
            self.store.upsert_action_token(
                user_id, action_type, token, self.expiry_for(action_type, now)
            )
        )
        logger.info(
            "action_token.issued",
            user_id=str(user_id),
            action_type=action_type.value,
        )
        return IssuedToken(token=token, record=record)

    # ─── Lookup and validate ──────────────────────────────

    async def get_by_token(self, raw_token: str) -> ActionTokenRecord:
        """Find an unused token row; TokenKeyInvalid if there is none."""
        if not raw_token:
            raise TokenLifecycleError(ErrorMessage.TOKEN_KEY_INVALID)
        record = await self._call(self.store.get_action_token_by_value(raw_token))
        if record is None:
            raise TokenLifecycleError(ErrorMessage.TOKEN_KEY_INVALID)
        return record

    @staticmethod
    def validate(record: ActionTokenRecord, *, now: Optional[datetime] = None) -> None:
        """TokenKeyExpired unless the token is set and expires after `now`."""
        now = now or utcnow()
        if record.token is None or record.expires_at is None:
            raise TokenLifecycleError(ErrorMessage.TOKEN_KEY_EXPIRED)
        if record.expires_at <= now:
            raise TokenLifecycleError(ErrorMessage.TOKEN_KEY_EXPIRED)

    # ─── Consume ──────────────────────────────────────────

    async def check(
        self, raw_token: str, action_type: ActionType, *, now: Optional[datetime] = None
    ) -> ActionTokenRecord:
        """Lookup + action-type match + expiry, without spending the token."""
        record = await self.get_by_token(raw_token)
        if record.action_type != action_type:
            raise TokenLifecycleError(ErrorMessage.TOKEN_KEY_INVALID)
        self.validate(record, now=now)
        return record

    async def consume(
        self,
        raw_token: str,
        action_type: ActionType,
        mutation: UserMutation,
        *,
        now: Optional[datetime] = None,
    ) -> UserRecord:
        """Spend a token and apply its user change atomically."""
        now = now or utcnow()
        record = await self.check(raw_token, action_type, now=now)

        try:
            user = await self._call(
                self.store.consume_action_token(record.id, record.user_id, mutation, now)
            )
        except ActionTokenStateError as e:
            # Lost a race with another consumer or the row expired meanwhile
            if e.reason == "expired":
                raise TokenLifecycleError(ErrorMessage.TOKEN_KEY_EXPIRED)
            raise TokenLifecycleError(ErrorMessage.TOKEN_KEY_INVALID)

        logger.info(
            "action_token.consumed",
            user_id=str(user.id),
            action_type=action_type.value,
        )
        return user

    # ─── Regenerate ───────────────────────────────────────

    async def regenerate(
        self, user: UserRecord, *, now: Optional[datetime] = None
    ) -> IssuedToken:
        """Re-issue the verify-account token; only for unverified users.

        `user` may be stale, so the store re-checks is_verified under the
        user row lock before writing.
        """
        if user.is_verified:
            raise BadRequestError(ErrorMessage.ACCOUNT_ALREADY_VERIFIED)
        token = generate_token()
        try:
            record = await self._call(
                self.store.regenerate_verify_token(
                    user.id, token, self.expiry_for(ActionType.VERIFY_ACCOUNT, now)
                )
            )
        except AccountVerifiedError:
            raise BadRequestError(ErrorMessage.ACCOUNT_ALREADY_VERIFIED)
        logger.info(
            "action_token.regenerated",
            user_id=str(user.id),
            action_type=ActionType.VERIFY_ACCOUNT.value,
        )
        return IssuedToken(token=token, record=record)
