"""Identity resolution — credential → AuthenticatedIdentity.

Learn: The session stage either produces an identity or fails closed
with 401. Extraction order:

1. cookie "token"
2. Authorization header; a "Bearer " value must be exactly
   "Bearer <token>", anything else is taken verbatim as the token

Then: verify JWT → subject must be a UUID → user must still exist.
A deleted user, a store error and a store timeout all collapse into
UserNoLongerExist — from the caller's side the session is simply dead.
Nothing is cached and nothing is retried.
"""

import uuid
from dataclasses import dataclass
from typing import Optional

import structlog

from warden.auth.jwt import ALGORITHM, TokenError, verify_token
from warden.errors import AuthenticationError, ErrorMessage
from warden.stores.base import StoreError, UserRecord, UserStore, with_deadline

logger = structlog.get_logger()

SESSION_COOKIE = "token"


@dataclass(frozen=True)
class AuthenticatedIdentity:
    """Immutable snapshot of the caller's user row for one request."""

    id: uuid.UUID
    role_id: uuid.UUID
    name: str
    email: str
    password_hash: str
    is_verified: bool

    @classmethod
    def from_user(cls, user: UserRecord) -> "AuthenticatedIdentity":
        return cls(
            id=user.id,
            role_id=user.role_id,
            name=user.name,
            email=user.email,
            password_hash=user.password_hash,
            is_verified=user.is_verified,
        )


def extract_credential(cookie: Optional[str], authorization: Optional[str]) -> str:
    """Pick the raw session token out of the cookie or Authorization header."""
    value = cookie if cookie is not None else authorization
    if value is None or not value.strip():
        raise AuthenticationError(ErrorMessage.TOKEN_NOT_PROVIDED)

    if value.startswith("Bearer "):
        parts = value.split()
        if len(parts) != 2 or parts[0] != "Bearer":
            raise AuthenticationError(ErrorMessage.TOKEN_INVALID)
        return parts[1]
    return value


class IdentityResolver:
    """Turns a session credential into an AuthenticatedIdentity."""

    def __init__(
        self,
        store: UserStore,
        secret: bytes,
        timeout: Optional[float] = None,
        algorithm: str = ALGORITHM,
    ):
        self.store = store
        self.secret = secret
        self.timeout = timeout
        self.algorithm = algorithm

    async def resolve(
        self, cookie: Optional[str], authorization: Optional[str]
    ) -> AuthenticatedIdentity:
        token = extract_credential(cookie, authorization)

        try:
            subject = verify_token(token, self.secret, self.algorithm)
            user_id = uuid.UUID(subject)
        except (TokenError, ValueError):
            raise AuthenticationError(ErrorMessage.TOKEN_INVALID)

        try:
            user = await with_deadline(self.store.get_user_by_id(user_id), self.timeout)
        except StoreError as e:
            logger.warning("auth.user_lookup_failed", user_id=str(user_id), error=str(e))
            user = None
        if user is None:
            raise AuthenticationError(ErrorMessage.USER_NO_LONGER_EXIST)

        return AuthenticatedIdentity.from_user(user)
