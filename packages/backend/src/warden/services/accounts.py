"""Account flows — sign-up, login, verify, resend, forgot/reset password.

Learn: These are the handlers that drive the action-token lifecycle.
The generic middleware chain never touches action tokens; only these
flows do:

- sign_up            → user + verify-account token (24h) in one transaction
- verify_account     → consume verify-account token, set is_verified, welcome
- resend_activation  → regenerate verify-account token (unverified only)
- forgot_password    → issue reset-password token (2h)
- reset_password     → consume reset-password token, set new password hash
- login              → email/password → session JWT

bcrypt is CPU-bound, so hashing runs in a worker thread to keep the
event loop free for other requests.
"""

import asyncio
from dataclasses import dataclass
from typing import Optional

import structlog

from warden.auth.jwt import issue_token
from warden.auth.password import dummy_hash, hash_password, verify_password
from warden.config import Settings
from warden.errors import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    ErrorMessage,
    InfrastructureError,
    NotFoundError,
)
from warden.services.action_tokens import ActionTokenService, IssuedToken, generate_token
from warden.services.notifier import ActionTokenNotice, Notifier, WelcomeNotice
from warden.stores.base import (
    ActionType,
    EmailTakenError,
    NewActionToken,
    NewUser,
    RoleType,
    StoreError,
    UserMutation,
    UserRecord,
    UserStore,
    with_deadline,
)

logger = structlog.get_logger()


@dataclass(frozen=True)
class LoginResult:
    token: str
    user: UserRecord
    max_age_seconds: int


class AccountService:
    """Orchestrates the account flows over the store and token lifecycle."""

    def __init__(
        self,
        store: UserStore,
        tokens: ActionTokenService,
        notifier: Notifier,
        settings: Settings,
    ):
        self.store = store
        self.tokens = tokens
        self.notifier = notifier
        self.settings = settings

    async def _call(self, awaitable):
        try:
            return await with_deadline(awaitable, self.settings.store_timeout_seconds)
        except StoreError as e:
            logger.error("accounts.store_error", error=str(e))
            raise InfrastructureError() from e

    async def _hash(self, password: str) -> str:
        return await asyncio.to_thread(
            hash_password, password, self.settings.bcrypt_rounds
        )

    async def _notify(self, user: UserRecord, issued: IssuedToken) -> None:
        await self.notifier.send(
            ActionTokenNotice(
                email=user.email,
                name=user.name,
                action_type=issued.record.action_type,
                token=issued.token,
                expires_at=issued.expires_at,
            )
        )

    # ─── Sign-up and verification ─────────────────────────

    async def sign_up(self, name: str, email: str, password: str) -> tuple[UserRecord, RoleType]:
        """Register an unverified user and send a verify-account token."""
        if await self._call(self.store.get_user_by_email(email)) is not None:
            raise ConflictError(ErrorMessage.EMAIL_EXIST)

        role_id = await self._call(self.store.get_role_id_by_name(RoleType.USER))
        if role_id is None:
            logger.error("accounts.role_missing", role=RoleType.USER.value)
            raise InfrastructureError()

        token = generate_token()
        expires_at = self.tokens.expiry_for(ActionType.VERIFY_ACCOUNT)
        try:
            user = await self._call(
                self.store.create_user(
                    NewUser(
                        role_id=role_id,
                        name=name,
                        email=email,
                        password_hash=await self._hash(password),
                    ),
                    NewActionToken(
                        token=token,
                        action_type=ActionType.VERIFY_ACCOUNT,
                        expires_at=expires_at,
                    ),
                )
            )
        except EmailTakenError:
            # Lost a race with a concurrent sign-up for the same email
            raise ConflictError(ErrorMessage.EMAIL_EXIST)

        await self.notifier.send(
            ActionTokenNotice(
                email=user.email,
                name=user.name,
                action_type=ActionType.VERIFY_ACCOUNT,
                token=token,
                expires_at=expires_at,
            )
        )
        logger.info("accounts.signed_up", user_id=str(user.id))
        return user, RoleType.USER

    async def verify_account(self, token: str) -> UserRecord:
        """Consume a verify-account token, then send the one welcome notice.

        Only the consumer that wins the row lock gets here, so concurrent
        verifies of one token welcome the user once.
        """
        user = await self.tokens.consume(
            token, ActionType.VERIFY_ACCOUNT, UserMutation.verify()
        )
        await self.notifier.welcome(WelcomeNotice(email=user.email, name=user.name))
        return user

    async def resend_activation(self, email: str) -> IssuedToken:
        user = await self._call(self.store.get_user_by_email(email))
        if user is None:
            raise NotFoundError(ErrorMessage.DATA_NOT_FOUND)
        issued = await self.tokens.regenerate(user)
        await self._notify(user, issued)
        return issued

    # ─── Password reset ───────────────────────────────────

    async def forgot_password(self, email: str) -> Optional[IssuedToken]:
        """Issue a reset token. Unknown emails get the same public response."""
        user = await self._call(self.store.get_user_by_email(email))
        if user is None:
            logger.info("accounts.forgot_password_unknown_email")
            return None
        issued = await self.tokens.issue(user.id, ActionType.RESET_PASSWORD)
        await self._notify(user, issued)
        return issued

    async def reset_password(self, token: str, new_password: str) -> UserRecord:
        # Reject bad tokens before paying for bcrypt
        await self.tokens.check(token, ActionType.RESET_PASSWORD)
        password_hash = await self._hash(new_password)
        return await self.tokens.consume(
            token, ActionType.RESET_PASSWORD, UserMutation.set_password(password_hash)
        )

    # ─── Login ────────────────────────────────────────────

    async def login(self, email: str, password: str) -> LoginResult:
        """Check credentials and mint a session token.

        Always runs one bcrypt check so unknown emails and wrong passwords
        take the same time.
        """
        user = await self._call(self.store.get_user_by_email(email))
        candidate = user.password_hash if user else dummy_hash(self.settings.bcrypt_rounds)
        matches = await asyncio.to_thread(verify_password, password, candidate)
        if user is None or not matches:
            raise AuthenticationError(ErrorMessage.WRONG_CREDENTIALS)
        if not user.is_verified:
            raise AuthorizationError(ErrorMessage.ACCOUNT_NOT_VERIFIED)

        token = issue_token(
            str(user.id),
            self.settings.jwt_secret_bytes,
            self.settings.jwt_max_age_minutes,
            algorithm=self.settings.jwt_algorithm,
        )
        logger.info("accounts.logged_in", user_id=str(user.id))
        return LoginResult(
            token=token,
            user=user,
            max_age_seconds=self.settings.jwt_max_age_minutes * 60,
        )
