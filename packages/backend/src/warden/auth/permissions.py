"""Authorization gate — role → permission set, flat membership check.

Learn: Permissions are plain "resource:action" strings. A route needs
exactly one; the caller's role either lists it or doesn't. There is no
hierarchy and no implicit admin bypass — the admin role is simply
granted every permission in the matrix below.

Three outcomes besides "allow":
- no identity attached     → UserNotAuthenticated (401). The session
                              stage didn't run: a wiring bug, not a denial.
- permission lookup failed → ServerError (500). Fail closed.
- permission not in set    → PermissionDenied (403).
"""

from typing import Optional

import structlog

from warden.auth.identity import AuthenticatedIdentity
from warden.errors import AuthorizationError, ErrorMessage, InfrastructureError
from warden.stores.base import RoleType, StoreError, UserStore, with_deadline

logger = structlog.get_logger()

USER_PERMISSIONS = frozenset({
    "user:self",
    "user:read",
    "user:update",
    "user:change-password",
    "post:create",
    "post:read",
    "post:update",
    "post:delete",
    "comment:create",
    "comment:read",
    "comment:update",
    "comment:delete",
})

ADMIN_PERMISSIONS = USER_PERMISSIONS | {"user:list", "user:delete"}

DEFAULT_ROLE_PERMISSIONS: dict[RoleType, frozenset[str]] = {
    RoleType.ADMIN: ADMIN_PERMISSIONS,
    RoleType.USER: USER_PERMISSIONS,
}


class PermissionGate:
    """Checks one required permission against the identity's role."""

    def __init__(self, store: UserStore, timeout: Optional[float] = None):
        self.store = store
        self.timeout = timeout

    async def authorize(
        self, identity: Optional[AuthenticatedIdentity], permission: str
    ) -> None:
        """Return on allow; raise AuthorizationError / InfrastructureError otherwise."""
        if identity is None:
            raise AuthorizationError(
                ErrorMessage.USER_NOT_AUTHENTICATED, status_code=401
            )

        try:
            granted = await with_deadline(
                self.store.get_permissions_by_role(identity.role_id), self.timeout
            )
        except StoreError as e:
            logger.error(
                "auth.permission_lookup_failed",
                role_id=str(identity.role_id),
                error=str(e),
            )
            raise InfrastructureError() from e

        if permission not in granted:
            logger.info(
                "auth.permission_denied",
                user_id=str(identity.id),
                permission=permission,
            )
            raise AuthorizationError(ErrorMessage.PERMISSION_DENIED)
