"""FastAPI auth dependencies — the Authenticate and RequirePermission stages.

Learn: Routes compose the stages with Depends():

    router = APIRouter(dependencies=[Depends(authenticate)])

    @router.get("/self")
    async def me(identity = Depends(RequirePermission("user:self"))): ...

Router-level dependencies run before endpoint parameters, so the
identity is attached to request.state before the permission check reads
it. RequirePermission is a frozen value — one per route, all evaluated
by the same PermissionGate — rather than one closure per permission.

require_basic guards service-to-service routes with static credentials.
"""

from dataclasses import dataclass
from typing import Optional

import structlog
from fastapi import Depends, Header, Request

from warden.auth.identity import SESSION_COOKIE, AuthenticatedIdentity
from warden.auth.jwt import TokenError, WrongCredentialsError, decode_basic
from warden.errors import AuthenticationError, BadRequestError, ErrorMessage
from warden.services.container import Services


def get_services(request: Request) -> Services:
    """The component container built by create_app()."""
    return request.app.state.services


def get_identity(request: Request) -> Optional[AuthenticatedIdentity]:
    """The identity attached by authenticate(), or None if it never ran."""
    return getattr(request.state, "identity", None)


async def authenticate(
    request: Request,
    authorization: Optional[str] = Header(None),
    services: Services = Depends(get_services),
) -> AuthenticatedIdentity:
    """Resolve the session credential; 401 short-circuits the request."""
    identity = await services.resolver.resolve(
        request.cookies.get(SESSION_COOKIE), authorization
    )
    request.state.identity = identity
    structlog.contextvars.bind_contextvars(user_id=str(identity.id))
    return identity


@dataclass(frozen=True)
class RequirePermission:
    """Route descriptor: the single permission a route requires."""

    permission: str

    async def __call__(self, request: Request) -> AuthenticatedIdentity:
        identity = get_identity(request)
        await get_services(request).gate.authorize(identity, self.permission)
        return identity


async def require_basic(
    authorization: Optional[str] = Header(None),
    services: Services = Depends(get_services),
) -> None:
    """Service-to-service guard: static Basic credentials from settings."""
    if authorization is None or not authorization.strip():
        raise AuthenticationError(ErrorMessage.TOKEN_NOT_PROVIDED)
    settings = services.settings
    try:
        decode_basic(
            authorization,
            settings.auth_basic_username,
            settings.auth_basic_password,
        )
    except TokenError:
        raise BadRequestError(ErrorMessage.TOKEN_INVALID)
    except WrongCredentialsError:
        raise AuthenticationError(ErrorMessage.WRONG_CREDENTIALS)
