"""User API — session-protected routes.

Learn: The whole router requires a session (authenticate runs first, as
a router dependency); each route then names the one permission it needs.
"""

import uuid

from fastapi import APIRouter, Depends

from warden.api.schemas import UserResponse, success
from warden.auth.dependencies import RequirePermission, authenticate, get_services
from warden.auth.identity import AuthenticatedIdentity
from warden.errors import ErrorMessage, InfrastructureError, NotFoundError
from warden.services.container import Services
from warden.stores.base import StoreError, with_deadline

router = APIRouter(prefix="/user", dependencies=[Depends(authenticate)])


@router.get("/self")
async def user_self(
    identity: AuthenticatedIdentity = Depends(RequirePermission("user:self")),
    services: Services = Depends(get_services),
):
    """The caller's own account."""
    return await load_user_response(services, identity.id)


@router.get("/{user_id}")
async def user_detail(
    user_id: uuid.UUID,
    identity: AuthenticatedIdentity = Depends(RequirePermission("user:read")),
    services: Services = Depends(get_services),
):
    """Any account, by id."""
    return await load_user_response(services, user_id)


async def load_user_response(services: Services, user_id: uuid.UUID) -> dict:
    timeout = services.settings.store_timeout_seconds
    try:
        user = await with_deadline(services.user_store.get_user_by_id(user_id), timeout)
        role = None
        if user is not None:
            role = await with_deadline(
                services.user_store.get_role_name_by_id(user.role_id), timeout
            )
    except StoreError as e:
        raise InfrastructureError() from e
    if user is None:
        raise NotFoundError(ErrorMessage.DATA_NOT_FOUND)
    return success("User retrieved.", UserResponse.from_record(user, role).model_dump(mode="json"))
