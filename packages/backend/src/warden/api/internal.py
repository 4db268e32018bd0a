"""Internal API — service-to-service routes behind HTTP Basic.

Learn: Other backend services call these with the static credentials
from WARDEN_AUTH_BASIC_USERNAME / WARDEN_AUTH_BASIC_PASSWORD. There is
no user identity here, so no permission check either.
"""

import uuid

from fastapi import APIRouter, Depends

from warden.api.users import load_user_response
from warden.auth.dependencies import get_services, require_basic
from warden.services.container import Services

router = APIRouter(prefix="/internal", dependencies=[Depends(require_basic)])


@router.get("/users/{user_id}")
async def internal_user(user_id: uuid.UUID, services: Services = Depends(get_services)):
    """Look up an account for another service."""
    return await load_user_response(services, user_id)
