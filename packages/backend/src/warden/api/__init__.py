"""API route aggregation.

All routers registered here get mounted in main.py under /api.

Learn: Session auth is applied inside the user router (router-level
dependency) and Basic auth inside the internal router. Health and the
account flows are open.
"""

from fastapi import APIRouter

from warden.api.auth import router as auth_router
from warden.api.health import router as health_router
from warden.api.internal import router as internal_router
from warden.api.users import router as users_router

api_router = APIRouter(prefix="/api")

# Open routes
api_router.include_router(health_router, tags=["health"])
api_router.include_router(auth_router, tags=["auth"])

# Session-protected routes (authenticate + per-route permission)
api_router.include_router(users_router, tags=["users"])

# Service-to-service routes (HTTP Basic)
api_router.include_router(internal_router, tags=["internal"])
