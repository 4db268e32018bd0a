"""Health check endpoint.

Learn: Verifies the server is running and both stores (users/roles and
the shared counter store) answer a ping.
"""

from fastapi import APIRouter, Depends

from warden import __version__
from warden.auth.dependencies import get_services
from warden.services.container import Services
from warden.stores.base import StoreError, with_deadline

router = APIRouter()


@router.get("/health")
async def health_check(services: Services = Depends(get_services)):
    """Check server health and store connectivity."""
    checks = {"server": "ok", "version": __version__}
    timeout = services.settings.store_timeout_seconds

    for name, store in (
        ("user_store", services.user_store),
        ("counter_store", services.counter_store),
    ):
        try:
            await with_deadline(store.ping(), timeout)
            checks[name] = "ok"
        except StoreError:
            checks[name] = "error"

    status = "healthy" if all(
        v == "ok" for k, v in checks.items() if k != "version"
    ) else "degraded"

    return {"status": status, **checks}
