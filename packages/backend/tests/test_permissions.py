"""Authorization gate tests — flat role → permission membership."""

import uuid

import pytest

from warden.auth.identity import AuthenticatedIdentity
from warden.auth.permissions import ADMIN_PERMISSIONS, USER_PERMISSIONS, PermissionGate
from warden.errors import AuthorizationError, ErrorMessage, InfrastructureError
from warden.stores.base import RoleType


@pytest.fixture()
def gate(user_store):
    return PermissionGate(user_store, timeout=1.0)


def identity_for(user) -> AuthenticatedIdentity:
    return AuthenticatedIdentity.from_user(user)


def test_admin_is_a_superset_of_user():
    """Admins hold every user permission plus list/delete."""
    assert USER_PERMISSIONS < ADMIN_PERMISSIONS
    assert ADMIN_PERMISSIONS - USER_PERMISSIONS == {"user:list", "user:delete"}


@pytest.mark.asyncio
@pytest.mark.parametrize("permission", sorted(USER_PERMISSIONS))
async def test_user_role_allows_its_permissions(gate, verified_user, permission):
    """Each default user permission is granted."""
    await gate.authorize(identity_for(verified_user), permission)


@pytest.mark.asyncio
async def test_user_role_denied_admin_permission(gate, verified_user):
    """Users can't delete users."""
    with pytest.raises(AuthorizationError) as exc:
        await gate.authorize(identity_for(verified_user), "user:delete")
    assert exc.value.status_code == 403
    assert exc.value.message == ErrorMessage.PERMISSION_DENIED


@pytest.mark.asyncio
async def test_admin_allowed_admin_permission(gate, admin_user):
    """Admins can delete users."""
    await gate.authorize(identity_for(admin_user), "user:delete")


@pytest.mark.asyncio
async def test_unknown_permission_denied_even_for_admin(gate, admin_user):
    """Permissions nobody granted are denied to everyone."""
    with pytest.raises(AuthorizationError):
        await gate.authorize(identity_for(admin_user), "billing:refund")


@pytest.mark.asyncio
@pytest.mark.parametrize("permission", ["user:self", "user:delete", "anything"])
async def test_missing_identity_is_not_authenticated(gate, permission):
    """No identity is a 401, whatever the permission."""
    with pytest.raises(AuthorizationError) as exc:
        await gate.authorize(None, permission)
    assert exc.value.status_code == 401
    assert exc.value.message == ErrorMessage.USER_NOT_AUTHENTICATED


@pytest.mark.asyncio
async def test_role_without_grants_denied(gate, user_store):
    """A role with no grants is denied."""
    orphan_role = uuid.uuid4()
    identity = AuthenticatedIdentity(
        id=uuid.uuid4(),
        role_id=orphan_role,
        name="ghost",
        email="ghost@example.com",
        password_hash="x",
        is_verified=True,
    )
    with pytest.raises(AuthorizationError):
        await gate.authorize(identity, "user:self")


@pytest.mark.asyncio
async def test_lookup_failure_fails_closed(gate, user_store, verified_user):
    """A store outage during the check is a 500, never an allow."""
    user_store.unavailable = True
    with pytest.raises(InfrastructureError) as exc:
        await gate.authorize(identity_for(verified_user), "user:self")
    assert exc.value.status_code == 500


# ═══════════════════════════════════════════════════════════
# Over HTTP
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_read_other_user(client, user_token, admin_user):
    """user:read lets a user view another account."""
    r = await client.get(
        f"/api/user/{admin_user.id}", headers={"Authorization": f"Bearer {user_token}"}
    )
    assert r.status_code == 200
    assert r.json()["data"]["role"] == RoleType.ADMIN.value


@pytest.mark.asyncio
async def test_route_denied_without_permission(client, user_store, user_token, verified_user):
    """Revoking user:read turns the route into a 403."""
    # Strip user:read from the plain user role
    user_store._permissions[verified_user.role_id].discard("user:read")
    r = await client.get(
        f"/api/user/{verified_user.id}", headers={"Authorization": f"Bearer {user_token}"}
    )
    assert r.status_code == 403
    assert r.json() == {
        "status": "error",
        "message": "You are not allowed to perform this action.",
    }
