"""Action-token lifecycle tests — issue, validate, consume, regenerate.

Learn: Tests cover:
1. One row per (user, action): issuing again replaces the token
2. Expiry boundary (expires_at <= now is expired)
3. Single use, including two consumers racing for the same token
4. Regenerate only for unverified accounts, even racing a verify
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from warden.auth.password import hash_password
from warden.errors import BadRequestError, ErrorMessage, InfrastructureError, TokenLifecycleError
from warden.services.action_tokens import ActionTokenService, generate_token
from warden.stores.base import ActionType, UserMutation


@pytest.fixture()
def tokens(user_store, settings):
    return ActionTokenService(user_store, settings)


@pytest.fixture()
def unverified_user(user_store):
    return user_store.add_user(
        "bob@example.com", hash_password("pw-123456", rounds=4), name="bob", is_verified=False
    )


def test_generated_tokens_are_alphanumeric_and_distinct():
    """Tokens are 32 alphanumeric characters and don't repeat."""
    batch = {generate_token() for _ in range(200)}
    assert len(batch) == 200
    assert all(len(t) == 32 and t.isalnum() for t in batch)


# ═══════════════════════════════════════════════════════════
# Issue
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_issue_sets_ttl_per_action(tokens, verified_user):
    """Verify-account tokens live 24h, reset-password tokens 2h."""
    now = datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)
    verify = await tokens.issue(verified_user.id, ActionType.VERIFY_ACCOUNT, now=now)
    reset = await tokens.issue(verified_user.id, ActionType.RESET_PASSWORD, now=now)
    assert verify.expires_at == now + timedelta(hours=24)
    assert reset.expires_at == now + timedelta(hours=2)


@pytest.mark.asyncio
async def test_issue_twice_keeps_one_row(tokens, user_store, verified_user):
    """Re-issuing rewrites the single (user, action) row in place."""
    first = await tokens.issue(verified_user.id, ActionType.RESET_PASSWORD)
    second = await tokens.issue(verified_user.id, ActionType.RESET_PASSWORD)

    rows = user_store.tokens_for(verified_user.id, ActionType.RESET_PASSWORD)
    assert len(rows) == 1
    assert rows[0].id == first.record.id == second.record.id
    assert rows[0].token == second.token != first.token


@pytest.mark.asyncio
async def test_replaced_token_no_longer_works(tokens, verified_user):
    """The previous token value stops resolving once replaced."""
    first = await tokens.issue(verified_user.id, ActionType.RESET_PASSWORD)
    await tokens.issue(verified_user.id, ActionType.RESET_PASSWORD)
    with pytest.raises(TokenLifecycleError) as exc:
        await tokens.get_by_token(first.token)
    assert exc.value.message == ErrorMessage.TOKEN_KEY_INVALID


@pytest.mark.asyncio
async def test_issue_store_failure_is_server_error(tokens, user_store, verified_user):
    """A store outage during issue surfaces as a 500."""
    user_store.unavailable = True
    with pytest.raises(InfrastructureError):
        await tokens.issue(verified_user.id, ActionType.RESET_PASSWORD)


# ═══════════════════════════════════════════════════════════
# Lookup and expiry
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
@pytest.mark.parametrize("raw", ["", "does-not-exist"])
async def test_unknown_token_is_invalid(tokens, raw):
    """Empty or unknown token values are invalid, not a server error."""
    with pytest.raises(TokenLifecycleError) as exc:
        await tokens.get_by_token(raw)
    assert exc.value.message == ErrorMessage.TOKEN_KEY_INVALID


@pytest.mark.asyncio
async def test_token_expired_one_second_ago(tokens, verified_user):
    """A reset token issued 2h1s ago is expired."""
    now = datetime.now(timezone.utc)
    issued_at = now - timedelta(hours=2, seconds=1)
    issued = await tokens.issue(verified_user.id, ActionType.RESET_PASSWORD, now=issued_at)
    record = await tokens.get_by_token(issued.token)
    with pytest.raises(TokenLifecycleError) as exc:
        tokens.validate(record, now=now)
    assert exc.value.message == ErrorMessage.TOKEN_KEY_EXPIRED


@pytest.mark.asyncio
async def test_token_valid_for_another_hour(tokens, verified_user):
    """A reset token issued an hour ago still validates."""
    now = datetime.now(timezone.utc)
    issued = await tokens.issue(
        verified_user.id, ActionType.RESET_PASSWORD, now=now - timedelta(hours=1)
    )
    record = await tokens.get_by_token(issued.token)
    tokens.validate(record, now=now)


@pytest.mark.asyncio
async def test_expiry_boundary_is_expired(tokens, verified_user):
    """At exactly expires_at the token counts as expired."""
    issued = await tokens.issue(verified_user.id, ActionType.RESET_PASSWORD)
    record = await tokens.get_by_token(issued.token)
    with pytest.raises(TokenLifecycleError):
        tokens.validate(record, now=record.expires_at)


@pytest.mark.asyncio
async def test_consume_expired_token(tokens, unverified_user):
    """Consuming an expired token reports expiry and changes nothing."""
    issued = await tokens.issue(
        unverified_user.id,
        ActionType.VERIFY_ACCOUNT,
        now=datetime.now(timezone.utc) - timedelta(days=2),
    )
    with pytest.raises(TokenLifecycleError) as exc:
        await tokens.consume(issued.token, ActionType.VERIFY_ACCOUNT, UserMutation.verify())
    assert exc.value.message == ErrorMessage.TOKEN_KEY_EXPIRED


# ═══════════════════════════════════════════════════════════
# Consume
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_consume_applies_mutation(tokens, user_store, unverified_user):
    """Consume applies the user mutation and spends the row."""
    issued = await tokens.issue(unverified_user.id, ActionType.VERIFY_ACCOUNT)
    user = await tokens.consume(issued.token, ActionType.VERIFY_ACCOUNT, UserMutation.verify())
    assert user.is_verified is True

    row = user_store.tokens_for(unverified_user.id, ActionType.VERIFY_ACCOUNT)[0]
    assert row.token is None
    assert row.expires_at is None
    assert row.used_at is not None


@pytest.mark.asyncio
async def test_consume_twice(tokens, unverified_user):
    """The second consume of one token is rejected."""
    issued = await tokens.issue(unverified_user.id, ActionType.VERIFY_ACCOUNT)
    await tokens.consume(issued.token, ActionType.VERIFY_ACCOUNT, UserMutation.verify())
    with pytest.raises(TokenLifecycleError) as exc:
        await tokens.consume(issued.token, ActionType.VERIFY_ACCOUNT, UserMutation.verify())
    assert exc.value.message == ErrorMessage.TOKEN_KEY_INVALID


@pytest.mark.asyncio
async def test_consume_wrong_action_type(tokens, verified_user):
    """A reset token can't be consumed as a verify token."""
    issued = await tokens.issue(verified_user.id, ActionType.RESET_PASSWORD)
    with pytest.raises(TokenLifecycleError) as exc:
        await tokens.consume(issued.token, ActionType.VERIFY_ACCOUNT, UserMutation.verify())
    assert exc.value.message == ErrorMessage.TOKEN_KEY_INVALID


@pytest.mark.asyncio
async def test_concurrent_consumers_apply_mutation_once(user_store, settings, verified_user):
    """Racing consumers: one wins, the rest see an invalid token."""
    user_store.latency = 0.01
    tokens = ActionTokenService(user_store, settings)
    issued = await tokens.issue(verified_user.id, ActionType.RESET_PASSWORD)

    results = await asyncio.gather(
        *[
            tokens.consume(
                issued.token,
                ActionType.RESET_PASSWORD,
                UserMutation.set_password(f"hash-{i}"),
            )
            for i in range(5)
        ],
        return_exceptions=True,
    )

    winners = [r for r in results if not isinstance(r, Exception)]
    losers = [r for r in results if isinstance(r, Exception)]
    assert len(winners) == 1
    assert len(losers) == 4
    assert all(
        isinstance(e, TokenLifecycleError) and e.message == ErrorMessage.TOKEN_KEY_INVALID
        for e in losers
    )
    stored = await user_store.get_user_by_id(verified_user.id)
    assert stored.password_hash == winners[0].password_hash


@pytest.mark.asyncio
async def test_consume_after_user_deleted(tokens, user_store, unverified_user):
    """Deleting the user cascades to the token."""
    issued = await tokens.issue(unverified_user.id, ActionType.VERIFY_ACCOUNT)
    user_store.delete_user(unverified_user.id)
    with pytest.raises(TokenLifecycleError) as exc:
        await tokens.consume(issued.token, ActionType.VERIFY_ACCOUNT, UserMutation.verify())
    assert exc.value.message == ErrorMessage.TOKEN_KEY_INVALID


# ═══════════════════════════════════════════════════════════
# Regenerate
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_regenerate_for_unverified_user(tokens, user_store, unverified_user):
    """Regenerate hands out a fresh token on the same row."""
    first = await tokens.issue(unverified_user.id, ActionType.VERIFY_ACCOUNT)
    second = await tokens.regenerate(unverified_user)
    assert second.token != first.token
    assert len(user_store.tokens_for(unverified_user.id, ActionType.VERIFY_ACCOUNT)) == 1


@pytest.mark.asyncio
async def test_regenerate_after_consume_reactivates_row(tokens, user_store, unverified_user):
    """A spent row becomes usable again after regenerate."""
    first = await tokens.issue(unverified_user.id, ActionType.VERIFY_ACCOUNT)
    await tokens.consume(first.token, ActionType.VERIFY_ACCOUNT, UserMutation(is_verified=False))
    second = await tokens.regenerate(unverified_user)
    record = await tokens.get_by_token(second.token)
    assert record.used_at is None


@pytest.mark.asyncio
async def test_regenerate_for_verified_user(tokens, verified_user):
    """Verified accounts can't get a new verify token."""
    with pytest.raises(BadRequestError) as exc:
        await tokens.regenerate(verified_user)
    assert exc.value.message == ErrorMessage.ACCOUNT_ALREADY_VERIFIED


@pytest.mark.asyncio
async def test_regenerate_rechecks_verification_under_lock(tokens, user_store, unverified_user):
    """A stale unverified snapshot cannot revive a token once the row is verified."""
    issued = await tokens.issue(unverified_user.id, ActionType.VERIFY_ACCOUNT)
    await tokens.consume(issued.token, ActionType.VERIFY_ACCOUNT, UserMutation.verify())

    # unverified_user is the pre-verify snapshot
    assert unverified_user.is_verified is False
    with pytest.raises(BadRequestError) as exc:
        await tokens.regenerate(unverified_user)
    assert exc.value.message == ErrorMessage.ACCOUNT_ALREADY_VERIFIED

    rows = user_store.tokens_for(unverified_user.id, ActionType.VERIFY_ACCOUNT)
    assert [r.token for r in rows] == [None]


@pytest.mark.asyncio
@pytest.mark.parametrize("verify_delay", [0.0, 0.005, 0.015, 0.03])
async def test_verify_racing_resend_leaves_no_live_token(
    services, user_store, unverified_user, verify_delay
):
    """Whichever of verify and resend wins, a verified user holds no live verify token."""
    issued = await services.action_tokens.issue(unverified_user.id, ActionType.VERIFY_ACCOUNT)
    user_store.latency = 0.01

    async def verify():
        await asyncio.sleep(verify_delay)
        return await services.accounts.verify_account(issued.token)

    results = await asyncio.gather(
        verify(),
        services.accounts.resend_activation(unverified_user.email),
        return_exceptions=True,
    )

    errors = [r for r in results if isinstance(r, Exception)]
    assert all(isinstance(e, (BadRequestError, TokenLifecycleError)) for e in errors)

    user = await user_store.get_user_by_id(unverified_user.id)
    live = [
        t
        for t in user_store.tokens_for(unverified_user.id, ActionType.VERIFY_ACCOUNT)
        if t.token is not None
    ]
    if user.is_verified:
        assert live == []
    else:
        assert len(live) == 1
