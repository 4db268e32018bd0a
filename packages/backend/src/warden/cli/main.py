"""Warden operator CLI — seed roles, mint tokens, inspect rate-limit counters.

Usage:
    warden seed-roles                           # Default role → permission matrix
    warden issue-token <user-id>                # Bearer token for a user
    warden ratelimit show /api/auth/login 10.0.0.7
    warden ratelimit reset /api/auth/login 10.0.0.7

Learn: Every command reads the same WARDEN_* settings as the server and
talks to the stores directly; no running API is needed. "ratelimit reset"
is the fix for a counter that was incremented but never given a TTL.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import sys
import uuid
from typing import Optional

import click

from warden.auth.jwt import issue_token
from warden.auth.permissions import DEFAULT_ROLE_PERMISSIONS
from warden.config import Settings, get_settings
from warden.db.engine import build_engine, build_session_factory
from warden.logging import configure_logging
from warden.middleware.rate_limit import counter_key
from warden.stores.base import StoreError
from warden.stores.redis import RedisCounterStore
from warden.stores.sql import SqlUserStore

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _run(coro):
    """Run an async coroutine from a synchronous Click handler.

    Offloads to a thread when an event loop is already running (Click
    CliRunner inside an async test).
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    else:
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            return pool.submit(asyncio.run, coro).result()


def _fail(message: str) -> None:
    click.secho(f"Error: {message}", fg="red", err=True)
    sys.exit(1)


def _settings(ctx: click.Context) -> Settings:
    return ctx.obj["settings"]


# ---------------------------------------------------------------------------
# Root group
# ---------------------------------------------------------------------------


@click.group()
@click.pass_context
def cli(ctx: click.Context):
    """Warden — operator commands for the auth layer."""
    settings = get_settings()
    configure_logging(settings.log_level, json_output=False)
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings


# ---------------------------------------------------------------------------
# warden seed-roles
# ---------------------------------------------------------------------------


@cli.command("seed-roles")
@click.pass_context
def seed_roles(ctx: click.Context):
    """Insert the default roles and permission grants (idempotent)."""
    settings = _settings(ctx)

    async def _seed() -> int:
        engine = build_engine(settings)
        try:
            store = SqlUserStore(build_session_factory(engine))
            return await store.seed_roles(DEFAULT_ROLE_PERMISSIONS)
        finally:
            await engine.dispose()

    try:
        added = _run(_seed())
    except StoreError as e:
        _fail(f"database unavailable: {e}")
    for role, permissions in DEFAULT_ROLE_PERMISSIONS.items():
        click.echo(f"  {role.value:<6} {len(permissions)} permissions")
    click.secho(f"Seeded {added} new grant(s).", fg="green")


# ---------------------------------------------------------------------------
# warden issue-token <user-id>
# ---------------------------------------------------------------------------


@cli.command("issue-token")
@click.argument("user_id", type=click.UUID)
@click.option("--ttl", "ttl_minutes", type=int, default=None, help="Minutes until expiry")
@click.pass_context
def issue(ctx: click.Context, user_id: uuid.UUID, ttl_minutes: Optional[int]):
    """Mint a session token for an existing user."""
    settings = _settings(ctx)

    async def _lookup():
        engine = build_engine(settings)
        try:
            return await SqlUserStore(build_session_factory(engine)).get_user_by_id(user_id)
        finally:
            await engine.dispose()

    try:
        user = _run(_lookup())
    except StoreError as e:
        _fail(f"database unavailable: {e}")
    if user is None:
        _fail(f"no user {user_id}")

    token = issue_token(
        str(user.id),
        settings.jwt_secret_bytes,
        ttl_minutes or settings.jwt_max_age_minutes,
        algorithm=settings.jwt_algorithm,
    )
    click.echo(token)


# ---------------------------------------------------------------------------
# warden ratelimit show|reset <path> <ip>
# ---------------------------------------------------------------------------


@cli.group()
def ratelimit():
    """Inspect or clear a fixed-window counter."""


def _counter_store(settings: Settings) -> RedisCounterStore:
    return RedisCounterStore.from_url(
        settings.redis_url, socket_timeout=settings.store_timeout_seconds
    )


@ratelimit.command("show")
@click.argument("path")
@click.argument("client")
@click.pass_context
def ratelimit_show(ctx: click.Context, path: str, client: str):
    """Current count and TTL for PATH + CLIENT."""
    settings = _settings(ctx)
    key = counter_key(path, client)

    async def _show():
        store = _counter_store(settings)
        try:
            return await store.get(key), await store.ttl(key)
        finally:
            await store.close()

    try:
        count, ttl = _run(_show())
    except StoreError as e:
        _fail(f"redis unavailable: {e}")

    click.echo(f"key:   {key}")
    if count is None:
        click.echo("count: (none)")
        return
    click.echo(f"count: {count} / {settings.rate_limiter_max}")
    if ttl == -1:
        click.secho("ttl:   none (counter will never reset on its own)", fg="yellow")
    else:
        click.echo(f"ttl:   {ttl}s")


@ratelimit.command("reset")
@click.argument("path")
@click.argument("client")
@click.pass_context
def ratelimit_reset(ctx: click.Context, path: str, client: str):
    """Delete the counter for PATH + CLIENT."""
    settings = _settings(ctx)
    key = counter_key(path, client)

    async def _reset() -> bool:
        store = _counter_store(settings)
        try:
            return await store.delete(key)
        finally:
            await store.close()

    try:
        removed = _run(_reset())
    except StoreError as e:
        _fail(f"redis unavailable: {e}")
    if removed:
        click.secho(f"Cleared {key}", fg="green")
    else:
        click.echo(f"No counter at {key}")


if __name__ == "__main__":
    cli()
