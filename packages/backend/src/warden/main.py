"""FastAPI application factory.

Learn: App factory pattern — create_app() returns a configured FastAPI
instance. Lifespan manages startup/shutdown of the PostgreSQL pool and
the Redis pool. Tests (and embedders) can pass a prebuilt Services
container instead, in which case lifespan connects to nothing.
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

import redis.asyncio as aioredis
import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.ext.asyncio import AsyncEngine

from warden import __version__
from warden.api import api_router
from warden.config import Settings, get_settings
from warden.db.engine import build_engine, build_session_factory
from warden.errors import register_exception_handlers
from warden.logging import configure_logging
from warden.middleware.rate_limit import RateLimitMiddleware
from warden.middleware.request_id import RequestIdMiddleware
from warden.services.container import Services
from warden.services.notifier import RedisNotifier
from warden.stores.base import StoreError
from warden.stores.redis import RedisCounterStore
from warden.stores.sql import SqlUserStore

logger = structlog.get_logger()


@dataclass
class _Connections:
    engine: AsyncEngine
    redis: aioredis.Redis
    services: Services

    async def close(self) -> None:
        await self.redis.aclose()
        await self.engine.dispose()


async def connect(settings: Settings) -> _Connections:
    """Open the DB and Redis pools and build the production container."""
    engine = build_engine(settings)
    redis_client = aioredis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        socket_timeout=settings.store_timeout_seconds,
        socket_connect_timeout=settings.store_timeout_seconds,
    )
    services = Services.build(
        settings,
        user_store=SqlUserStore(build_session_factory(engine)),
        counter_store=RedisCounterStore(redis_client),
        notifier=RedisNotifier(redis_client),
    )

    # Unreachable stores don't stop startup; requests fail closed until they recover
    for name, store in (("postgres", services.user_store), ("redis", services.counter_store)):
        try:
            await store.ping()
            logger.info("warden.store_connected", store=name)
        except StoreError as e:
            logger.warning("warden.store_unavailable", store=name, error=str(e))

    return _Connections(engine=engine, redis=redis_client, services=services)


def create_app(
    settings: Optional[Settings] = None,
    *,
    services: Optional[Services] = None,
) -> FastAPI:
    """Build and return the FastAPI application."""
    settings = settings or (services.settings if services else get_settings())
    configure_logging(settings.log_level, settings.log_json)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "warden.starting",
            version=__version__,
            environment=settings.environment,
            port=settings.port,
        )
        connections = None
        if getattr(app.state, "services", None) is None:
            connections = await connect(settings)
            app.state.services = connections.services

        yield

        logger.info("warden.shutdown")
        if connections is not None:
            await connections.close()

    app = FastAPI(
        title="Warden",
        description="Session, authorization, action-token and rate-limit layer",
        version=__version__,
        lifespan=lifespan,
    )
    if services is not None:
        app.state.services = services

    # ── Middleware stack ──────────────────────────────────────
    # Starlette runs middleware in reverse order of registration.
    # Request flow: CORS → RequestId → RateLimit → route (authenticate →
    # RequirePermission → handler). CORS outermost: preflights never hit
    # the limiter, and 429/500 replies still carry CORS headers.
    app.add_middleware(RateLimitMiddleware)
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE"],
        allow_headers=["Authorization", "Accept", "Content-Type", "X-Request-ID"],
        expose_headers=["X-Request-ID", "X-RateLimit-Limit", "X-RateLimit-Remaining", "Retry-After"],
    )

    register_exception_handlers(app)
    app.include_router(api_router)

    return app


app = create_app()
