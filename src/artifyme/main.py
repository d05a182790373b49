"""FastAPI application factory.

Learn: App factory pattern — create_app() returns a configured FastAPI
instance. Lifespan manages startup/shutdown (database, Redis).
Middleware, CORS, exception handlers and routers all registered here.

The WebSocket fan-out runs as its own process (artifyme.realtime.server);
this app only publishes to Redis.
"""

from contextlib import asynccontextmanager

import redis.asyncio as aioredis
import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from artifyme import __version__
from artifyme.api import api_router
from artifyme.api.health import router as health_router
from artifyme.config import settings
from artifyme.errors import register_exception_handlers

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle.

    Learn: FastAPI lifespan replaces on_event("startup") / on_event("shutdown").
    Anything before `yield` runs at startup, after `yield` runs at shutdown.
    """
    logger.info(
        "artifyme.starting",
        version=__version__,
        environment=settings.environment,
        port=settings.port,
    )

    from artifyme.realtime.pubsub import close_redis, init_redis
    try:
        await init_redis()
        logger.info("artifyme.redis_connected", url=settings.redis_url)
    except (aioredis.RedisError, OSError) as e:
        # Auth caching and rate limiting degrade to pass-through; job
        # starts need Redis and will fail until it is back.
        logger.warning("artifyme.redis_unavailable", error=str(e))

    yield

    logger.info("artifyme.shutdown")

    await close_redis()

    from artifyme.db.engine import engine
    await engine.dispose()


def create_app() -> FastAPI:
    """Build and return the FastAPI application."""
    app = FastAPI(
        title="ArtifyMe API",
        description="Image style transfer: jobs, payments and accounts",
        version=__version__,
        lifespan=lifespan,
    )

    register_exception_handlers(app)

    # ── Middleware stack ──────────────────────────────────────
    # Note: Starlette middleware executes in reverse order of registration.
    # Request flow: CORS → RateLimit → Security → RequestId → handler

    from artifyme.middleware.rate_limit import RateLimitMiddleware
    from artifyme.middleware.request_id import RequestIdMiddleware
    from artifyme.middleware.security import SecurityHeadersMiddleware

    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(
        RateLimitMiddleware,
        max_requests=settings.rate_limit_requests,
        window_seconds=settings.rate_limit_window_seconds,
        auth_rpm=settings.rate_limit_auth_rpm,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health_router, tags=["health"])
    app.include_router(api_router)

    return app


# Default app instance (used by uvicorn: artifyme.main:app)
app = create_app()
