"""Realtime process — the WebSocket app, run separately from the API.

Run with: uvicorn artifyme.realtime.server:app --port 3001
(or: artifyme realtime)

Learn: The Redis listener task lives on app.state so /health can see
it. If it dies (Redis dropped the subscription), sockets stay open but
no events reach them, and /health reports "degraded".
"""

import asyncio
import contextlib
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
import structlog
from fastapi import FastAPI, Request

from artifyme import __version__
from artifyme.config import settings
from artifyme.db.engine import engine
from artifyme.realtime.pubsub import close_redis, init_redis
from artifyme.realtime.websocket import listen_for_events, manager, router as ws_router

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_redis()
    app.state.listener = asyncio.create_task(listen_for_events(manager))
    logger.info("realtime.started", port=settings.realtime_port)
    yield
    app.state.listener.cancel()
    # A listener that already failed has logged its RedisError.
    with contextlib.suppress(asyncio.CancelledError, aioredis.RedisError):
        await app.state.listener
    await close_redis()
    await engine.dispose()
    logger.info("realtime.stopped")


def listener_running(app: FastAPI) -> bool:
    listener = getattr(app.state, "listener", None)
    return listener is not None and not listener.done()


def create_realtime_app() -> FastAPI:
    app = FastAPI(
        title="ArtifyMe Realtime",
        version=__version__,
        lifespan=lifespan,
    )
    app.include_router(ws_router)

    @app.get("/health")
    async def health(request: Request):
        running = listener_running(request.app)
        return {
            "status": "healthy" if running else "degraded",
            "listener": "running" if running else "stopped",
            "connections": manager.count(),
        }

    return app


app = create_realtime_app()
