"""Rate limiting middleware — Redis-based fixed window.

Learn: Each IP gets a counter key like "artifyme:rl:{ip}:{bucket}:{window}"
that is INCRed per request and expires with its window.

    api   /api/*                      100 requests per 15 minutes
    auth  login, register, reset      10 requests per minute

Provider webhooks are never limited (Stripe and Asaas retry in bursts).
Paths outside /api (health, docs) are not limited either.

Gracefully skips rate limiting if Redis is unavailable (e.g., in tests).
"""

import time

import redis.asyncio as aioredis
import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from artifyme.realtime.pubsub import get_redis

logger = structlog.get_logger()

AUTH_PATHS = ("/api/auth/login", "/api/auth/register", "/api/auth/password-reset")
EXEMPT_PREFIXES = ("/api/webhooks",)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Redis-based rate limiting per IP and window."""

    def __init__(
        self,
        app,
        max_requests: int = 100,
        window_seconds: int = 900,
        auth_rpm: int = 10,
    ):
        super().__init__(app)
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.auth_rpm = auth_rpm

    def _bucket(self, path: str):
        """(bucket name, limit, window seconds), or None when not limited."""
        if not path.startswith("/api/") or path.startswith(EXEMPT_PREFIXES):
            return None
        if path.startswith(AUTH_PATHS):
            return "auth", self.auth_rpm, 60
        return "api", self.max_requests, self.window_seconds

    async def dispatch(self, request: Request, call_next) -> Response:
        bucket = self._bucket(request.url.path)
        if bucket is None:
            return await call_next(request)
        name, limit, window_seconds = bucket

        client_ip = request.client.host if request.client else "unknown"
        window = int(time.time() // window_seconds)
        key = f"artifyme:rl:{client_ip}:{name}:{window}"

        try:
            redis = get_redis()
            count = await redis.incr(key)
            if count == 1:
                await redis.expire(key, window_seconds)
        except (RuntimeError, aioredis.RedisError) as e:
            # Redis unavailable — don't block the request
            logger.debug("rate_limit.skipped", error=str(e))
            return await call_next(request)

        if count > limit:
            retry_after = window_seconds - int(time.time() % window_seconds)
            logger.info("rate_limit.exceeded", ip=client_ip, bucket=name)
            return JSONResponse(
                status_code=429,
                content={
                    "detail": "Too many requests, please try again later.",
                    "code": "RATE_LIMIT",
                },
                headers={"Retry-After": str(retry_after)},
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, limit - count))
        return response
