"""Domain errors and the app-level exception handlers.

Learn: Services raise these instead of HTTPException so they stay
usable outside a request (CLI, realtime process). Each error carries
its HTTP status and a stable machine-readable code; the handlers
registered in main.py turn them into {"detail", "code"} responses.
"""

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from artifyme.config import settings

logger = structlog.get_logger()


class ArtifyError(Exception):
    """Base class for errors that map to an HTTP response."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str = "Internal server error", code: str | None = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code


class ValidationError(ArtifyError):
    status_code = 400
    code = "VALIDATION_ERROR"


class AuthenticationError(ArtifyError):
    status_code = 401
    code = "AUTHENTICATION_ERROR"

    def __init__(self, message: str = "Authentication required", code: str | None = None):
        super().__init__(message, code)


class AuthorizationError(ArtifyError):
    status_code = 403
    code = "AUTHORIZATION_ERROR"

    def __init__(self, message: str = "Access denied", code: str | None = None):
        super().__init__(message, code)


class NotFoundError(ArtifyError):
    status_code = 404
    code = "NOT_FOUND"

    def __init__(self, resource: str = "Resource"):
        super().__init__(f"{resource} not found")


class PaymentRequiredError(ArtifyError):
    status_code = 402
    code = "NO_CREDITS"


class ConflictError(ArtifyError):
    status_code = 409
    code = "CONFLICT"


class RateLimitError(ArtifyError):
    status_code = 429
    code = "RATE_LIMIT"

    def __init__(self, message: str = "Too many requests", code: str | None = None):
        super().__init__(message, code)


class ProviderError(ArtifyError):
    """A third-party call (Keycloak, Stripe, Asaas, n8n, SendGrid) failed."""

    status_code = 500
    code = "PROVIDER_ERROR"


async def artify_error_handler(request: Request, exc: ArtifyError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(
            "request.failed",
            path=request.url.path,
            method=request.method,
            code=exc.code,
            error=exc.message,
        )
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code},
    )


async def validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    errors = [
        {
            "field": ".".join(str(p) for p in err.get("loc", ()) if p != "body"),
            "message": err.get("msg", ""),
        }
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content={
            "detail": "Validation error",
            "code": "VALIDATION_ERROR",
            "errors": errors,
        },
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "request.unhandled_error",
        path=request.url.path,
        method=request.method,
    )
    detail = "Internal server error"
    if settings.environment == "development":
        detail = str(exc) or detail
    return JSONResponse(
        status_code=500,
        content={"detail": detail, "code": "INTERNAL_ERROR"},
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ArtifyError, artify_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
