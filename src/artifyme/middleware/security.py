"""Security headers middleware.

Learn: The API only serves JSON to a separate frontend origin, so the
headers are the usual hardening set for an API:
- X-Content-Type-Options: no MIME sniffing of JSON bodies
- X-Frame-Options: never framed
- Cross-Origin-Resource-Policy: responses readable cross-origin only via CORS
- Referrer-Policy: no full URLs (reset tokens live in query strings)
- Strict-Transport-Security: only sent over HTTPS
"""

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Cross-Origin-Resource-Policy": "same-site",
    "Referrer-Policy": "no-referrer",
    "X-DNS-Prefetch-Control": "off",
}


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        response: Response = await call_next(request)
        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        if request.url.scheme == "https":
            response.headers["Strict-Transport-Security"] = (
                "max-age=15552000; includeSubDomains"
            )
        return response
