"""
Anti-forgery token (double-submit cookie).

State-changing browser requests must echo the csrf cookie in the
X-CSRF-Token header. The gateway's server-to-server notification and the
cross-site payment return cannot carry the token; those paths are excluded
and authenticated by the trade codec signature instead.
"""

import secrets
from collections.abc import Awaitable, Callable

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp
from structlog import get_logger

logger = get_logger(__name__)

SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})
CSRF_EXCLUDED_PATHS = frozenset({"/payment-return", "/payuni-webhook"})
CSRF_FAILURE_MESSAGE = "Security check failed, please refresh the page and try again"


def new_csrf_token() -> str:
    """Random anti-forgery token."""
    return secrets.token_urlsafe(32)


def csrf_exempt(method: str, path: str) -> bool:
    """Whether a request skips the anti-forgery check."""
    return method.upper() in SAFE_METHODS or path.rstrip("/") in CSRF_EXCLUDED_PATHS


class CsrfMiddleware(BaseHTTPMiddleware):
    """Rejects unsafe requests whose header token does not match the cookie."""

    def __init__(self, app: ASGIApp, cookie_name: str, header_name: str):
        super().__init__(app)
        self.cookie_name = cookie_name
        self.header_name = header_name

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        if csrf_exempt(request.method, request.url.path):
            return await call_next(request)

        cookie_token = request.cookies.get(self.cookie_name, "")
        header_token = request.headers.get(self.header_name, "")
        if not cookie_token or not header_token or not secrets.compare_digest(
            cookie_token.encode("utf-8"), header_token.encode("utf-8")
        ):
            logger.warning(
                "csrf_validation_failed",
                path=request.url.path,
                method=request.method,
                client_ip=request.client.host if request.client else None,
                cookie_present=bool(cookie_token),
                header_present=bool(header_token),
            )
            return JSONResponse(status_code=403, content={"error": CSRF_FAILURE_MESSAGE})

        return await call_next(request)
