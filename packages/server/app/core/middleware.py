"""
Security middleware: response headers, no-store caching, CSRF protection.
"""

from __future__ import annotations

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from app.core.errors import error_body

SAFE_METHODS = {"GET", "HEAD", "OPTIONS"}

SESSION_COOKIE = "atom_session"
CSRF_COOKIE = "atom_csrf"
CSRF_HEADER = "X-CSRF-Token"

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    # Kiosk scanners need the camera; nothing else does
    "Permissions-Policy": "camera=(self), microphone=(), geolocation=()",
    "Strict-Transport-Security": "max-age=63072000; includeSubDomains",
}

# Subscription and attendance state must never be served from a cache
NO_STORE = "no-store, no-cache, must-revalidate, proxy-revalidate"


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Attach security headers to every response and disable caching of API data."""

    async def dispatch(self, request: Request, call_next) -> Response:
        response = await call_next(request)
        for header, value in SECURITY_HEADERS.items():
            response.headers[header] = value
        if request.url.path.startswith("/api/") or request.url.path.startswith("/auth/"):
            response.headers["Cache-Control"] = NO_STORE
        return response


class CSRFMiddleware(BaseHTTPMiddleware):
    """
    Double-submit cookie CSRF protection for browser sessions.

    Skipped for safe methods, Bearer-authenticated calls (kiosk devices, the
    scheduler) and requests that carry no session cookie.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        if request.method in SAFE_METHODS:
            return await call_next(request)

        if request.headers.get("Authorization"):
            return await call_next(request)

        if SESSION_COOKIE not in request.cookies:
            return await call_next(request)

        cookie_token = request.cookies.get(CSRF_COOKIE)
        header_token = request.headers.get(CSRF_HEADER)

        if not cookie_token or not header_token or cookie_token != header_token:
            return JSONResponse(
                status_code=403,
                content=error_body("CSRF_VALIDATION_FAILED", "Invalid or missing CSRF token."),
            )

        return await call_next(request)
