"""Request pipeline shared by every service.

install_pipeline() composes the stages in a fixed order, outermost first:

    security headers -> CORS -> request logger -> error boundary -> [extra stages] -> routes

Starlette wraps the most recently added middleware around the others, so
the list is added in reverse.
"""

import logging
import math
import time

from fastapi import FastAPI, Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.middleware.cors import CORSMiddleware

from shared.config import ServiceSettings
from shared.errors import AppError, ErrorKind, error_response, unexpected_error_response

logger = logging.getLogger(__name__)

SECURITY_HEADERS = {
    "X-Content-Type-Options":       "nosniff",
    "X-Frame-Options":              "DENY",
    "Referrer-Policy":              "no-referrer",
    "X-XSS-Protection":             "0",
    "Cross-Origin-Resource-Policy": "same-origin",
}


def client_address(request: Request, trusted_hops: int = 0) -> str:
    """Socket peer, or with *trusted_hops* the X-Forwarded-For entry that many hops back."""
    if trusted_hops > 0:
        forwarded = [part.strip() for part in request.headers.get("x-forwarded-for", "").split(",") if part.strip()]
        if forwarded:
            return forwarded[max(len(forwarded) - trusted_hops, 0)]
    return request.client.host if request.client else "-"


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        response = await call_next(request)
        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        return response


class ErrorBoundaryMiddleware(BaseHTTPMiddleware):
    """Turns an unexpected exception into the 500 envelope while the outer
    stages can still add their headers to it."""

    def __init__(self, app, *, settings: ServiceSettings) -> None:
        super().__init__(app)
        self.settings = settings

    async def dispatch(self, request, call_next):
        try:
            return await call_next(request)
        except Exception as exc:
            return unexpected_error_response(request, exc, self.settings)


class RequestLoggerMiddleware(BaseHTTPMiddleware):
    """One log line per request. Never changes the request or the response."""

    async def dispatch(self, request, call_next):
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            self._log(request, 500, started)
            raise
        self._log(request, response.status_code, started)
        return response

    @staticmethod
    def _log(request: Request, status_code: int, started: float) -> None:
        duration_ms = (time.perf_counter() - started) * 1000
        logger.info(
            "[request] method=%s path=%s status=%d duration_ms=%.1f ip=%s user_agent=%r",
            request.method,
            request.url.path,
            status_code,
            duration_ms,
            client_address(request),
            request.headers.get("user-agent"),
            extra={
                "method":      request.method,
                "path":        request.url.path,
                "status_code": status_code,
                "duration_ms": round(duration_ms, 1),
            },
        )


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Fixed-window request ceiling per client address.

    State lives in process memory, so each replica counts on its own.
    """

    MESSAGE = "Too many requests from this IP, please try again later."

    def __init__(
        self,
        app,
        *,
        window_seconds: int,
        max_requests: int,
        path_prefix: str = "/",
        trusted_hops: int = 0,
    ) -> None:
        super().__init__(app)
        self.window_seconds = window_seconds
        self.max_requests   = max_requests
        self.path_prefix    = path_prefix
        self.trusted_hops   = trusted_hops
        self._windows: dict[str, tuple[float, int]] = {}
        self._last_prune = time.monotonic()

    def _prune(self, now: float) -> None:
        # at most once per window; drops clients whose window has run out
        if now - self._last_prune < self.window_seconds:
            return
        self._windows = {
            key: (started, count)
            for key, (started, count) in self._windows.items()
            if now - started < self.window_seconds
        }
        self._last_prune = now

    async def dispatch(self, request, call_next):
        if not request.url.path.startswith(self.path_prefix):
            return await call_next(request)

        key = client_address(request, self.trusted_hops)
        now = time.monotonic()
        self._prune(now)
        started, count = self._windows.get(key, (now, 0))
        if now - started >= self.window_seconds:
            started, count = now, 0
        count += 1
        self._windows[key] = (started, count)

        reset     = max(0, math.ceil(self.window_seconds - (now - started)))
        remaining = max(0, self.max_requests - count)
        headers = {
            "RateLimit-Limit":     str(self.max_requests),
            "RateLimit-Remaining": str(remaining),
            "RateLimit-Reset":     str(reset),
        }

        if count > self.max_requests:
            logger.warning("[ratelimit] ceiling hit ip=%s path=%s", key, request.url.path)
            error = AppError(ErrorKind.RATE_LIMITED, self.MESSAGE)
            return error_response(error, headers={**headers, "Retry-After": str(reset)})

        response = await call_next(request)
        for name, value in headers.items():
            response.headers[name] = value
        return response


def install_pipeline(app: FastAPI, settings: ServiceSettings, extra: tuple = ()) -> None:
    """Add the standard stages to *app*; *extra* are (class, kwargs) pairs run after the error boundary."""
    stages = [
        (SecurityHeadersMiddleware, {}),
        (CORSMiddleware, {
            "allow_origins":     settings.cors_origins(),
            "allow_credentials": True,
            "allow_methods":     ["*"],
            "allow_headers":     ["*"],
        }),
        (RequestLoggerMiddleware, {}),
        (ErrorBoundaryMiddleware, {"settings": settings}),
        *extra,
    ]
    for middleware_cls, options in reversed(stages):
        app.add_middleware(middleware_cls, **options)
