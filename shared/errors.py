"""Error taxonomy and the single error boundary for every service.

Routes and services raise AppError with an ErrorKind; the handlers installed
by install_error_handlers() are the only place that turns errors into
response bodies. The proxy and middleware, which answer before those
handlers run, build the same envelope through error_response().
"""

import logging
import traceback
from enum import Enum
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from shared.config import ServiceSettings

logger = logging.getLogger(__name__)

GENERIC_MESSAGE = "Something went wrong!"


class ErrorKind(str, Enum):
    VALIDATION           = "validation"
    UNAUTHENTICATED      = "unauthenticated"
    FORBIDDEN            = "forbidden"
    NOT_FOUND            = "not_found"
    CONFLICT             = "conflict"
    GONE                 = "gone"
    RATE_LIMITED         = "rate_limited"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"
    INTERNAL             = "internal"


STATUS_CODES: dict[ErrorKind, int] = {
    ErrorKind.VALIDATION:           400,
    ErrorKind.UNAUTHENTICATED:      401,
    ErrorKind.FORBIDDEN:            403,
    ErrorKind.NOT_FOUND:            404,
    ErrorKind.CONFLICT:             409,
    ErrorKind.GONE:                 410,
    ErrorKind.RATE_LIMITED:         429,
    ErrorKind.UPSTREAM_UNAVAILABLE: 503,
    ErrorKind.INTERNAL:             500,
}


class AppError(Exception):
    """An error with a known kind, safe to show to the client."""

    def __init__(self, kind: ErrorKind, message: str, *, errors: Optional[list[str]] = None) -> None:
        super().__init__(message)
        self.kind    = kind
        self.message = message
        self.errors  = errors

    @property
    def status_code(self) -> int:
        return STATUS_CODES[self.kind]

    @property
    def status(self) -> str:
        return "fail" if self.status_code < 500 else "error"

    @property
    def is_operational(self) -> bool:
        return self.kind is not ErrorKind.INTERNAL

    def to_dict(self) -> dict:
        body = {"status": self.status, "message": self.message, "statusCode": self.status_code}
        if self.errors:
            body["errors"] = list(self.errors)
        return body


def error_response(error: AppError, headers: Optional[dict[str, str]] = None) -> JSONResponse:
    return JSONResponse(error.to_dict(), status_code=error.status_code, headers=headers)


def not_found_message(request: Request) -> str:
    target = request.url.path
    if request.url.query:
        target = f"{target}?{request.url.query}"
    return f"Can't find {target} on this server!"


def _validation_message(exc: RequestValidationError) -> str:
    messages = []
    for err in exc.errors():
        msg = str(err.get("msg", "Invalid value")).removeprefix("Value error, ")
        field = ".".join(str(part) for part in err.get("loc", ())[1:])
        if err.get("type") in ("missing", "json_invalid") and field:
            msg = f"{field}: {msg}"
        messages.append(msg)
    return f"Invalid input data. {'. '.join(messages)}" if messages else "Invalid input data."


def install_error_handlers(app: FastAPI, settings: ServiceSettings, not_found_extra=None) -> None:
    """Register the error boundary on *app*.

    not_found_extra, when given, is merged into every 404 body produced for
    an unmatched route (the gateway uses it to list known services).
    """

    @app.exception_handler(AppError)
    async def handle_app_error(request: Request, exc: AppError):
        if exc.status_code >= 500:
            logger.error("[error] %s %s -> %d %s", request.method, request.url.path, exc.status_code, exc.message)
        else:
            logger.warning("[error] %s %s -> %d %s", request.method, request.url.path, exc.status_code, exc.message)
        return error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        return await handle_app_error(request, AppError(ErrorKind.VALIDATION, _validation_message(exc)))

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            logger.warning("[error] route not found method=%s path=%s", request.method, request.url.path)
            body = AppError(ErrorKind.NOT_FOUND, not_found_message(request)).to_dict()
            if not_found_extra:
                body.update(not_found_extra)
            return JSONResponse(body, status_code=404)
        status = "fail" if exc.status_code < 500 else "error"
        return JSONResponse(
            {"status": status, "message": str(exc.detail), "statusCode": exc.status_code},
            status_code=exc.status_code,
            headers=getattr(exc, "headers", None),
        )

    # Fallback for apps without install_pipeline(); there the ErrorBoundaryMiddleware
    # answers first, inside the security headers and CORS stages.
    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception):
        return unexpected_error_response(request, exc, settings)


def unexpected_error_response(request: Request, exc: Exception, settings: ServiceSettings) -> JSONResponse:
    logger.error(
        "[error] unhandled method=%s path=%s: %s",
        request.method, request.url.path, exc,
        exc_info=(type(exc), exc, exc.__traceback__),
    )
    body = {"status": "error", "message": GENERIC_MESSAGE, "statusCode": 500}
    if settings.is_development:
        body["message"] = str(exc) or GENERIC_MESSAGE
        body["stack"] = traceback.format_exception(type(exc), exc, exc.__traceback__)
    return JSONResponse(body, status_code=500)
