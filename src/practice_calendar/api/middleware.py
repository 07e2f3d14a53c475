"""API error handling middleware: consistent error responses.

Registers FastAPI exception handlers that convert calendar engine exceptions
into standardised ``{"error": {"code": "...", "message": "...", "details": ...}}``
JSON responses.

Status code mapping:
- ``ConflictDetectedError`` → 409 Conflict (overlapping windows in ``details``)
- ``CalendarNotFoundError`` → 404 Not Found
- ``QuotaExceededError`` → 429 Too Many Requests
- ``WebhookAuthenticationError`` → 401 Unauthorized
- ``CalendarConfigurationError`` → 503 Service Unavailable
- ``CalendarDirectoryError`` → 409 Conflict
- Any other ``CalendarServiceError`` → 502 Bad Gateway
- ``ValueError`` → 400 Bad Request
- Any other ``Exception`` → 500 Internal Server Error
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from practice_calendar.api.models import ErrorDetail, ErrorResponse
from practice_calendar.calendar.errors import (
    CalendarConfigurationError,
    CalendarDirectoryError,
    CalendarNotFoundError,
    CalendarServiceError,
    ConflictDetectedError,
    QuotaExceededError,
    WebhookAuthenticationError,
)

logger = logging.getLogger(__name__)


def _error_response(status_code: int, code: str, message: str, details: dict | None = None):
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, details=details))
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


async def _handle_conflicts(request: Request, exc: ConflictDetectedError) -> JSONResponse:
    """Return 409 with the overlapping busy windows."""
    logger.info("Booking rejected on %s: %s", request.url.path, exc.message)
    conflicts = [c.model_dump(mode="json") for c in exc.conflicts]
    return _error_response(409, exc.code, exc.message, {"conflicts": conflicts})


async def _handle_not_found(request: Request, exc: CalendarNotFoundError) -> JSONResponse:
    logger.info("Calendar resource not found: %s", exc.resource)
    return _error_response(404, exc.code, exc.message, {"resource": exc.resource})


async def _handle_quota(request: Request, exc: QuotaExceededError) -> JSONResponse:
    logger.warning("Provider quota exhausted: %s", exc.message)
    details = {"retry_after": exc.retry_after} if exc.retry_after is not None else None
    return _error_response(429, exc.code, exc.message, details)


async def _handle_webhook_auth(request: Request, exc: WebhookAuthenticationError) -> JSONResponse:
    logger.warning("Rejected webhook notification: %s", exc.message)
    return _error_response(401, exc.code, exc.message)


async def _handle_configuration(request: Request, exc: CalendarConfigurationError) -> JSONResponse:
    logger.error("Calendar integration misconfigured: %s", exc.message)
    return _error_response(503, exc.code, exc.message)


async def _handle_directory(request: Request, exc: CalendarDirectoryError) -> JSONResponse:
    logger.warning("Calendar directory rejected write: %s", exc.message)
    return _error_response(409, exc.code, exc.message)


async def _handle_service_error(request: Request, exc: CalendarServiceError) -> JSONResponse:
    """Return 502 for provider failures that survived the retry executor."""
    logger.warning("Calendar provider failure: %s", exc.message, exc_info=exc)
    details = {"retryable": exc.retryable, "attempts": exc.attempts}
    return _error_response(502, exc.code, exc.message, details)


async def _handle_value_error(request: Request, exc: ValueError) -> JSONResponse:
    """Return 400 for validation / value errors."""
    logger.info("Validation error: %s", exc)
    return _error_response(400, "VALIDATION_ERROR", str(exc))


class CatchAllErrorMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that catches any unhandled exception and returns a 500.

    Sits above the Starlette exception handler layer so that exceptions not
    caught by ``add_exception_handler`` still use the standard error envelope.
    """

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception:
            logger.error(
                "Unhandled exception on %s %s",
                request.method,
                request.url.path,
                exc_info=True,
            )
            return _error_response(500, "INTERNAL_ERROR", "Internal server error")


def register_error_handlers(app: FastAPI) -> None:
    """Attach all exception handlers to the FastAPI application.

    Starlette resolves handlers by walking the exception's MRO, so the
    specific subclasses win over the ``CalendarServiceError`` fallback.
    """
    app.add_exception_handler(ConflictDetectedError, _handle_conflicts)  # type: ignore[arg-type]
    app.add_exception_handler(CalendarNotFoundError, _handle_not_found)  # type: ignore[arg-type]
    app.add_exception_handler(QuotaExceededError, _handle_quota)  # type: ignore[arg-type]
    app.add_exception_handler(WebhookAuthenticationError, _handle_webhook_auth)  # type: ignore[arg-type]
    app.add_exception_handler(CalendarConfigurationError, _handle_configuration)  # type: ignore[arg-type]
    app.add_exception_handler(CalendarDirectoryError, _handle_directory)  # type: ignore[arg-type]
    app.add_exception_handler(CalendarServiceError, _handle_service_error)  # type: ignore[arg-type]
    app.add_exception_handler(ValueError, _handle_value_error)  # type: ignore[arg-type]
    app.add_middleware(CatchAllErrorMiddleware)
