"""API error handling: consistent error responses.

Status code mapping:
- ``AuthExpiredError`` → 409 Conflict (connection needs re-authorization)
- ``CredentialKeyError`` → 503 Service Unavailable
- ``LocalPersistenceError`` → 503 Service Unavailable
- other ``CalendarSyncError`` → 502 Bad Gateway
- ``ValueError`` → 400 Bad Request
- Any other ``Exception`` → 500 Internal Server Error
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from timeledger.api.models import ErrorDetail, ErrorResponse
from timeledger.errors import (
    AuthExpiredError,
    CalendarSyncError,
    CredentialKeyError,
    LocalPersistenceError,
    sanitize_error_message,
)

logger = logging.getLogger(__name__)


def _status_for(exc: CalendarSyncError) -> int:
    if isinstance(exc, AuthExpiredError):
        return 409
    if isinstance(exc, CredentialKeyError | LocalPersistenceError):
        return 503
    return 502


async def _handle_sync_error(request: Request, exc: CalendarSyncError) -> JSONResponse:
    """Map engine errors to the error envelope; messages are already redacted."""
    status_code = _status_for(exc)
    logger.warning("Calendar sync error on %s: %s", request.url.path, exc.message)
    body = ErrorResponse(
        error=ErrorDetail(code=exc.kind.value.upper(), message=sanitize_error_message(exc.message))
    )
    return JSONResponse(status_code=status_code, content=body.model_dump())


async def _handle_value_error(request: Request, exc: ValueError) -> JSONResponse:
    """Return 400 for validation / value errors."""
    logger.info("Validation error: %s", exc)
    body = ErrorResponse(error=ErrorDetail(code="VALIDATION_ERROR", message=str(exc)))
    return JSONResponse(status_code=400, content=body.model_dump())


class CatchAllErrorMiddleware(BaseHTTPMiddleware):
    """Convert any unhandled exception into the standard 500 envelope."""

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
            body = ErrorResponse(
                error=ErrorDetail(code="INTERNAL_ERROR", message="Internal server error")
            )
            return JSONResponse(status_code=500, content=body.model_dump())


def register_error_handlers(app: FastAPI) -> None:
    """Attach all exception handlers to the FastAPI application."""
    app.add_exception_handler(CalendarSyncError, _handle_sync_error)  # type: ignore[arg-type]
    app.add_exception_handler(ValueError, _handle_value_error)  # type: ignore[arg-type]
    app.add_middleware(CatchAllErrorMiddleware)
