"""
Error handling for the booking engine API.

Domain errors are rendered through FastAPI exception handlers; the
middleware is the last line of defence for anything that escapes them.
"""

import logging
import traceback
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from sqlalchemy.exc import IntegrityError, OperationalError, TimeoutError as SQLTimeoutError

from ..utils.exceptions import (
    BookingEngineError,
    ConcurrencyError,
    ErrorCode,
    ExternalServiceError,
    NotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)

STATUS_MAP = {
    ErrorCode.VALIDATION_ERROR: status.HTTP_400_BAD_REQUEST,
    ErrorCode.INVALID_BOOKING_STATE: status.HTTP_400_BAD_REQUEST,
    ErrorCode.AMOUNT_MISMATCH: status.HTTP_400_BAD_REQUEST,
    ErrorCode.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.UNAUTHORIZED: status.HTTP_401_UNAUTHORIZED,
    ErrorCode.INVALID_WEBHOOK_SIGNATURE: status.HTTP_401_UNAUTHORIZED,
    ErrorCode.FORBIDDEN: status.HTTP_403_FORBIDDEN,
    ErrorCode.INSUFFICIENT_CAPACITY: status.HTTP_409_CONFLICT,
    ErrorCode.CONCURRENCY_CONFLICT: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorCode.EXTERNAL_SERVICE_ERROR: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorCode.PAYMENT_SERVICE_ERROR: status.HTTP_502_BAD_GATEWAY,
}


def get_status_code_for_error(exc: BookingEngineError) -> int:
    """Map error codes to HTTP status codes."""
    return STATUS_MAP.get(exc.error_code, status.HTTP_500_INTERNAL_SERVER_ERROR)


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def error_response(
    request: Request,
    exc: BookingEngineError,
    status_code: Optional[int] = None,
    error_id: Optional[str] = None,
) -> JSONResponse:
    """Render the error envelope shared by every failing endpoint."""
    error_id = error_id or str(uuid4())
    status_code = status_code or get_status_code_for_error(exc)

    log_extra = {
        "error_id": error_id,
        "error_code": exc.error_code.value,
        "method": request.method,
        "path": request.url.path,
        "details": exc.details,
    }
    if status_code >= 500:
        logger.error(f"System error [{error_id}]: {exc.message}", extra=log_extra)
    elif isinstance(exc, (ValidationError, NotFoundError)):
        logger.warning(f"Client error [{error_id}]: {exc.message}", extra=log_extra)
    else:
        logger.info(f"Request rejected [{error_id}]: {exc.message}", extra=log_extra)

    headers = {}
    if exc.retry_after:
        headers["Retry-After"] = str(exc.retry_after)
    if status_code == status.HTTP_401_UNAUTHORIZED:
        headers["WWW-Authenticate"] = "Bearer"

    return JSONResponse(
        status_code=status_code,
        content={
            "error": exc.to_dict(),
            "error_id": error_id,
            "timestamp": _timestamp(),
            "path": request.url.path,
            "method": request.method,
        },
        headers=headers,
    )


async def booking_engine_error_handler(request: Request, exc: BookingEngineError) -> JSONResponse:
    return error_response(request, exc)


async def request_validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Report malformed request bodies as 400 with per-field messages."""
    field_errors = {}
    for error in exc.errors():
        field_path = ".".join(str(loc) for loc in error["loc"])
        field_errors.setdefault(field_path, []).append(error["msg"])

    return error_response(
        request,
        ValidationError("Request validation failed", field_errors=field_errors),
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(BookingEngineError, booking_engine_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_error_handler)


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Convert errors that escape the exception handlers into JSON responses."""

    def __init__(self, app, debug: bool = False):
        super().__init__(app)
        self.debug = debug

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as exc:
            return self._handle_exception(request, exc)

    def _handle_exception(self, request: Request, exc: Exception) -> JSONResponse:
        error_id = str(uuid4())

        if isinstance(exc, BookingEngineError):
            return error_response(request, exc, error_id=error_id)

        if isinstance(exc, IntegrityError):
            return error_response(
                request,
                ConcurrencyError("Conflicting write detected, please retry"),
                error_id=error_id,
            )

        if isinstance(exc, (OperationalError, SQLTimeoutError)):
            return error_response(
                request,
                ExternalServiceError("database", "Database service temporarily unavailable", retry_after=30),
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                error_id=error_id,
            )

        logger.error(
            f"Unexpected error [{error_id}]: {exc}",
            extra={
                "error_id": error_id,
                "error_type": type(exc).__name__,
                "method": request.method,
                "path": request.url.path,
            },
            exc_info=True,
        )
        content = {
            "error": BookingEngineError("An unexpected error occurred").to_dict(),
            "error_id": error_id,
            "timestamp": _timestamp(),
        }
        if self.debug:
            content["debug"] = {"exception": str(exc), "traceback": traceback.format_exc()}

        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=content)
