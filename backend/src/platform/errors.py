"""
Error shapes for the billing service.

Every error response body is:
    {"error": "<human readable message>", "code": "<MACHINE_CODE>"}

Stack traces are NEVER returned to clients. Each response carries an
X-Correlation-ID header that also appears in the server logs.

Status codes in use:
- 400: signature failures, malformed payloads, rejected client actions
- 401: missing/expired/invalid bearer token
- 404: no subscription for a client action
- 409: uniqueness conflict
- 500: unhandled exception
- 502: payment provider rejected a client-facing request
- 503: retryable storage/provider failure (webhook is redelivered)
"""

import logging
import uuid
from typing import Any, Optional

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"


class AppError(Exception):
    """Base application error; subclasses set code and status."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict:
        body: dict[str, Any] = {"error": self.message, "code": self.code}
        if self.details:
            body["details"] = self.details
        return body


class AuthenticationError(AppError):
    """Caller could not be identified (401)."""

    def __init__(self, message: str = "Authentication required"):
        super().__init__("AUTHENTICATION_ERROR", message, status.HTTP_401_UNAUTHORIZED)


class ServiceUnavailableError(AppError):
    """Temporary failure; the caller should retry (503)."""

    def __init__(self, message: str = "Service temporarily unavailable"):
        super().__init__("SERVICE_UNAVAILABLE", message, status.HTTP_503_SERVICE_UNAVAILABLE)


def _correlation_id(request: Request) -> str:
    existing = getattr(request.state, "correlation_id", None)
    if existing:
        return existing
    correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())
    request.state.correlation_id = correlation_id
    return correlation_id


def _json_error(status_code: int, body: dict, correlation_id: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=body, headers={CORRELATION_HEADER: correlation_id})


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """
    Assigns the correlation id and turns unhandled exceptions into a 500.

    AppError and HTTPException never reach this layer; the handlers from
    register_error_handlers answer them first.
    """

    async def dispatch(self, request: Request, call_next):
        correlation_id = _correlation_id(request)
        try:
            response = await call_next(request)
        except Exception as e:
            logger.exception(
                "Unhandled exception",
                extra={
                    "correlation_id": correlation_id,
                    "error_type": type(e).__name__,
                    "path": request.url.path,
                    "method": request.method,
                },
            )
            return _json_error(
                status.HTTP_500_INTERNAL_SERVER_ERROR,
                {
                    "error": "An unexpected error occurred",
                    "code": "INTERNAL_ERROR",
                    "details": {"correlation_id": correlation_id},
                },
                correlation_id,
            )
        response.headers[CORRELATION_HEADER] = correlation_id
        return response


def register_error_handlers(app) -> None:
    """Answer AppError and HTTPException with the standard body."""

    @app.exception_handler(AppError)
    async def _handle_app_error(request: Request, exc: AppError):
        correlation_id = _correlation_id(request)
        log = logger.error if exc.status_code >= 500 else logger.warning
        log(
            "Application error",
            extra={
                "correlation_id": correlation_id,
                "error_code": exc.code,
                "status_code": exc.status_code,
                "path": request.url.path,
            },
        )
        return _json_error(exc.status_code, exc.to_dict(), correlation_id)

    @app.exception_handler(HTTPException)
    async def _handle_http_exception(request: Request, exc: HTTPException):
        return _json_error(
            exc.status_code,
            {"error": str(exc.detail), "code": "HTTP_ERROR"},
            _correlation_id(request),
        )
