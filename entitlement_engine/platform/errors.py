"""
Error responses for the non-webhook API surface.

Every error body has the shape {"error": {"code", "message", "details"}} and
carries an X-Correlation-ID header. Stack traces are NEVER returned to clients.

The webhook route does not use these classes: its status codes come from the
billing error taxonomy (see api/routes/webhooks.py).
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
    """Base API error. Subclasses fix the code and HTTP status."""

    code = "INTERNAL_ERROR"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "An unexpected error occurred"

    def __init__(self, message: Optional[str] = None, details: Optional[dict[str, Any]] = None):
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return _error_body(self.code, self.message, self.details)


class ValidationError(AppError):
    code = "VALIDATION_ERROR"
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Invalid request"


class AuthenticationError(AppError):
    code = "AUTHENTICATION_ERROR"
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "Authentication required"


class NotFoundError(AppError):
    code = "NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, resource: str, identifier: Optional[str] = None):
        if identifier:
            message = f"{resource} with id '{identifier}' not found"
        else:
            message = f"{resource} not found"
        super().__init__(message)


class ConflictError(AppError):
    """A concurrent write won; the caller may retry."""

    code = "CONFLICT"
    status_code = status.HTTP_409_CONFLICT
    default_message = "Conflicting update"


class ServiceUnavailableError(AppError):
    code = "SERVICE_UNAVAILABLE"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_message = "Service temporarily unavailable"


def _error_body(code: str, message: str, details: Optional[dict[str, Any]] = None) -> dict:
    return {"error": {"code": code, "message": message, "details": details or {}}}


def get_correlation_id(request: Request) -> str:
    """Header value if the caller sent one, else the id already assigned to this request, else a new one."""
    correlation_id = request.headers.get(CORRELATION_HEADER)
    if correlation_id:
        return correlation_id
    return getattr(request.state, "correlation_id", None) or str(uuid.uuid4())


def _json_error(status_code: int, body: dict, correlation_id: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=body, headers={CORRELATION_HEADER: correlation_id})


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Tags responses with a correlation id and turns escaped exceptions into error bodies."""

    async def dispatch(self, request: Request, call_next):
        correlation_id = get_correlation_id(request)
        request.state.correlation_id = correlation_id
        context = {
            "correlation_id": correlation_id,
            "path": request.url.path,
            "method": request.method,
        }

        try:
            response = await call_next(request)
        except AppError as e:
            logger.warning("Application error", extra={**context, "error_code": e.code})
            return _json_error(e.status_code, e.to_dict(), correlation_id)
        except HTTPException as e:
            logger.warning("HTTP exception", extra={**context, "status_code": e.status_code})
            return _json_error(e.status_code, _error_body("HTTP_ERROR", str(e.detail)), correlation_id)
        except Exception as e:
            logger.exception("Unhandled exception", extra={**context, "error_type": type(e).__name__})
            body = _error_body(
                AppError.code,
                AppError.default_message,
                {"correlation_id": correlation_id},
            )
            return _json_error(status.HTTP_500_INTERNAL_SERVER_ERROR, body, correlation_id)

        response.headers[CORRELATION_HEADER] = correlation_id
        return response


def register_error_handlers(app) -> None:
    """Render AppError raised inside routes and dependencies with the standard shape."""

    @app.exception_handler(AppError)
    async def _app_error_handler(request: Request, exc: AppError):
        return _json_error(exc.status_code, exc.to_dict(), get_correlation_id(request))
