"""
Error handling and sanitization

- Engine errors → structured {"error": {...}} body with the error's HTTP status
- Request body validation → same envelope, kind "validation_error"
- Unhandled exceptions → logged with traceback, generic message to the client
"""
import logging
import traceback
from typing import Union

from fastapi import FastAPI, Request, HTTPException
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from shipping_quotes.core.config import settings
from shipping_quotes.core.exceptions import ShippingEngineError

logger = logging.getLogger(__name__)

# Patterns that indicate internal/sensitive error information
SENSITIVE_PATTERNS = [
    "password",
    "secret",
    "token",
    "key",
    "credential",
    "authorization",
    "bearer",
    "sqlalchemy",
    "asyncpg",
    "postgresql",
    "traceback",
    "file \"",
    "line ",
]

GENERIC_ERROR_MESSAGE = "An internal error occurred. Please try again later."


def is_sensitive_error(message: str) -> bool:
    """Check if error message contains sensitive information."""
    message_lower = message.lower()
    return any(pattern in message_lower for pattern in SENSITIVE_PATTERNS)


def sanitize_error_message(error: Union[str, Exception]) -> str:
    """
    Sanitize an error message for safe client exposure.

    Args:
        error: The error string or exception

    Returns:
        Sanitized error message safe for client
    """
    message = error if isinstance(error, str) else str(error)

    if settings.DEBUG:
        return message

    if is_sensitive_error(message):
        return GENERIC_ERROR_MESSAGE

    if len(message) > 200:
        return message[:200] + "..."

    return message


def error_body(kind: str, code: str, message: str, retryable: bool = False, details=None) -> dict:
    return {
        "error": {
            "kind": kind,
            "code": code,
            "message": message,
            "retryable": retryable,
            "details": details or {},
        }
    }


async def shipping_engine_error_handler(request: Request, exc: ShippingEngineError) -> JSONResponse:
    if exc.http_status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc!r} details={exc.details}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected: {exc!r}")

    body = exc.to_dict()
    body["message"] = sanitize_error_message(exc.message)
    return JSONResponse(status_code=exc.http_status, content=jsonable_encoder({"error": body}))


async def request_validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content=jsonable_encoder(error_body(
            kind="validation_error",
            code="REQUEST_VALIDATION_FAILED",
            message="Request body failed validation",
            details={"errors": exc.errors()},
        )),
    )


class ErrorSanitizationMiddleware(BaseHTTPMiddleware):
    """
    Middleware to catch unhandled exceptions and sanitize error responses.

    - In production: Returns generic error, logs full details
    - In development: Returns full error for debugging
    """

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except HTTPException:
            raise
        except Exception as e:
            error_id = f"{request.client.host if request.client else 'unknown'}-{id(e)}"
            logger.error(
                f"Unhandled exception [{error_id}]: {type(e).__name__}: {str(e)}\n"
                f"Path: {request.url.path}\n"
                f"Method: {request.method}\n"
                f"Traceback:\n{traceback.format_exc()}"
            )

            message = str(e) if settings.DEBUG else GENERIC_ERROR_MESSAGE
            return JSONResponse(
                status_code=500,
                content=error_body(
                    kind="internal_error",
                    code="INTERNAL_ERROR",
                    message=message,
                    details={"error_id": error_id},
                ),
            )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ShippingEngineError, shipping_engine_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_error_handler)
    app.add_middleware(ErrorSanitizationMiddleware)
