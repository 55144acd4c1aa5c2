"""
Error Handling
==============

Standardized error codes, exception handlers, the domain error
taxonomy of the subscription pipeline and the webhook
acknowledgement policy.
"""

import functools
import logging
from typing import Any, Awaitable, Callable, Optional

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


# =============================================================================
# Error Codes
# =============================================================================

class ErrorCodes:
    """Standardized error codes."""

    # Authentication
    AUTH_TOKEN_EXPIRED = "AUTH_002"
    AUTH_INVALID_TOKEN = "AUTH_005"

    # Subscription
    SUB_INVALID_PRODUCT = "SUB_001"
    SUB_INVALID_RECEIPT = "SUB_002"
    SUB_PERSISTENCE_FAILED = "SUB_007"

    # General
    INTERNAL_ERROR = "INTERNAL_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"


# =============================================================================
# HTTP Exceptions (client-facing endpoints)
# =============================================================================

class AppException(HTTPException):
    """Base application exception with structured error response."""

    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        field: Optional[str] = None,
        **extra,
    ):
        self.code = code
        self.field = field
        self.extra = extra

        detail = {
            "code": code,
            "message": message,
        }

        if field:
            detail["field"] = field

        detail.update(extra)

        super().__init__(status_code=status_code, detail=detail)


class AuthenticationError(AppException):
    """Authentication-related errors."""

    def __init__(
        self,
        code: str = ErrorCodes.AUTH_TOKEN_EXPIRED,
        message: str = "Not authenticated",
        **extra,
    ):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            code=code,
            message=message,
            **extra,
        )
        self.headers = {"WWW-Authenticate": "Bearer"}


class ValidationError(AppException):
    """Validation errors."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        code: str = ErrorCodes.VALIDATION_ERROR,
        **extra,
    ):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            code=code,
            message=message,
            field=field,
            **extra,
        )


class ServiceUnavailableError(AppException):
    """External service unavailable errors."""

    def __init__(
        self,
        code: str,
        message: str = "Service temporarily unavailable",
        **extra,
    ):
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            code=code,
            message=message,
            **extra,
        )


# =============================================================================
# Domain Errors (subscription pipeline)
# =============================================================================

class SubscriptionError(Exception):
    """Base exception for subscription pipeline errors."""


class SignatureInvalidError(SubscriptionError):
    """Webhook body failed signature verification."""


class UnknownProviderError(SubscriptionError):
    """Webhook could not be attributed to any store provider."""


class ReceiptInvalidError(SubscriptionError):
    """Client-submitted receipt could not be authenticated."""


class PersistenceTransientError(SubscriptionError):
    """A storage failure that is worth retrying (conflict, timeout, lost connection)."""


class PersistenceFatalError(SubscriptionError):
    """Retries exhausted, or a non-retryable storage failure."""


# =============================================================================
# Webhook Acknowledgement Policy
# =============================================================================

WEBHOOK_OK = {"status": "ok"}


def webhook_error(message: str) -> JSONResponse:
    """200 response carrying an error status for the store sender."""
    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content={"status": "error", "message": message},
    )


def always_acknowledge(
    handler: Callable[..., Awaitable[Any]],
) -> Callable[..., Awaitable[Any]]:
    """
    Always-200 policy for store webhook endpoints.

    Store senders retry on any non-2xx answer, and a retry storm helps
    nobody: signature failures will fail again and internal failures
    are already recorded in logs and the audit trail. Every exception
    raised by the wrapped handler is therefore logged and converted to
    ``200 {"status": "error"}``. Handlers signal expected failures by
    returning ``webhook_error(...)`` themselves.
    """

    @functools.wraps(handler)
    async def wrapper(*args, **kwargs):
        try:
            return await handler(*args, **kwargs)
        except Exception:
            logger.exception("Error processing webhook")
            return webhook_error("Error processing webhook")

    return wrapper


# =============================================================================
# Exception Handlers
# =============================================================================

async def app_exception_handler(
    request: Request,
    exc: AppException,
) -> JSONResponse:
    """Handler for AppException."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error": exc.detail,
        },
        headers=getattr(exc, "headers", None),
    )


async def http_exception_handler(
    request: Request,
    exc: HTTPException,
) -> JSONResponse:
    """Handler for standard HTTPException."""
    # Check if detail is already structured
    if isinstance(exc.detail, dict) and "code" in exc.detail:
        error = exc.detail
    else:
        error = {
            "code": "HTTP_ERROR",
            "message": str(exc.detail),
        }

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error": error,
        },
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Handler for request validation errors (reported as 400)."""
    errors = exc.errors() if hasattr(exc, "errors") else []
    if errors:
        first_error = errors[0]
        field = ".".join(str(loc) for loc in first_error.get("loc", []))
        message = first_error.get("msg", "Validation error")
    else:
        field = None
        message = str(exc) or "Validation error"

    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "success": False,
            "error": {
                "code": ErrorCodes.VALIDATION_ERROR,
                "message": message,
                "field": field,
            },
        },
    )


async def global_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Handler for unhandled exceptions."""
    logger.error("Unhandled error: %s: %s", type(exc).__name__, exc)

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "success": False,
            "error": {
                "code": ErrorCodes.INTERNAL_ERROR,
                "message": "An unexpected error occurred",
            },
        },
    )


def setup_exception_handlers(app):
    """
    Register exception handlers with FastAPI app.

    Usage:
        from app.core.errors import setup_exception_handlers
        setup_exception_handlers(app)
    """
    from pydantic import ValidationError as PydanticValidationError
    from fastapi.exceptions import RequestValidationError

    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(PydanticValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)
