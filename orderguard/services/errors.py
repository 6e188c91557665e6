"""
OrderGuard — Error Handling & Exception Classes

Centralised exception handling with proper HTTP status codes and
safe error messages (avoids information leakage).
"""

import logging
from typing import Any, Dict, Optional, Tuple

from fastapi import status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger("orderguard.errors")


# ===========================================================================
# Custom Exceptions (domain-specific)
# ===========================================================================
class OrderGuardException(Exception):
    """Base exception for all OrderGuard errors."""
    pass


class ScoringError(OrderGuardException):
    """Duplicate scoring errors."""
    pass


class BlocklistError(OrderGuardException):
    """Blocklist mutation errors (e.g. duplicate entry)."""
    pass


class DatabaseError(OrderGuardException):
    """Database operation errors."""
    pass


class KafkaError(OrderGuardException):
    """Kafka communication errors."""
    pass


class NotificationError(OrderGuardException):
    """Outbound notification (webhook, email) errors."""
    pass


class ValidationError(OrderGuardException):
    """Input validation errors."""
    pass


# ===========================================================================
# HTTP Error Response Factory
# ===========================================================================
class ErrorResponse:
    """Standardised error response format."""

    def __init__(
        self,
        error_code: str,
        message: str,
        status_code: int = status.HTTP_400_BAD_REQUEST,
        details: Optional[Dict[str, Any]] = None,
        request_id: Optional[str] = None,
    ):
        self.error_code = error_code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        self.request_id = request_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": {
                "code": self.error_code,
                "message": self.message,
                "request_id": self.request_id,
            },
            **({"details": self.details} if self.details else {}),
        }

    def to_response(self, **kwargs) -> JSONResponse:
        return JSONResponse(status_code=self.status_code, content=self.to_dict(), **kwargs)


# (exception class, code, client message, HTTP status, log level)
_MAPPING = (
    (BlocklistError, "BLOCKLIST_ERROR", None, status.HTTP_409_CONFLICT, "warning"),
    (ScoringError, "SCORING_ERROR", "Duplicate scoring failed", status.HTTP_500_INTERNAL_SERVER_ERROR, "error"),
    (DatabaseError, "DATABASE_ERROR", "Database operation failed", status.HTTP_500_INTERNAL_SERVER_ERROR, "error"),
    (KafkaError, "KAFKA_ERROR", "Event stream publishing temporarily unavailable",
     status.HTTP_503_SERVICE_UNAVAILABLE, "warning"),
    (NotificationError, "NOTIFICATION_ERROR", "Notification delivery failed",
     status.HTTP_502_BAD_GATEWAY, "warning"),
    (ValidationError, "VALIDATION_ERROR", None, status.HTTP_422_UNPROCESSABLE_ENTITY, "warning"),
)


# ===========================================================================
# Exception to HTTP Response Mapping
# ===========================================================================
def exception_to_response(
    exc: Exception,
    request_id: Optional[str] = None,
) -> Tuple[JSONResponse, str]:
    """
    Convert an exception to an HTTP response.

    Parameters
    ----------
    exc : Exception
        The exception to handle
    request_id : str
        Request ID for tracking

    Returns
    -------
    response : JSONResponse
    log_level : str
        Logging level (error, warning, info)
    """

    # FastAPI request validation
    if isinstance(exc, RequestValidationError):
        return ErrorResponse(
            error_code="VALIDATION_ERROR",
            message="Input validation failed",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details={"errors": jsonable_encoder(exc.errors())},
            request_id=request_id,
        ).to_response(), "warning"

    for exc_class, code, message, status_code, log_level in _MAPPING:
        if isinstance(exc, exc_class):
            getattr(logger, log_level)("%s: %s", exc_class.__name__, exc)
            return ErrorResponse(
                error_code=code,
                # Blocklist and validation messages are safe to show as-is.
                message=message or str(exc),
                status_code=status_code,
                request_id=request_id,
            ).to_response(), log_level

    # Generic error (never expose full traceback to client)
    logger.error("Unhandled exception: %s", exc, exc_info=True)
    return ErrorResponse(
        error_code="INTERNAL_ERROR",
        message="An internal error occurred. Please try again later.",
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        request_id=request_id,
    ).to_response(), "error"
