"""
Shared error handling for the Orders Service.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel

from shared.logging import get_request_id


class ErrorResponse(BaseModel):
    """Standard error response format."""

    request_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = {}


class OrdersServiceException(Exception):
    """Base exception for Orders Service components."""

    status_code: int = 400

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            request_id=get_request_id(),
            code=self.code,
            message=self.message,
            details=self.details
        )


class ValidationError(OrdersServiceException):
    """Validation-related errors."""

    status_code = 400

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class NotFoundError(OrdersServiceException):
    """Requested entity does not exist."""

    status_code = 404

    def __init__(self, code: str = "NOT_FOUND", message: str = "Not found", details: Optional[Dict[str, Any]] = None):
        super().__init__(code, message, details)


class OrderNotFoundError(NotFoundError):
    """No order stored under the requested order_uid."""

    def __init__(self, order_uid: str):
        super().__init__("ORDER_NOT_FOUND", "Order not found", {"order_uid": order_uid})
        self.order_uid = order_uid


class ExternalServiceError(OrdersServiceException):
    """External service errors."""

    status_code = 503

    def __init__(self, service: str, message: str = "External service error",
                 details: Optional[Dict[str, Any]] = None, code: str = "EXTERNAL_SERVICE_ERROR"):
        super().__init__(code, f"{service}: {message}", details)
        self.service = service


class StoreUnavailableError(ExternalServiceError):
    """The order store failed to answer a request."""

    def __init__(self, message: str = "Order store unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__("postgres", message, details, code="STORE_UNAVAILABLE")


class LookupTimeoutError(ExternalServiceError):
    """The order store did not answer within the request deadline."""

    status_code = 504

    def __init__(self, timeout: float, details: Optional[Dict[str, Any]] = None):
        merged = {"timeout_seconds": timeout}
        merged.update(details or {})
        super().__init__("postgres", "Order lookup timed out", merged, code="STORE_TIMEOUT")


class PoisonMessageError(OrdersServiceException):
    """A broker message that can never be processed and must be skipped."""

    status_code = 422

    def __init__(self, message: str = "Unprocessable message", details: Optional[Dict[str, Any]] = None):
        super().__init__("POISON_MESSAGE", message, details)
