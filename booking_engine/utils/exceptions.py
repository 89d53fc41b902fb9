"""
Custom exceptions for the booking engine.
"""

from typing import Any, Dict, Optional, List
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for the engine."""

    # General errors
    INTERNAL_ERROR = "INTERNAL_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"

    # Business logic errors
    INSUFFICIENT_CAPACITY = "INSUFFICIENT_CAPACITY"
    INVALID_BOOKING_STATE = "INVALID_BOOKING_STATE"
    AMOUNT_MISMATCH = "AMOUNT_MISMATCH"

    # Concurrency errors
    CONCURRENCY_CONFLICT = "CONCURRENCY_CONFLICT"

    # Webhook errors
    INVALID_WEBHOOK_SIGNATURE = "INVALID_WEBHOOK_SIGNATURE"

    # External service errors
    EXTERNAL_SERVICE_ERROR = "EXTERNAL_SERVICE_ERROR"
    PAYMENT_SERVICE_ERROR = "PAYMENT_SERVICE_ERROR"


class BookingEngineError(Exception):
    """Base exception class for the booking engine."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        details: Optional[Dict[str, Any]] = None,
        suggestions: Optional[List[str]] = None,
        retry_after: Optional[int] = None
    ):
        """Initialize the exception with comprehensive error information."""
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        self.suggestions = suggestions or []
        self.retry_after = retry_after
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        result = {
            "error_code": self.error_code.value,
            "message": self.message,
        }

        if self.details:
            result["details"] = self.details

        if self.suggestions:
            result["suggestions"] = self.suggestions

        if self.retry_after:
            result["retry_after"] = self.retry_after

        return result


class ValidationError(BookingEngineError):
    """Exception raised for validation errors."""

    def __init__(self, message: str, field_errors: Optional[Dict[str, List[str]]] = None, **kwargs):
        super().__init__(
            message,
            error_code=ErrorCode.VALIDATION_ERROR,
            details={"field_errors": field_errors} if field_errors else None,
            **kwargs
        )
        self.field_errors = field_errors or {}


class NotFoundError(BookingEngineError):
    """Base exception for resource not found errors."""

    def __init__(self, message: str, resource_type: Optional[str] = None, resource_id: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            error_code=ErrorCode.NOT_FOUND,
            details={"resource_type": resource_type, "resource_id": resource_id} if resource_type else None,
            **kwargs
        )


class EventNotFoundError(NotFoundError):
    """Exception raised when an event is not found."""

    def __init__(self, event_id: str, **kwargs):
        super().__init__(
            f"Event {event_id} not found",
            resource_type="event",
            resource_id=event_id,
            suggestions=["Check the event ID", "Browse available events"],
            **kwargs
        )


class BookingNotFoundError(NotFoundError):
    """Exception raised when a booking is not found."""

    def __init__(self, booking_id: str, **kwargs):
        super().__init__(
            f"Booking {booking_id} not found",
            resource_type="booking",
            resource_id=booking_id,
            suggestions=["Check the booking ID", "View your booking history"],
            **kwargs
        )


class AuthenticationError(BookingEngineError):
    """Exception raised for authentication failures."""

    def __init__(self, message: str = "Authentication failed", **kwargs):
        super().__init__(
            message,
            error_code=ErrorCode.UNAUTHORIZED,
            suggestions=["Check your credentials", "Login again"],
            **kwargs
        )


class AuthorizationError(BookingEngineError):
    """Exception raised for authorization failures."""

    def __init__(self, message: str = "Access denied", **kwargs):
        super().__init__(
            message,
            error_code=ErrorCode.FORBIDDEN,
            **kwargs
        )


class WebhookSignatureError(BookingEngineError):
    """Exception raised when a gateway callback fails authentication."""

    def __init__(self, message: str = "Invalid webhook signature", **kwargs):
        super().__init__(
            message,
            error_code=ErrorCode.INVALID_WEBHOOK_SIGNATURE,
            **kwargs
        )


class BusinessLogicError(BookingEngineError):
    """Base exception for business logic violations."""
    pass


class InsufficientCapacityError(BusinessLogicError):
    """Exception raised when a ticket type or event is sold out."""

    def __init__(
        self,
        requested: int,
        available: int,
        event_id: Optional[str] = None,
        ticket_type_id: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            f"Insufficient capacity: requested {requested}, available {available}",
            error_code=ErrorCode.INSUFFICIENT_CAPACITY,
            details={
                "requested": requested,
                "available": available,
                "event_id": event_id,
                "ticket_type_id": ticket_type_id,
            },
            suggestions=["Try booking fewer tickets", "Choose another ticket type"],
            **kwargs
        )
        self.requested = requested
        self.available = available


class InvalidBookingStateError(BusinessLogicError):
    """Exception raised when booking is in invalid state for operation."""

    def __init__(self, booking_id: str, current_state: str, required_state: str, **kwargs):
        super().__init__(
            f"Booking {booking_id} is in {current_state} state, required {required_state}",
            error_code=ErrorCode.INVALID_BOOKING_STATE,
            details={"booking_id": booking_id, "current_state": current_state, "required_state": required_state},
            **kwargs
        )


class AmountMismatchError(BusinessLogicError):
    """Exception raised when a gateway amount differs from the booking total."""

    def __init__(self, booking_id: str, expected: str, received: str, **kwargs):
        super().__init__(
            f"Payment amount {received} does not match booking total {expected}",
            error_code=ErrorCode.AMOUNT_MISMATCH,
            details={"booking_id": booking_id, "expected": expected, "received": received},
            suggestions=["Contact support with your booking ID"],
            **kwargs
        )


class ConcurrencyError(BookingEngineError):
    """Exception raised for transient store contention."""

    def __init__(self, message: str, retry_after: int = 1, **kwargs):
        super().__init__(
            message,
            error_code=ErrorCode.CONCURRENCY_CONFLICT,
            retry_after=retry_after,
            suggestions=["Please try again", "Wait a moment and retry"],
            **kwargs
        )


class ExternalServiceError(BookingEngineError):
    """Exception raised for external service failures."""

    def __init__(
        self,
        service_name: str,
        message: str,
        status_code: Optional[int] = None,
        error_code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_ERROR,
        **kwargs
    ):
        super().__init__(
            f"{service_name} service error: {message}",
            error_code=error_code,
            details={"service_name": service_name, "status_code": status_code},
            suggestions=["Try again later", "Contact support if problem persists"],
            **kwargs
        )
        self.status_code = status_code


class PaymentServiceError(ExternalServiceError):
    """Exception raised for payment gateway failures."""

    def __init__(self, message: str, status_code: Optional[int] = None, **kwargs):
        super().__init__(
            "payment",
            message,
            status_code=status_code,
            error_code=ErrorCode.PAYMENT_SERVICE_ERROR,
            **kwargs
        )
