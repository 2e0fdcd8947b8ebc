# File: src/parkbook/application/exceptions.py
"""
Exception hierarchy for the reservation engine

Every error raised to callers derives from ParkingServiceError and carries a
machine-checkable kind plus the HTTP-equivalent status the outer surface
should answer with.
"""

from enum import Enum
from typing import Optional, Dict, Any


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    AUTHORIZATION = "authorization"
    UPSTREAM = "upstream"
    INTERNAL = "internal"


class ParkingServiceError(Exception):
    """Base exception for parking service errors"""
    kind = ErrorKind.INTERNAL
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": False,
            "error": self.message,
            "kind": self.kind.value,
            "status": self.status_code,
            "details": dict(self.details)
        }


class BookingValidationError(ParkingServiceError):
    """Exception for malformed or out-of-range booking input"""
    kind = ErrorKind.VALIDATION
    status_code = 400


class ResourceNotFoundError(ParkingServiceError):
    """Exception when a slot, booking or payment does not exist"""
    kind = ErrorKind.NOT_FOUND
    status_code = 404


class BookingConflictError(ParkingServiceError):
    """Exception when the booking is in the wrong state for the operation"""
    kind = ErrorKind.CONFLICT
    status_code = 409


class SlotUnavailableError(BookingConflictError):
    """Exception when the requested interval collides with another booking"""
    pass


class DuplicatePaymentError(BookingConflictError):
    """Exception when a booking already has a payment"""
    pass


class AccessDeniedError(ParkingServiceError):
    """Exception when the caller does not own the booking or lacks the role"""
    kind = ErrorKind.AUTHORIZATION
    status_code = 403


class PaymentProviderError(ParkingServiceError):
    """Exception when the payment gateway fails or cannot be reached"""
    kind = ErrorKind.UPSTREAM
    status_code = 502
