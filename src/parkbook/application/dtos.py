# File: src/parkbook/application/dtos.py
"""
Data Transfer Objects (DTOs) for the reservation engine

This module defines DTOs for data transfer between the outer surface and the
application services:
1. Caller identity - Principal, as resolved by the identity collaborator
2. Input DTOs - Booking, extension, status and payment requests
3. Output DTOs - Booking summaries and vehicle validation results

DTO Principles:
- Validation at creation (pydantic); a failed validation becomes a
  BookingValidationError before any store access
- No business logic, only data
"""

from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Any, Type, TypeVar
import json

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..domain.models import BookingStatus, PaymentMethod, UserRole, LicensePlate
from .exceptions import BookingValidationError

T = TypeVar('T', bound='BaseDTO')


# ============================================================================
# BASE DTO CLASSES
# ============================================================================

class BaseDTO(BaseModel):
    """Base DTO with common functionality"""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        str_strip_whitespace=True,
        frozen=True
    )

    def to_dict(self, exclude_none: bool = False, **kwargs) -> Dict[str, Any]:
        """Convert DTO to dictionary"""
        return self.model_dump(mode='json', exclude_none=exclude_none, **kwargs)

    def to_json(self, **kwargs) -> str:
        return self.model_dump_json(**kwargs)

    @classmethod
    def from_dict(cls: Type[T], data: Dict[str, Any]) -> T:
        """Create DTO from dictionary, raising BookingValidationError on bad input"""
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise BookingValidationError(_first_error(e), details={"errors": _error_list(e)}) from e

    @classmethod
    def from_json(cls: Type[T], json_str: str) -> T:
        return cls.from_dict(json.loads(json_str))


def _error_list(error: ValidationError) -> List[Dict[str, Any]]:
    return [
        {"field": ".".join(str(p) for p in e["loc"]), "message": e["msg"]}
        for e in error.errors()
    ]


def _first_error(error: ValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(p) for p in first["loc"])
    return f"{location}: {first['msg']}" if location else first["msg"]


def _normalise_plate(value: str) -> str:
    return str(LicensePlate(value))


# ============================================================================
# CALLER IDENTITY
# ============================================================================

class Principal(BaseDTO):
    """The authenticated caller; attendants carry their assigned location"""
    user_id: str = Field(min_length=1)
    role: UserRole = UserRole.CUSTOMER
    location_id: Optional[str] = None

    @property
    def is_attendant(self) -> bool:
        return self.role == UserRole.ATTENDANT


# ============================================================================
# BOOKING DTOs
# ============================================================================

class CreateBookingRequest(BaseDTO):
    """Self-service reservation request"""
    slot_id: str = Field(min_length=1)
    plate_number: str
    duration_hours: int = Field(gt=0, description="Reserved hours")
    start_date_time: Optional[datetime] = Field(
        default=None, description="Requested arrival; the window opens one lead-in earlier"
    )

    @field_validator('plate_number')
    @classmethod
    def validate_plate(cls, v: str) -> str:
        return _normalise_plate(v)


class AttendantBookingRequest(CreateBookingRequest):
    """Walk-in reservation created at the counter"""
    phone_number: str = Field(min_length=4, max_length=32)

    @field_validator('phone_number')
    @classmethod
    def validate_phone(cls, v: str) -> str:
        digits = v.replace('+', '', 1).replace(' ', '')
        if not digits.isdigit():
            raise ValueError("Phone number must contain digits only")
        return v.replace(' ', '')


class ExtendBookingRequest(BaseDTO):
    booking_id: str = Field(min_length=1)
    extra_hours: int


class UpdateBookingStatusRequest(BaseDTO):
    booking_id: str = Field(min_length=1)
    status: BookingStatus


class BookingSummaryDTO(BaseDTO):
    """An original booking with its extension chain folded in"""
    id: str
    slot_id: str
    plate_number: str
    start_time: datetime
    end_time: datetime
    effective_end_time: datetime
    total_price: Decimal
    booking_status: str
    payment_status: str
    display_status: str
    extension_ids: List[str] = Field(default_factory=list)


# ============================================================================
# OVERSTAY / VALIDATION DTOs
# ============================================================================

class VehicleValidationResult(BaseDTO):
    valid: bool
    is_overstayed: bool
    message: str
    booking: Optional[Dict[str, Any]] = None
    overstay_details: Optional[Dict[str, Any]] = None


class OverstayPaymentRequest(BaseDTO):
    booking_id: str = Field(min_length=1)
    payment_method: PaymentMethod
    notes: Optional[str] = Field(default=None, max_length=500)


# ============================================================================
# PAYMENT DTOs
# ============================================================================

class InitiatePaymentRequest(BaseDTO):
    """Online payment of a booking's total price"""
    booking_id: str = Field(min_length=1)
    payment_method: PaymentMethod

    @field_validator('payment_method', mode='before')
    @classmethod
    def lower_method(cls, v: Any) -> Any:
        return v.lower() if isinstance(v, str) else v


class ManualPaymentRequest(BaseDTO):
    """Counter payment collected by an attendant"""
    plate_number: str
    amount: Decimal = Field(gt=0)
    payment_method: PaymentMethod
    notes: Optional[str] = Field(default=None, max_length=500)

    @field_validator('plate_number')
    @classmethod
    def validate_plate(cls, v: str) -> str:
        return _normalise_plate(v)

    @field_validator('amount')
    @classmethod
    def validate_amount(cls, v: Decimal) -> Decimal:
        """Validate amount precision"""
        if v.as_tuple().exponent < -2:
            raise ValueError("Amount cannot have more than 2 decimal places")
        return v
