# File: src/parkbook/domain/models.py
"""
Domain Models for the ParkBook reservation engine
Entities own their invariants and the state transitions allowed on them

This module contains:
1. Value Objects: Immutable objects with no identity (LicensePlate, TimeRange)
2. Enums: Slot, booking and payment states, payment methods and roles
3. Entities: Slot, Customer, Booking and Payment with identity and lifecycle
"""

from dataclasses import dataclass
from typing import Optional, Dict, Any
from datetime import datetime, timedelta
from decimal import Decimal
import re
import uuid
from enum import Enum

from .clock import ensure_utc


# ============================================================================
# DOMAIN PRIMITIVES / VALUE OBJECTS
# ============================================================================

@dataclass(frozen=True)  # Value objects are immutable
class LicensePlate:
    """
    Value Object: License plate number with validation
    Plates are stored upper-case so lookups are case-insensitive
    """
    value: str

    def __post_init__(self):
        """Validate license plate after initialization"""
        if not self.value or not self.value.strip():
            raise ValueError("License plate cannot be empty")

        object.__setattr__(self, 'value', self.value.strip().upper())

        if len(self.value) < 2 or len(self.value) > 15:
            raise ValueError(f"License plate must be 2-15 characters, got: {self.value}")

        if not re.match(r'^[A-Z0-9\s\-]+$', self.value):
            raise ValueError(f"License plate can only contain letters, numbers, spaces, and hyphens: {self.value}")

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class TimeRange:
    """
    Value Object: Half-open time interval [start_time, end_time)
    Provides duration calculation and the two overlap predicates used
    by slot availability checks
    """
    start_time: datetime
    end_time: datetime

    def __post_init__(self):
        """Validate time range"""
        object.__setattr__(self, 'start_time', ensure_utc(self.start_time))
        object.__setattr__(self, 'end_time', ensure_utc(self.end_time))
        if self.end_time <= self.start_time:
            raise ValueError("End time must be after start time")

    @classmethod
    def starting_at(cls, start_time: datetime, hours: int) -> 'TimeRange':
        """Build a range of a whole number of hours from start_time"""
        return cls(start_time, start_time + timedelta(hours=hours))

    @property
    def duration(self) -> timedelta:
        """Calculate duration of time range"""
        return self.end_time - self.start_time

    @property
    def duration_hours(self) -> float:
        """Get duration in hours"""
        return self.duration.total_seconds() / 3600

    def overlaps(self, other: 'TimeRange') -> bool:
        """Canonical half-open overlap test; ranges that only touch do not overlap"""
        return (self.start_time < other.end_time and
                other.start_time < self.end_time)

    def overlaps_at_boundaries(self, requested: 'TimeRange') -> bool:
        """
        Boundary-anchored overlap test used by the legacy booking flow.
        Flags this range when it covers the requested start or the requested end.
        A requested range that strictly contains this one is NOT flagged.
        """
        covers_start = (self.start_time <= requested.start_time and
                        self.end_time > requested.start_time)
        covers_end = (self.start_time < requested.end_time and
                      self.end_time >= requested.end_time)
        return covers_start or covers_end

    def __str__(self) -> str:
        start_str = self.start_time.strftime("%Y-%m-%d %H:%M")
        end_str = self.end_time.strftime("%Y-%m-%d %H:%M")
        return f"{start_str} to {end_str} ({self.duration_hours:.1f} hours)"


# ============================================================================
# ENUMS FOR DOMAIN TYPES
# ============================================================================

class SlotStatus(str, Enum):
    """Coarse status of a physical parking slot"""
    AVAILABLE = "available"
    OCCUPIED = "occupied"
    RESERVED = "reserved"
    MAINTENANCE = "maintenance"


class BookingStatus(str, Enum):
    """Lifecycle of a booking"""
    PENDING = "pending"        # Created, awaiting payment
    ACTIVE = "active"          # Paid (or attendant-created), slot held
    COMPLETED = "completed"    # Session ended explicitly
    CANCELLED = "cancelled"    # Never used

    @property
    def holds_slot(self) -> bool:
        """Pending and active bookings block the slot for their interval"""
        return self in (BookingStatus.PENDING, BookingStatus.ACTIVE)


class PaymentStatus(str, Enum):
    """Payment state as tracked on the booking"""
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentRecordStatus(str, Enum):
    """State of a persisted payment record"""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class PaymentMethod(str, Enum):
    """Supported payment channels"""
    TELEBIRR = "telebirr"
    CBE_BIRR = "cbe-birr"
    CASH = "cash"
    POS = "pos"
    MANUAL = "manual"

    @property
    def is_collected_on_site(self) -> bool:
        """Cash, POS and manual payments are settled at the counter"""
        return self in (PaymentMethod.CASH, PaymentMethod.POS, PaymentMethod.MANUAL)


ONLINE_PAYMENT_METHODS = (PaymentMethod.TELEBIRR, PaymentMethod.CBE_BIRR)
OVERSTAY_PAYMENT_METHODS = (PaymentMethod.CASH, PaymentMethod.POS,
                            PaymentMethod.MANUAL, PaymentMethod.TELEBIRR)
ATTENDANT_PAYMENT_METHODS = (PaymentMethod.CASH, PaymentMethod.POS, PaymentMethod.TELEBIRR)


class UserRole(str, Enum):
    """Roles resolved by the identity collaborator"""
    CUSTOMER = "customer"
    ATTENDANT = "attendant"


# ============================================================================
# DOMAIN ENTITIES
# ============================================================================

class Entity:
    """
    Base class for all domain entities
    Provides common functionality for entities with identity
    """

    def __init__(self, id: Optional[str] = None):
        self._id = id or str(uuid.uuid4())

    @property
    def id(self) -> str:
        """Get entity ID"""
        return self._id

    def __eq__(self, other: object) -> bool:
        """Entities are equal if they have the same ID and type"""
        if not isinstance(other, Entity):
            return False
        return self.id == other.id and type(self) == type(other)

    def __hash__(self) -> int:
        return hash((self.id, type(self).__name__))

    def __repr__(self) -> str:
        return f"{type(self).__name__}(id={self.id})"


class Slot(Entity):
    """
    Entity: One physical, bookable parking space belonging to a location
    Status changes only through occupy()/release() or administrative edits
    """

    def __init__(
        self,
        location_id: str,
        number: int,
        hourly_rate: Optional[Decimal] = None,
        status: SlotStatus = SlotStatus.AVAILABLE,
        id: Optional[str] = None
    ):
        super().__init__(id)
        self.location_id = location_id
        self.number = number
        self.hourly_rate = Decimal(str(hourly_rate)) if hourly_rate is not None else None
        self.status = SlotStatus(status)

        self._validate()

    def _validate(self) -> None:
        if not self.location_id:
            raise ValueError("Slot must belong to a location")
        if self.number <= 0:
            raise ValueError("Slot number must be positive")
        if self.hourly_rate is not None and self.hourly_rate < 0:
            raise ValueError("Hourly rate cannot be negative")

    @property
    def is_under_maintenance(self) -> bool:
        return self.status == SlotStatus.MAINTENANCE

    def occupy(self) -> bool:
        """Mark the slot occupied. Returns True if the status changed."""
        if self.status == SlotStatus.OCCUPIED:
            return False
        self.status = SlotStatus.OCCUPIED
        return True

    def release(self) -> bool:
        """Mark the slot available. Returns True if the status changed."""
        if self.status == SlotStatus.AVAILABLE:
            return False
        self.status = SlotStatus.AVAILABLE
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "location_id": self.location_id,
            "number": self.number,
            "hourly_rate": str(self.hourly_rate) if self.hourly_rate is not None else None,
            "status": self.status.value
        }

    def __str__(self) -> str:
        return f"Slot {self.number} @ {self.location_id} - {self.status.value}"


class Customer(Entity):
    """Entity: A customer profile, possibly a placeholder created at the counter"""

    def __init__(
        self,
        phone_number: str,
        username: Optional[str] = None,
        email: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        is_placeholder: bool = False,
        id: Optional[str] = None
    ):
        super().__init__(id)
        if not phone_number:
            raise ValueError("Customer phone number is required")
        self.phone_number = phone_number
        self.username = username or f"user_{phone_number}"
        self.email = email
        self.first_name = first_name
        self.last_name = last_name
        self.is_placeholder = is_placeholder

    @classmethod
    def placeholder(cls, phone_number: str) -> 'Customer':
        """Profile provisioned for a walk-in customer known only by phone"""
        return cls(
            phone_number=phone_number,
            username=f"user_{phone_number}",
            email=f"{phone_number}@temp.com",
            is_placeholder=True
        )

    @property
    def display_name(self) -> str:
        name = f"{self.first_name or ''} {self.last_name or ''}".strip()
        return name or self.username

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "phone_number": self.phone_number,
            "username": self.username,
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "is_placeholder": self.is_placeholder
        }


class Booking(Entity):
    """
    Entity: Reservation of one slot for a half-open interval
    A booking with original_booking_id set is an extension of that original
    """

    def __init__(
        self,
        slot_id: str,
        customer_id: str,
        plate_number: str,
        duration_hours: int,
        start_time: datetime,
        end_time: datetime,
        total_price: Decimal,
        booking_status: BookingStatus = BookingStatus.PENDING,
        payment_status: PaymentStatus = PaymentStatus.PENDING,
        original_booking_id: Optional[str] = None,
        attendant_id: Optional[str] = None,
        created_at: Optional[datetime] = None,
        id: Optional[str] = None
    ):
        super().__init__(id)
        self.slot_id = slot_id
        self.customer_id = customer_id
        self.plate_number = str(LicensePlate(plate_number))
        self.duration_hours = duration_hours
        self.start_time = ensure_utc(start_time)
        self.end_time = ensure_utc(end_time)
        self.total_price = Decimal(str(total_price))
        self.booking_status = BookingStatus(booking_status)
        self.payment_status = PaymentStatus(payment_status)
        self.original_booking_id = original_booking_id
        self.attendant_id = attendant_id
        self.created_at = ensure_utc(created_at) if created_at else None

        self._validate()

    def _validate(self) -> None:
        if self.end_time <= self.start_time:
            raise ValueError("Booking end time must be after start time")
        if self.duration_hours <= 0:
            raise ValueError("Booking duration must be positive")
        if self.total_price < 0:
            raise ValueError("Booking price cannot be negative")

    @property
    def interval(self) -> TimeRange:
        return TimeRange(self.start_time, self.end_time)

    @property
    def is_extension(self) -> bool:
        return self.original_booking_id is not None

    def activate(self) -> None:
        """Payment confirmed: pending -> active"""
        if self.booking_status not in (BookingStatus.PENDING, BookingStatus.ACTIVE):
            raise ValueError(f"Cannot activate a {self.booking_status.value} booking")
        self.booking_status = BookingStatus.ACTIVE

    def mark_paid(self) -> None:
        self.payment_status = PaymentStatus.PAID

    def complete(self, actual_end: Optional[datetime] = None) -> None:
        """
        Explicit session end: active -> completed
        actual_end replaces end_time when it falls after start_time
        """
        if self.booking_status != BookingStatus.ACTIVE:
            raise ValueError(f"Cannot complete a {self.booking_status.value} booking")
        if actual_end is not None:
            actual_end = ensure_utc(actual_end)
            if actual_end > self.start_time:
                self.end_time = actual_end
        self.booking_status = BookingStatus.COMPLETED

    def cancel(self) -> None:
        self.booking_status = BookingStatus.CANCELLED

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            "id": self.id,
            "slot_id": self.slot_id,
            "customer_id": self.customer_id,
            "plate_number": self.plate_number,
            "duration_hours": self.duration_hours,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "total_price": str(self.total_price),
            "booking_status": self.booking_status.value,
            "payment_status": self.payment_status.value,
            "original_booking_id": self.original_booking_id,
            "attendant_id": self.attendant_id,
            "created_at": self.created_at.isoformat() if self.created_at else None
        }

    def __str__(self) -> str:
        return f"Booking {self.id} [{self.plate_number}] {self.interval} - {self.booking_status.value}"


class Payment(Entity):
    """
    Entity: A payment record kept for a booking or a counter transaction
    Provider interaction happens outside the domain; only the outcome is stored
    """

    def __init__(
        self,
        amount: Decimal,
        payment_method: PaymentMethod,
        transaction_id: str,
        currency: str = "ETB",
        status: PaymentRecordStatus = PaymentRecordStatus.PENDING,
        booking_id: Optional[str] = None,
        receipt_number: Optional[str] = None,
        is_overstay_payment: bool = False,
        overstay_minutes: Optional[int] = None,
        attendant_id: Optional[str] = None,
        location_id: Optional[str] = None,
        plate_number: Optional[str] = None,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        provider_response: Optional[Dict[str, Any]] = None,
        created_at: Optional[datetime] = None,
        id: Optional[str] = None
    ):
        super().__init__(id)
        self.amount = Decimal(str(amount))
        self.payment_method = PaymentMethod(payment_method)
        self.transaction_id = transaction_id
        self.currency = currency
        self.status = PaymentRecordStatus(status)
        self.booking_id = booking_id
        self.receipt_number = receipt_number
        self.is_overstay_payment = is_overstay_payment
        self.overstay_minutes = overstay_minutes
        self.attendant_id = attendant_id
        self.location_id = location_id
        self.plate_number = plate_number
        self.description = description
        self.metadata = metadata or {}
        self.provider_response = provider_response
        self.created_at = ensure_utc(created_at) if created_at else None

        if self.amount <= 0:
            raise ValueError("Payment amount must be positive")
        if len(self.currency) != 3:
            raise ValueError(f"Currency must be 3-letter code: {self.currency}")

    @property
    def is_completed(self) -> bool:
        return self.status == PaymentRecordStatus.COMPLETED

    def complete(self, provider_response: Optional[Dict[str, Any]] = None) -> None:
        self.status = PaymentRecordStatus.COMPLETED
        if provider_response is not None:
            self.provider_response = provider_response

    def fail(self, provider_response: Optional[Dict[str, Any]] = None) -> None:
        self.status = PaymentRecordStatus.FAILED
        if provider_response is not None:
            self.provider_response = provider_response

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "booking_id": self.booking_id,
            "amount": str(self.amount),
            "currency": self.currency,
            "status": self.status.value,
            "payment_method": self.payment_method.value,
            "transaction_id": self.transaction_id,
            "receipt_number": self.receipt_number,
            "is_overstay_payment": self.is_overstay_payment,
            "overstay_minutes": self.overstay_minutes,
            "attendant_id": self.attendant_id,
            "location_id": self.location_id,
            "plate_number": self.plate_number,
            "description": self.description,
            "metadata": dict(self.metadata),
            "created_at": self.created_at.isoformat() if self.created_at else None
        }
