# File: src/parkbook/domain/billing.py
"""
Billing domain services

OverstayCalculator prices the time a vehicle stays past the effective end
of its reservation. It is a stateless domain service: callers resolve the
effective end time and the hourly rate, the calculator only applies the
rules:

1. No overstay while now <= end
2. Overstay minutes are floored; the displayed hours are rounded up
3. The first GRACE_PERIOD_MINUTES are free
4. Every started billable hour is charged at the slot's hourly rate

ReferenceGenerator issues transaction ids and receipt numbers for
payment records.
"""

from dataclasses import dataclass, field
from typing import Optional, Dict, Any
from datetime import datetime
from decimal import Decimal
import secrets
import string

from .clock import ensure_utc

GRACE_PERIOD_MINUTES = 15
DEFAULT_HOURLY_RATE = Decimal('10')


def _ceil_div(numerator: int, denominator: int) -> int:
    return -(-numerator // denominator)


@dataclass(frozen=True)
class OverstayResult:
    """
    Value Object: Overstay pricing for one booking at one instant
    Derived on demand, never persisted
    """
    is_overstayed: bool
    effective_end_time: datetime
    overstay_minutes: int = 0
    overstay_hours: int = 0
    grace_period_minutes: int = GRACE_PERIOD_MINUTES
    billable_minutes: int = 0
    billable_hours: int = 0
    hourly_rate: Decimal = DEFAULT_HOURLY_RATE
    additional_cost: Decimal = Decimal('0')
    booking: Dict[str, Any] = field(default_factory=dict)

    @property
    def requires_payment(self) -> bool:
        return self.is_overstayed and self.additional_cost > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_overstayed": self.is_overstayed,
            "effective_end_time": self.effective_end_time.isoformat(),
            "overstay_minutes": self.overstay_minutes,
            "overstay_hours": self.overstay_hours,
            "grace_period_minutes": self.grace_period_minutes,
            "billable_minutes": self.billable_minutes,
            "billable_hours": self.billable_hours,
            "hourly_rate": str(self.hourly_rate),
            "additional_cost": str(self.additional_cost),
            "booking": dict(self.booking)
        }


class OverstayCalculator:
    """
    Domain Service: Applies the grace period and hourly rounding rules
    """

    def __init__(
        self,
        grace_period_minutes: int = GRACE_PERIOD_MINUTES,
        default_hourly_rate: Decimal = DEFAULT_HOURLY_RATE
    ):
        if grace_period_minutes < 0:
            raise ValueError("Grace period cannot be negative")
        self.grace_period_minutes = grace_period_minutes
        self.default_hourly_rate = Decimal(str(default_hourly_rate))

    def calculate(
        self,
        end_time: datetime,
        now: datetime,
        hourly_rate: Optional[Decimal] = None,
        booking: Optional[Dict[str, Any]] = None
    ) -> OverstayResult:
        """
        Price the overstay between end_time and now

        hourly_rate falls back to the default rate when the slot has none.
        """
        end_time = ensure_utc(end_time)
        now = ensure_utc(now)
        rate = Decimal(str(hourly_rate)) if hourly_rate else self.default_hourly_rate
        snapshot = dict(booking or {})

        if now <= end_time:
            return OverstayResult(
                is_overstayed=False,
                effective_end_time=end_time,
                grace_period_minutes=self.grace_period_minutes,
                hourly_rate=rate,
                booking=snapshot
            )

        overstay_minutes = int((now - end_time).total_seconds() // 60)
        overstay_hours = _ceil_div(overstay_minutes, 60)
        billable_minutes = max(0, overstay_minutes - self.grace_period_minutes)
        billable_hours = _ceil_div(billable_minutes, 60)

        return OverstayResult(
            is_overstayed=True,
            effective_end_time=end_time,
            overstay_minutes=overstay_minutes,
            overstay_hours=overstay_hours,
            grace_period_minutes=self.grace_period_minutes,
            billable_minutes=billable_minutes,
            billable_hours=billable_hours,
            hourly_rate=rate,
            additional_cost=rate * billable_hours,
            booking=snapshot
        )


class ReferenceGenerator:
    """
    Issues payment references of the form PREFIX-<epoch millis>-<random suffix>
    Uniqueness of receipt numbers is enforced by the store, not by this class
    """

    _ALPHABET = string.ascii_uppercase + string.digits

    def _suffix(self, length: int) -> str:
        return ''.join(secrets.choice(self._ALPHABET) for _ in range(length))

    def transaction_id(self, prefix: str, now: datetime) -> str:
        millis = int(ensure_utc(now).timestamp() * 1000)
        return f"{prefix}-{millis}-{self._suffix(9)}"

    def receipt_number(self, now: datetime) -> str:
        millis = int(ensure_utc(now).timestamp() * 1000)
        return f"RCP-{millis}-{self._suffix(6)}"
