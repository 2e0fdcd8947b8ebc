# File: src/parkbook/application/overstay_service.py
"""
Overstay Application Service

Wraps the pure OverstayCalculator with store access:
1. compute_overstay - chain-aware effective end, slot rate with fallback
2. list_overstayed_vehicles - the location's chains that owe money, oldest first
3. validate_vehicle - on-the-ground check of a plate at a location
4. create_overstay_payment - records what an attendant collected

Nothing here changes slot status: a slot whose booking has overstayed stays
occupied until an attendant ends the session.
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional
import logging

from ..config import ReservationSettings
from ..domain.billing import OverstayCalculator, OverstayResult, ReferenceGenerator
from ..domain.clock import Clock, SystemClock, ensure_utc
from ..domain.models import (
    BookingStatus, LicensePlate, Payment, PaymentMethod, PaymentRecordStatus,
    OVERSTAY_PAYMENT_METHODS
)
from ..infrastructure.repositories import (
    BookingQuery, DuplicateRecordError, IntervalStore, UnitOfWork
)
from .booking_service import (
    BookingChain, get_booking_or_404, get_slot_or_404, load_chain, require_attendant_at
)
from .dtos import OverstayPaymentRequest, Principal, VehicleValidationResult
from .exceptions import BookingConflictError, BookingValidationError, DuplicatePaymentError

RECEIPT_ATTEMPTS = 3


class OverstayService:

    def __init__(
        self,
        store: IntervalStore,
        clock: Optional[Clock] = None,
        settings: Optional[ReservationSettings] = None,
        calculator: Optional[OverstayCalculator] = None,
        references: Optional[ReferenceGenerator] = None
    ):
        self.store = store
        self.clock = clock or SystemClock()
        self.settings = settings or ReservationSettings()
        self.calculator = calculator or OverstayCalculator(
            grace_period_minutes=self.settings.grace_period_minutes,
            default_hourly_rate=self.settings.default_hourly_rate
        )
        self.references = references or ReferenceGenerator()
        self.logger = logging.getLogger(self.__class__.__name__)

    def compute_overstay(self, booking_id: str, now: Optional[datetime] = None) -> OverstayResult:
        now = ensure_utc(now) if now else self.clock.now()
        with self.store.unit_of_work() as uow:
            chain = load_chain(uow, get_booking_or_404(uow, booking_id))
            return self._price_chain(uow, chain, now)

    def list_overstayed_vehicles(self, location_id: str, now: Optional[datetime] = None) -> List[OverstayResult]:
        """Active chains at the location that owe an overstay charge"""
        now = ensure_utc(now) if now else self.clock.now()
        results = []

        with self.store.unit_of_work() as uow:
            originals = uow.bookings.find(
                BookingQuery()
                .at_location(location_id)
                .with_status(BookingStatus.ACTIVE)
                .only_originals()
                .where_start('<', now)
            )
            for original in originals:
                chain = load_chain(uow, original)
                if chain.effective_end_time >= now:
                    continue
                result = self._price_chain(uow, chain, now)
                if result.requires_payment:
                    results.append(result)

        results.sort(key=lambda r: r.effective_end_time)
        return results

    def validate_vehicle(self, plate_number: str, location_id: str,
                         now: Optional[datetime] = None) -> VehicleValidationResult:
        """Find the plate's active reservation at the location and judge it against now"""
        try:
            plate = str(LicensePlate(plate_number))
        except ValueError as e:
            raise BookingValidationError(str(e), details={"plate_number": plate_number}) from e
        now = ensure_utc(now) if now else self.clock.now()

        with self.store.unit_of_work() as uow:
            original = uow.bookings.first(
                BookingQuery()
                .with_plate(plate)
                .at_location(location_id)
                .with_status(BookingStatus.ACTIVE)
                .only_originals()
                .ordered_by('start_time', descending=True)
            )
            if original is None:
                return VehicleValidationResult(
                    valid=False,
                    is_overstayed=False,
                    message="No active booking found for this vehicle"
                )

            chain = load_chain(uow, original)
            snapshot = self._snapshot(chain)
            if now < original.start_time:
                return VehicleValidationResult(
                    valid=False, is_overstayed=False,
                    message="Booking not yet active", booking=snapshot
                )
            if now <= chain.effective_end_time:
                return VehicleValidationResult(
                    valid=True, is_overstayed=False,
                    message="Vehicle has valid parking", booking=snapshot
                )

            result = self._price_chain(uow, chain, now)

        message = ("Vehicle has overstayed - payment required" if result.requires_payment
                   else "Vehicle has overstayed - within grace period")
        return VehicleValidationResult(
            valid=False,
            is_overstayed=True,
            message=message,
            booking=snapshot,
            overstay_details=result.to_dict()
        )

    def create_overstay_payment(self, principal: Principal, request: OverstayPaymentRequest) -> Payment:
        """
        Record an overstay charge collected for a booking.

        Counter methods (cash, POS, manual) are completed at once; Telebirr
        stays pending until verified. Manual settlement also marks the
        booking paid.
        """
        require_attendant_at(principal)
        method = request.payment_method
        if method not in OVERSTAY_PAYMENT_METHODS:
            raise BookingValidationError(
                f"Invalid payment method for overstay: {method.value}",
                details={"allowed": [m.value for m in OVERSTAY_PAYMENT_METHODS]}
            )
        now = self.clock.now()

        for attempt in range(1, RECEIPT_ATTEMPTS + 1):
            try:
                return self._record_overstay_payment(principal, request, now)
            except DuplicateRecordError:
                self.logger.warning(f"Receipt number collision, regenerating (attempt {attempt})")
        raise BookingConflictError("Could not allocate a unique receipt number, please retry")

    def _record_overstay_payment(self, principal: Principal, request: OverstayPaymentRequest,
                                 now: datetime) -> Payment:
        method = request.payment_method
        with self.store.unit_of_work() as uow:
            booking = get_booking_or_404(uow, request.booking_id)
            uow.lock_slot(booking.slot_id)
            chain = load_chain(uow, get_booking_or_404(uow, request.booking_id))
            slot = get_slot_or_404(uow, chain.original.slot_id)
            require_attendant_at(principal, slot.location_id)

            result = self._price_chain(uow, chain, now)
            if not result.requires_payment:
                raise BookingConflictError(
                    "No overstay payment required",
                    details={"booking_id": request.booking_id, "overstay_minutes": result.overstay_minutes}
                )

            original = chain.original
            collected = self._collected_overstay(uow, original.id)
            outstanding = result.additional_cost - collected
            if outstanding <= 0:
                raise DuplicatePaymentError(
                    "Overstay already paid for this booking",
                    details={"booking_id": original.id, "collected": str(collected)}
                )

            customer = uow.customers.get(original.customer_id)
            payment = Payment(
                amount=outstanding,
                payment_method=method,
                transaction_id=self.references.transaction_id("OVERSTAY", now),
                currency=self.settings.currency,
                status=(PaymentRecordStatus.COMPLETED if method.is_collected_on_site
                        else PaymentRecordStatus.PENDING),
                booking_id=original.id,
                receipt_number=self.references.receipt_number(now),
                is_overstay_payment=True,
                overstay_minutes=result.overstay_minutes,
                attendant_id=principal.user_id,
                location_id=slot.location_id,
                plate_number=original.plate_number,
                description=request.notes or (
                    f"Overstay payment for {result.overstay_hours} hour(s) - Vehicle: {original.plate_number}"
                ),
                metadata={
                    "booking_id": original.id,
                    "slot_id": slot.id,
                    "overstay_minutes": result.overstay_minutes,
                    "overstay_hours": result.overstay_hours,
                    "hourly_rate": str(result.hourly_rate),
                    "overstay_cost": str(result.additional_cost),
                    "previously_collected": str(collected),
                    "grace_period_minutes": result.grace_period_minutes,
                    "customer_phone": customer.phone_number if customer else None,
                    "customer_name": customer.display_name if customer else None
                },
                created_at=now
            )
            if uow.payments.receipt_exists(payment.receipt_number):
                raise DuplicateRecordError(f"Receipt {payment.receipt_number} already issued")
            uow.payments.add(payment)

            if method == PaymentMethod.MANUAL:
                original.mark_paid()
                uow.bookings.update(original)

        self.logger.info(
            f"Overstay payment {payment.receipt_number} of {payment.amount} {payment.currency} "
            f"recorded for {payment.plate_number} ({payment.status.value})"
        )
        return payment

    @staticmethod
    def _collected_overstay(uow: UnitOfWork, booking_id: str) -> Decimal:
        """Overstay charges already recorded for the chain; failed payments do not count"""
        return sum(
            (p.amount for p in uow.payments.find_by_booking(booking_id)
             if p.is_overstay_payment and p.status != PaymentRecordStatus.FAILED),
            Decimal('0')
        )

    def _price_chain(self, uow: UnitOfWork, chain: BookingChain, now: datetime) -> OverstayResult:
        slot = get_slot_or_404(uow, chain.original.slot_id)
        return self.calculator.calculate(
            end_time=chain.effective_end_time,
            now=now,
            hourly_rate=slot.hourly_rate,
            booking=self._snapshot(chain, slot.number)
        )

    @staticmethod
    def _snapshot(chain: BookingChain, slot_number: Optional[int] = None) -> dict:
        snapshot = chain.original.to_dict()
        snapshot["effective_end_time"] = chain.effective_end_time.isoformat()
        snapshot["extension_ids"] = [b.id for b in chain.extensions]
        if slot_number is not None:
            snapshot["slot_number"] = slot_number
        return snapshot
