# File: src/parkbook/application/payment_service.py
"""
Payment settlement

Online payments run in two steps: initiate() stores a pending payment and
returns the provider's redirect URL, verify() asks the provider for the
outcome and, on success, confirms the booking. Verification is idempotent:
a payment that is already completed is returned unchanged.

Attendants can also record counter payments that are not tied to a
booking, and list the recent payments taken at their location.
"""

from dataclasses import dataclass
from typing import List, Optional
import logging

from ..config import ReservationSettings
from ..domain.billing import ReferenceGenerator
from ..domain.clock import Clock, SystemClock
from ..domain.models import (
    Payment, PaymentRecordStatus, PaymentStatus,
    ATTENDANT_PAYMENT_METHODS, ONLINE_PAYMENT_METHODS
)
from ..infrastructure.messaging import EventType
from ..infrastructure.payments import (
    PaymentGatewayError, PaymentProviderRegistry, PaymentVerification
)
from ..infrastructure.repositories import IntervalStore
from .booking_service import (
    BookingLifecycleManager, get_booking_or_404, get_slot_or_404, require_attendant_at
)
from .dtos import InitiatePaymentRequest, ManualPaymentRequest, Principal
from .exceptions import (
    AccessDeniedError, BookingValidationError, DuplicatePaymentError,
    PaymentProviderError, ResourceNotFoundError
)

RECENT_PAYMENTS_LIMIT = 50


@dataclass(frozen=True)
class PaymentSession:
    payment: Payment
    payment_url: str


class PaymentService:

    def __init__(
        self,
        store: IntervalStore,
        providers: PaymentProviderRegistry,
        lifecycle: BookingLifecycleManager,
        clock: Optional[Clock] = None,
        settings: Optional[ReservationSettings] = None,
        references: Optional[ReferenceGenerator] = None
    ):
        self.store = store
        self.providers = providers
        self.lifecycle = lifecycle
        self.clock = clock or SystemClock()
        self.settings = settings or ReservationSettings()
        self.references = references or ReferenceGenerator()
        self.logger = logging.getLogger(self.__class__.__name__)

    def initiate_payment(self, principal: Principal, request: InitiatePaymentRequest) -> PaymentSession:
        """Create the booking's single pending payment and hand it to the provider"""
        method = request.payment_method
        if method not in ONLINE_PAYMENT_METHODS:
            raise BookingValidationError("Invalid payment method", details={"payment_method": method.value})
        provider = self.providers.get(method)
        if provider is None:
            raise PaymentProviderError(f"Payment provider not available: {method.value}")
        now = self.clock.now()

        with self.store.unit_of_work() as uow:
            booking = get_booking_or_404(uow, request.booking_id)
            uow.lock_slot(booking.slot_id)
            booking = get_booking_or_404(uow, request.booking_id)
            if booking.customer_id != principal.user_id:
                raise AccessDeniedError("Unauthorized to pay for this booking")

            existing = [p for p in uow.payments.find_by_booking(booking.id) if not p.is_overstay_payment]
            if existing:
                raise DuplicatePaymentError(
                    "Payment already exists for this booking",
                    details={"payment_id": existing[0].id}
                )

            slot = get_slot_or_404(uow, booking.slot_id)
            payment = Payment(
                amount=booking.total_price,
                payment_method=method,
                transaction_id=self.references.transaction_id("PAY", now),
                currency=self.settings.currency,
                status=PaymentRecordStatus.PENDING,
                booking_id=booking.id,
                location_id=slot.location_id,
                plate_number=booking.plate_number,
                metadata={"booking_id": booking.id, "slot_id": slot.id},
                created_at=now
            )
            uow.payments.add(payment)

        # The pending record stays even when the provider call fails
        try:
            initiation = provider.initiate_payment(payment)
        except PaymentGatewayError as e:
            self.logger.error(f"Payment initiation failed for {payment.transaction_id}: {e}")
            raise PaymentProviderError(
                "Payment provider failed to initiate the payment, please retry",
                details={"payment_id": payment.id}
            ) from e

        self.logger.info(f"Payment {payment.transaction_id} initiated via {method.value}")
        return PaymentSession(payment=payment, payment_url=initiation.payment_url)

    def verify_payment(self, reference: str) -> Payment:
        """
        Ask the provider for the outcome and settle the booking on success.

        The reference is the provider transaction id the payment was
        initiated with; the payment's own id is accepted as well.
        """
        with self.store.unit_of_work() as uow:
            payment = self._find_payment(uow, reference)
        if payment.is_completed:
            self.logger.debug(f"Payment {payment.transaction_id} already completed")
            return payment

        provider = self.providers.get(payment.payment_method)
        if provider is None:
            raise PaymentProviderError(f"Payment provider not available: {payment.payment_method.value}")
        try:
            verification = provider.verify_payment(payment.transaction_id)
        except PaymentGatewayError as e:
            self.logger.error(f"Payment verification failed for {payment.transaction_id}: {e}")
            raise PaymentProviderError(
                "Payment provider did not answer, please retry verification",
                details={"transaction_id": payment.transaction_id}
            ) from e

        return self._apply_verification(payment.id, verification)

    def _apply_verification(self, payment_id: str, verification: PaymentVerification) -> Payment:
        location_id = None
        booking = None

        with self.store.unit_of_work() as uow:
            payment = self._get_payment(uow, payment_id)
            if payment.booking_id:
                booking = get_booking_or_404(uow, payment.booking_id)
                uow.lock_slot(booking.slot_id)
                payment = self._get_payment(uow, payment_id)
                booking = get_booking_or_404(uow, payment.booking_id)

            # A concurrent verification may have settled it already
            if payment.is_completed:
                return payment

            if verification.is_successful:
                payment.complete(verification.raw_response)
                uow.payments.update(payment)
                if booking is not None and self.lifecycle.confirm_payment(uow, booking):
                    location_id = get_slot_or_404(uow, booking.slot_id).location_id
            elif verification.is_failed:
                payment.fail(verification.raw_response)
                uow.payments.update(payment)
                if booking is not None and not payment.is_overstay_payment:
                    booking.payment_status = PaymentStatus.FAILED
                    uow.bookings.update(booking)
            else:
                self.logger.info(f"Payment {payment_id} still {verification.status}")
                return payment

        self.logger.info(f"Payment {payment_id} verified: {payment.status.value}")
        if location_id is not None:
            self.lifecycle.publish_event(EventType.BOOKING_STATUS_UPDATED, booking, location_id)
        return payment

    def create_attendant_payment(self, principal: Principal, request: ManualPaymentRequest) -> Payment:
        """Counter payment, completed immediately and attributed to the attendant's location"""
        require_attendant_at(principal)
        if not principal.location_id:
            raise BookingValidationError("Attendant has no assigned location")
        method = request.payment_method
        if method not in ATTENDANT_PAYMENT_METHODS:
            raise BookingValidationError("Invalid payment method", details={"payment_method": method.value})
        now = self.clock.now()

        payment = Payment(
            amount=request.amount,
            payment_method=method,
            transaction_id=self.references.transaction_id("ATTENDANT", now),
            currency=self.settings.currency,
            status=PaymentRecordStatus.COMPLETED,
            attendant_id=principal.user_id,
            location_id=principal.location_id,
            plate_number=request.plate_number,
            description=request.notes or (
                f"{method.value.upper()} payment processed by attendant for vehicle {request.plate_number}"
            ),
            metadata={
                "type": "attendant_manual",
                "plate_number": request.plate_number,
                "processed_by": principal.user_id,
                "timestamp": now.isoformat()
            },
            created_at=now
        )
        with self.store.unit_of_work() as uow:
            uow.payments.add(payment)

        self.logger.info(
            f"Payment of {payment.amount} {payment.currency} processed for vehicle {payment.plate_number}"
        )
        return payment

    def recent_payments(self, principal: Principal, limit: int = RECENT_PAYMENTS_LIMIT) -> List[Payment]:
        require_attendant_at(principal)
        if not principal.location_id:
            raise BookingValidationError("Attendant has no assigned location")
        with self.store.unit_of_work() as uow:
            return uow.payments.find_by_location(principal.location_id, limit)

    def _get_payment(self, uow, payment_id: str) -> Payment:
        payment = uow.payments.get(payment_id)
        if payment is None:
            raise ResourceNotFoundError("Payment not found", details={"payment_id": payment_id})
        return payment

    def _find_payment(self, uow, reference: str) -> Payment:
        payment = uow.payments.find_by_transaction_id(reference) or uow.payments.get(reference)
        if payment is None:
            raise ResourceNotFoundError("Payment not found", details={"reference": reference})
        return payment
