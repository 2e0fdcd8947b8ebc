# File: src/parkbook/application/booking_service.py
"""
Booking Lifecycle Application Service

This module implements the use cases that create and move bookings through
their lifecycle. It orchestrates the availability checker, the slot status
synchronizer and the interval store, and publishes booking events.

Responsibilities:
1. Self-service and attendant (walk-in) booking creation
2. Chained extensions of an active reservation
3. Status transitions: payment confirmation, session end, deletion
4. Chain-aware read models for customers and attendants

Key Principles:
- Every mutating use case runs in one unit of work holding the slot lock,
  so "check availability, then insert" and "find latest link, then append"
  cannot interleave with another writer of the same slot
- Input is validated before the store is touched
- Events are published only after the unit of work has committed
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional, Tuple
import logging

from ..config import ReservationSettings
from ..domain.clock import Clock, SystemClock, ensure_utc
from ..domain.models import (
    Booking, BookingStatus, Customer, PaymentStatus, Slot, TimeRange
)
from ..infrastructure.messaging import BookingEvent, EventBus, EventType
from ..infrastructure.repositories import (
    BookingQuery, DuplicateRecordError, IntervalStore, UnitOfWork
)
from .availability import SlotAvailabilityChecker
from .dtos import (
    AttendantBookingRequest, BookingSummaryDTO, CreateBookingRequest, Principal
)
from .exceptions import (
    AccessDeniedError, BookingConflictError, BookingValidationError,
    ResourceNotFoundError, SlotUnavailableError
)
from .slot_status import SlotStatusSynchronizer


# ============================================================================
# EXTENSION CHAIN
# ============================================================================

@dataclass
class BookingChain:
    """An original booking and its extensions ordered by start_time"""
    original: Booking
    extensions: List[Booking] = field(default_factory=list)

    @property
    def links(self) -> List[Booking]:
        return [self.original] + self.extensions

    @property
    def live_links(self) -> List[Booking]:
        return [b for b in self.links if b.booking_status != BookingStatus.CANCELLED]

    @property
    def latest_link(self) -> Booking:
        return self.live_links[-1] if self.live_links else self.original

    @property
    def effective_end_time(self) -> datetime:
        return self.latest_link.end_time

    @property
    def total_price(self) -> Decimal:
        return sum((b.total_price for b in self.live_links), Decimal('0'))


def load_chain(uow: UnitOfWork, booking: Booking) -> BookingChain:
    """Resolve the chain a booking belongs to, starting from any of its links"""
    original = booking
    if booking.is_extension:
        original = uow.bookings.get(booking.original_booking_id)
        if original is None:
            raise ResourceNotFoundError(
                "Original booking not found", details={"booking_id": booking.original_booking_id}
            )
    extensions = uow.bookings.find(BookingQuery().extensions_of(original.id).ordered_by('start_time'))
    return BookingChain(original=original, extensions=extensions)


def get_booking_or_404(uow: UnitOfWork, booking_id: str) -> Booking:
    booking = uow.bookings.get(booking_id)
    if booking is None:
        raise ResourceNotFoundError("Booking not found", details={"booking_id": booking_id})
    return booking


def get_slot_or_404(uow: UnitOfWork, slot_id: str) -> Slot:
    slot = uow.slots.get(slot_id)
    if slot is None:
        raise ResourceNotFoundError("Slot not found", details={"slot_id": slot_id})
    return slot


def require_attendant_at(principal: Principal, location_id: Optional[str] = None) -> None:
    """Attendant role, and when a location is given, assignment to it"""
    if not principal.is_attendant:
        raise AccessDeniedError("Only attendants can perform this action")
    if location_id is not None and principal.location_id != location_id:
        raise AccessDeniedError("Attendant is not assigned to this location")


# ============================================================================
# BOOKING LIFECYCLE SERVICE
# ============================================================================

class BookingLifecycleManager:
    """
    Application service for booking creation, extension and completion
    """

    def __init__(
        self,
        store: IntervalStore,
        clock: Optional[Clock] = None,
        settings: Optional[ReservationSettings] = None,
        availability: Optional[SlotAvailabilityChecker] = None,
        slot_status: Optional[SlotStatusSynchronizer] = None,
        event_bus: Optional[EventBus] = None
    ):
        self.store = store
        self.clock = clock or SystemClock()
        self.settings = settings or ReservationSettings()
        self.availability = availability or SlotAvailabilityChecker(self.settings.overlap_policy)
        self.slot_status = slot_status or SlotStatusSynchronizer()
        self.event_bus = event_bus
        self.logger = logging.getLogger(self.__class__.__name__)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_booking(self, principal: Principal, request: CreateBookingRequest) -> Booking:
        """Self-service reservation, left pending until payment is confirmed"""
        now = self.clock.now()
        window, billed_hours = self._reservation_window(request, now)

        with self.store.unit_of_work() as uow:
            uow.lock_slot(request.slot_id)
            slot = get_slot_or_404(uow, request.slot_id)
            self._ensure_bookable(uow, slot, window)

            booking = Booking(
                slot_id=slot.id,
                customer_id=principal.user_id,
                plate_number=request.plate_number,
                duration_hours=request.duration_hours,
                start_time=window.start_time,
                end_time=window.end_time,
                total_price=self._hourly_rate(slot) * billed_hours,
                booking_status=BookingStatus.PENDING,
                payment_status=PaymentStatus.PENDING,
                created_at=now
            )
            uow.bookings.add(booking)

        self.logger.info(f"Booking {booking.id} created for slot {slot.number} ({window})")
        self.publish_event(EventType.BOOKING_CREATED, booking, slot.location_id)
        return booking

    def create_attendant_booking(self, principal: Principal, request: AttendantBookingRequest) -> Booking:
        """Walk-in reservation: active and paid at once, slot occupied in the same unit of work"""
        require_attendant_at(principal)
        now = self.clock.now()
        window, billed_hours = self._reservation_window(request, now)

        with self.store.unit_of_work() as uow:
            uow.lock_slot(request.slot_id)
            slot = get_slot_or_404(uow, request.slot_id)
            require_attendant_at(principal, slot.location_id)
            self._ensure_bookable(uow, slot, window)

            customer = self._resolve_customer(uow, request.phone_number)
            booking = Booking(
                slot_id=slot.id,
                customer_id=customer.id,
                plate_number=request.plate_number,
                duration_hours=request.duration_hours,
                start_time=window.start_time,
                end_time=window.end_time,
                total_price=self._hourly_rate(slot) * billed_hours,
                booking_status=BookingStatus.ACTIVE,
                payment_status=PaymentStatus.PAID,
                attendant_id=principal.user_id,
                created_at=now
            )
            uow.bookings.add(booking)
            self.slot_status.occupy(uow, slot.id)

        self.logger.info(
            f"Attendant {principal.user_id} created booking {booking.id} "
            f"for {booking.plate_number} on slot {slot.number}"
        )
        self.publish_event(EventType.BOOKING_CREATED, booking, slot.location_id)
        return booking

    def extend_booking(self, principal: Principal, booking_id: str, extra_hours: int) -> Booking:
        """Append a link to the chain, starting exactly where the latest link ends"""
        minimum = self.settings.min_extension_hours
        maximum = self.settings.max_extension_hours
        if isinstance(extra_hours, bool) or not isinstance(extra_hours, int) \
                or not minimum <= extra_hours <= maximum:
            raise BookingValidationError(
                f"Invalid duration. Must be between {minimum} and {maximum} hours",
                details={"extra_hours": extra_hours}
            )
        now = self.clock.now()

        with self.store.unit_of_work() as uow:
            booking = get_booking_or_404(uow, booking_id)
            uow.lock_slot(booking.slot_id)

            chain = load_chain(uow, get_booking_or_404(uow, booking_id))
            original = chain.original
            if original.customer_id != principal.user_id:
                raise AccessDeniedError("Unauthorized to extend this booking")
            if original.booking_status != BookingStatus.ACTIVE:
                raise BookingConflictError(
                    "Can only extend active bookings",
                    details={"booking_status": original.booking_status.value}
                )

            slot = get_slot_or_404(uow, original.slot_id)
            interval = TimeRange.starting_at(chain.effective_end_time, extra_hours)
            extension = Booking(
                slot_id=original.slot_id,
                customer_id=original.customer_id,
                plate_number=original.plate_number,
                duration_hours=extra_hours,
                start_time=interval.start_time,
                end_time=interval.end_time,
                total_price=self._hourly_rate(slot) * extra_hours,
                booking_status=BookingStatus.ACTIVE,
                payment_status=PaymentStatus.PENDING,
                original_booking_id=original.id,
                created_at=now
            )
            try:
                uow.bookings.add(extension)
                uow.commit()
            except DuplicateRecordError as e:
                raise BookingConflictError(
                    "Booking was extended concurrently, please retry",
                    details={"booking_id": original.id}
                ) from e

        self.logger.info(f"Booking {original.id} extended by {extra_hours}h until {interval.end_time.isoformat()}")
        self.publish_event(EventType.BOOKING_CREATED, extension, slot.location_id)
        return extension

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def confirm_payment(self, uow: UnitOfWork, booking: Booking) -> bool:
        """
        Apply a confirmed payment inside the caller's unit of work.
        Pending bookings become active and occupy their slot; the payment
        status becomes paid. Returns True if anything changed.
        """
        changed = False
        if booking.booking_status == BookingStatus.PENDING:
            booking.activate()
            changed = True
        if booking.payment_status != PaymentStatus.PAID:
            booking.mark_paid()
            changed = True
        if changed:
            uow.bookings.update(booking)
        if booking.booking_status == BookingStatus.ACTIVE:
            self.slot_status.occupy(uow, booking.slot_id)
        return changed

    def activate_booking(self, booking_id: str) -> Booking:
        """Payment confirmed out of band: pending -> active, slot occupied"""
        with self.store.unit_of_work() as uow:
            booking = get_booking_or_404(uow, booking_id)
            uow.lock_slot(booking.slot_id)
            booking = get_booking_or_404(uow, booking_id)
            if booking.booking_status not in (BookingStatus.PENDING, BookingStatus.ACTIVE):
                raise BookingConflictError(
                    f"Cannot activate a {booking.booking_status.value} booking",
                    details={"booking_id": booking_id}
                )
            changed = self.confirm_payment(uow, booking)
            location_id = get_slot_or_404(uow, booking.slot_id).location_id

        if changed:
            self.logger.info(f"Booking {booking.id} activated")
            self.publish_event(EventType.BOOKING_STATUS_UPDATED, booking, location_id)
        return booking

    def update_booking_status(self, principal: Principal, booking_id: str, status: BookingStatus) -> Booking:
        """Attendant-driven transition: pending -> active or active -> completed"""
        status = BookingStatus(status)

        with self.store.unit_of_work() as uow:
            booking = get_booking_or_404(uow, booking_id)
            slot = get_slot_or_404(uow, booking.slot_id)
            require_attendant_at(principal, slot.location_id)
            current = booking.booking_status

        if current == BookingStatus.PENDING and status == BookingStatus.ACTIVE:
            return self.activate_booking(booking_id)
        if current == BookingStatus.ACTIVE and status == BookingStatus.COMPLETED:
            return self.end_parking_session(principal, booking_id)

        raise BookingValidationError(
            f"Cannot change booking status from {current.value} to {status.value}",
            details={"booking_id": booking_id}
        )

    def end_parking_session(self, principal: Principal, booking_id: str) -> Booking:
        """
        Close the whole chain at the current moment and release the slot.

        The link in progress (or the last link, when the vehicle overstayed)
        gets end_time = now; earlier links are completed as they are;
        extensions that have not started yet are cancelled.
        """
        require_attendant_at(principal)
        now = self.clock.now()

        with self.store.unit_of_work() as uow:
            booking = get_booking_or_404(uow, booking_id)
            uow.lock_slot(booking.slot_id)
            chain = load_chain(uow, get_booking_or_404(uow, booking_id))
            original = chain.original
            slot = get_slot_or_404(uow, original.slot_id)
            require_attendant_at(principal, slot.location_id)

            if original.booking_status == BookingStatus.COMPLETED:
                raise BookingConflictError("Parking session already ended", details={"booking_id": original.id})
            if original.booking_status != BookingStatus.ACTIVE:
                raise BookingConflictError(
                    f"Cannot end a {original.booking_status.value} booking",
                    details={"booking_id": original.id}
                )

            self._close_chain(uow, chain, now)
            self.slot_status.release(uow, slot.id)

        self.logger.info(f"Parking session {original.id} ended at {now.isoformat()}")
        self.publish_event(EventType.BOOKING_STATUS_UPDATED, original, slot.location_id)
        return original

    def delete_booking(self, principal: Principal, booking_id: str) -> Booking:
        """Remove a booking (an original takes its extensions with it; an extension must be the latest link)"""
        require_attendant_at(principal)

        with self.store.unit_of_work() as uow:
            booking = get_booking_or_404(uow, booking_id)
            uow.lock_slot(booking.slot_id)
            booking = get_booking_or_404(uow, booking_id)
            slot = get_slot_or_404(uow, booking.slot_id)
            require_attendant_at(principal, slot.location_id)

            chain = load_chain(uow, booking)
            doomed = chain.links
            if booking.is_extension:
                # Removing an inner link would leave a gap in the chain
                if booking.booking_status != BookingStatus.CANCELLED and chain.latest_link.id != booking.id:
                    raise BookingConflictError(
                        "Only the latest extension of a booking can be deleted",
                        details={"booking_id": booking_id, "latest_extension_id": chain.latest_link.id}
                    )
                doomed = [booking]
            if any(uow.payments.find_by_booking(b.id) for b in doomed):
                raise BookingConflictError(
                    "Cannot delete a booking with recorded payments",
                    details={"booking_id": booking_id}
                )

            for link in reversed(doomed):
                uow.bookings.delete(link.id)
            if not booking.is_extension and booking.booking_status == BookingStatus.ACTIVE:
                self.slot_status.release(uow, slot.id)

        self.logger.info(f"Booking {booking_id} deleted by attendant {principal.user_id}")
        self.publish_event(EventType.BOOKING_DELETED, booking, slot.location_id)
        return booking

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_booking_chain(self, booking_id: str) -> BookingChain:
        with self.store.unit_of_work() as uow:
            return load_chain(uow, get_booking_or_404(uow, booking_id))

    def find_my_bookings(self, principal: Principal) -> List[BookingSummaryDTO]:
        """Active reservations of the caller whose effective end is still ahead"""
        now = self.clock.now()
        summaries = []

        with self.store.unit_of_work() as uow:
            originals = uow.bookings.find(
                BookingQuery()
                .for_customer(principal.user_id)
                .with_status(BookingStatus.ACTIVE)
                .only_originals()
                .ordered_by('start_time')
            )
            for original in originals:
                chain = load_chain(uow, original)
                if chain.effective_end_time <= now:
                    continue
                summaries.append(self._summarise(chain, now))

        return summaries

    def find_location_bookings(
        self,
        principal: Principal,
        statuses: Tuple[BookingStatus, ...] = (),
        limit: Optional[int] = None
    ) -> List[Booking]:
        """Bookings at the attendant's location, most recent start first"""
        require_attendant_at(principal)
        if not principal.location_id:
            raise AccessDeniedError("Attendant is not assigned to a location")
        if limit is not None and (isinstance(limit, bool) or not isinstance(limit, int) or limit < 1):
            raise BookingValidationError("limit must be a positive integer", details={"limit": limit})

        query = BookingQuery().at_location(principal.location_id).ordered_by('start_time', descending=True)
        if statuses:
            query = query.with_status(*statuses)
        if limit is not None:
            query = query.limited(limit)

        with self.store.unit_of_work() as uow:
            return uow.bookings.find(query)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _reservation_window(self, request: CreateBookingRequest, now: datetime) -> Tuple[TimeRange, int]:
        """
        Without a start the window opens now. A requested start must not be
        in the past; the window then opens lead_in_hours earlier and runs
        until the requested start plus the duration, all of it billed.
        """
        duration = request.duration_hours
        if request.start_date_time is None:
            return TimeRange.starting_at(now, duration), duration

        requested_start = ensure_utc(request.start_date_time)
        if requested_start < now:
            raise BookingValidationError(
                "Start time must be in the future",
                details={"start_date_time": requested_start.isoformat()}
            )
        lead_in = self.settings.lead_in_hours
        start = requested_start - timedelta(hours=lead_in)
        return TimeRange.starting_at(start, duration + lead_in), duration + lead_in

    def _ensure_bookable(self, uow: UnitOfWork, slot: Slot, window: TimeRange) -> None:
        if slot.is_under_maintenance:
            raise SlotUnavailableError("Slot is under maintenance", details={"slot_id": slot.id})
        self.availability.assert_available(uow, slot.id, window.start_time, window.end_time)

    def _hourly_rate(self, slot: Slot) -> Decimal:
        return slot.hourly_rate if slot.hourly_rate else self.settings.default_hourly_rate

    def _resolve_customer(self, uow: UnitOfWork, phone_number: str) -> Customer:
        customer = uow.customers.find_by_phone(phone_number)
        if customer is None:
            customer = Customer.placeholder(phone_number)
            uow.customers.add(customer)
            self.logger.info(f"Provisioned placeholder customer {customer.username}")
        return customer

    def _close_chain(self, uow: UnitOfWork, chain: BookingChain, now: datetime) -> None:
        live = [b for b in chain.live_links if b.booking_status == BookingStatus.ACTIVE]
        started = [b for b in live if b.start_time < now]
        current = started[-1] if started else None

        for link in live:
            if link.is_extension and link.start_time >= now:
                link.cancel()
            elif link is current:
                link.complete(actual_end=now)
            else:
                link.complete()
            uow.bookings.update(link)

    def _summarise(self, chain: BookingChain, now: datetime) -> BookingSummaryDTO:
        original = chain.original
        display_status = "upcoming" if original.start_time > now else original.booking_status.value
        return BookingSummaryDTO(
            id=original.id,
            slot_id=original.slot_id,
            plate_number=original.plate_number,
            start_time=original.start_time,
            end_time=original.end_time,
            effective_end_time=chain.effective_end_time,
            total_price=chain.total_price,
            booking_status=original.booking_status.value,
            payment_status=original.payment_status.value,
            display_status=display_status,
            extension_ids=[b.id for b in chain.extensions]
        )

    def publish_event(self, event_type: EventType, booking: Booking, location_id: str) -> None:
        if self.event_bus is None:
            return
        self.event_bus.publish(BookingEvent(
            event_type=event_type,
            location_id=location_id,
            data=booking.to_dict(),
            source=self.__class__.__name__
        ))
