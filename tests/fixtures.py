# File: tests/fixtures.py
"""
Shared builders for the ParkBook test suite

ServiceTestCase wires every service over an in-memory store with a frozen
clock, so each test starts from a known instant and a known slot.
"""

import unittest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

from parkbook.application.booking_service import BookingLifecycleManager
from parkbook.application.dtos import CreateBookingRequest, Principal
from parkbook.application.overstay_service import OverstayService
from parkbook.application.payment_service import PaymentService
from parkbook.config import ReservationSettings
from parkbook.domain.clock import FixedClock
from parkbook.domain.models import (
    Booking, BookingStatus, Customer, PaymentStatus, Slot, UserRole
)
from parkbook.infrastructure.messaging import (
    EventBus, InMemoryMessageQueue, NotificationEventHandler
)
from parkbook.infrastructure.payments import PaymentProviderRegistry
from parkbook.infrastructure.repositories import InMemoryIntervalStore, IntervalStore

NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)
LOCATION = "location-bole"
OTHER_LOCATION = "location-piassa"
PAYMENT_BASE_URL = "https://payments.test"


def at(hour: int, minute: int = 0, day: int = 10) -> datetime:
    """A UTC instant on the reference day"""
    return datetime(2025, 3, day, hour, minute, tzinfo=timezone.utc)


def customer(user_id: str = "customer-1") -> Principal:
    return Principal(user_id=user_id)


def attendant(location_id: str = LOCATION, user_id: str = "attendant-1") -> Principal:
    return Principal(user_id=user_id, role=UserRole.ATTENDANT, location_id=location_id)


class ServiceTestCase(unittest.TestCase):
    """Base class wiring all services over one store and one frozen clock"""

    settings = ReservationSettings()

    def create_store(self) -> IntervalStore:
        return InMemoryIntervalStore()

    def setUp(self):
        self.clock = FixedClock(NOW)
        self.store = self.create_store()
        self.queue = InMemoryMessageQueue()
        self.event_bus = EventBus()
        self.event_bus.subscribe(NotificationEventHandler(self.queue))
        self.providers = PaymentProviderRegistry.simulated(PAYMENT_BASE_URL)

        self.lifecycle = BookingLifecycleManager(
            self.store, clock=self.clock, settings=self.settings, event_bus=self.event_bus
        )
        self.overstay = OverstayService(self.store, clock=self.clock, settings=self.settings)
        self.payments = PaymentService(
            self.store, self.providers, self.lifecycle, clock=self.clock, settings=self.settings
        )

        self.customer = customer()
        self.attendant = attendant()
        self.slot = self.add_slot(number=1, hourly_rate=Decimal('20'))

    # ------------------------------------------------------------------
    # Seeding
    # ------------------------------------------------------------------

    def add_slot(self, location_id: str = LOCATION, number: int = 1,
                 hourly_rate: Optional[Decimal] = None, **kwargs) -> Slot:
        slot = Slot(location_id=location_id, number=number, hourly_rate=hourly_rate, **kwargs)
        with self.store.unit_of_work() as uow:
            uow.slots.add(slot)
        return slot

    def add_customer(self, phone_number: str = "+251911000000", **kwargs) -> Customer:
        profile = Customer(phone_number=phone_number, username=f"user_{phone_number}", **kwargs)
        with self.store.unit_of_work() as uow:
            uow.customers.add(profile)
        return profile

    def seed_booking(self, start: datetime, end: datetime,
                     status: BookingStatus = BookingStatus.ACTIVE,
                     slot: Optional[Slot] = None,
                     customer_id: str = "customer-1",
                     plate_number: str = "AA-12345",
                     original: Optional[Booking] = None,
                     payment_status: PaymentStatus = PaymentStatus.PAID,
                     price: Decimal = Decimal('0')) -> Booking:
        """Store a booking directly, bypassing availability checks"""
        slot = slot or self.slot
        hours = max(1, int((end - start) / timedelta(hours=1)))
        booking = Booking(
            slot_id=slot.id,
            customer_id=customer_id,
            plate_number=plate_number,
            duration_hours=hours,
            start_time=start,
            end_time=end,
            total_price=price,
            booking_status=status,
            payment_status=payment_status,
            original_booking_id=original.id if original else None,
            created_at=self.clock.now()
        )
        with self.store.unit_of_work() as uow:
            uow.bookings.add(booking)
        return booking

    def book(self, duration_hours: int = 2, start: Optional[datetime] = None,
             principal: Optional[Principal] = None, slot: Optional[Slot] = None,
             plate_number: str = "AA-12345") -> Booking:
        request = CreateBookingRequest(
            slot_id=(slot or self.slot).id,
            plate_number=plate_number,
            duration_hours=duration_hours,
            start_date_time=start
        )
        return self.lifecycle.create_booking(principal or self.customer, request)

    # ------------------------------------------------------------------
    # Reading back
    # ------------------------------------------------------------------

    def reload_booking(self, booking_id: str) -> Optional[Booking]:
        with self.store.unit_of_work() as uow:
            return uow.bookings.get(booking_id)

    def reload_slot(self, slot_id: Optional[str] = None) -> Optional[Slot]:
        with self.store.unit_of_work() as uow:
            return uow.slots.get(slot_id or self.slot.id)

    def location_events(self, location_id: str = LOCATION):
        return self.queue.get_messages(f"location:{location_id}")
