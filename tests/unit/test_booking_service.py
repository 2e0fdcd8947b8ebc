# File: tests/unit/test_booking_service.py
"""
Unit tests for BookingLifecycleManager

Covers creation (self-service and walk-in), chained extensions, status
transitions, session end, deletion and the read models.
"""

import unittest
from datetime import timedelta
from decimal import Decimal
from unittest.mock import Mock

from parkbook.application.booking_service import BookingLifecycleManager
from parkbook.application.dtos import (
    AttendantBookingRequest, CreateBookingRequest, InitiatePaymentRequest
)
from parkbook.application.exceptions import (
    AccessDeniedError, BookingConflictError, BookingValidationError,
    ResourceNotFoundError, SlotUnavailableError
)
from parkbook.domain.models import (
    BookingStatus, PaymentMethod, PaymentStatus, SlotStatus
)
from parkbook.infrastructure.messaging import EventType
from parkbook.infrastructure.repositories import BookingQuery

from tests.fixtures import (
    NOW, OTHER_LOCATION, ServiceTestCase, at, attendant, customer
)


def all_bookings(store):
    with store.unit_of_work() as uow:
        return uow.bookings.find(BookingQuery())


# ============================================================================
# CREATION
# ============================================================================

class TestCreateBooking(ServiceTestCase):

    def test_immediate_booking_starts_now(self):
        booking = self.book(duration_hours=2)

        self.assertEqual(booking.start_time, NOW)
        self.assertEqual(booking.end_time, NOW + timedelta(hours=2))
        self.assertEqual(booking.total_price, Decimal('40'))
        self.assertEqual(booking.booking_status, BookingStatus.PENDING)
        self.assertEqual(booking.payment_status, PaymentStatus.PENDING)
        self.assertEqual(booking.customer_id, self.customer.user_id)
        self.assertEqual(self.reload_slot().status, SlotStatus.AVAILABLE)

    def test_scheduled_booking_opens_one_hour_early(self):
        booking = self.book(duration_hours=3, start=NOW + timedelta(hours=2))

        self.assertEqual(booking.start_time, NOW + timedelta(hours=1))
        self.assertEqual(booking.end_time, NOW + timedelta(hours=5))
        self.assertEqual(booking.total_price, Decimal('80'))
        self.assertEqual(booking.duration_hours, 3)

    def test_start_in_the_past_is_rejected(self):
        with self.assertRaises(BookingValidationError) as ctx:
            self.book(start=NOW - timedelta(minutes=1))
        self.assertEqual(ctx.exception.message, "Start time must be in the future")
        self.assertEqual(all_bookings(self.store), [])

    def test_overlapping_request_is_rejected_without_writing(self):
        self.seed_booking(at(14), at(16))
        with self.assertRaises(SlotUnavailableError):
            self.book(duration_hours=2, start=at(15))
        self.assertEqual(len(all_bookings(self.store)), 1)

    def test_touching_request_is_accepted(self):
        self.seed_booking(at(14), at(16))
        booking = self.book(duration_hours=2, start=at(17))
        self.assertEqual(booking.start_time, at(16))

    def test_slot_under_maintenance_is_rejected(self):
        slot = self.add_slot(number=9, status=SlotStatus.MAINTENANCE)
        with self.assertRaises(SlotUnavailableError):
            self.book(slot=slot)

    def test_unknown_slot_is_not_found(self):
        slot = Mock(id="missing")
        with self.assertRaises(ResourceNotFoundError) as ctx:
            self.book(slot=slot)
        self.assertEqual(ctx.exception.message, "Slot not found")

    def test_slot_without_rate_uses_default(self):
        slot = self.add_slot(number=2)
        self.assertEqual(self.book(duration_hours=2, slot=slot).total_price, Decimal('20'))

    def test_creation_is_announced_on_location_channel(self):
        booking = self.book()
        events = self.location_events()
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0].event_type, EventType.BOOKING_CREATED)
        self.assertEqual(events[0].data["id"], booking.id)

    def test_failing_notification_does_not_fail_booking(self):
        self.queue.publish = Mock(side_effect=RuntimeError("broker down"))
        booking = self.book()
        self.assertIsNotNone(self.reload_booking(booking.id))


class TestCreateAttendantBooking(ServiceTestCase):

    def request(self, **overrides) -> AttendantBookingRequest:
        values = dict(slot_id=self.slot.id, plate_number="AA-777", duration_hours=2,
                      phone_number="+251911223344")
        values.update(overrides)
        return AttendantBookingRequest(**values)

    def test_walk_in_is_active_paid_and_occupies_slot(self):
        booking = self.lifecycle.create_attendant_booking(self.attendant, self.request())

        self.assertEqual(booking.booking_status, BookingStatus.ACTIVE)
        self.assertEqual(booking.payment_status, PaymentStatus.PAID)
        self.assertEqual(booking.attendant_id, self.attendant.user_id)
        self.assertEqual(self.reload_slot().status, SlotStatus.OCCUPIED)

    def test_unknown_phone_gets_placeholder_profile(self):
        booking = self.lifecycle.create_attendant_booking(self.attendant, self.request())
        with self.store.unit_of_work() as uow:
            profile = uow.customers.find_by_phone("+251911223344")
        self.assertTrue(profile.is_placeholder)
        self.assertEqual(profile.username, "user_+251911223344")
        self.assertEqual(booking.customer_id, profile.id)

    def test_known_phone_reuses_profile(self):
        existing = self.add_customer("+251911223344", first_name="Sara")
        booking = self.lifecycle.create_attendant_booking(self.attendant, self.request())
        self.assertEqual(booking.customer_id, existing.id)

    def test_customers_cannot_create_walk_ins(self):
        with self.assertRaises(AccessDeniedError):
            self.lifecycle.create_attendant_booking(self.customer, self.request())

    def test_attendant_of_another_location_is_refused(self):
        with self.assertRaises(AccessDeniedError) as ctx:
            self.lifecycle.create_attendant_booking(attendant(OTHER_LOCATION), self.request())
        self.assertEqual(ctx.exception.message, "Attendant is not assigned to this location")
        self.assertEqual(self.reload_slot().status, SlotStatus.AVAILABLE)

    def test_walk_in_respects_availability(self):
        self.book(duration_hours=2)
        with self.assertRaises(SlotUnavailableError):
            self.lifecycle.create_attendant_booking(self.attendant, self.request())
        self.assertEqual(self.reload_slot().status, SlotStatus.AVAILABLE)


# ============================================================================
# EXTENSIONS
# ============================================================================

class TestExtendBooking(ServiceTestCase):

    def setUp(self):
        super().setUp()
        self.original = self.lifecycle.activate_booking(self.book(duration_hours=2).id)

    def test_extension_starts_where_original_ends(self):
        extension = self.lifecycle.extend_booking(self.customer, self.original.id, 3)

        self.assertEqual(extension.start_time, self.original.end_time)
        self.assertEqual(extension.end_time, extension.start_time + timedelta(hours=3))
        self.assertEqual(extension.original_booking_id, self.original.id)
        self.assertEqual(extension.total_price, Decimal('60'))
        self.assertEqual(extension.booking_status, BookingStatus.ACTIVE)

    def test_each_extension_continues_the_latest_link(self):
        first = self.lifecycle.extend_booking(self.customer, self.original.id, 1)
        second = self.lifecycle.extend_booking(self.customer, first.id, 2)

        self.assertEqual(second.start_time, first.end_time)
        self.assertEqual(second.original_booking_id, self.original.id)

        chain = self.lifecycle.get_booking_chain(self.original.id)
        self.assertEqual([b.id for b in chain.extensions], [first.id, second.id])
        self.assertEqual(chain.effective_end_time, NOW + timedelta(hours=5))
        self.assertEqual(chain.total_price, Decimal('100'))

    def test_extension_hours_are_bounded(self):
        for hours in (0, 25, -1):
            with self.subTest(hours=hours):
                with self.assertRaises(BookingValidationError) as ctx:
                    self.lifecycle.extend_booking(self.customer, self.original.id, hours)
                self.assertEqual(ctx.exception.message, "Invalid duration. Must be between 1 and 24 hours")

    def test_only_owner_may_extend(self):
        with self.assertRaises(AccessDeniedError) as ctx:
            self.lifecycle.extend_booking(customer("someone-else"), self.original.id, 1)
        self.assertEqual(ctx.exception.message, "Unauthorized to extend this booking")

    def test_pending_booking_cannot_be_extended(self):
        pending = self.book(duration_hours=1, start=NOW + timedelta(hours=6))
        with self.assertRaises(BookingConflictError) as ctx:
            self.lifecycle.extend_booking(self.customer, pending.id, 1)
        self.assertEqual(ctx.exception.message, "Can only extend active bookings")

    def test_unknown_booking_is_not_found(self):
        with self.assertRaises(ResourceNotFoundError):
            self.lifecycle.extend_booking(self.customer, "missing", 1)


# ============================================================================
# TRANSITIONS
# ============================================================================

class TestStatusTransitions(ServiceTestCase):

    def test_activation_occupies_slot_and_marks_paid(self):
        booking = self.book()
        self.queue.clear()

        activated = self.lifecycle.activate_booking(booking.id)

        self.assertEqual(activated.booking_status, BookingStatus.ACTIVE)
        self.assertEqual(activated.payment_status, PaymentStatus.PAID)
        self.assertEqual(self.reload_slot().status, SlotStatus.OCCUPIED)
        self.assertEqual([e.event_type for e in self.location_events()], [EventType.BOOKING_STATUS_UPDATED])

    def test_activation_twice_publishes_once(self):
        booking = self.book()
        self.queue.clear()
        self.lifecycle.activate_booking(booking.id)
        self.lifecycle.activate_booking(booking.id)
        self.assertEqual(len(self.location_events()), 1)

    def test_attendant_moves_pending_to_active_then_completed(self):
        booking = self.book()
        active = self.lifecycle.update_booking_status(self.attendant, booking.id, BookingStatus.ACTIVE)
        self.assertEqual(active.booking_status, BookingStatus.ACTIVE)

        self.clock.advance(minutes=30)
        done = self.lifecycle.update_booking_status(self.attendant, booking.id, "completed")
        self.assertEqual(done.booking_status, BookingStatus.COMPLETED)
        self.assertEqual(self.reload_slot().status, SlotStatus.AVAILABLE)

    def test_other_transitions_are_rejected(self):
        booking = self.book()
        with self.assertRaises(BookingValidationError) as ctx:
            self.lifecycle.update_booking_status(self.attendant, booking.id, BookingStatus.COMPLETED)
        self.assertEqual(ctx.exception.message, "Cannot change booking status from pending to completed")

    def test_customers_cannot_change_status(self):
        booking = self.book()
        with self.assertRaises(AccessDeniedError):
            self.lifecycle.update_booking_status(self.customer, booking.id, BookingStatus.ACTIVE)


class TestEndParkingSession(ServiceTestCase):

    def setUp(self):
        super().setUp()
        self.original = self.lifecycle.activate_booking(self.book(duration_hours=2).id)
        self.extension = self.lifecycle.extend_booking(self.customer, self.original.id, 2)

    def test_early_end_trims_current_link_and_cancels_future_extension(self):
        self.clock.set(at(13))

        ended = self.lifecycle.end_parking_session(self.attendant, self.original.id)

        self.assertEqual(ended.booking_status, BookingStatus.COMPLETED)
        self.assertEqual(ended.end_time, at(13))
        self.assertEqual(self.reload_booking(self.extension.id).booking_status, BookingStatus.CANCELLED)
        self.assertEqual(self.reload_slot().status, SlotStatus.AVAILABLE)

    def test_overstayed_session_ends_on_last_link(self):
        self.clock.set(at(17))

        self.lifecycle.end_parking_session(self.attendant, self.extension.id)

        original = self.reload_booking(self.original.id)
        extension = self.reload_booking(self.extension.id)
        self.assertEqual(original.booking_status, BookingStatus.COMPLETED)
        self.assertEqual(original.end_time, at(14))
        self.assertEqual(extension.booking_status, BookingStatus.COMPLETED)
        self.assertEqual(extension.end_time, at(17))

    def test_session_cannot_end_twice(self):
        self.lifecycle.end_parking_session(self.attendant, self.original.id)
        with self.assertRaises(BookingConflictError) as ctx:
            self.lifecycle.end_parking_session(self.attendant, self.original.id)
        self.assertEqual(ctx.exception.message, "Parking session already ended")

    def test_slot_stays_occupied_while_overstaying(self):
        self.clock.set(at(20))
        self.assertEqual(self.reload_slot().status, SlotStatus.OCCUPIED)

    def test_wrong_location_is_refused(self):
        with self.assertRaises(AccessDeniedError):
            self.lifecycle.end_parking_session(attendant(OTHER_LOCATION), self.original.id)
        self.assertEqual(self.reload_booking(self.original.id).booking_status, BookingStatus.ACTIVE)


class TestDeleteBooking(ServiceTestCase):

    def test_deleting_original_removes_chain_and_releases_slot(self):
        original = self.lifecycle.activate_booking(self.book().id)
        self.lifecycle.extend_booking(self.customer, original.id, 1)
        self.queue.clear()

        self.lifecycle.delete_booking(self.attendant, original.id)

        self.assertEqual(all_bookings(self.store), [])
        self.assertEqual(self.reload_slot().status, SlotStatus.AVAILABLE)
        self.assertEqual([e.event_type for e in self.location_events()], [EventType.BOOKING_DELETED])

    def test_deleting_extension_keeps_original(self):
        original = self.lifecycle.activate_booking(self.book().id)
        extension = self.lifecycle.extend_booking(self.customer, original.id, 1)

        self.lifecycle.delete_booking(self.attendant, extension.id)

        self.assertIsNone(self.reload_booking(extension.id))
        self.assertIsNotNone(self.reload_booking(original.id))
        self.assertEqual(self.reload_slot().status, SlotStatus.OCCUPIED)

    def test_inner_extension_cannot_be_deleted(self):
        original = self.lifecycle.activate_booking(self.book().id)
        first = self.lifecycle.extend_booking(self.customer, original.id, 1)
        second = self.lifecycle.extend_booking(self.customer, original.id, 1)

        with self.assertRaises(BookingConflictError):
            self.lifecycle.delete_booking(self.attendant, first.id)

        links = self.lifecycle.get_booking_chain(original.id).live_links
        self.assertEqual([b.id for b in links], [original.id, first.id, second.id])
        for previous, following in zip(links, links[1:]):
            self.assertEqual(following.start_time, previous.end_time)

    def test_extensions_are_deleted_latest_first(self):
        original = self.lifecycle.activate_booking(self.book().id)
        first = self.lifecycle.extend_booking(self.customer, original.id, 1)
        second = self.lifecycle.extend_booking(self.customer, original.id, 1)

        self.lifecycle.delete_booking(self.attendant, second.id)
        self.lifecycle.delete_booking(self.attendant, first.id)

        chain = self.lifecycle.get_booking_chain(original.id)
        self.assertEqual(chain.extensions, [])
        self.assertEqual(chain.effective_end_time, original.end_time)

    def test_booking_with_payments_cannot_be_deleted(self):
        booking = self.book()
        self.payments.initiate_payment(
            self.customer, InitiatePaymentRequest(booking_id=booking.id, payment_method=PaymentMethod.TELEBIRR)
        )
        with self.assertRaises(BookingConflictError):
            self.lifecycle.delete_booking(self.attendant, booking.id)
        self.assertIsNotNone(self.reload_booking(booking.id))

    def test_customers_cannot_delete(self):
        booking = self.book()
        with self.assertRaises(AccessDeniedError):
            self.lifecycle.delete_booking(self.customer, booking.id)


# ============================================================================
# QUERIES
# ============================================================================

class TestBookingQueries(ServiceTestCase):

    def test_my_bookings_fold_extensions_and_mark_upcoming(self):
        current = self.lifecycle.activate_booking(self.book(duration_hours=1).id)
        extension = self.lifecycle.extend_booking(self.customer, current.id, 2)
        upcoming = self.lifecycle.activate_booking(self.book(duration_hours=1, start=NOW + timedelta(hours=6)).id)
        self.book(duration_hours=1, start=NOW + timedelta(hours=10))  # still pending

        summaries = self.lifecycle.find_my_bookings(self.customer)

        self.assertEqual([s.id for s in summaries], [current.id, upcoming.id])
        self.assertEqual(summaries[0].effective_end_time, extension.end_time)
        self.assertEqual(summaries[0].extension_ids, [extension.id])
        self.assertEqual(summaries[0].total_price, Decimal('60'))
        self.assertEqual(summaries[0].display_status, "active")
        self.assertEqual(summaries[1].display_status, "upcoming")

    def test_my_bookings_skip_chains_that_already_ended(self):
        self.lifecycle.activate_booking(self.book(duration_hours=1).id)
        self.clock.advance(hours=2)
        self.assertEqual(self.lifecycle.find_my_bookings(self.customer), [])

    def test_location_bookings_newest_first(self):
        early = self.book(duration_hours=1)
        late = self.book(duration_hours=1, start=NOW + timedelta(hours=5))
        elsewhere = self.add_slot(location_id=OTHER_LOCATION, number=1)
        self.book(duration_hours=1, slot=elsewhere)

        bookings = self.lifecycle.find_location_bookings(self.attendant)
        self.assertEqual([b.id for b in bookings], [late.id, early.id])

        limited = self.lifecycle.find_location_bookings(self.attendant, limit=1)
        self.assertEqual([b.id for b in limited], [late.id])

    def test_location_bookings_filter_by_status(self):
        active = self.lifecycle.activate_booking(self.book(duration_hours=1).id)
        self.book(duration_hours=1, start=NOW + timedelta(hours=5))

        bookings = self.lifecycle.find_location_bookings(self.attendant, (BookingStatus.ACTIVE,))
        self.assertEqual([b.id for b in bookings], [active.id])

    def test_location_bookings_require_attendant(self):
        with self.assertRaises(AccessDeniedError):
            self.lifecycle.find_location_bookings(self.customer)

    def test_location_bookings_limit_must_be_positive_integer(self):
        for limit in (0, -3, "5", 2.5, True):
            with self.subTest(limit=limit):
                with self.assertRaises(BookingValidationError):
                    self.lifecycle.find_location_bookings(self.attendant, limit=limit)


class TestLifecycleWithoutEventBus(ServiceTestCase):

    def test_runs_without_notifications(self):
        lifecycle = BookingLifecycleManager(self.store, clock=self.clock)
        booking = lifecycle.create_booking(self.customer, CreateBookingRequest(
            slot_id=self.slot.id, plate_number="AA-1", duration_hours=1
        ))
        self.assertEqual(booking.total_price, Decimal('20'))
        self.assertEqual(self.location_events(), [])


if __name__ == '__main__':
    unittest.main()
