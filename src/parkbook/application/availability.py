# File: src/parkbook/application/availability.py
"""
Slot availability

Decides whether a slot is free for a requested interval. Only pending and
active bookings hold a slot. Two overlap predicates are supported:

1. STRICT - canonical half-open intersection; touching intervals do not collide
2. LEGACY_BOUNDARY - flags an existing booking only when it covers the
   requested start or the requested end, so a request that strictly
   contains an existing booking is accepted

The check is a pure read. Callers that write afterwards must hold the slot
lock of their unit of work for the whole check-then-insert sequence.
"""

from datetime import datetime
from enum import Enum
from typing import List
import logging

from ..domain.models import Booking, BookingStatus, TimeRange
from ..infrastructure.repositories import BookingQuery, UnitOfWork
from .exceptions import SlotUnavailableError

SLOT_HOLDING_STATUSES = tuple(s for s in BookingStatus if s.holds_slot)


class OverlapPolicy(str, Enum):
    STRICT = "strict"
    LEGACY_BOUNDARY = "legacy_boundary"


class SlotAvailabilityChecker:

    def __init__(self, policy: OverlapPolicy = OverlapPolicy.STRICT):
        self.policy = OverlapPolicy(policy)
        self.logger = logging.getLogger(self.__class__.__name__)

    def _collides(self, existing: TimeRange, requested: TimeRange) -> bool:
        if self.policy == OverlapPolicy.LEGACY_BOUNDARY:
            return existing.overlaps_at_boundaries(requested)
        return existing.overlaps(requested)

    def conflicting_bookings(self, uow: UnitOfWork, slot_id: str,
                             start_time: datetime, end_time: datetime) -> List[Booking]:
        requested = TimeRange(start_time, end_time)
        query = (BookingQuery()
                 .for_slot(slot_id)
                 .with_status(*SLOT_HOLDING_STATUSES)
                 .where_start('<', requested.end_time)
                 .where_end('>', requested.start_time))
        candidates = uow.bookings.find(query)
        return [b for b in candidates if self._collides(b.interval, requested)]

    def is_available(self, uow: UnitOfWork, slot_id: str,
                     start_time: datetime, end_time: datetime) -> bool:
        return not self.conflicting_bookings(uow, slot_id, start_time, end_time)

    def assert_available(self, uow: UnitOfWork, slot_id: str,
                         start_time: datetime, end_time: datetime) -> None:
        conflicts = self.conflicting_bookings(uow, slot_id, start_time, end_time)
        if conflicts:
            self.logger.warning(
                f"Slot {slot_id} unavailable for {start_time.isoformat()} - {end_time.isoformat()}: "
                f"{len(conflicts)} conflicting booking(s)"
            )
            raise SlotUnavailableError(
                "Slot is not available for the selected time",
                details={"conflicting_booking_ids": [b.id for b in conflicts]}
            )
