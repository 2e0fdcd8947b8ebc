# File: src/parkbook/application/slot_status.py
"""Keeps the coarse Slot.status in step with booking transitions."""

import logging

from ..infrastructure.repositories import UnitOfWork
from .exceptions import ResourceNotFoundError


class SlotStatusSynchronizer:
    """
    occupy() on activation, release() on session end.
    Both are idempotent and write through the caller's unit of work, so the
    status change commits or rolls back together with the booking change.
    """

    def __init__(self):
        self.logger = logging.getLogger(self.__class__.__name__)

    def occupy(self, uow: UnitOfWork, slot_id: str) -> None:
        slot = self._load(uow, slot_id)
        if slot.occupy():
            uow.slots.update(slot)
            self.logger.info(f"Slot {slot.number} @ {slot.location_id} occupied")

    def release(self, uow: UnitOfWork, slot_id: str) -> None:
        slot = self._load(uow, slot_id)
        if slot.release():
            uow.slots.update(slot)
            self.logger.info(f"Slot {slot.number} @ {slot.location_id} released")

    def _load(self, uow: UnitOfWork, slot_id: str):
        slot = uow.slots.get(slot_id)
        if slot is None:
            raise ResourceNotFoundError("Slot not found", details={"slot_id": slot_id})
        return slot
