# File: src/parkbook/main.py
"""
Application entry point for the ParkBook reservation engine
Wires the store, services, event bus and command handler together
"""

import logging
from decimal import Decimal
from typing import Optional

from .application.availability import SlotAvailabilityChecker
from .application.booking_service import BookingLifecycleManager
from .application.commands import BookingCommandHandler
from .application.overstay_service import OverstayService
from .application.payment_service import PaymentService
from .application.slot_status import SlotStatusSynchronizer
from .config import ReservationSettings, load_settings, setup_logging
from .domain.clock import Clock, SystemClock
from .domain.models import Slot
from .infrastructure.messaging import (
    EventBus, MessageBrokerFactory, MessageQueue, NotificationEventHandler
)
from .infrastructure.payments import PaymentProviderRegistry
from .infrastructure.repositories import IntervalStore, RepositoryFactory


class ParkBookApplication:
    """Main application container that sets up all components"""

    def __init__(
        self,
        settings: Optional[ReservationSettings] = None,
        store: Optional[IntervalStore] = None,
        clock: Optional[Clock] = None,
        queue: Optional[MessageQueue] = None,
        providers: Optional[PaymentProviderRegistry] = None
    ):
        self.settings = settings or ReservationSettings()
        self.logger = logging.getLogger(self.__class__.__name__)
        self.clock = clock or SystemClock()

        # 1. Repository (Data Access Layer)
        self.store = store or RepositoryFactory.create_store(self.settings.database_url)
        self.logger.info(f"Interval store initialized ({type(self.store).__name__})")

        # 2. Notifications
        self.queue = queue or MessageBrokerFactory.create_broker(self.settings.redis_url)
        self.event_bus = EventBus()
        self.event_bus.subscribe(NotificationEventHandler(self.queue))

        # 3. Application services
        self.lifecycle = BookingLifecycleManager(
            self.store,
            clock=self.clock,
            settings=self.settings,
            availability=SlotAvailabilityChecker(self.settings.overlap_policy),
            slot_status=SlotStatusSynchronizer(),
            event_bus=self.event_bus
        )
        self.overstay = OverstayService(self.store, clock=self.clock, settings=self.settings)
        self.payments = PaymentService(
            self.store,
            providers or PaymentProviderRegistry.simulated(self.settings.payment_base_url),
            self.lifecycle,
            clock=self.clock,
            settings=self.settings
        )

        # 4. Outer error channel
        self.commands = BookingCommandHandler(self.lifecycle, self.overstay, self.payments)
        self.logger.info(f"Services ready (overlap policy: {self.settings.overlap_policy.value})")

    def add_slot(self, location_id: str, number: int, hourly_rate: Optional[Decimal] = None) -> Slot:
        """Administrative helper for seeding slots"""
        slot = Slot(location_id=location_id, number=number, hourly_rate=hourly_rate)
        with self.store.unit_of_work() as uow:
            uow.slots.add(slot)
        return slot

    def close(self) -> None:
        self.queue.close()


def create_application() -> ParkBookApplication:
    settings = load_settings()
    setup_logging(settings)
    return ParkBookApplication(settings)


def main():
    app = create_application()
    app.logger.info(f"ParkBook ready, commands: {', '.join(app.commands.command_types)}")
    app.close()


if __name__ == "__main__":
    main()
