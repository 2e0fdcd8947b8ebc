# File: src/parkbook/infrastructure/repositories.py
"""
Repository Pattern Implementation for the ParkBook interval store

This module implements the persistence contract the reservation core relies
on. Repositories provide a collection-like interface over Slot, Booking,
Customer and Payment records; a Unit of Work groups the reads and writes of
one operation into a single atomic unit.

Key Guarantees:
- BookingQuery is the only query shape: equality on slot / customer / status /
  plate / chain, range comparisons on start_time and end_time, and the
  slot -> location relation
- UnitOfWork.lock_slot() serialises writers of one slot until the unit ends,
  which makes "check availability, then insert" and "find latest extension,
  then append" atomic
- Extensions are unique per (original_booking_id, start_time) and payment
  receipt numbers are unique; violations raise DuplicateRecordError

Storage Implementations:
- InMemoryIntervalStore - For testing and development
- SQLAlchemyIntervalStore - For relational databases
"""

from abc import ABC, abstractmethod
from typing import (
    Type, TypeVar, Generic, Optional, List, Dict, Any, Tuple, Callable
)
from dataclasses import dataclass, replace
from datetime import datetime
import copy
import logging
import operator
import threading
from uuid import uuid4

from sqlalchemy import (
    create_engine, Column, Integer, String, Boolean,
    DateTime, ForeignKey, Text, DECIMAL, JSON, UniqueConstraint
)
from sqlalchemy.orm import declarative_base, sessionmaker, Session, relationship
from sqlalchemy.exc import SQLAlchemyError, IntegrityError
from sqlalchemy.pool import StaticPool

from ..domain.clock import ensure_utc
from ..domain.models import (
    Slot, Customer, Booking, Payment,
    SlotStatus, BookingStatus, PaymentStatus, PaymentRecordStatus, PaymentMethod
)

# Type variables for generic repositories
T = TypeVar('T')  # Entity type
ID = TypeVar('ID')  # ID type


class DuplicateRecordError(Exception):
    """Raised when a write violates a uniqueness constraint of the store"""
    pass


# ============================================================================
# BOOKING QUERY
# ============================================================================

_OPERATORS: Dict[str, Callable[[Any, Any], Any]] = {
    '<': operator.lt,
    '<=': operator.le,
    '>': operator.gt,
    '>=': operator.ge,
}
_RANGE_FIELDS = ('start_time', 'end_time')
_ORDER_FIELDS = ('start_time', 'end_time', 'created_at')


@dataclass(frozen=True)
class BookingQuery:
    """
    Typed filter over bookings. Every builder method returns a new query.

        BookingQuery().for_slot(slot_id).with_status(BookingStatus.ACTIVE) \\
                      .where_start('<', end).where_end('>', start)
    """
    slot_id: Optional[str] = None
    customer_id: Optional[str] = None
    plate_number: Optional[str] = None
    statuses: Tuple[BookingStatus, ...] = ()
    original_booking_id: Optional[str] = None
    originals_only: bool = False
    location_id: Optional[str] = None
    ranges: Tuple[Tuple[str, str, datetime], ...] = ()
    order_by: str = 'start_time'
    descending: bool = False
    limit: Optional[int] = None

    def for_slot(self, slot_id: str) -> 'BookingQuery':
        return replace(self, slot_id=slot_id)

    def for_customer(self, customer_id: str) -> 'BookingQuery':
        return replace(self, customer_id=customer_id)

    def with_plate(self, plate_number: str) -> 'BookingQuery':
        return replace(self, plate_number=plate_number.strip().upper())

    def with_status(self, *statuses: BookingStatus) -> 'BookingQuery':
        return replace(self, statuses=tuple(BookingStatus(s) for s in statuses))

    def extensions_of(self, original_booking_id: str) -> 'BookingQuery':
        return replace(self, original_booking_id=original_booking_id)

    def only_originals(self) -> 'BookingQuery':
        return replace(self, originals_only=True)

    def at_location(self, location_id: str) -> 'BookingQuery':
        return replace(self, location_id=location_id)

    def where_start(self, op: str, value: datetime) -> 'BookingQuery':
        return self._where('start_time', op, value)

    def where_end(self, op: str, value: datetime) -> 'BookingQuery':
        return self._where('end_time', op, value)

    def _where(self, field_name: str, op: str, value: datetime) -> 'BookingQuery':
        if op not in _OPERATORS:
            raise ValueError(f"Unsupported range operator: {op}")
        return replace(self, ranges=self.ranges + ((field_name, op, ensure_utc(value)),))

    def ordered_by(self, field_name: str, descending: bool = False) -> 'BookingQuery':
        if field_name not in _ORDER_FIELDS:
            raise ValueError(f"Cannot order bookings by {field_name}")
        return replace(self, order_by=field_name, descending=descending)

    def limited(self, limit: int) -> 'BookingQuery':
        return replace(self, limit=limit)

    def matches(self, booking: Booking, slot_location_id: Optional[str] = None) -> bool:
        """Evaluate the filter against a booking (used by in-memory stores)"""
        if self.slot_id is not None and booking.slot_id != self.slot_id:
            return False
        if self.customer_id is not None and booking.customer_id != self.customer_id:
            return False
        if self.plate_number is not None and booking.plate_number != self.plate_number:
            return False
        if self.statuses and booking.booking_status not in self.statuses:
            return False
        if self.original_booking_id is not None and booking.original_booking_id != self.original_booking_id:
            return False
        if self.originals_only and booking.original_booking_id is not None:
            return False
        if self.location_id is not None and slot_location_id != self.location_id:
            return False
        for field_name, op, value in self.ranges:
            if not _OPERATORS[op](getattr(booking, field_name), value):
                return False
        return True

    def sort(self, bookings: List[Booking]) -> List[Booking]:
        def key(booking: Booking):
            value = getattr(booking, self.order_by)
            # created_at may be unset on records built outside a service
            return (value is None, value or booking.start_time)

        ordered = sorted(bookings, key=key, reverse=self.descending)
        if self.limit is not None:
            ordered = ordered[:self.limit]
        return ordered


# ============================================================================
# REPOSITORY INTERFACES
# ============================================================================

class Repository(ABC, Generic[T, ID]):
    """Base repository interface"""

    @abstractmethod
    def add(self, entity: T) -> T:
        """Add an entity to the repository"""
        pass

    @abstractmethod
    def get(self, id: ID) -> Optional[T]:
        """Get an entity by ID"""
        pass

    @abstractmethod
    def update(self, entity: T) -> T:
        """Update an entity"""
        pass

    @abstractmethod
    def delete(self, id: ID) -> bool:
        """Delete an entity by ID"""
        pass

    def exists(self, id: ID) -> bool:
        return self.get(id) is not None


class BookingRepository(Repository[Booking, str], ABC):
    """Bookings with range-filtered reads"""

    @abstractmethod
    def find(self, query: BookingQuery) -> List[Booking]:
        pass

    def first(self, query: BookingQuery) -> Optional[Booking]:
        results = self.find(query.limited(1))
        return results[0] if results else None


class SlotRepository(Repository[Slot, str], ABC):

    @abstractmethod
    def find_by_location(self, location_id: str) -> List[Slot]:
        pass


class CustomerRepository(Repository[Customer, str], ABC):

    @abstractmethod
    def find_by_phone(self, phone_number: str) -> Optional[Customer]:
        pass


class PaymentRepository(Repository[Payment, str], ABC):

    @abstractmethod
    def find_by_booking(self, booking_id: str) -> List[Payment]:
        pass

    @abstractmethod
    def find_by_transaction_id(self, transaction_id: str) -> Optional[Payment]:
        pass

    @abstractmethod
    def find_by_location(self, location_id: str, limit: int = 50) -> List[Payment]:
        """Most recent payments recorded for a location"""
        pass

    @abstractmethod
    def receipt_exists(self, receipt_number: str) -> bool:
        pass


# ============================================================================
# UNIT OF WORK PATTERN
# ============================================================================

class UnitOfWork(ABC):
    """Unit of Work pattern for transaction management"""

    @abstractmethod
    def __enter__(self):
        pass

    @abstractmethod
    def __exit__(self, exc_type, exc_val, exc_tb):
        pass

    @abstractmethod
    def commit(self):
        """Commit the transaction"""
        pass

    @abstractmethod
    def rollback(self):
        """Rollback the transaction"""
        pass

    @abstractmethod
    def lock_slot(self, slot_id: str) -> None:
        """Hold an exclusive write lock on a slot until the unit of work ends"""
        pass

    @property
    @abstractmethod
    def bookings(self) -> BookingRepository:
        pass

    @property
    @abstractmethod
    def slots(self) -> SlotRepository:
        pass

    @property
    @abstractmethod
    def customers(self) -> CustomerRepository:
        pass

    @property
    @abstractmethod
    def payments(self) -> PaymentRepository:
        pass


class IntervalStore(ABC):
    """Hands out a fresh Unit of Work per operation"""

    @abstractmethod
    def unit_of_work(self) -> UnitOfWork:
        pass


# ============================================================================
# IN-MEMORY REPOSITORIES (For Testing)
# ============================================================================

_DELETED = object()


class InMemoryDatabase:
    """Committed state shared by all in-memory units of work"""

    TABLES = ('slots', 'customers', 'bookings', 'payments')

    def __init__(self):
        self.tables: Dict[str, Dict[str, Any]] = {name: {} for name in self.TABLES}
        self.lock = threading.RLock()
        self._slot_locks: Dict[str, threading.Lock] = {}

    def slot_lock(self, slot_id: str) -> threading.Lock:
        with self.lock:
            if slot_id not in self._slot_locks:
                self._slot_locks[slot_id] = threading.Lock()
            return self._slot_locks[slot_id]


class InMemoryRepository(Repository[T, str]):
    """
    In-memory repository for testing
    Writes are staged per unit of work and become visible to others on commit.
    Entities are copied on the way in and out so callers never share state.
    """

    def __init__(self, database: InMemoryDatabase, table: str):
        self._database = database
        self._table = table
        self._staged: Dict[str, Any] = {}
        self._logger = logging.getLogger(self.__class__.__name__)

    def _visible(self) -> Dict[str, T]:
        with self._database.lock:
            rows = dict(self._database.tables[self._table])
        for entity_id, entity in self._staged.items():
            if entity is _DELETED:
                rows.pop(entity_id, None)
            else:
                rows[entity_id] = entity
        return rows

    def _all(self) -> List[T]:
        return [copy.deepcopy(entity) for entity in self._visible().values()]

    def add(self, entity: T) -> T:
        if entity.id in self._visible():
            raise DuplicateRecordError(f"Entity {entity.id} already exists")
        self._staged[entity.id] = copy.deepcopy(entity)
        self._logger.debug(f"Added entity {entity.id}")
        return entity

    def get(self, id: str) -> Optional[T]:
        entity = self._visible().get(id)
        return copy.deepcopy(entity) if entity is not None else None

    def update(self, entity: T) -> T:
        if entity.id not in self._visible():
            raise KeyError(f"Entity {entity.id} not found")
        self._staged[entity.id] = copy.deepcopy(entity)
        self._logger.debug(f"Updated entity {entity.id}")
        return entity

    def delete(self, id: str) -> bool:
        if id not in self._visible():
            return False
        self._staged[id] = _DELETED
        self._logger.debug(f"Deleted entity {id}")
        return True

    def check_constraints(self, rows: Dict[str, T]) -> None:
        """Validate the merged table before commit; overridden per table"""
        pass

    def merged_rows(self) -> Dict[str, T]:
        rows = dict(self._database.tables[self._table])
        for entity_id, entity in self._staged.items():
            if entity is _DELETED:
                rows.pop(entity_id, None)
            else:
                rows[entity_id] = entity
        return rows

    def has_changes(self) -> bool:
        return bool(self._staged)

    def discard(self) -> None:
        self._staged.clear()


class InMemorySlotRepository(InMemoryRepository[Slot], SlotRepository):

    def __init__(self, database: InMemoryDatabase):
        super().__init__(database, 'slots')

    def find_by_location(self, location_id: str) -> List[Slot]:
        slots = [s for s in self._all() if s.location_id == location_id]
        return sorted(slots, key=lambda s: s.number)

    def location_of(self, slot_id: str) -> Optional[str]:
        slot = self._visible().get(slot_id)
        return slot.location_id if slot is not None else None


class InMemoryCustomerRepository(InMemoryRepository[Customer], CustomerRepository):

    def __init__(self, database: InMemoryDatabase):
        super().__init__(database, 'customers')

    def find_by_phone(self, phone_number: str) -> Optional[Customer]:
        for customer in self._all():
            if customer.phone_number == phone_number:
                return customer
        return None

    def check_constraints(self, rows: Dict[str, Customer]) -> None:
        phones = [c.phone_number for c in rows.values()]
        if len(phones) != len(set(phones)):
            raise DuplicateRecordError("Customer phone number must be unique")


class InMemoryBookingRepository(InMemoryRepository[Booking], BookingRepository):

    def __init__(self, database: InMemoryDatabase, slots: InMemorySlotRepository):
        super().__init__(database, 'bookings')
        self._slots = slots

    def find(self, query: BookingQuery) -> List[Booking]:
        matches = [
            booking for booking in self._all()
            if query.matches(booking, self._slots.location_of(booking.slot_id))
        ]
        return query.sort(matches)

    def check_constraints(self, rows: Dict[str, Booking]) -> None:
        seen = set()
        for booking in rows.values():
            if booking.original_booking_id is None:
                continue
            key = (booking.original_booking_id, booking.start_time)
            if key in seen:
                raise DuplicateRecordError(
                    f"Extension of {booking.original_booking_id} starting at "
                    f"{booking.start_time.isoformat()} already exists"
                )
            seen.add(key)


class InMemoryPaymentRepository(InMemoryRepository[Payment], PaymentRepository):

    def __init__(self, database: InMemoryDatabase):
        super().__init__(database, 'payments')

    def find_by_booking(self, booking_id: str) -> List[Payment]:
        return [p for p in self._all() if p.booking_id == booking_id]

    def find_by_transaction_id(self, transaction_id: str) -> Optional[Payment]:
        for payment in self._all():
            if payment.transaction_id == transaction_id:
                return payment
        return None

    def find_by_location(self, location_id: str, limit: int = 50) -> List[Payment]:
        payments = [p for p in self._all() if p.location_id == location_id]
        payments.sort(key=lambda p: (p.created_at is not None, p.created_at), reverse=True)
        return payments[:limit]

    def receipt_exists(self, receipt_number: str) -> bool:
        return any(p.receipt_number == receipt_number for p in self._visible().values())

    def check_constraints(self, rows: Dict[str, Payment]) -> None:
        for attribute in ('transaction_id', 'receipt_number'):
            values = [getattr(p, attribute) for p in rows.values() if getattr(p, attribute)]
            if len(values) != len(set(values)):
                raise DuplicateRecordError(f"Payment {attribute} must be unique")


class InMemoryUnitOfWork(UnitOfWork):
    """Unit of Work over an InMemoryDatabase with per-slot locking"""

    def __init__(self, database: InMemoryDatabase):
        self._database = database
        self._held_locks: Dict[str, threading.Lock] = {}
        self._logger = logging.getLogger(self.__class__.__name__)
        self._open_repositories()

    def _open_repositories(self) -> None:
        self._slots = InMemorySlotRepository(self._database)
        self._customers = InMemoryCustomerRepository(self._database)
        self._bookings = InMemoryBookingRepository(self._database, self._slots)
        self._payments = InMemoryPaymentRepository(self._database)

    def _repositories(self) -> List[InMemoryRepository]:
        return [self._slots, self._customers, self._bookings, self._payments]

    def __enter__(self):
        self._open_repositories()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        try:
            if exc_type is not None:
                self._logger.debug(f"Exception in unit of work: {exc_val}")
                self.rollback()
            else:
                self.commit()
        finally:
            self._release_locks()

    def commit(self):
        """Apply all staged writes atomically, or none of them"""
        with self._database.lock:
            merged = {}
            for repository in self._repositories():
                if repository.has_changes():
                    rows = repository.merged_rows()
                    repository.check_constraints(rows)
                    merged[repository._table] = rows
            for table, rows in merged.items():
                self._database.tables[table] = rows
        for repository in self._repositories():
            repository.discard()
        self._logger.debug("Transaction committed")

    def rollback(self):
        for repository in self._repositories():
            repository.discard()
        self._logger.debug("Transaction rolled back")

    def lock_slot(self, slot_id: str) -> None:
        if slot_id in self._held_locks:
            return
        lock = self._database.slot_lock(slot_id)
        lock.acquire()
        self._held_locks[slot_id] = lock

    def _release_locks(self) -> None:
        for lock in self._held_locks.values():
            lock.release()
        self._held_locks.clear()

    @property
    def bookings(self) -> InMemoryBookingRepository:
        return self._bookings

    @property
    def slots(self) -> InMemorySlotRepository:
        return self._slots

    @property
    def customers(self) -> InMemoryCustomerRepository:
        return self._customers

    @property
    def payments(self) -> InMemoryPaymentRepository:
        return self._payments


class InMemoryIntervalStore(IntervalStore):
    """Interval store kept in process memory"""

    def __init__(self, database: Optional[InMemoryDatabase] = None):
        self.database = database or InMemoryDatabase()

    def unit_of_work(self) -> InMemoryUnitOfWork:
        return InMemoryUnitOfWork(self.database)


# ============================================================================
# SQLALCHEMY ORM MODELS
# ============================================================================

Base = declarative_base()


class SlotModel(Base):
    """SQLAlchemy model for Slot"""
    __tablename__ = 'slots'

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    location_id = Column(String(64), nullable=False, index=True)
    number = Column(Integer, nullable=False)
    hourly_rate = Column(DECIMAL(10, 2))
    status = Column(String(20), nullable=False, default=SlotStatus.AVAILABLE.value)

    # Bumped by lock_slot() to take a row write lock
    lock_version = Column(Integer, nullable=False, default=0)

    bookings = relationship('BookingModel', back_populates='slot')

    __table_args__ = (
        UniqueConstraint('location_id', 'number', name='uq_slot_location_number'),
    )


class CustomerModel(Base):
    """SQLAlchemy model for Customer"""
    __tablename__ = 'customers'

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    phone_number = Column(String(32), nullable=False, unique=True, index=True)
    username = Column(String(64), nullable=False)
    email = Column(String(120))
    first_name = Column(String(64))
    last_name = Column(String(64))
    is_placeholder = Column(Boolean, default=False)


class BookingModel(Base):
    """SQLAlchemy model for Booking"""
    __tablename__ = 'bookings'

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    slot_id = Column(String(36), ForeignKey('slots.id'), nullable=False, index=True)
    # Customers are owned by the identity service, so no foreign key here
    customer_id = Column(String(64), nullable=False, index=True)
    plate_number = Column(String(20), nullable=False, index=True)
    duration_hours = Column(Integer, nullable=False)

    start_time = Column(DateTime(timezone=True), nullable=False, index=True)
    end_time = Column(DateTime(timezone=True), nullable=False, index=True)

    total_price = Column(DECIMAL(10, 2), nullable=False)
    booking_status = Column(String(20), nullable=False, index=True)
    payment_status = Column(String(20), nullable=False)

    original_booking_id = Column(String(36), ForeignKey('bookings.id'), index=True)
    attendant_id = Column(String(64))
    created_at = Column(DateTime(timezone=True))

    slot = relationship('SlotModel', back_populates='bookings')

    __table_args__ = (
        UniqueConstraint('original_booking_id', 'start_time', name='uq_booking_extension_start'),
    )


class PaymentModel(Base):
    """SQLAlchemy model for Payment"""
    __tablename__ = 'payments'

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    booking_id = Column(String(36), ForeignKey('bookings.id'), index=True)

    amount = Column(DECIMAL(12, 2), nullable=False)
    currency = Column(String(3), default='ETB')
    payment_method = Column(String(20), nullable=False)
    status = Column(String(20), default=PaymentRecordStatus.PENDING.value)
    transaction_id = Column(String(100), nullable=False, unique=True, index=True)
    receipt_number = Column(String(40), unique=True)

    is_overstay_payment = Column(Boolean, default=False)
    overstay_minutes = Column(Integer)
    attendant_id = Column(String(64))
    location_id = Column(String(64), index=True)
    plate_number = Column(String(20))
    description = Column(Text)
    # "metadata" is reserved on declarative classes
    payment_metadata = Column('metadata', JSON, default=dict)
    provider_response = Column(JSON)
    created_at = Column(DateTime(timezone=True))


def _utc_or_none(value: Optional[datetime]) -> Optional[datetime]:
    return ensure_utc(value) if value is not None else None


# ============================================================================
# DOMAIN <-> ORM MAPPERS
# ============================================================================

class Mapper:
    """Maps between domain models and ORM models"""

    @staticmethod
    def slot_to_orm(slot: Slot, model: Optional[SlotModel] = None) -> SlotModel:
        model = model or SlotModel(id=slot.id, lock_version=0)
        model.location_id = slot.location_id
        model.number = slot.number
        model.hourly_rate = slot.hourly_rate
        model.status = slot.status.value
        return model

    @staticmethod
    def slot_to_domain(model: SlotModel) -> Slot:
        return Slot(
            location_id=model.location_id,
            number=model.number,
            hourly_rate=model.hourly_rate,
            status=SlotStatus(model.status),
            id=model.id
        )

    @staticmethod
    def customer_to_orm(customer: Customer, model: Optional[CustomerModel] = None) -> CustomerModel:
        model = model or CustomerModel(id=customer.id)
        model.phone_number = customer.phone_number
        model.username = customer.username
        model.email = customer.email
        model.first_name = customer.first_name
        model.last_name = customer.last_name
        model.is_placeholder = customer.is_placeholder
        return model

    @staticmethod
    def customer_to_domain(model: CustomerModel) -> Customer:
        return Customer(
            phone_number=model.phone_number,
            username=model.username,
            email=model.email,
            first_name=model.first_name,
            last_name=model.last_name,
            is_placeholder=bool(model.is_placeholder),
            id=model.id
        )

    @staticmethod
    def booking_to_orm(booking: Booking, model: Optional[BookingModel] = None) -> BookingModel:
        model = model or BookingModel(id=booking.id)
        model.slot_id = booking.slot_id
        model.customer_id = booking.customer_id
        model.plate_number = booking.plate_number
        model.duration_hours = booking.duration_hours
        model.start_time = booking.start_time
        model.end_time = booking.end_time
        model.total_price = booking.total_price
        model.booking_status = booking.booking_status.value
        model.payment_status = booking.payment_status.value
        model.original_booking_id = booking.original_booking_id
        model.attendant_id = booking.attendant_id
        model.created_at = booking.created_at
        return model

    @staticmethod
    def booking_to_domain(model: BookingModel) -> Booking:
        return Booking(
            slot_id=model.slot_id,
            customer_id=model.customer_id,
            plate_number=model.plate_number,
            duration_hours=model.duration_hours,
            start_time=ensure_utc(model.start_time),
            end_time=ensure_utc(model.end_time),
            total_price=model.total_price,
            booking_status=BookingStatus(model.booking_status),
            payment_status=PaymentStatus(model.payment_status),
            original_booking_id=model.original_booking_id,
            attendant_id=model.attendant_id,
            created_at=_utc_or_none(model.created_at),
            id=model.id
        )

    @staticmethod
    def payment_to_orm(payment: Payment, model: Optional[PaymentModel] = None) -> PaymentModel:
        model = model or PaymentModel(id=payment.id)
        model.booking_id = payment.booking_id
        model.amount = payment.amount
        model.currency = payment.currency
        model.payment_method = payment.payment_method.value
        model.status = payment.status.value
        model.transaction_id = payment.transaction_id
        model.receipt_number = payment.receipt_number
        model.is_overstay_payment = payment.is_overstay_payment
        model.overstay_minutes = payment.overstay_minutes
        model.attendant_id = payment.attendant_id
        model.location_id = payment.location_id
        model.plate_number = payment.plate_number
        model.description = payment.description
        model.payment_metadata = dict(payment.metadata)
        model.provider_response = payment.provider_response
        model.created_at = payment.created_at
        return model

    @staticmethod
    def payment_to_domain(model: PaymentModel) -> Payment:
        return Payment(
            amount=model.amount,
            payment_method=PaymentMethod(model.payment_method),
            transaction_id=model.transaction_id,
            currency=model.currency,
            status=PaymentRecordStatus(model.status),
            booking_id=model.booking_id,
            receipt_number=model.receipt_number,
            is_overstay_payment=bool(model.is_overstay_payment),
            overstay_minutes=model.overstay_minutes,
            attendant_id=model.attendant_id,
            location_id=model.location_id,
            plate_number=model.plate_number,
            description=model.description,
            metadata=model.payment_metadata or {},
            provider_response=model.provider_response,
            created_at=_utc_or_none(model.created_at),
            id=model.id
        )


# ============================================================================
# SQLALCHEMY REPOSITORIES
# ============================================================================

class SQLAlchemyRepository(Repository[T, str], ABC):
    """Base SQLAlchemy repository"""

    def __init__(self, session: Session):
        self.session = session
        self._logger = logging.getLogger(self.__class__.__name__)

    @property
    @abstractmethod
    def model_class(self) -> Type[Base]:
        """Return SQLAlchemy model class"""
        pass

    @abstractmethod
    def to_domain(self, model: Base) -> T:
        pass

    @abstractmethod
    def to_orm(self, entity: T, model: Optional[Base] = None) -> Base:
        pass

    def add(self, entity: T) -> T:
        try:
            model = self.to_orm(entity)
            self.session.add(model)
            self.session.flush()
            self._logger.debug(f"Added entity: {model.id}")
            return entity
        except IntegrityError as e:
            self._logger.warning(f"Integrity error adding entity: {e.orig}")
            raise DuplicateRecordError(str(e.orig)) from e
        except SQLAlchemyError as e:
            self._logger.error(f"Database error adding entity: {e}")
            raise

    def get(self, id: str) -> Optional[T]:
        try:
            model = self.session.get(self.model_class, id)
            if model:
                return self.to_domain(model)
            return None
        except SQLAlchemyError as e:
            self._logger.error(f"Database error getting entity {id}: {e}")
            raise

    def update(self, entity: T) -> T:
        try:
            model = self.session.get(self.model_class, entity.id)
            if not model:
                raise KeyError(f"Entity {entity.id} not found")
            self.to_orm(entity, model)
            self.session.flush()
            self._logger.debug(f"Updated entity: {entity.id}")
            return entity
        except IntegrityError as e:
            self._logger.warning(f"Integrity error updating entity: {e.orig}")
            raise DuplicateRecordError(str(e.orig)) from e
        except SQLAlchemyError as e:
            self._logger.error(f"Database error updating entity: {e}")
            raise

    def delete(self, id: str) -> bool:
        try:
            model = self.session.get(self.model_class, id)
            if model:
                self.session.delete(model)
                self.session.flush()
                self._logger.debug(f"Deleted entity: {id}")
                return True
            return False
        except SQLAlchemyError as e:
            self._logger.error(f"Database error deleting entity {id}: {e}")
            raise


class SQLAlchemySlotRepository(SQLAlchemyRepository[Slot], SlotRepository):

    @property
    def model_class(self) -> Type[Base]:
        return SlotModel

    def to_domain(self, model: SlotModel) -> Slot:
        return Mapper.slot_to_domain(model)

    def to_orm(self, entity: Slot, model: Optional[SlotModel] = None) -> SlotModel:
        return Mapper.slot_to_orm(entity, model)

    def find_by_location(self, location_id: str) -> List[Slot]:
        models = self.session.query(SlotModel).filter(
            SlotModel.location_id == location_id
        ).order_by(SlotModel.number).all()
        return [self.to_domain(m) for m in models]


class SQLAlchemyCustomerRepository(SQLAlchemyRepository[Customer], CustomerRepository):

    @property
    def model_class(self) -> Type[Base]:
        return CustomerModel

    def to_domain(self, model: CustomerModel) -> Customer:
        return Mapper.customer_to_domain(model)

    def to_orm(self, entity: Customer, model: Optional[CustomerModel] = None) -> CustomerModel:
        return Mapper.customer_to_orm(entity, model)

    def find_by_phone(self, phone_number: str) -> Optional[Customer]:
        model = self.session.query(CustomerModel).filter(
            CustomerModel.phone_number == phone_number
        ).first()
        return self.to_domain(model) if model else None


class SQLAlchemyBookingRepository(SQLAlchemyRepository[Booking], BookingRepository):

    @property
    def model_class(self) -> Type[Base]:
        return BookingModel

    def to_domain(self, model: BookingModel) -> Booking:
        return Mapper.booking_to_domain(model)

    def to_orm(self, entity: Booking, model: Optional[BookingModel] = None) -> BookingModel:
        return Mapper.booking_to_orm(entity, model)

    def find(self, query: BookingQuery) -> List[Booking]:
        try:
            q = self.session.query(BookingModel)

            if query.location_id is not None:
                q = q.join(SlotModel, BookingModel.slot_id == SlotModel.id).filter(
                    SlotModel.location_id == query.location_id
                )
            if query.slot_id is not None:
                q = q.filter(BookingModel.slot_id == query.slot_id)
            if query.customer_id is not None:
                q = q.filter(BookingModel.customer_id == query.customer_id)
            if query.plate_number is not None:
                q = q.filter(BookingModel.plate_number == query.plate_number)
            if query.statuses:
                q = q.filter(BookingModel.booking_status.in_([s.value for s in query.statuses]))
            if query.original_booking_id is not None:
                q = q.filter(BookingModel.original_booking_id == query.original_booking_id)
            if query.originals_only:
                q = q.filter(BookingModel.original_booking_id.is_(None))
            for field_name, op, value in query.ranges:
                q = q.filter(_OPERATORS[op](getattr(BookingModel, field_name), value))

            order_column = getattr(BookingModel, query.order_by)
            q = q.order_by(order_column.desc() if query.descending else order_column.asc())
            if query.limit is not None:
                q = q.limit(query.limit)

            return [self.to_domain(m) for m in q.all()]
        except SQLAlchemyError as e:
            self._logger.error(f"Database error finding bookings: {e}")
            raise


class SQLAlchemyPaymentRepository(SQLAlchemyRepository[Payment], PaymentRepository):

    @property
    def model_class(self) -> Type[Base]:
        return PaymentModel

    def to_domain(self, model: PaymentModel) -> Payment:
        return Mapper.payment_to_domain(model)

    def to_orm(self, entity: Payment, model: Optional[PaymentModel] = None) -> PaymentModel:
        return Mapper.payment_to_orm(entity, model)

    def find_by_booking(self, booking_id: str) -> List[Payment]:
        models = self.session.query(PaymentModel).filter(
            PaymentModel.booking_id == booking_id
        ).all()
        return [self.to_domain(m) for m in models]

    def find_by_transaction_id(self, transaction_id: str) -> Optional[Payment]:
        model = self.session.query(PaymentModel).filter(
            PaymentModel.transaction_id == transaction_id
        ).first()
        return self.to_domain(model) if model else None

    def find_by_location(self, location_id: str, limit: int = 50) -> List[Payment]:
        models = self.session.query(PaymentModel).filter(
            PaymentModel.location_id == location_id
        ).order_by(PaymentModel.created_at.desc()).limit(limit).all()
        return [self.to_domain(m) for m in models]

    def receipt_exists(self, receipt_number: str) -> bool:
        return self.session.query(PaymentModel).filter(
            PaymentModel.receipt_number == receipt_number
        ).count() > 0


# ============================================================================
# SQLALCHEMY UNIT OF WORK
# ============================================================================

class SQLAlchemyUnitOfWork(UnitOfWork):
    """Unit of Work implementation with SQLAlchemy"""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory
        self._locked_slots: set = set()
        self._logger = logging.getLogger(self.__class__.__name__)

    def __enter__(self):
        self.session = self.session_factory()
        self._locked_slots = set()

        self._slots = SQLAlchemySlotRepository(self.session)
        self._customers = SQLAlchemyCustomerRepository(self.session)
        self._bookings = SQLAlchemyBookingRepository(self.session)
        self._payments = SQLAlchemyPaymentRepository(self.session)

        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        try:
            if exc_type is not None:
                self._logger.debug(f"Exception in unit of work: {exc_val}")
                self.rollback()
            else:
                self.commit()
        finally:
            self.session.close()

    def commit(self):
        """Commit the transaction"""
        try:
            self.session.commit()
            self._logger.debug("Transaction committed")
        except IntegrityError as e:
            self.session.rollback()
            self._logger.warning(f"Integrity error committing transaction: {e.orig}")
            raise DuplicateRecordError(str(e.orig)) from e
        except SQLAlchemyError as e:
            self._logger.error(f"Error committing transaction: {e}")
            self.session.rollback()
            raise

    def rollback(self):
        """Rollback the transaction"""
        self.session.rollback()
        self._logger.debug("Transaction rolled back")

    def lock_slot(self, slot_id: str) -> None:
        """Take the slot row's write lock by bumping its lock_version"""
        if slot_id in self._locked_slots:
            return
        self.session.query(SlotModel).filter(SlotModel.id == slot_id).update(
            {SlotModel.lock_version: SlotModel.lock_version + 1},
            synchronize_session=False
        )
        # Rows read before the lock may be stale
        self.session.expire_all()
        self._locked_slots.add(slot_id)

    @property
    def bookings(self) -> SQLAlchemyBookingRepository:
        return self._bookings

    @property
    def slots(self) -> SQLAlchemySlotRepository:
        return self._slots

    @property
    def customers(self) -> SQLAlchemyCustomerRepository:
        return self._customers

    @property
    def payments(self) -> SQLAlchemyPaymentRepository:
        return self._payments


class SQLAlchemyIntervalStore(IntervalStore):
    """Interval store backed by a relational database"""

    def __init__(self, database_url: str = "sqlite://", echo: bool = False):
        engine_options: Dict[str, Any] = {"echo": echo}
        if database_url.startswith("sqlite"):
            engine_options["connect_args"] = {"check_same_thread": False}
            if database_url in ("sqlite://", "sqlite:///:memory:"):
                # One shared connection keeps the in-memory database alive
                engine_options["poolclass"] = StaticPool

        self.engine = create_engine(database_url, **engine_options)
        self.session_factory = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)

        # Create tables if they don't exist
        Base.metadata.create_all(bind=self.engine)

    def unit_of_work(self) -> SQLAlchemyUnitOfWork:
        return SQLAlchemyUnitOfWork(self.session_factory)

    def dispose(self) -> None:
        self.engine.dispose()


# ============================================================================
# REPOSITORY FACTORY
# ============================================================================

class RepositoryFactory:
    """Factory for creating interval stores"""

    MEMORY_URL = "memory://"

    @staticmethod
    def create_store(database_url: str) -> IntervalStore:
        """memory:// selects the in-memory store, anything else goes to SQLAlchemy"""
        if database_url == RepositoryFactory.MEMORY_URL:
            return InMemoryIntervalStore()
        return SQLAlchemyIntervalStore(database_url)
