# File: src/parkbook/application/commands.py
"""
Command handling for the outer surface

BookingCommandHandler is the single error channel between the services and
whatever transport sits in front of them. Commands are plain dictionaries:

    {"type": "create_booking", "data": {...}}

Every answer has the same shape. Success carries the serialised result;
known failures carry the message, kind and status of the ParkingServiceError;
anything unexpected is logged with its traceback and reported as a generic
internal error.
"""

from typing import Any, Callable, Dict, Optional
import logging

from ..domain.models import Booking, BookingStatus, Payment
from .booking_service import BookingChain, BookingLifecycleManager, require_attendant_at
from .dtos import (
    AttendantBookingRequest, CreateBookingRequest, ExtendBookingRequest,
    InitiatePaymentRequest, ManualPaymentRequest, OverstayPaymentRequest,
    Principal, UpdateBookingStatusRequest
)
from .exceptions import BookingValidationError, ErrorKind, ParkingServiceError
from .overstay_service import OverstayService
from .payment_service import PaymentService


def _booking(booking: Booking) -> Dict[str, Any]:
    return booking.to_dict()


def _payment(payment: Payment) -> Dict[str, Any]:
    return payment.to_dict()


def _chain(chain: BookingChain) -> Dict[str, Any]:
    return {
        "original": chain.original.to_dict(),
        "extensions": [b.to_dict() for b in chain.extensions],
        "effective_end_time": chain.effective_end_time.isoformat(),
        "total_price": str(chain.total_price)
    }


def _require(data: Dict[str, Any], key: str) -> Any:
    value = data.get(key)
    if value in (None, ""):
        raise BookingValidationError(f"{key} is required")
    return value


class BookingCommandHandler:
    """
    Handler for booking, overstay and payment commands
    """

    def __init__(
        self,
        lifecycle: BookingLifecycleManager,
        overstay: OverstayService,
        payments: PaymentService
    ):
        self.lifecycle = lifecycle
        self.overstay = overstay
        self.payments = payments
        self.logger = logging.getLogger(self.__class__.__name__)

        self._handlers: Dict[str, Callable[[Principal, Dict[str, Any]], Any]] = {
            "create_booking": self._create_booking,
            "create_attendant_booking": self._create_attendant_booking,
            "extend_booking": self._extend_booking,
            "update_booking_status": self._update_booking_status,
            "end_parking_session": self._end_parking_session,
            "delete_booking": self._delete_booking,
            "get_booking_chain": self._get_booking_chain,
            "find_my_bookings": self._find_my_bookings,
            "find_location_bookings": self._find_location_bookings,
            "compute_overstay": self._compute_overstay,
            "list_overstayed_vehicles": self._list_overstayed_vehicles,
            "validate_vehicle": self._validate_vehicle,
            "create_overstay_payment": self._create_overstay_payment,
            "initiate_payment": self._initiate_payment,
            "verify_payment": self._verify_payment,
            "create_attendant_payment": self._create_attendant_payment,
            "recent_payments": self._recent_payments,
        }

    @property
    def command_types(self):
        return sorted(self._handlers)

    def handle(self, command: Dict[str, Any], principal: Optional[Principal] = None) -> Dict[str, Any]:
        """Handle a command on behalf of principal"""
        command_type = command.get("type")
        handler = self._handlers.get(command_type)
        if handler is None:
            return {
                "success": False,
                "error": f"Unknown command type: {command_type}",
                "kind": ErrorKind.VALIDATION.value,
                "status": 400
            }

        try:
            if principal is None:
                raise BookingValidationError("Caller identity is required")
            result = handler(principal, dict(command.get("data") or {}))
            return {"success": True, "data": result}

        except ParkingServiceError as e:
            self.logger.warning(f"Command {command_type} rejected ({e.kind.value}): {e.message}")
            return e.to_dict()

        except Exception as e:
            self.logger.error(f"Error handling command {command_type}: {e}", exc_info=True)
            return {
                "success": False,
                "error": "Internal error while processing the request",
                "kind": ErrorKind.INTERNAL.value,
                "status": 500
            }

    # ------------------------------------------------------------------
    # Bookings
    # ------------------------------------------------------------------

    def _create_booking(self, principal: Principal, data: Dict[str, Any]):
        request = CreateBookingRequest.from_dict(data)
        return _booking(self.lifecycle.create_booking(principal, request))

    def _create_attendant_booking(self, principal: Principal, data: Dict[str, Any]):
        request = AttendantBookingRequest.from_dict(data)
        return _booking(self.lifecycle.create_attendant_booking(principal, request))

    def _extend_booking(self, principal: Principal, data: Dict[str, Any]):
        request = ExtendBookingRequest.from_dict(data)
        return _booking(self.lifecycle.extend_booking(principal, request.booking_id, request.extra_hours))

    def _update_booking_status(self, principal: Principal, data: Dict[str, Any]):
        request = UpdateBookingStatusRequest.from_dict(data)
        booking = self.lifecycle.update_booking_status(principal, request.booking_id, request.status)
        return _booking(booking)

    def _end_parking_session(self, principal: Principal, data: Dict[str, Any]):
        return _booking(self.lifecycle.end_parking_session(principal, _require(data, "booking_id")))

    def _delete_booking(self, principal: Principal, data: Dict[str, Any]):
        return _booking(self.lifecycle.delete_booking(principal, _require(data, "booking_id")))

    def _get_booking_chain(self, principal: Principal, data: Dict[str, Any]):
        return _chain(self.lifecycle.get_booking_chain(_require(data, "booking_id")))

    def _find_my_bookings(self, principal: Principal, data: Dict[str, Any]):
        return [s.to_dict() for s in self.lifecycle.find_my_bookings(principal)]

    def _find_location_bookings(self, principal: Principal, data: Dict[str, Any]):
        try:
            statuses = tuple(BookingStatus(s) for s in data.get("statuses") or ())
        except ValueError as e:
            raise BookingValidationError(str(e)) from e
        bookings = self.lifecycle.find_location_bookings(principal, statuses, data.get("limit"))
        return [_booking(b) for b in bookings]

    # ------------------------------------------------------------------
    # Overstay
    # ------------------------------------------------------------------

    def _compute_overstay(self, principal: Principal, data: Dict[str, Any]):
        return self.overstay.compute_overstay(_require(data, "booking_id")).to_dict()

    def _list_overstayed_vehicles(self, principal: Principal, data: Dict[str, Any]):
        location_id = data.get("location_id") or principal.location_id
        if not location_id:
            raise BookingValidationError("location_id is required")
        require_attendant_at(principal, location_id)
        return [r.to_dict() for r in self.overstay.list_overstayed_vehicles(location_id)]

    def _validate_vehicle(self, principal: Principal, data: Dict[str, Any]):
        location_id = data.get("location_id") or principal.location_id
        if not location_id:
            raise BookingValidationError("location_id is required")
        require_attendant_at(principal, location_id)
        result = self.overstay.validate_vehicle(_require(data, "plate_number"), location_id)
        return result.to_dict()

    def _create_overstay_payment(self, principal: Principal, data: Dict[str, Any]):
        request = OverstayPaymentRequest.from_dict(data)
        return _payment(self.overstay.create_overstay_payment(principal, request))

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    def _initiate_payment(self, principal: Principal, data: Dict[str, Any]):
        request = InitiatePaymentRequest.from_dict(data)
        session = self.payments.initiate_payment(principal, request)
        return {"payment": _payment(session.payment), "payment_url": session.payment_url}

    def _verify_payment(self, principal: Principal, data: Dict[str, Any]):
        reference = data.get("transaction_id") or _require(data, "payment_id")
        return _payment(self.payments.verify_payment(reference))

    def _create_attendant_payment(self, principal: Principal, data: Dict[str, Any]):
        request = ManualPaymentRequest.from_dict(data)
        payment = self.payments.create_attendant_payment(principal, request)
        return {
            "payment": _payment(payment),
            "message": (f"Payment of {payment.amount} {payment.currency} processed successfully "
                        f"for vehicle {payment.plate_number}")
        }

    def _recent_payments(self, principal: Principal, data: Dict[str, Any]):
        return [_payment(p) for p in self.payments.recent_payments(principal)]
