# File: tests/unit/test_commands.py
"""
Unit tests for BookingCommandHandler, the single error channel
"""

import unittest
from datetime import timedelta
from unittest.mock import Mock

from parkbook.application.commands import BookingCommandHandler

from tests.fixtures import NOW, OTHER_LOCATION, ServiceTestCase, at, attendant


class TestBookingCommandHandler(ServiceTestCase):

    def setUp(self):
        super().setUp()
        self.handler = BookingCommandHandler(self.lifecycle, self.overstay, self.payments)

    def run_command(self, command_type, data=None, principal=None):
        return self.handler.handle({"type": command_type, "data": data or {}}, principal or self.customer)

    def create(self, **data):
        values = {"slot_id": self.slot.id, "plate_number": "aa-100", "duration_hours": 2}
        values.update(data)
        return self.run_command("create_booking", values)

    def test_successful_command_wraps_result(self):
        response = self.create()
        self.assertTrue(response["success"])
        self.assertEqual(response["data"]["plate_number"], "AA-100")
        self.assertEqual(response["data"]["booking_status"], "pending")
        self.assertEqual(response["data"]["total_price"], "40")

    def test_scheduled_booking_through_command(self):
        start = (NOW + timedelta(hours=2)).isoformat()
        response = self.create(start_date_time=start, duration_hours=3)
        self.assertEqual(response["data"]["start_time"], (NOW + timedelta(hours=1)).isoformat())
        self.assertEqual(response["data"]["total_price"], "80")

    def test_validation_error_shape(self):
        response = self.create(duration_hours=0)
        self.assertFalse(response["success"])
        self.assertEqual(response["kind"], "validation")
        self.assertEqual(response["status"], 400)
        self.assertIn("duration_hours", response["error"])

    def test_conflict_error_shape(self):
        self.create()
        response = self.create()
        self.assertEqual(response["kind"], "conflict")
        self.assertEqual(response["status"], 409)
        self.assertEqual(response["error"], "Slot is not available for the selected time")

    def test_not_found_error_shape(self):
        response = self.run_command("extend_booking", {"booking_id": "missing", "extra_hours": 1})
        self.assertEqual(response["kind"], "not_found")
        self.assertEqual(response["status"], 404)

    def test_authorization_error_shape(self):
        response = self.run_command("list_overstayed_vehicles", {"location_id": self.slot.location_id})
        self.assertEqual(response["kind"], "authorization")
        self.assertEqual(response["status"], 403)

    def test_unknown_command(self):
        response = self.run_command("launch_rocket")
        self.assertFalse(response["success"])
        self.assertEqual(response["status"], 400)

    def test_missing_principal(self):
        response = self.handler.handle({"type": "find_my_bookings"})
        self.assertEqual(response["kind"], "validation")

    def test_unexpected_errors_are_generic(self):
        self.lifecycle.find_my_bookings = Mock(side_effect=RuntimeError("database exploded"))
        with self.assertLogs("BookingCommandHandler", level="ERROR"):
            response = self.run_command("find_my_bookings")
        self.assertEqual(response["kind"], "internal")
        self.assertEqual(response["status"], 500)
        self.assertNotIn("exploded", response["error"])

    def test_full_walk_in_flow(self):
        response = self.run_command("create_attendant_booking", {
            "slot_id": self.slot.id, "plate_number": "AB-1", "duration_hours": 1,
            "phone_number": "0911000001"
        }, principal=self.attendant)
        booking_id = response["data"]["id"]
        self.assertEqual(response["data"]["booking_status"], "active")

        self.clock.set(at(13, 20))
        check = self.run_command("validate_vehicle", {"plate_number": "ab-1"}, principal=self.attendant)
        self.assertEqual(check["data"]["message"], "Vehicle has overstayed - payment required")

        listed = self.run_command("list_overstayed_vehicles", principal=self.attendant)
        self.assertEqual([r["booking"]["id"] for r in listed["data"]], [booking_id])

        paid = self.run_command("create_overstay_payment",
                                {"booking_id": booking_id, "payment_method": "cash"},
                                principal=self.attendant)
        self.assertEqual(paid["data"]["status"], "completed")
        self.assertEqual(paid["data"]["amount"], "20")

        ended = self.run_command("end_parking_session", {"booking_id": booking_id}, principal=self.attendant)
        self.assertEqual(ended["data"]["booking_status"], "completed")

        recent = self.run_command("recent_payments", principal=self.attendant)
        self.assertEqual(len(recent["data"]), 1)

    def test_online_payment_flow(self):
        booking_id = self.create()["data"]["id"]

        started = self.run_command("initiate_payment", {"booking_id": booking_id, "payment_method": "telebirr"})
        transaction_id = started["data"]["payment"]["transaction_id"]
        self.assertIn("/telebirr/checkout/", started["data"]["payment_url"])

        verified = self.run_command("verify_payment", {"transaction_id": transaction_id})
        self.assertEqual(verified["data"]["status"], "completed")

        extended = self.run_command("extend_booking", {"booking_id": booking_id, "extra_hours": 1})
        self.assertTrue(extended["success"])

        chain = self.run_command("get_booking_chain", {"booking_id": booking_id})
        self.assertEqual(chain["data"]["total_price"], "60")
        self.assertEqual(len(chain["data"]["extensions"]), 1)

        mine = self.run_command("find_my_bookings")
        self.assertEqual(mine["data"][0]["extension_ids"], [extended["data"]["id"]])

    def test_status_and_listing_commands(self):
        booking_id = self.create()["data"]["id"]
        updated = self.run_command("update_booking_status", {"booking_id": booking_id, "status": "active"},
                                   principal=self.attendant)
        self.assertEqual(updated["data"]["booking_status"], "active")

        listed = self.run_command("find_location_bookings", {"statuses": ["active"]}, principal=self.attendant)
        self.assertEqual([b["id"] for b in listed["data"]], [booking_id])

        bad = self.run_command("find_location_bookings", {"statuses": ["parked"]}, principal=self.attendant)
        self.assertEqual(bad["kind"], "validation")

    def test_location_bookings_limit_is_validated(self):
        for limit in ("5", 0):
            with self.subTest(limit=limit):
                response = self.run_command("find_location_bookings", {"limit": limit}, principal=self.attendant)
                self.assertEqual(response["kind"], "validation")
                self.assertEqual(response["status"], 400)

    def test_delete_and_counter_payment_commands(self):
        booking_id = self.create()["data"]["id"]
        deleted = self.run_command("delete_booking", {"booking_id": booking_id}, principal=self.attendant)
        self.assertTrue(deleted["success"])

        manual = self.run_command("create_attendant_payment",
                                  {"plate_number": "AA-9", "amount": "25", "payment_method": "pos"},
                                  principal=self.attendant)
        self.assertEqual(manual["data"]["message"],
                         "Payment of 25 ETB processed successfully for vehicle AA-9")

    def test_overstay_commands_respect_location(self):
        response = self.run_command("validate_vehicle", {"plate_number": "AA-1"},
                                    principal=attendant(OTHER_LOCATION))
        self.assertEqual(response["data"]["message"], "No active booking found for this vehicle")

        denied = self.run_command("validate_vehicle",
                                  {"plate_number": "AA-1", "location_id": self.slot.location_id},
                                  principal=attendant(OTHER_LOCATION))
        self.assertEqual(denied["kind"], "authorization")

    def test_compute_overstay_command(self):
        booking_id = self.create(duration_hours=1)["data"]["id"]
        self.clock.set(at(13, 20))
        response = self.run_command("compute_overstay", {"booking_id": booking_id})
        self.assertTrue(response["data"]["is_overstayed"])
        self.assertEqual(response["data"]["overstay_minutes"], 20)


if __name__ == '__main__':
    unittest.main()
