"""
HTTP API tests through httpx.AsyncClient and ASGITransport.

Run with: pytest Backend/tests/test_api.py -v
"""

import uuid
from datetime import datetime, time, timedelta

import pytest

from chairbook.core.errors import (
    InfrastructureError,
    NotFoundError,
    PaymentError,
    PolicyViolation,
    SlotUnavailable,
    ValidationError,
)
from chairbook.core.responses import error_response, status_for_code
from chairbook.models import BookingStatus

from conftest import MONDAY, TUESDAY


def booking_payload(seeded, **overrides):
    payload = {
        "provider_id": seeded.provider_id,
        "client_id": seeded.client_id,
        "service_id": seeded.haircut_id,
        "date": MONDAY.isoformat(),
        "time": "10:00",
    }
    payload.update(overrides)
    return payload


# ────────────────────────────────────────────────────────────────
# Availability
# ────────────────────────────────────────────────────────────────

class TestSlotsEndpoint:
    @pytest.mark.asyncio
    async def test_slots_for_service(self, client, seeded, book):
        await book(MONDAY, time(10, 0))

        response = await client.get(
            f"/providers/{seeded.provider_id}/slots",
            params={"date": MONDAY.isoformat(), "service_id": seeded.haircut_id},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["duration_minutes"] == 30
        slots = {slot["time"]: slot for slot in body["slots"]}
        assert slots["10:00"] == {"time": "10:00", "available": False, "reason": "Already booked"}
        assert slots["09:30"]["available"] is True

    @pytest.mark.asyncio
    async def test_slots_closed_day(self, client, seeded):
        sunday = MONDAY - timedelta(days=1)
        response = await client.get(
            f"/providers/{seeded.provider_id}/slots",
            params={"date": sunday.isoformat(), "duration_minutes": 30},
        )
        assert response.status_code == 200
        assert response.json()["slots"] == []

    @pytest.mark.asyncio
    async def test_slots_need_duration(self, client, seeded):
        response = await client.get(f"/providers/{seeded.provider_id}/slots", params={"date": MONDAY.isoformat()})
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_slots_service_of_other_provider(self, client, seeded):
        response = await client.get(
            f"/providers/{seeded.provider_id}/slots",
            params={"date": MONDAY.isoformat(), "service_id": seeded.other_service_id},
        )
        assert response.status_code == 404
        assert response.json()["status"] == "error"

    @pytest.mark.asyncio
    async def test_bad_date_uses_error_envelope(self, client, seeded):
        response = await client.get(f"/providers/{seeded.provider_id}/slots", params={"date": "next monday"})
        assert response.status_code == 422
        body = response.json()
        assert body["error"]["code"] == "VALIDATION_ERROR"
        assert body["error"]["details"]["errors"]

    @pytest.mark.asyncio
    async def test_next_available(self, client, seeded):
        response = await client.get(
            f"/providers/{seeded.provider_id}/next-available",
            params={"from_date": (MONDAY - timedelta(days=1)).isoformat(), "service_id": seeded.haircut_id},
        )
        assert response.status_code == 200
        assert response.json()["next_available_date"] == MONDAY.isoformat()

    @pytest.mark.asyncio
    async def test_next_available_defaults_to_today(self, client, seeded, clock):
        clock.set(datetime.combine(MONDAY, time(18, 0)))
        response = await client.get(f"/providers/{seeded.provider_id}/next-available")
        body = response.json()
        assert body["from_date"] == MONDAY.isoformat()
        assert body["next_available_date"] == TUESDAY.isoformat()


# ────────────────────────────────────────────────────────────────
# Payments and fees
# ────────────────────────────────────────────────────────────────

class TestPaymentsAndFees:
    @pytest.mark.asyncio
    async def test_create_intent(self, client, seeded, gateway):
        response = await client.post(
            "/payments/intents",
            json={"provider_id": seeded.provider_id, "client_id": seeded.client_id, "service_id": seeded.haircut_id},
        )
        assert response.status_code == 200
        assert response.json() == {"intent_id": "pi_test_1", "client_secret": "pi_test_1_secret"}
        assert gateway.created[0]["amount_cents"] == 3500

    @pytest.mark.asyncio
    async def test_fee_preview(self, client):
        response = await client.get("/fees", params={"amount_cents": 10000})
        assert response.status_code == 200
        body = response.json()
        assert body["amount_cents"] == 10000
        assert body["platform_fee"] == "1.00"
        assert body["processor_fee"] == "3.20"
        assert body["combined_fee"] == "4.20"
        assert body["net_amount"] == "95.80"

    @pytest.mark.asyncio
    async def test_fee_preview_rejects_negative(self, client):
        response = await client.get("/fees", params={"amount_cents": -5})
        assert response.status_code == 422


# ────────────────────────────────────────────────────────────────
# Bookings
# ────────────────────────────────────────────────────────────────

class TestBookingEndpoints:
    @pytest.mark.asyncio
    async def test_paid_booking_and_replay(self, client, seeded, gateway, dispatcher):
        gateway.succeed("pi_paid", 3500, seeded.haircut_id)

        first = await client.post("/bookings", json=booking_payload(seeded, intent_id="pi_paid"))
        second = await client.post("/bookings", json=booking_payload(seeded, intent_id="pi_paid"))

        assert first.status_code == 201
        assert second.status_code == 200
        assert first.json()["booking"]["id"] == second.json()["booking"]["id"]
        booking = first.json()["booking"]
        assert booking["status"] == "confirmed"
        assert booking["total_amount"] == "35.00"
        assert booking["platform_fee"] == "0.35"
        assert second.json()["created"] is False
        assert len(dispatcher.sent) == 2

    @pytest.mark.asyncio
    async def test_unpaid_intent_is_402(self, client, seeded, gateway):
        await gateway.create_intent(3500, "usd", {})
        response = await client.post("/bookings", json=booking_payload(seeded, intent_id="pi_test_1"))
        assert response.status_code == 402
        assert response.json()["error"]["code"] == "PAYMENT_ERROR"

    @pytest.mark.asyncio
    async def test_conflict_is_409_with_refetch(self, client, seeded, book):
        await book(MONDAY, time(10, 0))
        response = await client.post("/bookings/manual", json=booking_payload(seeded))
        assert response.status_code == 409
        error = response.json()["error"]
        assert error["code"] == "SLOT_UNAVAILABLE"
        assert error["details"]["refetch_slots"] is True

    @pytest.mark.asyncio
    async def test_manual_booking_with_intent_is_422(self, client, seeded, gateway):
        manual = await client.post("/bookings/manual", json=booking_payload(seeded, intent_id="pi_paid"))
        assert manual.status_code == 422
        assert manual.json()["error"]["code"] == "VALIDATION_ERROR"

        gateway.succeed("pi_paid", 3500, seeded.haircut_id)
        paid = await client.post("/bookings", json=booking_payload(seeded, intent_id="pi_paid", time="11:00"))
        assert paid.status_code == 201
        assert paid.json()["booking"]["status"] == "confirmed"
        assert paid.json()["booking"]["time"] == "11:00"

    @pytest.mark.asyncio
    async def test_manual_then_confirm(self, client, seeded):
        created = await client.post("/bookings/manual", json=booking_payload(seeded, notes="Skin fade"))
        assert created.status_code == 201
        booking_id = created.json()["booking"]["id"]
        assert created.json()["booking"]["status"] == "pending"

        confirmed = await client.post(f"/bookings/{booking_id}/confirm")
        assert confirmed.status_code == 200
        assert confirmed.json()["booking"]["status"] == "confirmed"

        fetched = await client.get(f"/bookings/{booking_id}")
        assert fetched.json()["notes"] == "Skin fade"
        assert fetched.json()["time"] == "10:00"

    @pytest.mark.asyncio
    async def test_cancel_inside_window_is_409(self, client, seeded, clock, book):
        booking = await book(MONDAY, time(10, 0))
        clock.set(datetime.combine(MONDAY, time(8, 0)))

        response = await client.post(f"/bookings/{booking.id}/cancel")

        assert response.status_code == 409
        error = response.json()["error"]
        assert error["code"] == "POLICY_VIOLATION"
        assert error["details"]["hours_remaining"] == 2.0

    @pytest.mark.asyncio
    async def test_cancel_then_delete(self, client, seeded, book, repository):
        booking = await book(MONDAY, time(10, 0))

        cancelled = await client.post(f"/bookings/{booking.id}/cancel")
        assert cancelled.json()["booking"]["status"] == "cancelled"
        deleted = await client.delete(f"/bookings/{booking.id}")

        assert deleted.status_code == 204
        assert await repository.get_booking(booking.id) is None

    @pytest.mark.asyncio
    async def test_delete_active_booking_is_409(self, client, seeded, book):
        booking = await book(MONDAY, time(10, 0))
        response = await client.delete(f"/bookings/{booking.id}")
        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_reschedule(self, client, seeded, book):
        booking = await book(MONDAY, time(10, 0))
        response = await client.post(
            f"/bookings/{booking.id}/reschedule",
            json={"new_date": TUESDAY.isoformat(), "new_time": "11:00"},
        )
        assert response.status_code == 200
        assert response.json()["booking"]["date"] == TUESDAY.isoformat()
        assert response.json()["booking"]["time"] == "11:00"
        assert "booking_rescheduled" in response.json()["notifications"]

    @pytest.mark.asyncio
    async def test_complete_and_refund(self, client, seeded, clock, book):
        first = await book(MONDAY, time(10, 0))
        second = await book(MONDAY, time(11, 0))
        clock.set(datetime.combine(MONDAY, time(10, 45)))

        completed = await client.post(f"/bookings/{first.id}/complete")
        refund = await client.post(f"/bookings/{second.id}/refund-request")

        assert completed.json()["booking"]["status"] == BookingStatus.COMPLETED.value
        assert refund.json()["booking"]["status"] == BookingStatus.REFUND_REQUESTED.value

    @pytest.mark.asyncio
    async def test_unknown_booking_is_404(self, client, seeded):
        response = await client.get(f"/bookings/{uuid.uuid4()}")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"

    @pytest.mark.asyncio
    async def test_invite(self, client, seeded, book):
        booking = await book(MONDAY, time(10, 0))
        response = await client.get(f"/bookings/{booking.id}/invite")
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/calendar")
        assert "DTSTART:20290108T100000" in response.text


# ────────────────────────────────────────────────────────────────
# Reminders and health
# ────────────────────────────────────────────────────────────────

class TestMisc:
    @pytest.mark.asyncio
    async def test_dispatch_reminders(self, client, seeded, clock, book):
        booking = await book(MONDAY, time(10, 0))
        clock.set(datetime.combine(MONDAY - timedelta(days=1), time(18, 0)))

        response = await client.post("/reminders/dispatch")

        assert response.status_code == 200
        assert response.json() == {"sent": [str(booking.id)], "skipped": []}

    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")
        assert response.json() == {"ok": True}


# ────────────────────────────────────────────────────────────────
# Error envelope
# ────────────────────────────────────────────────────────────────

class TestErrorStatusTable:
    @pytest.mark.parametrize(
        "error, expected",
        [
            (ValidationError("bad"), 422),
            (NotFoundError("missing"), 404),
            (PolicyViolation("too late"), 409),
            (SlotUnavailable(), 409),
            (PaymentError("declined"), 402),
            (InfrastructureError(), 503),
        ],
    )
    def test_every_booking_error_has_a_status(self, error, expected):
        assert status_for_code(error.code) == expected

    def test_unknown_code_is_500(self):
        assert status_for_code("SOMETHING_ELSE") == 500

    def test_envelope_omits_empty_details(self):
        assert error_response("NOT_FOUND", "Booking not found") == {
            "error": {"code": "NOT_FOUND", "message": "Booking not found"},
            "status": "error",
        }
