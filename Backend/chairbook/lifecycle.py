"""
Booking Lifecycle

State machine over a booking record. Owns creation, confirmation,
cancellation, completion, refund requests, reschedule and deletion.

Status Flow:
    (paid)   -> CONFIRMED
    (manual) -> PENDING
    PENDING   -> CONFIRMED          provider confirms
    PENDING   -> CANCELLED          at least 24h before the appointment
    CONFIRMED -> CANCELLED          at least 24h before the appointment
    CONFIRMED -> COMPLETED          at or after the scheduled start
    PENDING   -> REFUND_REQUESTED   any time
    CONFIRMED -> REFUND_REQUESTED   any time
    CONFIRMED -> CONFIRMED          reschedule, at least 24h before the appointment
    CANCELLED -> (deleted)          explicit action only

Every write goes through the repository's locked, status-guarded
operations. Notifications are sent after the write commits and can't undo it.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Optional

from .core.clock import Clock, get_local_now
from .core.config import get_settings
from .core.errors import NotFoundError, PaymentError, PolicyViolation, ValidationError
from .fees import compute
from .models import Booking, BookingStatus, Client, Service
from .notifications import BookingSnapshot, NotificationDispatcher, NotificationEvent
from .payments import PaymentGateway, PaymentIntentResult
from .repository import BookingRepository, NewBooking

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS: dict[BookingStatus, frozenset[BookingStatus]] = {
    BookingStatus.PENDING: frozenset(
        {BookingStatus.CONFIRMED, BookingStatus.CANCELLED, BookingStatus.REFUND_REQUESTED}
    ),
    BookingStatus.CONFIRMED: frozenset(
        {
            BookingStatus.CONFIRMED,
            BookingStatus.CANCELLED,
            BookingStatus.COMPLETED,
            BookingStatus.REFUND_REQUESTED,
        }
    ),
    BookingStatus.COMPLETED: frozenset(),
    BookingStatus.CANCELLED: frozenset(),
    BookingStatus.REFUND_REQUESTED: frozenset(),
}


def can_transition(current: BookingStatus, target: BookingStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def ensure_transition(booking: Booking, target: BookingStatus) -> None:
    if not can_transition(booking.status, target):
        raise PolicyViolation(
            f"Cannot move a {booking.status.value} booking to {target.value}",
            {"booking_id": str(booking.id), "status": booking.status.value, "target": target.value},
        )


def hours_until(booking: Booking, now: datetime) -> float:
    return (booking.starts_at - now).total_seconds() / 3600


@dataclass
class BookingRequest:
    provider_id: int
    client_id: int
    service_id: int
    appointment_date: date
    appointment_time: time
    intent_id: Optional[str] = None
    notes: Optional[str] = None


@dataclass
class TransitionResult:
    booking: Booking
    created: bool = False
    notifications: dict[str, dict[str, bool]] = field(default_factory=dict)


class BookingLifecycle:
    def __init__(
        self,
        repository: BookingRepository,
        dispatcher: NotificationDispatcher,
        gateway: Optional[PaymentGateway] = None,
        clock: Clock = get_local_now,
    ):
        self.repository = repository
        self.dispatcher = dispatcher
        self.gateway = gateway
        self.clock = clock

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def start_payment(self, provider_id: int, client_id: int, service_id: int) -> PaymentIntentResult:
        """
        Create a payment intent for the full service price.

        The slot is not held while the client pays; it is checked again
        when the paid booking is created.
        """
        service, client = await self._load_refs(provider_id, client_id, service_id)
        if self.gateway is None:
            raise PaymentError("No payment gateway configured")
        provider = await self.repository.get_provider(provider_id)
        if provider is None:
            raise NotFoundError("Provider not found", {"provider_id": provider_id})

        fees = compute(service.price_cents)
        return await self.gateway.create_intent(
            amount_cents=service.price_cents,
            currency=get_settings().currency,
            metadata={
                "provider_id": provider_id,
                "client_id": client.id,
                "service_id": service.id,
                "platform_fee_cents": fees.platform_fee,
            },
            application_fee_cents=fees.platform_fee,
            destination_account=provider.stripe_account_id,
        )

    async def create_paid_booking(self, request: BookingRequest) -> TransitionResult:
        """
        Reserve the slot for a confirmed payment and persist a CONFIRMED booking.

        Replaying the same intent returns the booking it already created and
        sends nothing.

        Raises:
            ValidationError: Missing intent or mismatched service/provider
            NotFoundError: Unknown service or client
            PaymentError: Intent not succeeded, underpaid, or gateway failure
            SlotUnavailable: The slot was taken or is no longer bookable
        """
        if not request.intent_id:
            raise ValidationError("intent_id is required for a paid booking")

        existing = await self.repository.get_booking_by_intent(request.intent_id)
        if existing:
            logger.info("Intent %s already booked as %s", request.intent_id, existing.id)
            return TransitionResult(booking=existing, created=False)

        service, _client = await self._load_request_refs(request)
        if self.gateway is None:
            raise PaymentError("No payment gateway configured")

        intent = await self.gateway.retrieve_intent(request.intent_id)
        if not intent.succeeded:
            raise PaymentError(
                "Payment has not been confirmed",
                {"intent_id": request.intent_id, "intent_status": intent.status},
            )
        if intent.amount_cents < service.price_cents:
            raise PaymentError(
                "Payment amount does not cover the service price",
                {"intent_id": request.intent_id, "paid_cents": intent.amount_cents, "price_cents": service.price_cents},
            )
        paid_for = intent.metadata.get("service_id")
        if paid_for and paid_for != str(service.id):
            raise PaymentError("Payment was made for a different service", {"intent_id": request.intent_id})

        reservation = await self.repository.reserve(
            self._new_booking(request, service, BookingStatus.CONFIRMED), self.clock()
        )
        result = TransitionResult(booking=reservation.booking, created=reservation.created)
        if reservation.created:
            result.notifications = await self._dispatch(
                reservation.booking.id,
                NotificationEvent.BOOKING_CREATED,
                NotificationEvent.PAYMENT_RECEIVED,
            )
        return result

    async def create_pending_booking(self, request: BookingRequest) -> TransitionResult:
        """
        Reserve the slot for a booking the provider will confirm manually.

        Raises:
            ValidationError: An intent was supplied; paid bookings go through
                ``create_paid_booking`` so the intent stays free for them
        """
        if request.intent_id:
            raise ValidationError(
                "Manual bookings cannot carry a payment intent",
                {"intent_id": request.intent_id},
            )
        service, _client = await self._load_request_refs(request)
        reservation = await self.repository.reserve(
            self._new_booking(request, service, BookingStatus.PENDING), self.clock()
        )
        result = TransitionResult(booking=reservation.booking, created=reservation.created)
        if reservation.created:
            result.notifications = await self._dispatch(reservation.booking.id, NotificationEvent.BOOKING_CREATED)
        return result

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def confirm(self, booking_id: uuid.UUID) -> TransitionResult:
        booking = await self._require(booking_id)
        if booking.status != BookingStatus.PENDING:
            raise PolicyViolation(
                "Only pending bookings can be confirmed",
                {"booking_id": str(booking_id), "status": booking.status.value},
            )
        updated = await self.repository.update_status(booking_id, BookingStatus.CONFIRMED, booking.status)
        notifications = await self._dispatch(booking_id, NotificationEvent.BOOKING_CONFIRMED)
        return TransitionResult(booking=updated, notifications=notifications)

    async def cancel(self, booking_id: uuid.UUID) -> TransitionResult:
        """
        Cancel a pending or confirmed booking.

        Raises:
            PolicyViolation: Less than the cancellation window before the
                appointment (details carry ``hours_remaining``), or the
                booking is not cancellable
        """
        booking = await self._require(booking_id)
        ensure_transition(booking, BookingStatus.CANCELLED)
        now = self.clock()
        updated = await self.repository.update_status(
            booking_id,
            BookingStatus.CANCELLED,
            booking.status,
            guard=lambda row: self._check_change_window(row, now, "cancelled"),
        )
        notifications = await self._dispatch(booking_id, NotificationEvent.BOOKING_CANCELLED)
        return TransitionResult(booking=updated, notifications=notifications)

    async def complete(self, booking_id: uuid.UUID) -> TransitionResult:
        booking = await self._require(booking_id)
        if booking.status != BookingStatus.CONFIRMED:
            raise PolicyViolation(
                "Only confirmed bookings can be completed",
                {"booking_id": str(booking_id), "status": booking.status.value},
            )
        now = self.clock()

        def started(row: Booking) -> None:
            if now < row.starts_at:
                raise PolicyViolation(
                    "Appointment has not started yet",
                    {"booking_id": str(row.id), "hours_remaining": round(hours_until(row, now), 1)},
                )

        updated = await self.repository.update_status(
            booking_id, BookingStatus.COMPLETED, booking.status, guard=started
        )
        return TransitionResult(booking=updated)

    async def request_refund(self, booking_id: uuid.UUID) -> TransitionResult:
        booking = await self._require(booking_id)
        ensure_transition(booking, BookingStatus.REFUND_REQUESTED)
        updated = await self.repository.update_status(booking_id, BookingStatus.REFUND_REQUESTED, booking.status)
        return TransitionResult(booking=updated)

    async def reschedule(self, booking_id: uuid.UUID, new_date: date, new_time: time) -> TransitionResult:
        """
        Move a confirmed booking to a new slot in one atomic step.

        On any failure the booking keeps its original date, time and status.

        Raises:
            PolicyViolation: Not confirmed, or inside the change window
            SlotUnavailable: The new slot is taken or not bookable
        """
        booking = await self._require(booking_id)
        if booking.status != BookingStatus.CONFIRMED:
            raise PolicyViolation(
                "Only confirmed bookings can be rescheduled",
                {"booking_id": str(booking_id), "status": booking.status.value},
            )
        previous_date, previous_time = booking.appointment_date, booking.appointment_time
        now = self.clock()
        moved = await self.repository.move(
            booking_id,
            new_date,
            new_time,
            now,
            expected_status=BookingStatus.CONFIRMED,
            guard=lambda row: self._check_change_window(row, now, "rescheduled"),
        )
        notifications = await self._dispatch(
            booking_id,
            NotificationEvent.BOOKING_RESCHEDULED,
            previous=(previous_date, previous_time),
        )
        return TransitionResult(booking=moved, notifications=notifications)

    async def delete(self, booking_id: uuid.UUID) -> None:
        """Permanently remove a cancelled booking."""
        await self.repository.delete_booking(booking_id)

    async def send_reminder(self, booking_id: uuid.UUID, now: datetime) -> bool:
        """Send the appointment reminder once; False if it was already claimed."""
        # Claiming first keeps concurrent runs from sending twice
        if not await self.repository.mark_reminder_sent(booking_id, now):
            return False
        await self._dispatch(booking_id, NotificationEvent.APPOINTMENT_REMINDER)
        return True

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _check_change_window(self, booking: Booking, now: datetime, action: str) -> None:
        window = timedelta(hours=get_settings().cancellation_window_hours)
        if now > booking.starts_at - window:
            remaining = max(hours_until(booking, now), 0.0)
            raise PolicyViolation(
                f"Bookings can only be {action} at least {int(window.total_seconds() // 3600)} hours in advance",
                {
                    "booking_id": str(booking.id),
                    "hours_remaining": round(remaining, 1),
                    "window_hours": get_settings().cancellation_window_hours,
                },
            )

    async def _require(self, booking_id: uuid.UUID) -> Booking:
        booking = await self.repository.get_booking(booking_id)
        if not booking:
            raise NotFoundError("Booking not found", {"booking_id": str(booking_id)})
        return booking

    async def _load_request_refs(self, request: BookingRequest) -> tuple[Service, Client]:
        return await self._load_refs(request.provider_id, request.client_id, request.service_id)

    async def _load_refs(self, provider_id: int, client_id: int, service_id: int) -> tuple[Service, Client]:
        service = await self.repository.get_service(service_id)
        if not service or not service.is_active:
            raise NotFoundError("Service not found or inactive", {"service_id": service_id})
        if service.provider_id != provider_id:
            raise ValidationError(
                "Service does not belong to this provider",
                {"service_id": service_id, "provider_id": provider_id},
            )
        client = await self.repository.get_client(client_id)
        if not client:
            raise NotFoundError("Client not found", {"client_id": client_id})
        return service, client

    def _new_booking(self, request: BookingRequest, service: Service, status: BookingStatus) -> NewBooking:
        fees = compute(service.price_cents)
        return NewBooking(
            provider_id=request.provider_id,
            client_id=request.client_id,
            service_id=service.id,
            appointment_date=request.appointment_date,
            appointment_time=request.appointment_time,
            duration_minutes=service.duration_minutes,
            status=status,
            total_amount_cents=service.price_cents,
            # Deposits are informational; the full price is always charged
            deposit_amount_cents=service.deposit_amount_cents if service.deposit_required else 0,
            platform_fee_cents=fees.platform_fee,
            payment_intent_id=request.intent_id,
            notes=request.notes,
        )

    async def _dispatch(
        self,
        booking_id: uuid.UUID,
        *events: NotificationEvent,
        previous: Optional[tuple[date, time]] = None,
    ) -> dict[str, dict[str, bool]]:
        """Notify once per event; failures are logged and never reach the caller."""
        results: dict[str, dict[str, bool]] = {}
        try:
            details = await self.repository.get_booking_details(booking_id)
        except Exception:
            logger.exception("Could not load booking %s for notification", booking_id)
            return results
        if details is None:
            logger.warning("Booking %s vanished before notification", booking_id)
            return results

        snapshot = BookingSnapshot.from_details(details)
        if previous:
            snapshot = snapshot.rescheduled_from(*previous)
        for event in events:
            # One failing event must not stop the next
            try:
                results[event.value] = await self.dispatcher.notify(event, snapshot)
            except Exception:
                logger.exception("Notification %s failed for booking %s", event.value, booking_id)
        return results
