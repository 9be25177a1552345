"""
Booking Notifications

The lifecycle hands every committed transition to a NotificationDispatcher.
The dispatcher is injected (no process-wide singleton) and its contract is:

    * notify() is awaited after the transition has committed,
    * it is attempted at most once per transition, with no retry queue,
    * it never raises: each channel reports True/False in the returned map,
    * channels are independent; one failing channel does not stop the others.

BookingNotifier is the production dispatcher, fanning out to SMS (Twilio)
and email (Resend) for both the provider and the client.
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Awaitable, Callable, Optional, Protocol

from .core.errors import NotificationError
from .emailer import build_ics_event, send_email
from .fees import to_dollars
from .models import BookingStatus
from .repository import BookingDetails
from .sms import send_sms

logger = logging.getLogger(__name__)


class NotificationEvent(str, Enum):
    BOOKING_CREATED = "booking_created"
    BOOKING_CONFIRMED = "booking_confirmed"
    BOOKING_CANCELLED = "booking_cancelled"
    BOOKING_RESCHEDULED = "booking_rescheduled"
    APPOINTMENT_REMINDER = "appointment_reminder"
    PAYMENT_RECEIVED = "payment_received"


class Audience(str, Enum):
    PROVIDER = "provider"
    CLIENT = "client"
    BOTH = "both"


# Events whose client email carries a calendar invite
INVITE_EVENTS = {
    NotificationEvent.BOOKING_CREATED,
    NotificationEvent.BOOKING_CONFIRMED,
    NotificationEvent.BOOKING_RESCHEDULED,
}

CHANNELS = ("sms.provider", "sms.client", "email.provider", "email.client")


@dataclass(frozen=True)
class Contact:
    name: str
    phone: Optional[str] = None
    email: Optional[str] = None
    sms_opt_in: bool = True
    email_opt_in: bool = True


@dataclass(frozen=True)
class BookingSnapshot:
    """Immutable view of a booking taken right after a transition committed."""

    booking_id: str
    status: BookingStatus
    service_name: str
    appointment_date: date
    appointment_time: time
    duration_minutes: int
    total_amount_cents: int
    deposit_amount_cents: int
    business_name: str
    provider: Contact
    client: Contact
    address: Optional[str] = None
    notes: Optional[str] = None
    previous_date: Optional[date] = None
    previous_time: Optional[time] = None

    @classmethod
    def from_details(cls, details: BookingDetails) -> "BookingSnapshot":
        booking, provider, client, service = details.booking, details.provider, details.client, details.service
        return cls(
            booking_id=str(booking.id),
            status=booking.status,
            service_name=service.name,
            appointment_date=booking.appointment_date,
            appointment_time=booking.appointment_time,
            duration_minutes=booking.duration_minutes,
            total_amount_cents=booking.total_amount_cents,
            deposit_amount_cents=booking.deposit_amount_cents,
            business_name=provider.business_name,
            provider=Contact(
                name=provider.owner_name or provider.business_name,
                phone=provider.phone,
                email=provider.email,
                sms_opt_in=provider.sms_opt_in,
                email_opt_in=provider.email_opt_in,
            ),
            client=Contact(
                name=client.full_name,
                phone=client.phone,
                email=client.email,
                sms_opt_in=client.sms_opt_in,
                email_opt_in=client.email_opt_in,
            ),
            address=provider.address,
            notes=booking.notes,
        )

    def rescheduled_from(self, previous_date: date, previous_time: time) -> "BookingSnapshot":
        return replace(self, previous_date=previous_date, previous_time=previous_time)

    @property
    def starts_at(self) -> datetime:
        return datetime.combine(self.appointment_date, self.appointment_time)

    @property
    def ends_at(self) -> datetime:
        return self.starts_at + timedelta(minutes=self.duration_minutes)


class NotificationDispatcher(Protocol):
    async def notify(
        self,
        event: NotificationEvent,
        snapshot: BookingSnapshot,
        audience: Audience = Audience.BOTH,
    ) -> dict[str, bool]:
        ...


# ============================================================================
# MESSAGE TEXT
# ============================================================================

def _when(snapshot: BookingSnapshot) -> str:
    return f"{snapshot.appointment_date.strftime('%A, %B %d, %Y')} at {snapshot.appointment_time.strftime('%I:%M %p')}"


def _amount(snapshot: BookingSnapshot) -> str:
    return f"${to_dollars(snapshot.total_amount_cents)}"


def sms_message(event: NotificationEvent, snapshot: BookingSnapshot, audience: Audience) -> str:
    when = _when(snapshot)
    client_name = snapshot.client.name or "there"

    if audience == Audience.PROVIDER:
        messages = {
            NotificationEvent.BOOKING_CREATED: f"New booking: {client_name} booked {snapshot.service_name} on {when}.",
            NotificationEvent.BOOKING_CONFIRMED: f"Booking confirmed: {client_name}, {snapshot.service_name} on {when}.",
            NotificationEvent.BOOKING_CANCELLED: f"Booking cancelled: {client_name}, {snapshot.service_name} on {when}.",
            NotificationEvent.BOOKING_RESCHEDULED: f"Booking moved: {client_name}, {snapshot.service_name} is now {when}.",
            NotificationEvent.APPOINTMENT_REMINDER: f"Reminder: {client_name} for {snapshot.service_name} on {when}.",
            NotificationEvent.PAYMENT_RECEIVED: f"Payment received: {_amount(snapshot)} from {client_name}.",
        }
    else:
        messages = {
            NotificationEvent.BOOKING_CREATED: (
                f"Hi {client_name}! Your {snapshot.service_name} at {snapshot.business_name} is booked for {when}."
            ),
            NotificationEvent.BOOKING_CONFIRMED: (
                f"Hi {client_name}! Your {snapshot.service_name} at {snapshot.business_name} is confirmed for {when}."
            ),
            NotificationEvent.BOOKING_CANCELLED: (
                f"Hi {client_name}, your {snapshot.service_name} at {snapshot.business_name} on {when} was cancelled."
            ),
            NotificationEvent.BOOKING_RESCHEDULED: (
                f"Hi {client_name}, your {snapshot.service_name} at {snapshot.business_name} moved to {when}."
            ),
            NotificationEvent.APPOINTMENT_REMINDER: (
                f"Reminder: {snapshot.service_name} at {snapshot.business_name} on {when}."
            ),
            NotificationEvent.PAYMENT_RECEIVED: (
                f"Payment of {_amount(snapshot)} received for {snapshot.service_name}. Thank you!"
            ),
        }
    return messages[event]


def email_subject(event: NotificationEvent, snapshot: BookingSnapshot, audience: Audience) -> str:
    subjects = {
        NotificationEvent.BOOKING_CREATED: "New booking" if audience == Audience.PROVIDER else "Booking received",
        NotificationEvent.BOOKING_CONFIRMED: "Booking confirmed",
        NotificationEvent.BOOKING_CANCELLED: "Booking cancelled",
        NotificationEvent.BOOKING_RESCHEDULED: "Booking rescheduled",
        NotificationEvent.APPOINTMENT_REMINDER: "Appointment reminder",
        NotificationEvent.PAYMENT_RECEIVED: "Payment received",
    }
    return f"{subjects[event]}: {snapshot.service_name} at {snapshot.business_name}"


def email_html(event: NotificationEvent, snapshot: BookingSnapshot, audience: Audience) -> str:
    greeting = snapshot.provider.name if audience == Audience.PROVIDER else snapshot.client.name
    previous = ""
    if event == NotificationEvent.BOOKING_RESCHEDULED and snapshot.previous_date and snapshot.previous_time:
        previous = (
            f"<li><strong>Previously:</strong> {snapshot.previous_date.isoformat()} "
            f"{snapshot.previous_time.strftime('%H:%M')}</li>"
        )
    return f"""
        <p>Hi {greeting or 'there'},</p>
        <p>{sms_message(event, snapshot, audience)}</p>
        <ul>
          <li><strong>Service:</strong> {snapshot.service_name}</li>
          <li><strong>When:</strong> {_when(snapshot)}</li>
          {previous}
          <li><strong>Client:</strong> {snapshot.client.name}</li>
          <li><strong>Total:</strong> {_amount(snapshot)}</li>
          <li><strong>Location:</strong> {snapshot.address or snapshot.business_name}</li>
        </ul>
        <p>Booking ID: {snapshot.booking_id}</p>
    """


def calendar_invite(snapshot: BookingSnapshot) -> str:
    """.ics body for the appointment, compatible with Google, Apple and Outlook."""
    return build_ics_event(
        uid=snapshot.booking_id,
        start_at=snapshot.starts_at,
        end_at=snapshot.ends_at,
        summary=f"{snapshot.service_name} at {snapshot.business_name}",
        description=f"Booking for {snapshot.client.name or 'Guest'}",
        location=snapshot.address or snapshot.business_name,
    )


# ============================================================================
# DISPATCHER
# ============================================================================

SmsSender = Callable[[str, str], Awaitable[object]]
EmailSender = Callable[..., Awaitable[object]]


class BookingNotifier:
    """Multi-channel dispatcher: SMS and email to provider and client."""

    def __init__(self, sms_sender: SmsSender = send_sms, email_sender: EmailSender = send_email):
        self._send_sms = sms_sender
        self._send_email = email_sender

    async def notify(
        self,
        event: NotificationEvent,
        snapshot: BookingSnapshot,
        audience: Audience = Audience.BOTH,
    ) -> dict[str, bool]:
        results = {channel: False for channel in CHANNELS}
        attempts: dict[str, Awaitable[object]] = {}

        for who, contact in ((Audience.PROVIDER, snapshot.provider), (Audience.CLIENT, snapshot.client)):
            if audience not in (Audience.BOTH, who):
                continue
            if contact.sms_opt_in and contact.phone:
                attempts[f"sms.{who.value}"] = self._send_sms(contact.phone, sms_message(event, snapshot, who))
            if contact.email_opt_in and contact.email:
                attempts[f"email.{who.value}"] = self._email(event, snapshot, who, contact.email)

        outcomes = await asyncio.gather(
            *(self._attempt(channel, event, snapshot, coro) for channel, coro in attempts.items())
        )
        results.update(dict(zip(attempts.keys(), outcomes)))
        logger.info("Notification %s for booking %s: %s", event.value, snapshot.booking_id, results)
        return results

    async def _email(self, event: NotificationEvent, snapshot: BookingSnapshot, who: Audience, to_email: str) -> None:
        ics_filename = ics_text = None
        if who == Audience.CLIENT and event in INVITE_EVENTS:
            ics_filename = f"booking-{snapshot.booking_id}.ics"
            ics_text = calendar_invite(snapshot)
        await self._send_email(
            to_email=to_email,
            subject=email_subject(event, snapshot, who),
            html=email_html(event, snapshot, who),
            ics_filename=ics_filename,
            ics_text=ics_text,
        )

    async def _attempt(
        self,
        channel: str,
        event: NotificationEvent,
        snapshot: BookingSnapshot,
        coro: Awaitable[object],
    ) -> bool:
        try:
            await coro
            return True
        except NotificationError as exc:
            logger.warning(
                "Notification %s via %s failed for booking %s: %s",
                event.value,
                channel,
                snapshot.booking_id,
                exc.message,
            )
        except Exception:
            # A broken channel must never fail the transition that triggered it
            logger.exception(
                "Unexpected error sending %s via %s for booking %s", event.value, channel, snapshot.booking_id
            )
        return False
