import uuid
from datetime import date, datetime, time
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field

from .fees import FeeBreakdown, to_dollars
from .models import Booking, BookingStatus
from .slots import TimeSlot


class TimeSlotOut(BaseModel):
    time: str
    available: bool
    reason: str = ""

    @classmethod
    def from_slot(cls, slot: TimeSlot) -> "TimeSlotOut":
        return cls(**slot.to_dict())


class SlotsResponse(BaseModel):
    provider_id: int
    date: date
    duration_minutes: int
    slots: List[TimeSlotOut]


class NextAvailableResponse(BaseModel):
    provider_id: int
    from_date: date
    next_available_date: Optional[date] = None


class PaymentIntentRequest(BaseModel):
    provider_id: int
    client_id: int
    service_id: int


class PaymentIntentResponse(BaseModel):
    intent_id: str
    client_secret: str


class BookingCreateRequest(BaseModel):
    provider_id: int
    client_id: int
    service_id: int
    date: date  # provider-local
    time: time  # provider-local, HH:MM
    intent_id: Optional[str] = None
    notes: Optional[str] = Field(default=None, max_length=2000)


class RescheduleRequest(BaseModel):
    new_date: date
    new_time: time


class BookingOut(BaseModel):
    id: uuid.UUID
    provider_id: int
    client_id: int
    service_id: int
    date: date
    time: str
    duration_minutes: int
    status: BookingStatus
    total_amount_cents: int
    total_amount: Decimal
    deposit_amount: Decimal
    platform_fee: Decimal
    payment_intent_id: Optional[str] = None
    notes: Optional[str] = None
    reminder_sent_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_booking(cls, booking: Booking) -> "BookingOut":
        return cls(
            id=booking.id,
            provider_id=booking.provider_id,
            client_id=booking.client_id,
            service_id=booking.service_id,
            date=booking.appointment_date,
            time=booking.appointment_time.strftime("%H:%M"),
            duration_minutes=booking.duration_minutes,
            status=booking.status,
            total_amount_cents=booking.total_amount_cents,
            total_amount=to_dollars(booking.total_amount_cents),
            deposit_amount=to_dollars(booking.deposit_amount_cents),
            platform_fee=to_dollars(booking.platform_fee_cents),
            payment_intent_id=booking.payment_intent_id,
            notes=booking.notes,
            reminder_sent_at=booking.reminder_sent_at,
            created_at=booking.created_at,
            updated_at=booking.updated_at,
        )


class BookingActionResponse(BaseModel):
    booking: BookingOut
    created: bool = False
    # event -> channel -> delivered
    notifications: dict[str, dict[str, bool]] = Field(default_factory=dict)


class FeePreviewResponse(BaseModel):
    amount_cents: int
    amount: Decimal
    platform_fee: Decimal
    processor_fee: Decimal
    combined_fee: Decimal
    net_amount: Decimal

    @classmethod
    def from_breakdown(cls, breakdown: FeeBreakdown) -> "FeePreviewResponse":
        return cls(amount_cents=breakdown.amount, **breakdown.to_dict())


class ReminderDispatchResponse(BaseModel):
    sent: List[str]
    skipped: List[str]
