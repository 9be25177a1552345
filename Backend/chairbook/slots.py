"""
Slot arithmetic shared by the availability engine and the reservation path.

Everything here is pure: given a day's opening hours, the intervals already
taken and the current provider-local time, decide which start times are
bookable. Intervals are half-open, ``[start, start + duration)``.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Iterable, List, Optional


REASON_PAST = "Past time"
REASON_PAST_CLOSING = "Would extend past closing"
REASON_BOOKED = "Already booked"
REASON_CLOSED = "Provider is not available on this day"
REASON_OUTSIDE_HOURS = "Outside working hours"


@dataclass(frozen=True)
class OpeningHours:
    start_time: time
    end_time: time


@dataclass(frozen=True)
class BookedInterval:
    start_time: time
    duration_minutes: int

    def bounds(self, on: date) -> tuple[datetime, datetime]:
        start = datetime.combine(on, self.start_time)
        return start, start + timedelta(minutes=self.duration_minutes)


@dataclass(frozen=True)
class TimeSlot:
    time: str  # HH:MM provider-local
    available: bool
    reason: str = ""

    def to_dict(self) -> dict:
        return {"time": self.time, "available": self.available, "reason": self.reason}


def overlap(start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime) -> bool:
    return start_a < end_b and start_b < end_a


def unavailable_reason(
    on: date,
    start_time: time,
    duration_minutes: int,
    hours: Optional[OpeningHours],
    booked: Iterable[BookedInterval],
    now: datetime,
) -> Optional[str]:
    """
    Return why ``start_time`` can't be booked on ``on``, or None if it can.

    Reasons are checked in a fixed order: closed day, outside opening hours,
    past, past closing, overlap with an active booking.
    """
    if hours is None:
        return REASON_CLOSED

    slot_start = datetime.combine(on, start_time)
    slot_end = slot_start + timedelta(minutes=duration_minutes)
    open_at = datetime.combine(on, hours.start_time)
    close_at = datetime.combine(on, hours.end_time)

    if not (open_at <= slot_start < close_at):
        return REASON_OUTSIDE_HOURS
    if slot_start < now:
        return REASON_PAST
    if slot_end > close_at:
        return REASON_PAST_CLOSING
    for interval in booked:
        booked_start, booked_end = interval.bounds(on)
        if overlap(slot_start, slot_end, booked_start, booked_end):
            return REASON_BOOKED
    return None


def build_slots(
    on: date,
    hours: Optional[OpeningHours],
    duration_minutes: int,
    booked: Iterable[BookedInterval],
    now: datetime,
    granularity_minutes: int = 30,
) -> List[TimeSlot]:
    """
    Enumerate candidate start times for one day.

    Candidates run every ``granularity_minutes`` from opening while the start
    is before closing; starts whose service would run past closing are listed
    as unavailable rather than dropped, so callers can show why.
    """
    if hours is None:
        return []

    booked = list(booked)
    open_at = datetime.combine(on, hours.start_time)
    close_at = datetime.combine(on, hours.end_time)
    step = timedelta(minutes=granularity_minutes)

    slots: list[TimeSlot] = []
    cursor = open_at
    while cursor < close_at:
        reason = unavailable_reason(on, cursor.time(), duration_minutes, hours, booked, now)
        slots.append(
            TimeSlot(
                time=cursor.strftime("%H:%M"),
                available=reason is None,
                reason=reason or "",
            )
        )
        cursor += step
    return slots
