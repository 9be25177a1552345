"""
Availability Engine

Turns a provider's weekly opening hours plus the intervals already booked
into a list of bookable slots for a date and service duration.

Results are advisory: the reservation path re-checks the same rules under
the provider's calendar lock (see repository.BookingRepository.reserve).
"""

import logging
from datetime import date, datetime, time, timedelta
from typing import List, Optional

from .core.clock import Clock, day_of_week, get_local_now
from .core.config import get_settings
from .core.errors import ValidationError
from .models import WeeklyAvailabilityRule
from .repository import BookingRepository, opening_hours
from .slots import BookedInterval, TimeSlot, build_slots, unavailable_reason


logger = logging.getLogger(__name__)


class AvailabilityEngine:
    def __init__(self, repository: BookingRepository, clock: Clock = get_local_now):
        self.repository = repository
        self.clock = clock

    async def get_weekly_rule(self, provider_id: int, dow: int) -> Optional[WeeklyAvailabilityRule]:
        if not 0 <= dow <= 6:
            raise ValidationError("day_of_week must be between 0 and 6", {"day_of_week": dow})
        return await self.repository.get_weekly_rule(provider_id, dow)

    async def list_active_bookings(self, provider_id: int, on: date) -> List[BookedInterval]:
        intervals = await self.repository.list_active_bookings(provider_id, on)
        return intervals.get(on, [])

    async def generate_slots(
        self,
        provider_id: int,
        on: date,
        service_duration_minutes: int,
        granularity_minutes: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> List[TimeSlot]:
        """
        Slots for one provider and day.

        A day without an opening rule (or an unknown provider) yields an
        empty list rather than an error.
        """
        if granularity_minutes is None:
            granularity_minutes = get_settings().slot_granularity_minutes
        _require_positive("service_duration_minutes", service_duration_minutes)
        _require_positive("granularity_minutes", granularity_minutes)

        rule = await self.repository.get_weekly_rule(provider_id, day_of_week(on))
        hours = opening_hours(rule)
        if hours is None:
            return []

        booked = await self.list_active_bookings(provider_id, on)
        logger.debug("Provider %s on %s: %d active bookings", provider_id, on, len(booked))
        return build_slots(
            on,
            hours,
            service_duration_minutes,
            booked,
            now or self.clock(),
            granularity_minutes,
        )

    async def get_next_available_date(
        self,
        provider_id: int,
        from_date: date,
        max_days: Optional[int] = None,
        service_duration_minutes: int = 30,
        granularity_minutes: Optional[int] = None,
    ) -> Optional[date]:
        """First date from ``from_date`` with at least one open slot, scanning ``max_days`` days."""
        if max_days is None:
            max_days = get_settings().next_available_max_days
        if max_days < 0:
            raise ValidationError("max_days must not be negative", {"max_days": max_days})

        rules = await self.repository.get_weekly_rules(provider_id)
        open_days = {rule.day_of_week for rule in rules if rule.is_available}
        if not open_days:
            return None

        now = self.clock()
        for offset in range(max_days):
            candidate = from_date + timedelta(days=offset)
            if day_of_week(candidate) not in open_days:
                continue
            slots = await self.generate_slots(
                provider_id, candidate, service_duration_minutes, granularity_minutes, now=now
            )
            if any(slot.available for slot in slots):
                return candidate
        return None

    async def is_provider_available_on(self, provider_id: int, on: date) -> bool:
        """Whether the provider has opening hours on the day at all."""
        rule = await self.repository.get_weekly_rule(provider_id, day_of_week(on))
        return opening_hours(rule) is not None

    async def is_provider_available_this_week(self, provider_id: int, from_date: date) -> bool:
        rules = await self.repository.get_weekly_rules(provider_id)
        open_days = {rule.day_of_week for rule in rules if rule.is_available}
        return any(day_of_week(from_date + timedelta(days=offset)) in open_days for offset in range(7))

    async def is_slot_bookable(
        self,
        provider_id: int,
        on: date,
        start_time: time,
        service_duration_minutes: int,
    ) -> Optional[str]:
        """Reason the slot is unavailable, or None. Advisory only."""
        _require_positive("service_duration_minutes", service_duration_minutes)
        rule = await self.repository.get_weekly_rule(provider_id, day_of_week(on))
        booked = await self.list_active_bookings(provider_id, on)
        return unavailable_reason(
            on, start_time, service_duration_minutes, opening_hours(rule), booked, self.clock()
        )


def _require_positive(name: str, value: int) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f"{name} must be a positive integer", {name: value})
