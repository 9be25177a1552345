"""
Booking storage.

The repository is the only code that touches the database. Reads run in
short sessions without locking; every write to a provider's calendar runs
inside one transaction while holding the calendar lock for each affected
(provider_id, date):

    * an in-process asyncio.Lock per (provider_id, date), and
    * on PostgreSQL, pg_advisory_xact_lock(provider_id, date ordinal), so
      separate worker processes serialize as well.

The overlap check and the insert/update happen under that lock in the same
transaction, so a slot list read earlier is only ever advisory.
"""

import asyncio
import logging
import uuid
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import AsyncIterator, Callable, Iterable, List, Optional

from sqlalchemy import delete, select, text, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .core.clock import day_of_week
from .core.db import get_session_factory
from .core.errors import InfrastructureError, NotFoundError, PolicyViolation, SlotUnavailable
from .models import (
    ACTIVE_STATUSES,
    Booking,
    BookingStatus,
    Client,
    Provider,
    Service,
    WeeklyAvailabilityRule,
)
from .slots import BookedInterval, OpeningHours, unavailable_reason


logger = logging.getLogger(__name__)

CalendarKey = tuple[int, date]
BookingGuard = Callable[[Booking], None]


@dataclass
class NewBooking:
    provider_id: int
    client_id: int
    service_id: int
    appointment_date: date
    appointment_time: time
    duration_minutes: int
    status: BookingStatus
    total_amount_cents: int
    deposit_amount_cents: int = 0
    platform_fee_cents: int = 0
    payment_intent_id: Optional[str] = None
    notes: Optional[str] = None


@dataclass
class Reservation:
    booking: Booking
    created: bool


@dataclass
class BookingDetails:
    booking: Booking
    provider: Provider
    client: Client
    service: Service


class CalendarLocks:
    """Exclusive in-process locks keyed by (provider_id, date)."""

    def __init__(self) -> None:
        self._locks: dict[CalendarKey, asyncio.Lock] = defaultdict(asyncio.Lock)

    @asynccontextmanager
    async def hold(self, keys: Iterable[CalendarKey]) -> AsyncIterator[None]:
        # Sorted acquisition keeps two-day reschedules from deadlocking
        ordered = sorted(set(keys))
        acquired: list[asyncio.Lock] = []
        try:
            for key in ordered:
                lock = self._locks[key]
                await lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()


_default_locks = CalendarLocks()


def opening_hours(rule: Optional[WeeklyAvailabilityRule]) -> Optional[OpeningHours]:
    if rule is None or not rule.is_available:
        return None
    return OpeningHours(start_time=rule.start_time, end_time=rule.end_time)


class BookingRepository:
    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        locks: Optional[CalendarLocks] = None,
    ):
        self._session_factory = session_factory or get_session_factory()
        self._locks = locks or _default_locks

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _read(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                yield session
        except SQLAlchemyError as exc:
            logger.exception("Storage read failed")
            raise InfrastructureError() from exc
        except OSError as exc:
            logger.exception("Storage connection failed")
            raise InfrastructureError() from exc

    @asynccontextmanager
    async def _write(self, keys: Iterable[CalendarKey]) -> AsyncIterator[AsyncSession]:
        """Transaction holding the calendar lock for every key; all-or-nothing."""
        keys = list(keys)
        async with self._locks.hold(keys):
            try:
                async with self._session_factory() as session:
                    async with session.begin():
                        await self._lock_calendar(session, keys)
                        yield session
            except IntegrityError:
                raise
            except SQLAlchemyError as exc:
                logger.exception("Storage write failed for %s", keys)
                raise InfrastructureError() from exc
            except OSError as exc:
                logger.exception("Storage connection failed for %s", keys)
                raise InfrastructureError() from exc

    async def _lock_calendar(self, session: AsyncSession, keys: list[CalendarKey]) -> None:
        if session.get_bind().dialect.name != "postgresql":
            return
        for provider_id, on in sorted(set(keys)):
            await session.execute(
                text("SELECT pg_advisory_xact_lock(:k1, :k2)"),
                {"k1": provider_id % 2147483647, "k2": on.toordinal()},
            )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_provider(self, provider_id: int) -> Optional[Provider]:
        async with self._read() as session:
            return await session.get(Provider, provider_id)

    async def get_service(self, service_id: int) -> Optional[Service]:
        async with self._read() as session:
            return await session.get(Service, service_id)

    async def get_client(self, client_id: int) -> Optional[Client]:
        async with self._read() as session:
            return await session.get(Client, client_id)

    async def get_booking(self, booking_id: uuid.UUID) -> Optional[Booking]:
        async with self._read() as session:
            return await session.get(Booking, booking_id)

    async def get_booking_by_intent(self, intent_id: str) -> Optional[Booking]:
        async with self._read() as session:
            return await session.scalar(select(Booking).where(Booking.payment_intent_id == intent_id))

    async def get_booking_details(self, booking_id: uuid.UUID) -> Optional[BookingDetails]:
        async with self._read() as session:
            result = await session.execute(
                select(Booking, Provider, Client, Service)
                .join(Provider, Provider.id == Booking.provider_id)
                .join(Client, Client.id == Booking.client_id)
                .join(Service, Service.id == Booking.service_id)
                .where(Booking.id == booking_id)
            )
            row = result.first()
            if not row:
                return None
            booking, provider, client, service = row
            return BookingDetails(booking=booking, provider=provider, client=client, service=service)

    async def get_weekly_rules(self, provider_id: int) -> List[WeeklyAvailabilityRule]:
        async with self._read() as session:
            result = await session.execute(
                select(WeeklyAvailabilityRule)
                .where(WeeklyAvailabilityRule.provider_id == provider_id)
                .order_by(WeeklyAvailabilityRule.day_of_week)
            )
            return list(result.scalars().all())

    async def get_weekly_rule(self, provider_id: int, dow: int) -> Optional[WeeklyAvailabilityRule]:
        async with self._read() as session:
            return await self._rule(session, provider_id, dow)

    async def list_active_bookings(
        self,
        provider_id: int,
        start_date: date,
        end_date: Optional[date] = None,
    ) -> dict[date, List[BookedInterval]]:
        """Active (pending/confirmed) intervals per date within the inclusive range."""
        async with self._read() as session:
            return await self._active_intervals(session, provider_id, start_date, end_date or start_date)

    async def list_reminder_candidates(self, start_date: date, end_date: date) -> List[Booking]:
        async with self._read() as session:
            result = await session.execute(
                select(Booking)
                .where(
                    Booking.status == BookingStatus.CONFIRMED,
                    Booking.reminder_sent_at.is_(None),
                    Booking.appointment_date >= start_date,
                    Booking.appointment_date <= end_date,
                )
                .order_by(Booking.appointment_date, Booking.appointment_time)
            )
            return list(result.scalars().all())

    async def _rule(self, session: AsyncSession, provider_id: int, dow: int) -> Optional[WeeklyAvailabilityRule]:
        return await session.scalar(
            select(WeeklyAvailabilityRule).where(
                WeeklyAvailabilityRule.provider_id == provider_id,
                WeeklyAvailabilityRule.day_of_week == dow,
                WeeklyAvailabilityRule.is_available.is_(True),
            )
        )

    async def _active_intervals(
        self,
        session: AsyncSession,
        provider_id: int,
        start_date: date,
        end_date: date,
        exclude_booking_id: Optional[uuid.UUID] = None,
    ) -> dict[date, List[BookedInterval]]:
        query = select(Booking.id, Booking.appointment_date, Booking.appointment_time, Booking.duration_minutes).where(
            Booking.provider_id == provider_id,
            Booking.appointment_date >= start_date,
            Booking.appointment_date <= end_date,
            Booking.status.in_(ACTIVE_STATUSES),
        )
        result = await session.execute(query.order_by(Booking.appointment_date, Booking.appointment_time))

        intervals: dict[date, List[BookedInterval]] = defaultdict(list)
        for booking_id, on, start_time, duration in result.all():
            if exclude_booking_id and booking_id == exclude_booking_id:
                continue
            intervals[on].append(BookedInterval(start_time=start_time, duration_minutes=duration))
        return dict(intervals)

    async def _check_slot(
        self,
        session: AsyncSession,
        provider_id: int,
        on: date,
        start_time: time,
        duration_minutes: int,
        now: datetime,
        exclude_booking_id: Optional[uuid.UUID] = None,
    ) -> None:
        rule = await self._rule(session, provider_id, day_of_week(on))
        booked = await self._active_intervals(session, provider_id, on, on, exclude_booking_id)
        reason = unavailable_reason(on, start_time, duration_minutes, opening_hours(rule), booked.get(on, []), now)
        if reason:
            raise SlotUnavailable(
                f"Slot {on.isoformat()} {start_time.strftime('%H:%M')} is not available: {reason}",
                {"date": on.isoformat(), "time": start_time.strftime("%H:%M"), "reason": reason},
            )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def reserve(self, new: NewBooking, now: datetime) -> Reservation:
        """
        Atomically check the slot and insert the booking.

        Idempotent on ``payment_intent_id``: replaying an intent returns the
        booking it already created.

        Raises:
            SlotUnavailable: If the interval is taken, past, or outside hours
        """
        key = (new.provider_id, new.appointment_date)
        try:
            async with self._write([key]) as session:
                if new.payment_intent_id:
                    existing = await session.scalar(
                        select(Booking).where(Booking.payment_intent_id == new.payment_intent_id)
                    )
                    if existing:
                        return Reservation(booking=existing, created=False)

                await self._check_slot(
                    session,
                    new.provider_id,
                    new.appointment_date,
                    new.appointment_time,
                    new.duration_minutes,
                    now,
                )
                booking = Booking(
                    provider_id=new.provider_id,
                    client_id=new.client_id,
                    service_id=new.service_id,
                    appointment_date=new.appointment_date,
                    appointment_time=new.appointment_time,
                    duration_minutes=new.duration_minutes,
                    status=new.status,
                    total_amount_cents=new.total_amount_cents,
                    deposit_amount_cents=new.deposit_amount_cents,
                    platform_fee_cents=new.platform_fee_cents,
                    payment_intent_id=new.payment_intent_id,
                    notes=new.notes,
                )
                session.add(booking)
                await session.flush()
        except IntegrityError as exc:
            # Same intent replayed concurrently against a different calendar day
            if new.payment_intent_id:
                existing = await self.get_booking_by_intent(new.payment_intent_id)
                if existing:
                    return Reservation(booking=existing, created=False)
            logger.exception("Integrity error reserving %s", key)
            raise InfrastructureError() from exc

        booking = await self._reload(booking)
        logger.info(
            "Reserved booking %s for provider %s on %s at %s",
            booking.id,
            booking.provider_id,
            booking.appointment_date,
            booking.appointment_time,
        )
        return Reservation(booking=booking, created=True)

    async def move(
        self,
        booking_id: uuid.UUID,
        new_date: date,
        new_time: time,
        now: datetime,
        expected_status: BookingStatus,
        guard: Optional[BookingGuard] = None,
    ) -> Booking:
        """
        Atomically release the booking's current interval and claim the new one.

        Both calendar days are locked for the whole operation; on any failure
        the booking keeps its original date, time and status.
        """
        current = await self._require(booking_id)
        keys = [(current.provider_id, current.appointment_date), (current.provider_id, new_date)]
        try:
            async with self._write(keys) as session:
                booking = await self._locked_row(session, booking_id, expected_status, current)
                if guard:
                    guard(booking)
                await self._check_slot(
                    session,
                    booking.provider_id,
                    new_date,
                    new_time,
                    booking.duration_minutes,
                    now,
                    exclude_booking_id=booking.id,
                )
                booking.appointment_date = new_date
                booking.appointment_time = new_time
                booking.reminder_sent_at = None
                await session.flush()
        except IntegrityError as exc:
            logger.exception("Integrity error moving booking %s", booking_id)
            raise InfrastructureError() from exc

        booking = await self._reload(booking)
        logger.info("Moved booking %s to %s %s", booking.id, new_date, new_time)
        return booking

    async def update_status(
        self,
        booking_id: uuid.UUID,
        new_status: BookingStatus,
        expected_status: BookingStatus,
        guard: Optional[BookingGuard] = None,
    ) -> Booking:
        """
        Change status only if the row still has ``expected_status``.

        Raises:
            NotFoundError: If the booking doesn't exist
            PolicyViolation: If the status changed concurrently, or the guard rejects the row
        """
        current = await self._require(booking_id)
        key = (current.provider_id, current.appointment_date)
        try:
            async with self._write([key]) as session:
                booking = await self._locked_row(session, booking_id, expected_status, current)
                if guard:
                    guard(booking)
                result = await session.execute(
                    update(Booking)
                    .where(Booking.id == booking_id, Booking.status == expected_status)
                    .values(status=new_status)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise self._concurrent(booking_id, expected_status)
                booking.status = new_status
        except IntegrityError as exc:
            logger.exception("Integrity error updating booking %s", booking_id)
            raise InfrastructureError() from exc

        booking = await self._reload(booking)
        logger.info("Booking %s: %s -> %s", booking_id, expected_status.value, new_status.value)
        return booking

    async def mark_reminder_sent(self, booking_id: uuid.UUID, sent_at: datetime) -> bool:
        """Claim the reminder for a booking; False if someone else already did."""
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        update(Booking)
                        .where(
                            Booking.id == booking_id,
                            Booking.status == BookingStatus.CONFIRMED,
                            Booking.reminder_sent_at.is_(None),
                        )
                        .values(reminder_sent_at=sent_at)
                        .execution_options(synchronize_session=False)
                    )
                    return result.rowcount == 1
        except SQLAlchemyError as exc:
            logger.exception("Failed to mark reminder for booking %s", booking_id)
            raise InfrastructureError() from exc

    async def delete_booking(self, booking_id: uuid.UUID) -> None:
        """Permanently delete a booking; only cancelled bookings may be removed."""
        current = await self._require(booking_id)
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        delete(Booking).where(
                            Booking.id == booking_id,
                            Booking.status == BookingStatus.CANCELLED,
                        )
                    )
                    deleted = result.rowcount == 1
        except SQLAlchemyError as exc:
            logger.exception("Failed to delete booking %s", booking_id)
            raise InfrastructureError() from exc

        if not deleted:
            raise PolicyViolation(
                "Only cancelled bookings can be deleted",
                {"booking_id": str(booking_id), "status": current.status.value},
            )
        logger.info("Deleted cancelled booking %s", booking_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _require(self, booking_id: uuid.UUID) -> Booking:
        booking = await self.get_booking(booking_id)
        if not booking:
            raise NotFoundError("Booking not found", {"booking_id": str(booking_id)})
        return booking

    async def _locked_row(
        self,
        session: AsyncSession,
        booking_id: uuid.UUID,
        expected_status: BookingStatus,
        snapshot: Booking,
    ) -> Booking:
        booking = await session.scalar(select(Booking).where(Booking.id == booking_id).with_for_update())
        if booking is None:
            raise NotFoundError("Booking not found", {"booking_id": str(booking_id)})
        # The lock was taken for the snapshot's day; a concurrent move invalidates it
        if booking.status != expected_status or booking.appointment_date != snapshot.appointment_date:
            raise self._concurrent(booking_id, expected_status)
        return booking

    def _concurrent(self, booking_id: uuid.UUID, expected_status: BookingStatus) -> PolicyViolation:
        return PolicyViolation(
            "Booking was modified concurrently; reload and try again",
            {"booking_id": str(booking_id), "expected_status": expected_status.value},
        )

    async def _reload(self, booking: Booking) -> Booking:
        # Fresh detached copy carrying the server-side timestamps written on commit
        async with self._read() as session:
            fresh = await session.get(Booking, booking.id)
            return fresh if fresh is not None else booking
