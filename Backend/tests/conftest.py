"""
Pytest configuration and fixtures for async database testing.

Each test gets its own SQLite file (aiosqlite) with a freshly created schema,
its own calendar locks, a controllable clock, and in-memory stand-ins for the
notification dispatcher and the payment gateway.
"""
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, Optional

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from chairbook.availability import AvailabilityEngine
from chairbook.core.db import Base
from chairbook.core.errors import PaymentError
from chairbook.lifecycle import BookingLifecycle, BookingRequest
from chairbook.models import BookingStatus, Client, Provider, Service, WeeklyAvailabilityRule
from chairbook.notifications import CHANNELS, Audience, BookingSnapshot, NotificationEvent
from chairbook.payments import PaymentIntentResult, PaymentIntentStatus
from chairbook.repository import BookingRepository, CalendarLocks, NewBooking


# Monday; day_of_week == 1
MONDAY = date(2029, 1, 8)
TUESDAY = MONDAY + timedelta(days=1)
# One week before MONDAY, well outside any change window
DEFAULT_NOW = datetime(2029, 1, 1, 8, 0)


# ────────────────────────────────────────────────────────────────
# Test doubles
# ────────────────────────────────────────────────────────────────

class FakeClock:
    """Callable clock returning a settable provider-local time."""

    def __init__(self, now: datetime = DEFAULT_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, now: datetime) -> None:
        self.now = now


@dataclass
class SentNotification:
    event: NotificationEvent
    snapshot: BookingSnapshot
    audience: Audience


class RecordingDispatcher:
    """NotificationDispatcher that records every call instead of sending."""

    def __init__(self):
        self.sent: list[SentNotification] = []

    async def notify(self, event, snapshot, audience=Audience.BOTH):
        self.sent.append(SentNotification(event=event, snapshot=snapshot, audience=audience))
        return {channel: True for channel in CHANNELS}

    @property
    def events(self) -> list[NotificationEvent]:
        return [item.event for item in self.sent]


@dataclass
class FakeGateway:
    """PaymentGateway keeping intents in memory."""

    intents: Dict[str, PaymentIntentStatus] = field(default_factory=dict)
    created: list = field(default_factory=list)
    retrieved: list = field(default_factory=list)

    async def create_intent(
        self,
        amount_cents: int,
        currency: str,
        metadata: Dict[str, Any],
        application_fee_cents: Optional[int] = None,
        destination_account: Optional[str] = None,
    ) -> PaymentIntentResult:
        intent_id = f"pi_test_{len(self.created) + 1}"
        self.created.append(
            {
                "intent_id": intent_id,
                "amount_cents": amount_cents,
                "currency": currency,
                "metadata": metadata,
                "application_fee_cents": application_fee_cents,
                "destination_account": destination_account,
            }
        )
        self.intents[intent_id] = PaymentIntentStatus(
            intent_id=intent_id,
            status="requires_payment_method",
            amount_cents=amount_cents,
            metadata={key: str(value) for key, value in metadata.items()},
        )
        return PaymentIntentResult(intent_id=intent_id, client_secret=f"{intent_id}_secret")

    async def retrieve_intent(self, intent_id: str) -> PaymentIntentStatus:
        self.retrieved.append(intent_id)
        if intent_id not in self.intents:
            raise PaymentError("No such payment intent", {"intent_id": intent_id})
        return self.intents[intent_id]

    def succeed(self, intent_id: str, amount_cents: int, service_id: Optional[int] = None) -> None:
        metadata = {"service_id": str(service_id)} if service_id is not None else {}
        self.intents[intent_id] = PaymentIntentStatus(
            intent_id=intent_id, status="succeeded", amount_cents=amount_cents, metadata=metadata
        )


@dataclass
class SeededCalendar:
    provider_id: int
    client_id: int
    haircut_id: int  # 30 min, $35.00
    color_id: int  # 60 min, $50.00, $10.00 deposit
    other_provider_id: int
    other_service_id: int


# ────────────────────────────────────────────────────────────────
# Database
# ────────────────────────────────────────────────────────────────

@pytest.fixture(scope="function")
async def async_engine(tmp_path):
    """
    Create async SQLAlchemy engine on a per-test SQLite file.

    A file (not :memory:) lets concurrent sessions see each other's commits.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'chairbook_test.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(async_engine):
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def seeded(session_factory) -> SeededCalendar:
    """Provider open Monday 09:00-17:00 and Tuesday 10:00-14:00, plus one client."""
    async with session_factory() as session:
        provider = Provider(
            business_name="Fade Factory",
            owner_name="Marcus",
            email="marcus@example.com",
            phone="+15555550100",
            address="1 Barber Way",
        )
        other = Provider(business_name="Elsewhere Cuts", owner_name="Jo")
        session.add_all([provider, other])
        await session.flush()

        session.add_all(
            [
                WeeklyAvailabilityRule(
                    provider_id=provider.id, day_of_week=1, start_time=time(9, 0), end_time=time(17, 0)
                ),
                WeeklyAvailabilityRule(
                    provider_id=provider.id, day_of_week=2, start_time=time(10, 0), end_time=time(14, 0)
                ),
                WeeklyAvailabilityRule(
                    provider_id=provider.id,
                    day_of_week=3,
                    start_time=time(9, 0),
                    end_time=time(17, 0),
                    is_available=False,
                ),
            ]
        )
        haircut = Service(provider_id=provider.id, name="Haircut", duration_minutes=30, price_cents=3500)
        color = Service(
            provider_id=provider.id,
            name="Color",
            duration_minutes=60,
            price_cents=5000,
            deposit_required=True,
            deposit_amount_cents=1000,
        )
        other_service = Service(provider_id=other.id, name="Shave", duration_minutes=30, price_cents=2000)
        client = Client(
            first_name="Dana",
            last_name="Lee",
            email="dana@example.com",
            phone="+15555550199",
        )
        session.add_all([haircut, color, other_service, client])
        await session.commit()

        return SeededCalendar(
            provider_id=provider.id,
            client_id=client.id,
            haircut_id=haircut.id,
            color_id=color.id,
            other_provider_id=other.id,
            other_service_id=other_service.id,
        )


# ────────────────────────────────────────────────────────────────
# Collaborators
# ────────────────────────────────────────────────────────────────

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def repository(session_factory) -> BookingRepository:
    return BookingRepository(session_factory=session_factory, locks=CalendarLocks())


@pytest.fixture
def availability(repository, clock) -> AvailabilityEngine:
    return AvailabilityEngine(repository, clock=clock)


@pytest.fixture
def lifecycle(repository, dispatcher, gateway, clock) -> BookingLifecycle:
    return BookingLifecycle(repository, dispatcher, gateway=gateway, clock=clock)


@pytest.fixture
def make_request(seeded):
    """Build a BookingRequest for the seeded provider and client."""

    def _make(on: date = MONDAY, at: time = time(10, 0), service_id: Optional[int] = None, **overrides):
        data = {
            "provider_id": seeded.provider_id,
            "client_id": seeded.client_id,
            "service_id": service_id or seeded.haircut_id,
            "appointment_date": on,
            "appointment_time": at,
        }
        data.update(overrides)
        return BookingRequest(**data)

    return _make


@pytest.fixture
def book(repository, seeded, clock):
    """Insert an active booking straight through the repository."""

    async def _book(
        on: date = MONDAY,
        at: time = time(10, 0),
        duration_minutes: int = 30,
        status: BookingStatus = BookingStatus.CONFIRMED,
        intent_id: Optional[str] = None,
    ):
        reservation = await repository.reserve(
            NewBooking(
                provider_id=seeded.provider_id,
                client_id=seeded.client_id,
                service_id=seeded.haircut_id,
                appointment_date=on,
                appointment_time=at,
                duration_minutes=duration_minutes,
                status=status,
                total_amount_cents=3500,
                payment_intent_id=intent_id,
            ),
            clock(),
        )
        return reservation.booking

    return _book


# ────────────────────────────────────────────────────────────────
# API
# ────────────────────────────────────────────────────────────────

@pytest.fixture(scope="function")
async def client(repository, dispatcher, gateway, clock):
    """
    Create FastAPI AsyncClient with the collaborators overridden.

    ASGITransport does not run startup events, so nothing touches the
    configured production database.
    """
    from chairbook.main import app, get_clock, get_gateway, get_notifier, get_repository

    app.dependency_overrides[get_repository] = lambda: repository
    app.dependency_overrides[get_notifier] = lambda: dispatcher
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_clock] = lambda: clock

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
