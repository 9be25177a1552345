import logging
import uuid
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, Query, Request, Response, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .availability import AvailabilityEngine
from .core.clock import Clock, get_local_now
from .core.config import get_settings
from .core.db import AsyncSessionLocal, Base, engine
from .core.errors import BookingError, InfrastructureError, NotFoundError, PolicyViolation, ValidationError
from .core.responses import ErrorCodes, error_response, status_for_code
from .fees import compute
from .lifecycle import BookingLifecycle, BookingRequest, TransitionResult
from .notifications import BookingNotifier, BookingSnapshot, NotificationDispatcher, calendar_invite
from .payments import PaymentGateway, StripePaymentGateway
from .reminders import dispatch_due_reminders
from .repository import BookingRepository
from .schemas import (
    BookingActionResponse,
    BookingCreateRequest,
    BookingOut,
    FeePreviewResponse,
    NextAvailableResponse,
    PaymentIntentRequest,
    PaymentIntentResponse,
    ReminderDispatchResponse,
    RescheduleRequest,
    SlotsResponse,
    TimeSlotOut,
)
from .seed import seed_initial_data


settings = get_settings()
logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
)
app = FastAPI(title="Chairbook Booking Backend")
logger = logging.getLogger(__name__)


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list or ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================================================
# ERROR HANDLERS
# ============================================================================

@app.exception_handler(BookingError)
async def booking_error_handler(request: Request, exc: BookingError) -> JSONResponse:
    if isinstance(exc, InfrastructureError):
        logger.error("Infrastructure error on %s %s: %s", request.method, request.url.path, exc.message)
    else:
        logger.info("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=status_for_code(exc.code),
        content=jsonable_encoder(error_response(exc.code, exc.message, exc.details)),
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {"loc": [str(part) for part in error.get("loc", ())], "msg": error.get("msg", ""), "type": error.get("type", "")}
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=error_response(ErrorCodes.VALIDATION_ERROR, "Invalid request", {"errors": errors}),
    )


# ============================================================================
# DEPENDENCIES
# ============================================================================

def get_clock() -> Clock:
    return get_local_now


def get_repository() -> BookingRepository:
    return BookingRepository()


def get_notifier() -> NotificationDispatcher:
    return BookingNotifier()


def get_gateway() -> PaymentGateway:
    return StripePaymentGateway()


def get_availability(
    repository: BookingRepository = Depends(get_repository),
    clock: Clock = Depends(get_clock),
) -> AvailabilityEngine:
    return AvailabilityEngine(repository, clock=clock)


def get_lifecycle(
    repository: BookingRepository = Depends(get_repository),
    dispatcher: NotificationDispatcher = Depends(get_notifier),
    gateway: PaymentGateway = Depends(get_gateway),
    clock: Clock = Depends(get_clock),
) -> BookingLifecycle:
    return BookingLifecycle(repository, dispatcher, gateway=gateway, clock=clock)


async def resolve_duration(
    repository: BookingRepository,
    provider_id: int,
    service_id: Optional[int],
    duration_minutes: Optional[int],
) -> int:
    """Service duration wins over an explicit duration; one of them is required."""
    if service_id is not None:
        service = await repository.get_service(service_id)
        if not service or service.provider_id != provider_id:
            raise NotFoundError("Service not found", {"service_id": service_id, "provider_id": provider_id})
        return service.duration_minutes
    if duration_minutes is None:
        raise ValidationError("Either service_id or duration_minutes is required")
    return duration_minutes


def action_response(result: TransitionResult) -> BookingActionResponse:
    return BookingActionResponse(
        booking=BookingOut.from_booking(result.booking),
        created=result.created,
        notifications=result.notifications,
    )


@app.on_event("startup")
async def on_startup():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    if settings.seed_demo_data:
        async with AsyncSessionLocal() as session:
            await seed_initial_data(session)


@app.get("/health")
async def healthcheck():
    return {"ok": True}


# ============================================================================
# AVAILABILITY
# ============================================================================

@app.get("/providers/{provider_id}/slots", response_model=SlotsResponse)
async def list_slots(
    provider_id: int,
    date: date,
    service_id: Optional[int] = None,
    duration_minutes: Optional[int] = Query(default=None, gt=0),
    granularity_minutes: Optional[int] = Query(default=None, gt=0),
    repository: BookingRepository = Depends(get_repository),
    availability: AvailabilityEngine = Depends(get_availability),
):
    duration = await resolve_duration(repository, provider_id, service_id, duration_minutes)
    slots = await availability.generate_slots(provider_id, date, duration, granularity_minutes)
    return SlotsResponse(
        provider_id=provider_id,
        date=date,
        duration_minutes=duration,
        slots=[TimeSlotOut.from_slot(slot) for slot in slots],
    )


@app.get("/providers/{provider_id}/next-available", response_model=NextAvailableResponse)
async def next_available(
    provider_id: int,
    from_date: Optional[date] = None,
    max_days: Optional[int] = Query(default=None, ge=0, le=366),
    service_id: Optional[int] = None,
    duration_minutes: Optional[int] = Query(default=None, gt=0),
    repository: BookingRepository = Depends(get_repository),
    availability: AvailabilityEngine = Depends(get_availability),
    clock: Clock = Depends(get_clock),
):
    if service_id is None and duration_minutes is None:
        duration = settings.slot_granularity_minutes
    else:
        duration = await resolve_duration(repository, provider_id, service_id, duration_minutes)
    start = from_date or clock().date()
    found = await availability.get_next_available_date(
        provider_id, start, max_days=max_days, service_duration_minutes=duration
    )
    return NextAvailableResponse(provider_id=provider_id, from_date=start, next_available_date=found)


# ============================================================================
# PAYMENTS & FEES
# ============================================================================

@app.post("/payments/intents", response_model=PaymentIntentResponse)
async def create_payment_intent(
    payload: PaymentIntentRequest,
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
):
    intent = await lifecycle.start_payment(payload.provider_id, payload.client_id, payload.service_id)
    return PaymentIntentResponse(intent_id=intent.intent_id, client_secret=intent.client_secret)


@app.get("/fees", response_model=FeePreviewResponse)
async def preview_fees(amount_cents: int = Query(..., ge=0)):
    return FeePreviewResponse.from_breakdown(compute(amount_cents))


# ============================================================================
# BOOKINGS
# ============================================================================

def booking_request(payload: BookingCreateRequest) -> BookingRequest:
    return BookingRequest(
        provider_id=payload.provider_id,
        client_id=payload.client_id,
        service_id=payload.service_id,
        appointment_date=payload.date,
        appointment_time=payload.time.replace(second=0, microsecond=0),
        intent_id=payload.intent_id,
        notes=payload.notes,
    )


@app.post("/bookings", response_model=BookingActionResponse)
async def create_booking(
    payload: BookingCreateRequest,
    response: Response,
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
):
    """Create a confirmed booking for a succeeded payment intent; replays return the original."""
    result = await lifecycle.create_paid_booking(booking_request(payload))
    response.status_code = status.HTTP_201_CREATED if result.created else status.HTTP_200_OK
    return action_response(result)


@app.post("/bookings/manual", response_model=BookingActionResponse, status_code=status.HTTP_201_CREATED)
async def create_manual_booking(
    payload: BookingCreateRequest,
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
):
    """Create a pending booking that the provider confirms later."""
    result = await lifecycle.create_pending_booking(booking_request(payload))
    return action_response(result)


@app.get("/bookings/{booking_id}", response_model=BookingOut)
async def get_booking(booking_id: uuid.UUID, repository: BookingRepository = Depends(get_repository)):
    booking = await repository.get_booking(booking_id)
    if not booking:
        raise NotFoundError("Booking not found", {"booking_id": str(booking_id)})
    return BookingOut.from_booking(booking)


@app.post("/bookings/{booking_id}/confirm", response_model=BookingActionResponse)
async def confirm_booking(booking_id: uuid.UUID, lifecycle: BookingLifecycle = Depends(get_lifecycle)):
    return action_response(await lifecycle.confirm(booking_id))


@app.post("/bookings/{booking_id}/cancel", response_model=BookingActionResponse)
async def cancel_booking(booking_id: uuid.UUID, lifecycle: BookingLifecycle = Depends(get_lifecycle)):
    return action_response(await lifecycle.cancel(booking_id))


@app.post("/bookings/{booking_id}/complete", response_model=BookingActionResponse)
async def complete_booking(booking_id: uuid.UUID, lifecycle: BookingLifecycle = Depends(get_lifecycle)):
    return action_response(await lifecycle.complete(booking_id))


@app.post("/bookings/{booking_id}/refund-request", response_model=BookingActionResponse)
async def request_refund(booking_id: uuid.UUID, lifecycle: BookingLifecycle = Depends(get_lifecycle)):
    return action_response(await lifecycle.request_refund(booking_id))


@app.post("/bookings/{booking_id}/reschedule", response_model=BookingActionResponse)
async def reschedule_booking(
    booking_id: uuid.UUID,
    payload: RescheduleRequest,
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
):
    result = await lifecycle.reschedule(
        booking_id, payload.new_date, payload.new_time.replace(second=0, microsecond=0)
    )
    return action_response(result)


@app.delete("/bookings/{booking_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_booking(booking_id: uuid.UUID, lifecycle: BookingLifecycle = Depends(get_lifecycle)):
    await lifecycle.delete(booking_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.get("/bookings/{booking_id}/invite")
async def booking_invite(booking_id: uuid.UUID, repository: BookingRepository = Depends(get_repository)):
    """Return a .ics invite file compatible with Google, Apple, and Outlook."""
    details = await repository.get_booking_details(booking_id)
    if not details:
        raise NotFoundError("Booking not found", {"booking_id": str(booking_id)})
    if not details.booking.is_active():
        raise PolicyViolation(
            "Only pending or confirmed bookings have an invite",
            {"booking_id": str(booking_id), "status": details.booking.status.value},
        )

    ics = calendar_invite(BookingSnapshot.from_details(details))
    filename = f"chairbook-booking-{booking_id}.ics"
    return Response(
        content=ics,
        media_type="text/calendar",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


# ============================================================================
# REMINDERS
# ============================================================================

@app.post("/reminders/dispatch", response_model=ReminderDispatchResponse)
async def dispatch_reminders(
    window_hours: Optional[int] = Query(default=None, gt=0, le=168),
    lifecycle: BookingLifecycle = Depends(get_lifecycle),
):
    run = await dispatch_due_reminders(lifecycle, window_hours=window_hours)
    return ReminderDispatchResponse(sent=run.sent, skipped=run.skipped)
