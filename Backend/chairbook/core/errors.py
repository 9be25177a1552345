"""
Booking error taxonomy.

Every failure the core can report to a caller is one of these exceptions.
The HTTP layer maps them onto the standard error envelope (see responses.py):

    ValidationError      -> 422 VALIDATION_ERROR      malformed input
    NotFoundError        -> 404 NOT_FOUND             unknown booking/service/client
    PolicyViolation      -> 409 POLICY_VIOLATION      cancellation window or illegal transition
    SlotUnavailable      -> 409 SLOT_UNAVAILABLE      reservation conflict, caller must re-fetch slots
    PaymentError         -> 402 PAYMENT_ERROR         gateway failure or unpaid intent
    InfrastructureError  -> 503 INFRASTRUCTURE_ERROR  storage/network failure, retryable

NotificationError is never propagated out of the dispatcher; it only exists so
channel failures are logged with a consistent type.
"""

from typing import Any, Optional


class BookingError(Exception):
    """Base class for all booking errors."""

    code = "BOOKING_ERROR"

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ValidationError(BookingError):
    code = "VALIDATION_ERROR"


class NotFoundError(BookingError):
    code = "NOT_FOUND"


class PolicyViolation(BookingError):
    code = "POLICY_VIOLATION"


class SlotUnavailable(BookingError):
    code = "SLOT_UNAVAILABLE"

    def __init__(self, message: str = "Slot is no longer available", details: Optional[dict[str, Any]] = None):
        details = dict(details or {})
        # Previously fetched slot lists are stale once a reservation conflicts
        details.setdefault("refetch_slots", True)
        super().__init__(message, details)


class PaymentError(BookingError):
    code = "PAYMENT_ERROR"


class InfrastructureError(BookingError):
    code = "INFRASTRUCTURE_ERROR"

    def __init__(self, message: str = "Temporary storage failure", details: Optional[dict[str, Any]] = None):
        details = dict(details or {})
        details.setdefault("retryable", True)
        super().__init__(message, details)


class NotificationError(BookingError):
    code = "NOTIFICATION_ERROR"

    def __init__(self, message: str, channel: str, details: Optional[dict[str, Any]] = None):
        self.channel = channel
        super().__init__(message, details)
