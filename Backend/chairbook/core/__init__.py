"""
Core module - configuration, database, clock, errors, and response formatting.
"""
from .config import Settings, get_settings
from .db import AsyncSessionLocal, Base, engine, get_session_factory
from .clock import Clock, day_of_week, get_local_now
from .errors import (
    BookingError,
    InfrastructureError,
    NotFoundError,
    NotificationError,
    PaymentError,
    PolicyViolation,
    SlotUnavailable,
    ValidationError,
)
from .responses import ErrorCodes, ErrorDetail, error_response, status_for_code

__all__ = [
    # Config
    "Settings",
    "get_settings",
    # Database
    "AsyncSessionLocal",
    "Base",
    "engine",
    "get_session_factory",
    # Clock
    "Clock",
    "day_of_week",
    "get_local_now",
    # Errors
    "BookingError",
    "InfrastructureError",
    "NotFoundError",
    "NotificationError",
    "PaymentError",
    "PolicyViolation",
    "SlotUnavailable",
    "ValidationError",
    # Responses
    "ErrorCodes",
    "ErrorDetail",
    "error_response",
    "status_for_code",
]
