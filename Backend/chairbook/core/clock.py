from datetime import date, datetime
from typing import Callable
from zoneinfo import ZoneInfo

from .config import get_settings


Clock = Callable[[], datetime]


def get_local_now() -> datetime:
    """Current wall-clock time on the provider's clock, as a naive datetime.

    Appointments are stored as local date + local time, so every comparison in
    the scheduling core happens on naive provider-local datetimes.
    """
    tz = ZoneInfo(get_settings().provider_timezone)
    return datetime.now(tz).replace(tzinfo=None)


def day_of_week(local_date: date) -> int:
    """Weekday number with Sunday == 0, as stored on availability rules."""
    return (local_date.weekday() + 1) % 7
