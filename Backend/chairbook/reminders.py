"""
Appointment reminders.

There is no timer in the core: an external caller (cron, worker, admin
button) pulls ``dispatch_due_reminders`` and every confirmed booking that
starts within the reminder window gets exactly one ``appointment_reminder``.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from .core.config import get_settings
from .lifecycle import BookingLifecycle

logger = logging.getLogger(__name__)


@dataclass
class ReminderRun:
    sent: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


async def dispatch_due_reminders(
    lifecycle: BookingLifecycle,
    now: Optional[datetime] = None,
    window_hours: Optional[int] = None,
) -> ReminderRun:
    now = now or lifecycle.clock()
    if window_hours is None:
        window_hours = get_settings().reminder_window_hours
    horizon = now + timedelta(hours=window_hours)

    run = ReminderRun()
    candidates = await lifecycle.repository.list_reminder_candidates(now.date(), horizon.date())
    for booking in candidates:
        if not (now <= booking.starts_at <= horizon):
            continue
        if await lifecycle.send_reminder(booking.id, now):
            run.sent.append(str(booking.id))
        else:
            run.skipped.append(str(booking.id))

    if run.sent:
        logger.info("Sent %d appointment reminders", len(run.sent))
    return run
