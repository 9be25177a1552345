import base64
import logging
from datetime import datetime, timezone
from typing import Optional

import httpx

from .core.config import get_settings
from .core.errors import NotificationError

logger = logging.getLogger(__name__)

RESEND_URL = "https://api.resend.com/emails"


def format_ical_timestamp(value: datetime) -> str:
    """Format datetime for iCalendar (RFC 5545); naive values are floating local time."""
    if value.tzinfo is None:
        return value.strftime("%Y%m%dT%H%M%S")
    return value.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def escape_ical_text(value: str) -> str:
    return (
        value.replace("\\", "\\\\")
        .replace(";", "\\;")
        .replace(",", "\\,")
        .replace("\n", "\\n")
    )


def build_ics_event(
    uid: str,
    start_at: datetime,
    end_at: datetime,
    summary: str,
    description: str,
    location: str,
) -> str:
    dtstamp = format_ical_timestamp(datetime.now(timezone.utc))
    lines = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        "PRODID:-//Chairbook//Booking//EN",
        "CALSCALE:GREGORIAN",
        "METHOD:PUBLISH",
        "BEGIN:VEVENT",
        f"UID:{uid}",
        f"DTSTAMP:{dtstamp}",
        f"DTSTART:{format_ical_timestamp(start_at)}",
        f"DTEND:{format_ical_timestamp(end_at)}",
        f"SUMMARY:{escape_ical_text(summary)}",
        f"DESCRIPTION:{escape_ical_text(description)}",
        f"LOCATION:{escape_ical_text(location)}",
        "END:VEVENT",
        "END:VCALENDAR",
    ]
    return "\r\n".join(lines) + "\r\n"


def email_configured() -> bool:
    settings = get_settings()
    return bool(settings.resend_api_key and settings.resend_from)


async def send_email(
    to_email: str,
    subject: str,
    html: str,
    ics_filename: Optional[str] = None,
    ics_text: Optional[str] = None,
) -> None:
    """
    Send an email through Resend, optionally with a calendar invite attached.

    Raises:
        NotificationError: If Resend is not configured or rejects the request
    """
    settings = get_settings()
    if not email_configured():
        raise NotificationError("Resend is not configured", channel="email")

    payload = {
        "from": settings.resend_from,
        "to": to_email,
        "subject": subject,
        "html": html,
    }
    if ics_filename and ics_text:
        attachment_content = base64.b64encode(ics_text.encode("utf-8")).decode("ascii")
        payload["attachments"] = [
            {
                "filename": ics_filename,
                "content": attachment_content,
                "content_type": "text/calendar; charset=utf-8",
            }
        ]

    headers = {
        "Authorization": f"Bearer {settings.resend_api_key}",
        "Content-Type": "application/json",
    }

    try:
        async with httpx.AsyncClient(timeout=10) as client:
            response = await client.post(RESEND_URL, json=payload, headers=headers)
            response.raise_for_status()
    except httpx.HTTPError as exc:
        raise NotificationError(f"Resend request failed: {exc}", channel="email") from exc

    logger.info("Sent email '%s' to %s", subject, to_email)
