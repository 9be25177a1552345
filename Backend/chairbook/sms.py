"""
SMS sender utility using Twilio Programmable SMS.
"""

import asyncio
import logging

from twilio.base.exceptions import TwilioRestException
from twilio.rest import Client

from .core.config import get_settings
from .core.errors import NotificationError

logger = logging.getLogger(__name__)


def ensure_e164_format(phone: str) -> str:
    """Ensure phone number is in E.164 format (+1...)."""
    if not phone:
        return phone

    # Remove spaces, dashes, parentheses
    cleaned = phone.replace(" ", "").replace("-", "").replace("(", "").replace(")", "")

    # If it doesn't start with +, assume US and add +1
    if not cleaned.startswith("+"):
        if cleaned.startswith("1") and len(cleaned) == 11:
            cleaned = f"+{cleaned}"
        else:
            cleaned = f"+1{cleaned}"

    return cleaned


def sms_configured() -> bool:
    settings = get_settings()
    return bool(settings.twilio_account_sid and settings.twilio_auth_token and settings.twilio_from_number)


async def send_sms(to_phone: str, body: str) -> str:
    """
    Send an SMS using Twilio.

    Args:
        to_phone: Recipient phone number, normalized to E.164
        body: SMS message body

    Returns:
        The Twilio message SID

    Raises:
        NotificationError: If Twilio is not configured or the API call fails
    """
    settings = get_settings()
    if not sms_configured():
        raise NotificationError("Twilio SMS not configured", channel="sms")

    to_phone_formatted = ensure_e164_format(to_phone)
    if not to_phone_formatted:
        raise NotificationError(f"Invalid phone number format: {to_phone}", channel="sms")

    client = Client(settings.twilio_account_sid, settings.twilio_auth_token)
    try:
        # The Twilio client is blocking; keep it off the event loop
        message = await asyncio.to_thread(
            client.messages.create,
            body=body,
            from_=ensure_e164_format(settings.twilio_from_number),
            to=to_phone_formatted,
        )
    except TwilioRestException as e:
        raise NotificationError(f"Twilio API error: {e.code} - {e.msg}", channel="sms") from e

    logger.info(f"SMS sent successfully to {to_phone_formatted[:6]}***. SID: {message.sid}")
    return message.sid
