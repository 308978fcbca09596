# services/sms_service.py
import logging

import httpx

from parkwatch.core.config import settings

logger = logging.getLogger(__name__)


def format_number(number: str) -> str:
    """Standardize phone number format"""
    return number.strip().replace(" ", "").replace("+", "")


async def send_sms_notification(contact: str, message: str) -> bool:
    """Send generic SMS notification"""
    if not settings.SMS_API_KEY:
        raise EnvironmentError("Missing SMS gateway API key")

    formatted_contact = format_number(contact)
    params = {
        "action": "send-sms",
        "api_key": settings.SMS_API_KEY,
        "to": formatted_contact,
        "from": settings.SMS_SENDER_ID,
        "sms": message,
    }

    async with httpx.AsyncClient(timeout=10.0) as client:
        response = await client.get(settings.SMS_GATEWAY_URL, params=params)
        response.raise_for_status()
    logger.info("SMS notification sent to %s", formatted_contact)
    return True
