# services/email_service.py
import asyncio
import logging

from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail

from parkwatch.core.config import settings

logger = logging.getLogger(__name__)


def render_email(subject: str, html_content: str) -> str:
    return f"""
        <div style="font-family: Arial, sans-serif; max-width: 600px; margin: auto; padding: 20px; border: 1px solid #eee; border-radius: 10px;">
            <div style="text-align: center; margin-bottom: 20px;">
                <h2 style="color: #1F6FEB;">ParkWatch: {subject}</h2>
            </div>
            {html_content}
            <hr style="margin: 20px 0;">
            <p style="color: #666; font-size: 0.9em;">
                This is an automated notification. Please do not reply to this email.
            </p>
        </div>
        """


async def send_email_notification(email: str, subject: str, html_content: str) -> bool:
    """Send generic email notification"""
    if not settings.SENDGRID_API_KEY:
        raise EnvironmentError("SENDGRID_API_KEY is not set in settings")

    message = Mail(
        from_email=settings.FROM_EMAIL,
        to_emails=email,
        subject=subject,
        html_content=render_email(subject, html_content),
    )
    sg = SendGridAPIClient(settings.SENDGRID_API_KEY)
    # the SendGrid client is synchronous
    response = await asyncio.to_thread(sg.send, message)
    logger.info("Email notification sent to %s, status %s", email, response.status_code)
    return True
