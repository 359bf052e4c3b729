"""
Candidate notifications over the Brevo transactional email API.

Sending is best effort: every failure is logged and reported as False,
never raised, so a mail outage cannot fail an ingestion.
"""

import logging
from html import escape
from typing import Optional

import httpx

from app.config import Settings, get_settings

logger = logging.getLogger(__name__)


class NotificationService:
    def __init__(self, settings: Optional[Settings] = None, client: Optional[httpx.AsyncClient] = None):
        self.settings = settings or get_settings()
        self._client = client

    async def _post(self, payload: dict) -> httpx.Response:
        headers = {"api-key": self.settings.brevo_api_key, "accept": "application/json"}
        if self._client is not None:
            return await self._client.post(self.settings.brevo_email_url, json=payload, headers=headers)
        async with httpx.AsyncClient(timeout=15.0) as client:
            return await client.post(self.settings.brevo_email_url, json=payload, headers=headers)

    async def send_thank_you(self, to_email: str, to_name: Optional[str], job_title: Optional[str]) -> bool:
        """Thank a candidate for applying. Returns whether the provider accepted the email."""
        if not self.settings.brevo_api_key:
            logger.info(f"No email API key configured, skipping thank-you email to {to_email}")
            return False

        name = to_name or to_email
        position = job_title or "the position"
        payload = {
            "sender": {
                "email": self.settings.notification_sender_email,
                "name": self.settings.notification_sender_name,
            },
            "to": [{"email": to_email, "name": name}],
            "subject": f"Thank you for applying: {position}",
            "htmlContent": (
                f"<p>Dear {escape(name)},</p>"
                f"<p>Thank you for your application for {escape(position)}. "
                f"We have received your documents and will be in touch.</p>"
            ),
        }

        try:
            response = await self._post(payload)
            response.raise_for_status()
            logger.info(f"Thank-you email sent to {to_email}")
            return True
        except Exception as e:
            logger.error(f"Failed to send thank-you email to {to_email}: {e}")
            return False


class QueuedNotifier:
    """Hands thank-you emails to the notifications queue instead of sending inline."""

    async def send_thank_you(self, to_email: str, to_name: Optional[str], job_title: Optional[str]) -> bool:
        from app.services.screening_queue import NOTIFICATION_QUEUE
        from app.tasks.ingestion import send_thank_you_email

        send_thank_you_email.apply_async(args=[to_email, to_name, job_title], queue=NOTIFICATION_QUEUE)
        logger.info(f"Queued thank-you email to {to_email}")
        return True
