"""
Email channel over SMTP.  ``smtplib`` blocks, so each send runs in a worker
thread.  SMTP has no delivery receipts: an accepted message stays ``sent``.
"""

from __future__ import annotations

import asyncio
import logging
import smtplib
import uuid
from email.message import EmailMessage

from donorlink.config import get_settings
from donorlink.exceptions import PermanentGatewayError, TransientGatewayError
from donorlink.models.alert_delivery import DeliveryChannel
from donorlink.notifications.gateway import AlertPayload, DonorContact, GatewayResult

logger = logging.getLogger(__name__)


def build_message(contact: DonorContact, payload: AlertPayload, sender: str) -> EmailMessage:
    message = EmailMessage()
    message["Subject"] = f"[{payload.urgency_level.upper()}] {payload.title}"
    message["From"] = sender
    message["To"] = contact.email
    message["Message-ID"] = f"<{uuid.uuid4().hex}@donorlink>"
    greeting = f"Hello {contact.name},\n\n" if contact.name else ""
    message.set_content(greeting + payload.render_text())
    return message


class SmtpEmailSender:
    channel = DeliveryChannel.EMAIL

    def __init__(self, timeout: float | None = None):
        self._timeout = timeout

    def _deliver(self, message: EmailMessage) -> None:
        settings = get_settings()
        timeout = self._timeout or settings.GATEWAY_TIMEOUT_SECONDS
        with smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT, timeout=timeout) as smtp:
            if settings.SMTP_USE_TLS:
                smtp.starttls()
            if settings.SMTP_USERNAME:
                smtp.login(settings.SMTP_USERNAME, settings.SMTP_PASSWORD)
            smtp.send_message(message)

    async def send(self, contact: DonorContact, payload: AlertPayload) -> GatewayResult:
        if not contact.email:
            raise PermanentGatewayError(f"Donor {contact.donor_id} has no email address")

        settings = get_settings()
        if not settings.SMTP_HOST:
            logger.warning("SMTP host not configured, email sending disabled")
            raise PermanentGatewayError("email channel unavailable")

        message = build_message(contact, payload, settings.SMTP_FROM_EMAIL)
        try:
            await asyncio.to_thread(self._deliver, message)
        except smtplib.SMTPRecipientsRefused as exc:
            raise PermanentGatewayError(f"recipient refused: {contact.email}") from exc
        except (smtplib.SMTPException, OSError) as exc:
            raise TransientGatewayError(f"SMTP error: {exc}") from exc

        logger.info("Emailed alert %s to donor %s", payload.alert_id, contact.donor_id)
        return GatewayResult.ok(message["Message-ID"])
