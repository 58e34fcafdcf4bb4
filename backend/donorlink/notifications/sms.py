"""
SMS channel through the Twilio REST API.

Messages are sent with a ``status_callback`` pointing at
``/deliveries/callback/twilio`` so the final delivered/failed status reaches
the dispatcher.  The Twilio client is blocking and runs in a worker thread.
"""

from __future__ import annotations

import asyncio
import logging
from urllib.parse import urlencode

from twilio.base.exceptions import TwilioException, TwilioRestException
from twilio.rest import Client

from donorlink.config import get_settings
from donorlink.exceptions import PermanentGatewayError, TransientGatewayError
from donorlink.models.alert_delivery import DeliveryChannel
from donorlink.notifications.gateway import AlertPayload, DonorContact, GatewayResult

logger = logging.getLogger(__name__)

# Twilio error codes that will not succeed on retry
# 21211 invalid "To", 21408 region not enabled, 21610 recipient unsubscribed,
# 21614 not a mobile number
PERMANENT_ERROR_CODES = frozenset({21211, 21408, 21610, 21614})


def status_callback_url(alert_id: str, donor_id: str) -> str:
    settings = get_settings()
    query = urlencode({"alert_id": alert_id, "donor_id": donor_id})
    return f"{settings.PUBLIC_BASE_URL.rstrip('/')}{settings.API_PREFIX}/deliveries/callback/twilio?{query}"


class TwilioSmsSender:
    channel = DeliveryChannel.SMS

    def __init__(self, client: Client | None = None):
        self._client = client

    def _get_client(self) -> Client | None:
        """Return a shared Twilio REST client, creating it on first call."""
        if self._client is None:
            settings = get_settings()
            if settings.TWILIO_ACCOUNT_SID and settings.TWILIO_AUTH_TOKEN:
                self._client = Client(settings.TWILIO_ACCOUNT_SID, settings.TWILIO_AUTH_TOKEN)
            else:
                logger.warning("Twilio credentials not configured, SMS sending disabled")
        return self._client

    async def send(self, contact: DonorContact, payload: AlertPayload) -> GatewayResult:
        if not contact.phone:
            raise PermanentGatewayError(f"Donor {contact.donor_id} has no phone number")

        client = self._get_client()
        if client is None:
            raise PermanentGatewayError("sms channel unavailable")

        settings = get_settings()
        try:
            tw_message = await asyncio.to_thread(
                client.messages.create,
                body=payload.render_text(),
                from_=settings.TWILIO_PHONE_NUMBER,
                to=contact.phone,
                status_callback=status_callback_url(payload.alert_id, contact.donor_id),
            )
        except TwilioRestException as exc:
            if exc.code in PERMANENT_ERROR_CODES:
                raise PermanentGatewayError(f"Twilio {exc.code}: {exc.msg}") from exc
            if exc.status == 429 or exc.status >= 500:
                raise TransientGatewayError(f"Twilio HTTP {exc.status}: {exc.msg}") from exc
            raise PermanentGatewayError(f"Twilio HTTP {exc.status}: {exc.msg}") from exc
        except TwilioException as exc:
            raise TransientGatewayError(f"Twilio error: {exc}") from exc

        logger.info("Sent alert SMS to donor %s (sid=%s)", contact.donor_id, tw_message.sid)
        return GatewayResult.ok(tw_message.sid)
