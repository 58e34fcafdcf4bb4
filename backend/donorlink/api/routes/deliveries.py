"""
Delivery-status webhooks.

Endpoints:
    POST /deliveries/callback         Generic JSON callback (shared-secret header)
    POST /deliveries/callback/twilio  Twilio message status callback (Twilio signature)

No JWT auth: providers authenticate with the shared secret or the Twilio
signature instead.
"""

import hmac
import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from pydantic import BaseModel
from twilio.request_validator import RequestValidator

from donorlink.api.dependencies import get_dispatcher
from donorlink.config import get_settings
from donorlink.models.alert_delivery import DeliveryChannel, DeliveryState
from donorlink.services.dispatcher import AlertDispatcher

router = APIRouter()
settings = get_settings()
logger = logging.getLogger(__name__)

# Twilio message statuses that are final
TWILIO_DELIVERED = {"delivered"}
TWILIO_FAILED = {"failed", "undelivered"}

# Twilio delivery error codes that will not succeed on retry
# 30004 blocked, 30005 unknown destination, 30006 landline, 30007 carrier filtered
TWILIO_PERMANENT_ERRORS = {"30004", "30005", "30006", "30007"}


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------

class DeliveryCallbackRequest(BaseModel):
    alert_id: str
    donor_id: str
    channel: DeliveryChannel
    outcome: Literal["delivered", "failed"]
    reason: Optional[str] = None
    permanent: bool = False


class DeliveryCallbackResponse(BaseModel):
    status: str
    delivery_state: Optional[DeliveryState] = None


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------

def _verify_callback_secret(provided: Optional[str]) -> bool:
    if not settings.DELIVERY_CALLBACK_SECRET:
        # Dev mode: skip verification when no secret configured
        return True
    return hmac.compare_digest(provided or "", settings.DELIVERY_CALLBACK_SECRET)


def _verify_twilio_signature(request: Request, params: dict) -> bool:
    """
    Verify the X-Twilio-Signature header to ensure the request is from Twilio.
    Returns True if the signature is valid or if Twilio auth token is not configured
    (dev mode).
    """
    if not settings.TWILIO_AUTH_TOKEN:
        return True

    signature = request.headers.get("X-Twilio-Signature", "")
    if not signature:
        return False
    return RequestValidator(settings.TWILIO_AUTH_TOKEN).validate(str(request.url), params, signature)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post("/deliveries/callback", response_model=DeliveryCallbackResponse)
async def delivery_callback(
    payload: DeliveryCallbackRequest,
    x_callback_secret: Optional[str] = Header(default=None),
    dispatcher: AlertDispatcher = Depends(get_dispatcher),
):
    """Final status for one (alert, donor, channel) delivery from any provider."""
    if not _verify_callback_secret(x_callback_secret):
        logger.warning("Rejected delivery callback for %s/%s: bad secret", payload.alert_id, payload.donor_id)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid callback secret")

    delivery = await dispatcher.handle_delivery_result(
        payload.alert_id,
        payload.donor_id,
        payload.channel,
        payload.outcome,
        reason=payload.reason,
        permanent=payload.permanent,
    )
    return DeliveryCallbackResponse(status="recorded", delivery_state=delivery.state)


@router.post("/deliveries/callback/twilio", response_model=DeliveryCallbackResponse)
async def twilio_status_callback(
    request: Request,
    alert_id: str,
    donor_id: str,
    dispatcher: AlertDispatcher = Depends(get_dispatcher),
):
    """Twilio ``status_callback`` for alert SMS; intermediate statuses are ignored."""
    form = await request.form()
    params = {key: value for key, value in form.items()}

    if not _verify_twilio_signature(request, params):
        logger.warning("Invalid Twilio signature on status callback for %s/%s", alert_id, donor_id)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid Twilio signature")

    message_status = str(params.get("MessageStatus", "")).lower()
    error_code = str(params.get("ErrorCode") or "")

    if message_status in TWILIO_DELIVERED:
        delivery = await dispatcher.handle_delivery_result(
            alert_id, donor_id, DeliveryChannel.SMS, DeliveryState.DELIVERED,
        )
    elif message_status in TWILIO_FAILED:
        delivery = await dispatcher.handle_delivery_result(
            alert_id,
            donor_id,
            DeliveryChannel.SMS,
            DeliveryState.FAILED,
            reason=f"twilio {message_status}" + (f" ({error_code})" if error_code else ""),
            permanent=error_code in TWILIO_PERMANENT_ERRORS,
        )
    else:
        logger.debug("Ignoring Twilio status %r for %s/%s", message_status, alert_id, donor_id)
        return DeliveryCallbackResponse(status="ignored")

    return DeliveryCallbackResponse(status="recorded", delivery_state=delivery.state)
