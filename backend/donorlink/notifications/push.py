"""
Push channel: emits ``donor_alert`` to the donor's Socket.IO room.

Acceptance means the event reached the Redis bus; the donor app confirms
receipt with an ``alert_received`` event, which marks the delivery delivered.
"""

from __future__ import annotations

import logging
import uuid

from redis.exceptions import RedisError

from donorlink.api.websocket.handler import push_donor_alert
from donorlink.exceptions import TransientGatewayError
from donorlink.models.alert_delivery import DeliveryChannel
from donorlink.notifications.gateway import AlertPayload, DonorContact, GatewayResult

logger = logging.getLogger(__name__)


class SocketIOPushSender:
    channel = DeliveryChannel.PUSH

    async def send(self, contact: DonorContact, payload: AlertPayload) -> GatewayResult:
        message_id = uuid.uuid4().hex
        data = payload.to_dict()
        data["message_id"] = message_id
        data["donor_id"] = contact.donor_id
        try:
            await push_donor_alert(contact.donor_id, data)
        except (RedisError, OSError) as exc:
            raise TransientGatewayError(f"push bus unavailable: {exc}") from exc
        logger.debug("Pushed alert %s to donor %s", payload.alert_id, contact.donor_id)
        return GatewayResult.ok(message_id)
