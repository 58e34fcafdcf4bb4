"""
Notification gateway: one ``send(channel, contact, payload)`` entry point in
front of the per-channel senders.

Senders either return a ``GatewayResult`` or raise a ``GatewayError``; the
router folds the latter into a rejected result so the dispatcher only has to
deal with one shape.  Anything else a sender raises propagates and is treated
as transient by the dispatcher.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Mapping, Optional, Protocol

from donorlink.exceptions import GatewayError
from donorlink.models.alert import Alert
from donorlink.models.alert_delivery import DeliveryChannel
from donorlink.models.donor import Donor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DonorContact:
    donor_id: str
    name: str = ""
    phone: Optional[str] = None
    email: Optional[str] = None

    @classmethod
    def from_donor(cls, donor: Donor) -> "DonorContact":
        return cls(donor_id=donor.id, name=donor.name, phone=donor.phone, email=donor.email)


@dataclass(frozen=True)
class AlertPayload:
    alert_id: str
    hospital_id: str
    title: str
    message: str
    urgency_level: str
    blood_groups: tuple[str, ...] = ()
    expires_at: Optional[str] = None

    @classmethod
    def from_alert(cls, alert: Alert) -> "AlertPayload":
        return cls(
            alert_id=alert.id,
            hospital_id=alert.hospital_id,
            title=alert.title,
            message=alert.message,
            urgency_level=alert.urgency_level.value,
            blood_groups=tuple(g.value for g in alert.target_blood_groups),
            expires_at=alert.expires_at.isoformat() if alert.expires_at else None,
        )

    def render_text(self) -> str:
        """Plain-text body shared by SMS and email."""
        parts = [f"[{self.urgency_level.upper()}] {self.title}"]
        if self.blood_groups:
            parts.append(f"Needed: {', '.join(self.blood_groups)}")
        if self.message:
            parts.append(self.message)
        return "\n".join(parts)

    def to_dict(self) -> dict:
        return {
            "alert_id": self.alert_id,
            "hospital_id": self.hospital_id,
            "title": self.title,
            "message": self.message,
            "urgency_level": self.urgency_level,
            "blood_groups": list(self.blood_groups),
            "expires_at": self.expires_at,
        }


@dataclass(frozen=True)
class GatewayResult:
    accepted: bool
    provider_message_id: Optional[str] = None
    reason: Optional[str] = None
    permanent: bool = False

    @classmethod
    def ok(cls, provider_message_id: str | None = None) -> "GatewayResult":
        return cls(accepted=True, provider_message_id=provider_message_id)

    @classmethod
    def rejected(cls, reason: str, *, permanent: bool) -> "GatewayResult":
        return cls(accepted=False, reason=reason, permanent=permanent)


class ChannelSender(Protocol):
    async def send(self, contact: DonorContact, payload: AlertPayload) -> GatewayResult: ...


class NotificationGateway(Protocol):
    async def send(
        self, channel: DeliveryChannel, contact: DonorContact, payload: AlertPayload,
    ) -> GatewayResult: ...


class ChannelRouter:
    """Routes each send to the sender registered for its channel."""

    def __init__(self, senders: Mapping[DeliveryChannel, ChannelSender]):
        self._senders = dict(senders)

    @property
    def channels(self) -> list[DeliveryChannel]:
        return list(self._senders)

    async def send(
        self, channel: DeliveryChannel, contact: DonorContact, payload: AlertPayload,
    ) -> GatewayResult:
        sender = self._senders.get(DeliveryChannel(channel))
        if sender is None:
            logger.warning("No sender configured for channel %s", channel)
            return GatewayResult.rejected(f"channel {DeliveryChannel(channel).value} unavailable", permanent=True)
        try:
            return await sender.send(contact, payload)
        except GatewayError as exc:
            return GatewayResult.rejected(str(exc), permanent=exc.permanent)


@lru_cache()
def get_gateway() -> ChannelRouter:
    """Process-wide router with the push, SMS and email senders."""
    from donorlink.notifications.email import SmtpEmailSender
    from donorlink.notifications.push import SocketIOPushSender
    from donorlink.notifications.sms import TwilioSmsSender

    return ChannelRouter({
        DeliveryChannel.PUSH: SocketIOPushSender(),
        DeliveryChannel.SMS: TwilioSmsSender(),
        DeliveryChannel.EMAIL: SmtpEmailSender(),
    })
