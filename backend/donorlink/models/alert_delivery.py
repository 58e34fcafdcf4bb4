import enum
import uuid
from datetime import datetime
from typing import Optional

from pydantic import Field

from donorlink.models.base import Record, UtcDatetime, utcnow

DELIVERY_NAMESPACE = uuid.UUID("0b8f6f4e-2d7a-4f3e-a3c4-5e1d9a7b6c20")


class DeliveryChannel(str, enum.Enum):
    PUSH = "push"
    SMS = "sms"
    EMAIL = "email"


class DeliveryState(str, enum.Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    DEAD = "dead"


TERMINAL_STATES = frozenset({DeliveryState.DELIVERED, DeliveryState.DEAD})

# PENDING -> DELIVERED covers a confirmation callback that overtakes the
# write of the send acknowledgement.
DELIVERY_TRANSITIONS: dict[DeliveryState, frozenset[DeliveryState]] = {
    DeliveryState.PENDING: frozenset({
        DeliveryState.SENT,
        DeliveryState.DELIVERED,
        DeliveryState.FAILED,
        DeliveryState.DEAD,
    }),
    DeliveryState.SENT: frozenset({DeliveryState.DELIVERED, DeliveryState.FAILED}),
    DeliveryState.FAILED: frozenset({DeliveryState.PENDING, DeliveryState.DEAD}),
    DeliveryState.DELIVERED: frozenset(),
    DeliveryState.DEAD: frozenset(),
}


def delivery_key(alert_id: str, donor_id: str, channel: DeliveryChannel | str) -> str:
    return f"{AlertDelivery.KEY_PREFIX}{alert_id}:{donor_id}:{DeliveryChannel(channel).value}"


def delivery_id(alert_id: str, donor_id: str, channel: DeliveryChannel | str) -> str:
    """Deterministic id for the (alert, donor, channel) tuple."""
    return str(uuid.uuid5(DELIVERY_NAMESPACE, delivery_key(alert_id, donor_id, channel)))


class AlertDelivery(Record):
    KEY_PREFIX = "delivery:"

    id: str
    alert_id: str
    donor_id: str
    channel: DeliveryChannel
    state: DeliveryState = DeliveryState.PENDING
    attempt_count: int = Field(default=0, ge=0)
    last_attempt_at: Optional[UtcDatetime] = None
    next_attempt_at: Optional[UtcDatetime] = None
    claimed_until: Optional[UtcDatetime] = None
    sent_at: Optional[UtcDatetime] = None
    delivered_at: Optional[UtcDatetime] = None
    last_error: Optional[str] = None
    provider_message_id: Optional[str] = None
    created_at: UtcDatetime = Field(default_factory=utcnow)
    updated_at: UtcDatetime = Field(default_factory=utcnow)

    @classmethod
    def new(cls, alert_id: str, donor_id: str, channel: DeliveryChannel | str) -> "AlertDelivery":
        return cls(
            id=delivery_id(alert_id, donor_id, channel),
            alert_id=alert_id,
            donor_id=donor_id,
            channel=DeliveryChannel(channel),
        )

    @classmethod
    def prefix_for_alert(cls, alert_id: str) -> str:
        return f"{cls.KEY_PREFIX}{alert_id}:"

    @property
    def key(self) -> str:
        return delivery_key(self.alert_id, self.donor_id, self.channel)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def is_due(self, now: datetime) -> bool:
        """Pending, not leased by another sender, and past its backoff."""
        if self.state != DeliveryState.PENDING:
            return False
        if self.claimed_until is not None and self.claimed_until > now:
            return False
        return self.next_attempt_at is None or self.next_attempt_at <= now
