import enum
import uuid
from datetime import datetime
from typing import Optional

from pydantic import Field

from donorlink.models.base import Record, UtcDatetime, utcnow
from donorlink.models.donor import BloodGroup
from donorlink.models.recipient import UrgencyLevel
from donorlink.models.alert_delivery import DeliveryChannel


class AlertState(str, enum.Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


# Alerts are immutable once Active; only these state moves are accepted.
ALERT_TRANSITIONS: dict[AlertState, frozenset[AlertState]] = {
    AlertState.DRAFT: frozenset({AlertState.ACTIVE, AlertState.CANCELLED}),
    AlertState.ACTIVE: frozenset({AlertState.EXPIRED, AlertState.CANCELLED}),
    AlertState.EXPIRED: frozenset(),
    AlertState.CANCELLED: frozenset(),
}


class Alert(Record):
    KEY_PREFIX = "alert:"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    hospital_id: str
    recipient_id: Optional[str] = None
    title: str = Field(..., min_length=1, max_length=500)
    message: str = ""
    urgency_level: UrgencyLevel = UrgencyLevel.HIGH
    target_blood_groups: list[BloodGroup] = Field(default_factory=list)  # empty = all groups
    max_distance_km: Optional[float] = Field(default=None, gt=0)  # None = unbounded
    channels: list[DeliveryChannel] = Field(default_factory=list)
    state: AlertState = AlertState.DRAFT
    created_at: UtcDatetime = Field(default_factory=utcnow)
    updated_at: UtcDatetime = Field(default_factory=utcnow)
    expires_at: Optional[UtcDatetime] = None

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utcnow()) >= self.expires_at

    def can_transition(self, new_state: AlertState) -> bool:
        return new_state in ALERT_TRANSITIONS[self.state]
