import enum
import uuid

from pydantic import Field

from donorlink.models.base import Record, UtcDatetime, utcnow
from donorlink.models.donor import BloodGroup


class UrgencyLevel(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RecipientStatus(str, enum.Enum):
    WAITING = "waiting"
    MATCHED = "matched"
    COMPLETED = "completed"


class Recipient(Record):
    KEY_PREFIX = "recipient:"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    hospital_id: str
    name: str = ""
    blood_group: BloodGroup
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    urgency_level: UrgencyLevel = UrgencyLevel.MEDIUM
    status: RecipientStatus = RecipientStatus.WAITING  # driven by the registration side
    created_at: UtcDatetime = Field(default_factory=utcnow)

    @property
    def coordinates(self) -> tuple[float, float]:
        return (self.latitude, self.longitude)
