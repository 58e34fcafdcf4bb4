import enum
import uuid
from typing import Optional

from pydantic import Field

from donorlink.models.base import Record, UtcDatetime, utcnow


class BloodGroup(str, enum.Enum):
    O_NEG = "O-"
    O_POS = "O+"
    A_NEG = "A-"
    A_POS = "A+"
    B_NEG = "B-"
    B_POS = "B+"
    AB_NEG = "AB-"
    AB_POS = "AB+"


class VerificationStatus(str, enum.Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"


class Donor(Record):
    KEY_PREFIX = "donor:"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    hospital_id: str
    name: str = ""
    blood_group: BloodGroup
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    phone: Optional[str] = None
    email: Optional[str] = None
    is_active: bool = True  # soft-deactivation, donors are never deleted
    last_donation_date: Optional[UtcDatetime] = None
    verification_status: VerificationStatus = VerificationStatus.PENDING
    created_at: UtcDatetime = Field(default_factory=utcnow)
    updated_at: UtcDatetime = Field(default_factory=utcnow)

    @property
    def coordinates(self) -> tuple[float, float]:
        return (self.latitude, self.longitude)
