import uuid

from pydantic import Field, computed_field

from donorlink.models.base import Record, UtcDatetime, utcnow

# Stable namespace so the same (recipient, donor) pair always yields the same match id
MATCH_NAMESPACE = uuid.UUID("6f1c2a64-8f0e-4c53-9d0e-7b3d52f2a9c1")


def match_id_for(recipient_id: str, donor_id: str) -> str:
    return str(uuid.uuid5(MATCH_NAMESPACE, f"{recipient_id}:{donor_id}"))


def quality_label(score: int) -> str:
    if score >= 90:
        return "Excellent"
    if score >= 75:
        return "Good"
    if score >= 60:
        return "Fair"
    return "Poor"


class Match(Record):
    KEY_PREFIX = "match:"

    id: str
    donor_id: str
    recipient_id: str
    match_score: int = Field(..., ge=0, le=100)
    distance_km: float = Field(..., ge=0)
    compatibility_label: str
    reason: str = "Blood type compatibility"
    created_at: UtcDatetime = Field(default_factory=utcnow)

    @computed_field
    @property
    def quality(self) -> str:
        return quality_label(self.match_score)

    @classmethod
    def prefix_for_recipient(cls, recipient_id: str) -> str:
        return f"{cls.KEY_PREFIX}{recipient_id}:"

    @property
    def key(self) -> str:
        return f"{self.prefix_for_recipient(self.recipient_id)}{self.id}"
