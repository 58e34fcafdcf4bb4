import uuid
from typing import Optional

from pydantic import Field

from donorlink.models.base import Record, UtcDatetime, utcnow


class Hospital(Record):
    """Issuing hospital. Its coordinates are the alert origin when no
    recipient is linked to the alert."""
    KEY_PREFIX = "hospital:"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    phone: Optional[str] = None
    email: Optional[str] = None
    created_at: UtcDatetime = Field(default_factory=utcnow)

    @property
    def coordinates(self) -> tuple[float, float]:
        return (self.latitude, self.longitude)
