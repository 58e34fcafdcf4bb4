import uuid
from typing import Optional

from pydantic import Field

from donorlink.models.base import Record, UtcDatetime, utcnow


class AuditEntry(Record):
    KEY_PREFIX = "audit:"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    hospital_id: Optional[str] = None
    action: str
    resource: str
    resource_id: Optional[str] = None
    details: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: UtcDatetime = Field(default_factory=utcnow)

    @property
    def key(self) -> str:
        # time-ordered so a prefix scan reads the trail chronologically
        return f"{self.KEY_PREFIX}{self.created_at.strftime('%Y%m%dT%H%M%S%f')}:{self.id}"
