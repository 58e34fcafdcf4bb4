from sqlalchemy import Column, String, DateTime, Integer
from sqlalchemy.dialects.postgresql import JSONB

from donorlink.db.postgres import Base
from donorlink.models.base import utcnow


class KvRecord(Base):
    """One record-store entry. ``version`` backs compare-and-set writes."""
    __tablename__ = "kv_store"

    key = Column(String, primary_key=True)
    value = Column(JSONB, nullable=False)
    version = Column(Integer, nullable=False, default=1)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
