from datetime import datetime, timezone
from typing import Annotated, Any, ClassVar

from pydantic import AfterValidator, BaseModel, ConfigDict


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # Naive timestamps are taken to be UTC so they compare with utcnow().
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


UtcDatetime = Annotated[datetime, AfterValidator(_as_utc)]


class Record(BaseModel):
    """Base for everything kept in the record store.

    ``to_store``/``from_store`` are the only serialization boundary: values
    leave as JSON-compatible dicts and are re-validated on the way back in.
    """

    KEY_PREFIX: ClassVar[str] = ""

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def key_for(cls, record_id: str) -> str:
        return f"{cls.KEY_PREFIX}{record_id}"

    @property
    def key(self) -> str:
        return self.key_for(self.id)

    def to_store(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_store(cls, value: dict[str, Any]):
        return cls.model_validate(value)
