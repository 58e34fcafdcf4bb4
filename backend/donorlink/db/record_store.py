"""
Record store: the prefix-scannable key-value layer every engine component
persists through.

Two backends:

``InMemoryRecordStore``
    Process-local dict, used by tests and ``RECORD_STORE_BACKEND=memory``.
``SqlRecordStore``
    One PostgreSQL table (``kv_store``) through async SQLAlchemy.

Besides plain ``get``/``put``/``scan_by_prefix``/``delete`` both backends expose a
versioned compare-and-set (``get_versioned``/``put_if_version``).  Version
``0`` means "key must not exist yet", which is how create-if-absent writes
are expressed.  State machines (alerts, deliveries) only ever write through
``put_if_version`` so concurrent writers to the same key cannot silently
overwrite each other.
"""

from __future__ import annotations

import copy
import logging
from functools import lru_cache
from typing import Any, Protocol

from sqlalchemy import delete, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from donorlink.config import get_settings
from donorlink.models.base import utcnow
from donorlink.models.kv_record import KvRecord

logger = logging.getLogger(__name__)


class RecordStore(Protocol):
    async def get(self, key: str) -> dict[str, Any] | None: ...

    async def put(self, key: str, value: dict[str, Any]) -> None: ...

    async def scan_by_prefix(self, prefix: str) -> list[dict[str, Any]]: ...

    async def get_versioned(self, key: str) -> tuple[dict[str, Any], int] | None: ...

    async def put_if_version(self, key: str, value: dict[str, Any], expected_version: int) -> bool: ...

    async def delete(self, key: str) -> bool: ...


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------

class InMemoryRecordStore:
    """Single-process store.

    No method awaits between reading and writing ``_data``, so every call is
    atomic with respect to other coroutines on the same event loop.
    """

    def __init__(self) -> None:
        self._data: dict[str, tuple[dict[str, Any], int]] = {}

    async def get(self, key: str) -> dict[str, Any] | None:
        entry = self._data.get(key)
        return copy.deepcopy(entry[0]) if entry else None

    async def put(self, key: str, value: dict[str, Any]) -> None:
        version = self._data[key][1] if key in self._data else 0
        self._data[key] = (copy.deepcopy(value), version + 1)

    async def scan_by_prefix(self, prefix: str) -> list[dict[str, Any]]:
        return [
            copy.deepcopy(value)
            for key, (value, _) in sorted(self._data.items())
            if key.startswith(prefix)
        ]

    async def get_versioned(self, key: str) -> tuple[dict[str, Any], int] | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        return copy.deepcopy(entry[0]), entry[1]

    async def put_if_version(self, key: str, value: dict[str, Any], expected_version: int) -> bool:
        current = self._data[key][1] if key in self._data else 0
        if current != expected_version:
            return False
        self._data[key] = (copy.deepcopy(value), expected_version + 1)
        return True

    async def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    def __len__(self) -> int:
        return len(self._data)


# ---------------------------------------------------------------------------
# PostgreSQL backend
# ---------------------------------------------------------------------------

class SqlRecordStore:
    """``kv_store`` table accessed with one short transaction per call."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get(self, key: str) -> dict[str, Any] | None:
        found = await self.get_versioned(key)
        return found[0] if found else None

    async def put(self, key: str, value: dict[str, Any]) -> None:
        stmt = pg_insert(KvRecord).values(key=key, value=value, version=1, updated_at=utcnow())
        stmt = stmt.on_conflict_do_update(
            index_elements=[KvRecord.key],
            set_={
                "value": stmt.excluded.value,
                "version": KvRecord.version + 1,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        async with self._session_factory() as session, session.begin():
            await session.execute(stmt)

    async def scan_by_prefix(self, prefix: str) -> list[dict[str, Any]]:
        query = (
            select(KvRecord.value)
            .where(KvRecord.key.startswith(prefix, autoescape=True))
            .order_by(KvRecord.key)
        )
        async with self._session_factory() as session:
            result = await session.execute(query)
            return [row[0] for row in result.all()]

    async def get_versioned(self, key: str) -> tuple[dict[str, Any], int] | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(KvRecord.value, KvRecord.version).where(KvRecord.key == key)
            )
            row = result.one_or_none()
        if row is None:
            return None
        return row[0], row[1]

    async def put_if_version(self, key: str, value: dict[str, Any], expected_version: int) -> bool:
        now = utcnow()
        async with self._session_factory() as session, session.begin():
            if expected_version == 0:
                stmt = (
                    pg_insert(KvRecord)
                    .values(key=key, value=value, version=1, updated_at=now)
                    .on_conflict_do_nothing(index_elements=[KvRecord.key])
                    .returning(KvRecord.key)
                )
                result = await session.execute(stmt)
                return result.scalar_one_or_none() is not None

            stmt = (
                update(KvRecord)
                .where(KvRecord.key == key, KvRecord.version == expected_version)
                .values(value=value, version=expected_version + 1, updated_at=now)
            )
            result = await session.execute(stmt)
            return result.rowcount == 1

    async def delete(self, key: str) -> bool:
        async with self._session_factory() as session, session.begin():
            result = await session.execute(delete(KvRecord).where(KvRecord.key == key))
            return result.rowcount == 1


# ---------------------------------------------------------------------------
# Process-wide instance (FastAPI dependency / Celery workers)
# ---------------------------------------------------------------------------

@lru_cache()
def get_record_store() -> RecordStore:
    settings = get_settings()
    if settings.RECORD_STORE_BACKEND == "memory":
        logger.warning("Using in-memory record store, data is not shared between processes")
        return InMemoryRecordStore()

    from donorlink.db.postgres import async_session
    return SqlRecordStore(async_session)
