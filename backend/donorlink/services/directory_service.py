"""
Directory service: typed access to donors, recipients and hospitals held in
the record store.

Registration owns these records; the engine only reads them.  The ``save_*``
helpers exist for seeding and tests.  Stored values are re-validated on every
read; an entry that no longer validates is logged and skipped by list
operations instead of failing the whole scan.
"""

from __future__ import annotations

import logging
from typing import TypeVar

from pydantic import ValidationError

from donorlink.db.record_store import RecordStore
from donorlink.exceptions import NotFoundError
from donorlink.models.base import Record, utcnow
from donorlink.models.donor import Donor
from donorlink.models.hospital import Hospital
from donorlink.models.recipient import Recipient

logger = logging.getLogger(__name__)

R = TypeVar("R", bound=Record)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

async def _load(store: RecordStore, model: type[R], resource: str, record_id: str) -> R:
    value = await store.get(model.key_for(record_id))
    if value is None:
        raise NotFoundError(resource, record_id)
    return model.from_store(value)


async def _scan(store: RecordStore, model: type[R]) -> list[R]:
    records: list[R] = []
    for value in await store.scan_by_prefix(model.KEY_PREFIX):
        try:
            records.append(model.from_store(value))
        except ValidationError as exc:
            logger.warning("Skipping invalid %s record %s: %s", model.__name__, value.get("id"), exc)
    return records


# ---------------------------------------------------------------------------
# Donors
# ---------------------------------------------------------------------------

async def get_donor(store: RecordStore, donor_id: str) -> Donor:
    return await _load(store, Donor, "Donor", donor_id)


async def list_donors(store: RecordStore, *, hospital_id: str | None = None) -> list[Donor]:
    donors = await _scan(store, Donor)
    if hospital_id is not None:
        donors = [d for d in donors if d.hospital_id == hospital_id]
    return donors


async def save_donor(store: RecordStore, donor: Donor) -> Donor:
    donor = donor.model_copy(update={"updated_at": utcnow()})
    await store.put(donor.key, donor.to_store())
    return donor


# ---------------------------------------------------------------------------
# Recipients
# ---------------------------------------------------------------------------

async def get_recipient(store: RecordStore, recipient_id: str, *, hospital_id: str | None = None) -> Recipient:
    """Load a recipient; one registered by another hospital is reported as not found."""
    recipient = await _load(store, Recipient, "Recipient", recipient_id)
    if hospital_id is not None and recipient.hospital_id != hospital_id:
        raise NotFoundError("Recipient", recipient_id)
    return recipient


async def save_recipient(store: RecordStore, recipient: Recipient) -> Recipient:
    await store.put(recipient.key, recipient.to_store())
    return recipient


# ---------------------------------------------------------------------------
# Hospitals
# ---------------------------------------------------------------------------

async def get_hospital(store: RecordStore, hospital_id: str) -> Hospital:
    return await _load(store, Hospital, "Hospital", hospital_id)


async def save_hospital(store: RecordStore, hospital: Hospital) -> Hospital:
    await store.put(hospital.key, hospital.to_store())
    return hospital
