"""
Audience selection: which donors an alert is sent to.

Uses the same compatibility table and distance estimator as the match
ranker.  The alert origin is the linked recipient when there is one,
otherwise the issuing hospital.
"""

from __future__ import annotations

import logging
from typing import Iterable

from donorlink.db.record_store import RecordStore
from donorlink.exceptions import InvalidInputError
from donorlink.models.alert import Alert
from donorlink.models.donor import BloodGroup, Donor
from donorlink.models.hospital import Hospital
from donorlink.models.recipient import Recipient
from donorlink.services import directory_service
from donorlink.services.compatibility import can_donate
from donorlink.services.geo import Point, distance_km

logger = logging.getLogger(__name__)


def select_audience(
    alert: Alert,
    donors: Iterable[Donor],
    *,
    recipient: Recipient | None = None,
    hospital: Hospital | None = None,
) -> list[Donor]:
    """Filter *donors* down to the alert audience, ordered by donor id.

    *recipient* must be given when the alert is linked to one; *hospital* is
    the origin otherwise.
    """
    if alert.recipient_id is not None:
        if recipient is None or recipient.id != alert.recipient_id:
            raise InvalidInputError(f"Alert {alert.id} needs its linked recipient {alert.recipient_id}")
        origin: Point | None = recipient.coordinates
    else:
        origin = hospital.coordinates if hospital is not None else None

    if alert.max_distance_km is not None and origin is None:
        raise InvalidInputError(f"Alert {alert.id} has a distance bound but no origin coordinates")

    targets: set[BloodGroup] = set(alert.target_blood_groups)

    audience = []
    for donor in donors:
        if not donor.is_active:
            continue
        if targets and donor.blood_group not in targets:
            continue
        if recipient is not None and not can_donate(donor.blood_group, recipient.blood_group):
            continue
        if alert.max_distance_km is not None and distance_km(donor.coordinates, origin) > alert.max_distance_km:
            continue
        audience.append(donor)

    audience.sort(key=lambda d: d.id)
    return audience


async def resolve_audience(store: RecordStore, alert: Alert) -> list[Donor]:
    """Load the alert's origin and the donor directory, then select.

    Raises ``NotFoundError`` when the linked recipient or the issuing
    hospital does not exist.
    """
    recipient = None
    hospital = None
    if alert.recipient_id is not None:
        recipient = await directory_service.get_recipient(store, alert.recipient_id, hospital_id=alert.hospital_id)
    else:
        hospital = await directory_service.get_hospital(store, alert.hospital_id)

    donors = await directory_service.list_donors(store)
    audience = select_audience(alert, donors, recipient=recipient, hospital=hospital)
    logger.debug("Alert %s audience: %d of %d donors", alert.id, len(audience), len(donors))
    return audience
