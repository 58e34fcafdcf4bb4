"""
Builders and fakes shared by the test modules.
"""

import asyncio
from datetime import datetime, timedelta, timezone

from donorlink.models.alert_delivery import DeliveryChannel
from donorlink.models.donor import BloodGroup, Donor
from donorlink.models.hospital import Hospital
from donorlink.models.recipient import Recipient
from donorlink.notifications.gateway import GatewayResult
from donorlink.services import directory_service

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

HOSPITAL_ID = "hosp-1"
OTHER_HOSPITAL_ID = "hosp-2"
ORIGIN = (27.7000, 85.3000)

KM_PER_DEGREE_LAT = 6371.0 * 3.141592653589793 / 180.0


def north_of(origin, km):
    """Point *km* due north of *origin* (exact along a meridian)."""
    return (origin[0] + km / KM_PER_DEGREE_LAT, origin[1])


def make_donor(donor_id, group, km=0.0, **overrides):
    lat, lon = north_of(ORIGIN, km)
    fields = {
        "id": donor_id,
        "hospital_id": HOSPITAL_ID,
        "name": f"Donor {donor_id}",
        "blood_group": BloodGroup(group),
        "latitude": lat,
        "longitude": lon,
        "phone": "+9779800000000",
        "email": f"{donor_id}@donors.example",
    }
    fields.update(overrides)
    return Donor(**fields)


def make_recipient(recipient_id="rec-1", group="AB+", hospital_id=HOSPITAL_ID, **overrides):
    fields = {
        "id": recipient_id,
        "hospital_id": hospital_id,
        "name": f"Recipient {recipient_id}",
        "blood_group": BloodGroup(group),
        "latitude": ORIGIN[0],
        "longitude": ORIGIN[1],
    }
    fields.update(overrides)
    return Recipient(**fields)


def make_hospital(hospital_id=HOSPITAL_ID, **overrides):
    fields = {
        "id": hospital_id,
        "name": f"Hospital {hospital_id}",
        "latitude": ORIGIN[0],
        "longitude": ORIGIN[1],
    }
    fields.update(overrides)
    return Hospital(**fields)


async def seed(store, donors=(), recipients=(), hospitals=None):
    """Write hospitals (both test hospitals by default), recipients and donors."""
    if hospitals is None:
        hospitals = [make_hospital(HOSPITAL_ID), make_hospital(OTHER_HOSPITAL_ID)]
    for hospital in hospitals:
        await directory_service.save_hospital(store, hospital)
    for recipient in recipients:
        await directory_service.save_recipient(store, recipient)
    for donor in donors:
        await directory_service.save_donor(store, donor)


class FakeGateway:
    """Scripted gateway.

    ``script`` maps ``(donor_id, channel)`` to a list of outcomes consumed in
    order; an outcome is a ``GatewayResult`` or an exception instance to raise.
    Unscripted sends are accepted.
    """

    def __init__(self, script=None, delay=0.0):
        self.script = {
            (donor_id, DeliveryChannel(channel)): list(outcomes)
            for (donor_id, channel), outcomes in (script or {}).items()
        }
        self.delay = delay
        self.calls = []

    async def send(self, channel, contact, payload):
        channel = DeliveryChannel(channel)
        self.calls.append((contact.donor_id, channel))
        if self.delay:
            await asyncio.sleep(self.delay)
        queue = self.script.get((contact.donor_id, channel))
        outcome = queue.pop(0) if queue else GatewayResult.ok(f"msg-{contact.donor_id}-{channel.value}")
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    def calls_for(self, donor_id, channel):
        return [c for c in self.calls if c == (donor_id, DeliveryChannel(channel))]


class Clock:
    """Settable clock for dispatcher tests."""

    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **delta):
        self.now = self.now + timedelta(**delta)
        return self.now
