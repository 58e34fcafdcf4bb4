"""
Seed script: creates hospitals, 150 donors spread around them, and a few
waiting recipients per hospital, then prints a dev JWT for each hospital.

Run inside the backend container:
    docker exec donorlink-backend python seed.py
"""
import asyncio
import random
from datetime import timedelta

from donorlink.config import get_settings
from donorlink.db.record_store import get_record_store
from donorlink.models.base import utcnow
from donorlink.models.donor import BloodGroup, Donor, VerificationStatus
from donorlink.models.hospital import Hospital
from donorlink.models.recipient import Recipient, UrgencyLevel
from donorlink.services import directory_service
from donorlink.api.middleware.auth import create_access_token

random.seed(42)

# ─────────────────────────────────────────────────────────────────────
#  Reference data arrays
# ─────────────────────────────────────────────────────────────────────

FIRST_NAMES = [
    "Aarav", "Sita", "Bikash", "Anita", "Ramesh", "Sunita", "Prakash",
    "Gita", "Suresh", "Kamala", "Dipesh", "Sarita", "Nabin", "Puja",
    "Rajan", "Manisha", "Kiran", "Asha", "Bishal", "Rina",
]
FAMILY_NAMES = [
    "Shrestha", "Gurung", "Tamang", "Adhikari", "Thapa", "Rai", "Karki",
    "Maharjan", "Bhandari", "Poudel", "Magar", "Basnet", "Khadka", "Joshi",
]
BLOOD_TYPES = ["O+", "O-", "A+", "A-", "B+", "B-", "AB+", "AB-"]
BLOOD_WEIGHTS = [38, 7, 27, 6, 12, 3, 5, 2]  # realistic distribution

HOSPITALS = [
    {"id": "bir-hospital", "name": "Bir Hospital", "latitude": 27.7048, "longitude": 85.3134,
     "phone": "+97714221119", "email": "info@birhospital.example"},
    {"id": "teaching-hospital", "name": "Tribhuvan University Teaching Hospital",
     "latitude": 27.7357, "longitude": 85.3304, "phone": "+97714412303", "email": "info@tuth.example"},
    {"id": "patan-hospital", "name": "Patan Hospital", "latitude": 27.6683, "longitude": 85.3206,
     "phone": "+97715522295", "email": "info@patanhospital.example"},
]

DONORS_PER_HOSPITAL = 50
RECIPIENTS_PER_HOSPITAL = 4
JITTER_DEG = 0.25  # roughly 25 km


def _name():
    return f"{random.choice(FIRST_NAMES)} {random.choice(FAMILY_NAMES)}"


def _phone():
    return "+9779" + "".join(random.choice("0123456789") for _ in range(9))


def generate_donor(idx, hospital):
    """Generate a single donor registered at *hospital*."""
    now = utcnow()
    donated_days_ago = random.choice([None, None, 20, 45, 80, 120, 400])
    name = _name()
    return Donor(
        id=f"{hospital['id']}-donor-{idx:03d}",
        hospital_id=hospital["id"],
        name=name,
        blood_group=BloodGroup(random.choices(BLOOD_TYPES, weights=BLOOD_WEIGHTS)[0]),
        latitude=round(hospital["latitude"] + random.uniform(-JITTER_DEG, JITTER_DEG), 6),
        longitude=round(hospital["longitude"] + random.uniform(-JITTER_DEG, JITTER_DEG), 6),
        phone=_phone(),
        email=f"{name.lower().replace(' ', '.')}.{idx}@donors.example",
        is_active=random.random() > 0.1,
        last_donation_date=now - timedelta(days=donated_days_ago) if donated_days_ago else None,
        verification_status=random.choice(list(VerificationStatus)),
    )


def generate_recipient(idx, hospital):
    return Recipient(
        id=f"{hospital['id']}-recipient-{idx:02d}",
        hospital_id=hospital["id"],
        name=_name(),
        blood_group=BloodGroup(random.choice(BLOOD_TYPES)),
        latitude=hospital["latitude"],
        longitude=hospital["longitude"],
        urgency_level=random.choice(list(UrgencyLevel)),
    )


async def seed():
    store = get_record_store()
    settings = get_settings()

    if settings.RECORD_STORE_BACKEND == "postgres":
        from donorlink.db.postgres import engine, Base
        import donorlink.models  # noqa: F401

        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    donor_count = 0
    recipient_count = 0
    for data in HOSPITALS:
        await directory_service.save_hospital(store, Hospital(**data))
        for idx in range(DONORS_PER_HOSPITAL):
            await directory_service.save_donor(store, generate_donor(idx, data))
            donor_count += 1
        for idx in range(RECIPIENTS_PER_HOSPITAL):
            await directory_service.save_recipient(store, generate_recipient(idx, data))
            recipient_count += 1

    print(f"Seeded {len(HOSPITALS)} hospitals, {donor_count} donors, {recipient_count} recipients")
    for data in HOSPITALS:
        token = create_access_token({"sub": f"admin@{data['id']}", "hospital_id": data["id"]})
        print(f"  {data['name']}: Bearer {token}")


if __name__ == "__main__":
    asyncio.run(seed())
