"""
Match service: ranks donors for one recipient.

Scoring is deterministic::

    score = base - distance_penalty - recency_penalty

``base`` is ``MATCH_EXACT_BASE_SCORE`` for an identical blood group and
``MATCH_CROSS_BASE_SCORE`` for any other compatible group.  The distance
penalty is linear in kilometres and capped at ``MATCH_MAX_DISTANCE_PENALTY``.
The recency penalty is zero for donors who never donated or donated more than
``DONATION_COOLDOWN_DAYS`` ago, and grows linearly up to
``MATCH_MAX_RECENCY_PENALTY`` the more recent the last donation is.
Ties are broken by distance and then donor id.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable

from donorlink.config import Settings, get_settings
from donorlink.db.record_store import RecordStore
from donorlink.models.base import utcnow
from donorlink.models.donor import Donor
from donorlink.models.match import Match, match_id_for
from donorlink.models.recipient import Recipient
from donorlink.services import directory_service
from donorlink.services.compatibility import can_donate, compatibility_label, is_exact_match
from donorlink.services.geo import distance_km

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MatchScoring:
    exact_base: int = 100
    cross_base: int = 80
    distance_penalty_per_km: float = 0.4
    max_distance_penalty: float = 40.0
    cooldown_days: int = 90
    max_recency_penalty: float = 30.0

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "MatchScoring":
        settings = settings or get_settings()
        return cls(
            exact_base=settings.MATCH_EXACT_BASE_SCORE,
            cross_base=settings.MATCH_CROSS_BASE_SCORE,
            distance_penalty_per_km=settings.MATCH_DISTANCE_PENALTY_PER_KM,
            max_distance_penalty=settings.MATCH_MAX_DISTANCE_PENALTY,
            cooldown_days=settings.DONATION_COOLDOWN_DAYS,
            max_recency_penalty=settings.MATCH_MAX_RECENCY_PENALTY,
        )

    def distance_penalty(self, km: float) -> float:
        return min(km * self.distance_penalty_per_km, self.max_distance_penalty)

    def recency_penalty(self, last_donation: datetime | None, now: datetime) -> float:
        if last_donation is None or self.cooldown_days <= 0:
            return 0.0
        days_since = max((now - last_donation).total_seconds() / 86400.0, 0.0)
        if days_since >= self.cooldown_days:
            return 0.0
        return self.max_recency_penalty * (1.0 - days_since / self.cooldown_days)


def score_donor(
    donor: Donor,
    recipient: Recipient,
    km: float,
    scoring: MatchScoring,
    now: datetime,
) -> int:
    exact = is_exact_match(donor.blood_group, recipient.blood_group)
    base = scoring.exact_base if exact else scoring.cross_base
    raw = base - scoring.distance_penalty(km) - scoring.recency_penalty(donor.last_donation_date, now)
    return max(0, min(100, round(raw)))


def _reason(donor: Donor, recipient: Recipient, scoring: MatchScoring, now: datetime) -> str:
    if is_exact_match(donor.blood_group, recipient.blood_group):
        reason = "Exact blood group match"
    else:
        reason = f"Compatible donor ({donor.blood_group.value} can give to {recipient.blood_group.value})"
    if scoring.recency_penalty(donor.last_donation_date, now) > 0:
        reason += "; donated recently"
    return reason


# ---------------------------------------------------------------------------
# Ranking (pure)
# ---------------------------------------------------------------------------

def rank_donors(
    recipient: Recipient,
    donors: Iterable[Donor],
    max_distance_km: float | None = None,
    *,
    scoring: MatchScoring | None = None,
    now: datetime | None = None,
) -> list[Match]:
    """Return the ranked matches for *recipient* among *donors*.

    Inactive and incompatible donors are dropped first, then donors beyond
    *max_distance_km* when a bound is given.  An empty pool is an empty
    result, never an error.
    """
    scoring = scoring or MatchScoring.from_settings()
    now = now or utcnow()

    ranked: list[tuple[int, float, str, Match]] = []
    for donor in donors:
        if not donor.is_active:
            continue
        if not can_donate(donor.blood_group, recipient.blood_group):
            continue
        km = distance_km(donor.coordinates, recipient.coordinates)
        if max_distance_km is not None and km > max_distance_km:
            continue

        score = score_donor(donor, recipient, km, scoring, now)
        match = Match(
            id=match_id_for(recipient.id, donor.id),
            donor_id=donor.id,
            recipient_id=recipient.id,
            match_score=score,
            distance_km=km,
            compatibility_label=compatibility_label(donor.blood_group, recipient.blood_group),
            reason=_reason(donor, recipient, scoring, now),
            created_at=now,
        )
        ranked.append((score, km, donor.id, match))

    ranked.sort(key=lambda item: (-item[0], item[1], item[2]))
    return [item[3] for item in ranked]


# ---------------------------------------------------------------------------
# Service entry points
# ---------------------------------------------------------------------------

async def _replace_saved_matches(store: RecordStore, recipient_id: str, matches: list[Match]) -> None:
    """Make the saved ranking exactly *matches*; donors no longer ranked are removed."""
    current = {m.key for m in matches}
    for value in await store.scan_by_prefix(Match.prefix_for_recipient(recipient_id)):
        stale = Match.from_store(value)
        if stale.key not in current:
            await store.delete(stale.key)
    for match in matches:
        await store.put(match.key, match.to_store())


async def find_matches(
    store: RecordStore,
    *,
    hospital_id: str,
    recipient_id: str,
    max_distance_km: float | None = None,
    persist: bool = False,
    scoring: MatchScoring | None = None,
    now: datetime | None = None,
) -> list[Match]:
    """Rank every donor in the directory for one of *hospital_id*'s recipients.

    Raises ``NotFoundError`` for an unknown recipient (or one registered by a
    different hospital).  With *persist* the ranked list is also written under
    ``match:<recipient_id>:`` for audit.
    """
    recipient = await directory_service.get_recipient(store, recipient_id, hospital_id=hospital_id)
    donors = await directory_service.list_donors(store)

    matches = rank_donors(recipient, donors, max_distance_km, scoring=scoring, now=now)

    if persist:
        await _replace_saved_matches(store, recipient.id, matches)

    logger.info(
        "Ranked %d matches for recipient %s (%s) out of %d donors",
        len(matches), recipient.id, recipient.blood_group.value, len(donors),
    )
    return matches


async def get_saved_matches(store: RecordStore, *, hospital_id: str, recipient_id: str) -> list[Match]:
    """Previously persisted matches for a recipient, best first."""
    await directory_service.get_recipient(store, recipient_id, hospital_id=hospital_id)
    matches = [Match.from_store(v) for v in await store.scan_by_prefix(Match.prefix_for_recipient(recipient_id))]
    matches.sort(key=lambda m: (-m.match_score, m.distance_km, m.donor_id))
    return matches
