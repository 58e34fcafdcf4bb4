"""
Match API routes.

Endpoints:
    GET /recipients/{id}/matches       Rank compatible donors for a recipient
    GET /recipients/{id}/matches/saved Last persisted ranking
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, ConfigDict

from donorlink.api.middleware.audit import log_audit
from donorlink.api.middleware.auth import get_current_hospital_id
from donorlink.db.record_store import RecordStore, get_record_store
from donorlink.services import match_service

router = APIRouter()


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------

class MatchResponse(BaseModel):
    id: str
    donor_id: str
    recipient_id: str
    match_score: int
    quality: str
    distance_km: float
    compatibility_label: str
    reason: str
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class MatchListResponse(BaseModel):
    recipient_id: str
    matches: list[MatchResponse]
    total: int
    max_distance_km: Optional[float] = None


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.get("/recipients/{recipient_id}/matches", response_model=MatchListResponse)
async def find_matches(
    recipient_id: str,
    request: Request,
    max_distance_km: Optional[float] = Query(default=None, gt=0),
    persist: bool = False,
    store: RecordStore = Depends(get_record_store),
    hospital_id: str = Depends(get_current_hospital_id),
):
    """Rank every active, compatible donor for one of the caller's recipients."""
    matches = await match_service.find_matches(
        store,
        hospital_id=hospital_id,
        recipient_id=recipient_id,
        max_distance_km=max_distance_km,
        persist=persist,
    )

    if persist:
        await log_audit(
            store,
            action="persist_matches",
            resource="recipient",
            resource_id=recipient_id,
            hospital_id=hospital_id,
            details=f"{len(matches)} matches saved",
            request=request,
        )

    return MatchListResponse(
        recipient_id=recipient_id,
        matches=[MatchResponse.model_validate(m) for m in matches],
        total=len(matches),
        max_distance_km=max_distance_km,
    )


@router.get("/recipients/{recipient_id}/matches/saved", response_model=MatchListResponse)
async def saved_matches(
    recipient_id: str,
    store: RecordStore = Depends(get_record_store),
    hospital_id: str = Depends(get_current_hospital_id),
):
    matches = await match_service.get_saved_matches(store, hospital_id=hospital_id, recipient_id=recipient_id)
    return MatchListResponse(
        recipient_id=recipient_id,
        matches=[MatchResponse.model_validate(m) for m in matches],
        total=len(matches),
    )
