"""
Alert API routes.

Endpoints:
    POST /alerts                     Create an alert (optionally activate and dispatch)
    POST /alerts/estimate-reach      Audience size of a not-yet-created alert
    GET  /alerts                     List the caller's alerts
    GET  /alerts/{id}                Get alert detail
    POST /alerts/{id}/activate       Draft -> Active
    POST /alerts/{id}/cancel         Draft/Active -> Cancelled, open deliveries closed
    POST /alerts/{id}/dispatch       Fan out to the audience (inline or via Celery)
    GET  /alerts/{id}/deliveries     Per-donor, per-channel delivery status
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, ConfigDict, Field

from donorlink.api.dependencies import get_dispatcher
from donorlink.api.middleware.audit import log_audit
from donorlink.api.middleware.auth import get_current_hospital_id
from donorlink.db.record_store import RecordStore, get_record_store
from donorlink.models.alert import AlertState
from donorlink.models.alert_delivery import DeliveryChannel, DeliveryState
from donorlink.models.recipient import UrgencyLevel
from donorlink.services import alert_service
from donorlink.services.dispatcher import AlertDispatcher

router = APIRouter()
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------

class AlertDefinition(BaseModel):
    title: str = Field(..., min_length=1, max_length=500)
    message: str = ""
    recipient_id: Optional[str] = None
    urgency_level: UrgencyLevel = UrgencyLevel.HIGH
    target_blood_groups: list[str] = Field(default_factory=list)
    max_distance_km: Optional[float] = Field(default=None, gt=0)
    channels: Optional[list[DeliveryChannel]] = None
    expires_in_hours: Optional[float] = Field(default=None, gt=0)


class AlertCreateRequest(AlertDefinition):
    activate: bool = False
    dispatch: bool = False  # implies activate


class AlertResponse(BaseModel):
    id: str
    hospital_id: str
    recipient_id: Optional[str] = None
    title: str
    message: str
    urgency_level: UrgencyLevel
    target_blood_groups: list[str]
    max_distance_km: Optional[float] = None
    channels: list[DeliveryChannel]
    state: AlertState
    created_at: datetime
    updated_at: datetime
    expires_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class AlertListResponse(BaseModel):
    alerts: list[AlertResponse]
    total: int


class DispatchResponse(BaseModel):
    alert_id: str
    audience_size: int = 0
    delivery_count: int = 0
    attempted: int = 0
    by_state: dict[str, int] = {}
    queued: bool = False


class AlertCreateResponse(AlertResponse):
    dispatch: Optional[DispatchResponse] = None


class ReachEstimateResponse(BaseModel):
    audience_size: int
    by_blood_group: dict[str, int]
    channels: list[str]
    max_distance_km: Optional[float] = None


class DeliveryResponse(BaseModel):
    id: str
    donor_id: str
    channel: DeliveryChannel
    state: DeliveryState
    attempt_count: int
    last_attempt_at: Optional[datetime] = None
    next_attempt_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    last_error: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class DeliveryStatusResponse(BaseModel):
    alert_id: str
    state: AlertState
    summary: dict
    deliveries: list[DeliveryResponse]


def _alert_response(alert, response_cls=AlertResponse, **extra):
    data = alert.model_dump()
    data["target_blood_groups"] = [g.value for g in alert.target_blood_groups]
    return response_cls(**data, **extra)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post("/alerts", response_model=AlertCreateResponse, status_code=status.HTTP_201_CREATED)
async def create_alert(
    payload: AlertCreateRequest,
    request: Request,
    store: RecordStore = Depends(get_record_store),
    dispatcher: AlertDispatcher = Depends(get_dispatcher),
    hospital_id: str = Depends(get_current_hospital_id),
):
    """Create an alert for the caller's hospital.

    ``activate`` creates it directly in the Active state; ``dispatch`` also
    fans it out before responding.
    """
    definition = payload.model_dump(exclude={"activate", "dispatch"})
    alert = await alert_service.create_alert(
        store,
        hospital_id=hospital_id,
        activate=payload.activate or payload.dispatch,
        **definition,
    )

    await log_audit(
        store,
        action="create",
        resource="alert",
        resource_id=alert.id,
        hospital_id=hospital_id,
        details=f"Alert created: {alert.title} ({alert.urgency_level.value}, {alert.state.value})",
        request=request,
    )

    dispatch = None
    if payload.dispatch:
        result = await dispatcher.dispatch(alert.id, hospital_id=hospital_id)
        dispatch = DispatchResponse(**result.to_dict())

    return _alert_response(alert, AlertCreateResponse, dispatch=dispatch)


@router.post("/alerts/estimate-reach", response_model=ReachEstimateResponse)
async def estimate_reach(
    payload: AlertDefinition,
    store: RecordStore = Depends(get_record_store),
    hospital_id: str = Depends(get_current_hospital_id),
):
    """How many donors an alert with this definition would reach right now."""
    return await alert_service.estimate_reach(store, hospital_id=hospital_id, **payload.model_dump())


@router.get("/alerts", response_model=AlertListResponse)
async def list_alerts(
    state: Optional[AlertState] = None,
    limit: int = 50,
    offset: int = 0,
    store: RecordStore = Depends(get_record_store),
    hospital_id: str = Depends(get_current_hospital_id),
):
    """List the caller's alerts, newest first."""
    alerts = await alert_service.list_alerts(store, hospital_id=hospital_id, state=state)
    page = alerts[offset:offset + limit]
    return AlertListResponse(alerts=[_alert_response(a) for a in page], total=len(alerts))


@router.get("/alerts/{alert_id}", response_model=AlertResponse)
async def get_alert(
    alert_id: str,
    store: RecordStore = Depends(get_record_store),
    hospital_id: str = Depends(get_current_hospital_id),
):
    alert = await alert_service.get_alert(store, alert_id, hospital_id=hospital_id)
    return _alert_response(alert)


@router.post("/alerts/{alert_id}/activate", response_model=AlertResponse)
async def activate_alert(
    alert_id: str,
    request: Request,
    store: RecordStore = Depends(get_record_store),
    hospital_id: str = Depends(get_current_hospital_id),
):
    alert = await alert_service.activate_alert(store, alert_id, hospital_id=hospital_id)
    await log_audit(
        store, action="activate", resource="alert", resource_id=alert.id,
        hospital_id=hospital_id, request=request,
    )
    return _alert_response(alert)


@router.post("/alerts/{alert_id}/cancel", response_model=AlertResponse)
async def cancel_alert(
    alert_id: str,
    request: Request,
    store: RecordStore = Depends(get_record_store),
    hospital_id: str = Depends(get_current_hospital_id),
):
    """Cancel an alert. Sends already in flight finish; nothing new is sent."""
    alert = await alert_service.cancel_alert(store, alert_id, hospital_id=hospital_id)
    await log_audit(
        store, action="cancel", resource="alert", resource_id=alert.id,
        hospital_id=hospital_id, request=request,
    )
    return _alert_response(alert)


@router.post("/alerts/{alert_id}/dispatch", response_model=DispatchResponse)
async def dispatch_alert(
    alert_id: str,
    request: Request,
    background: bool = False,
    store: RecordStore = Depends(get_record_store),
    dispatcher: AlertDispatcher = Depends(get_dispatcher),
    hospital_id: str = Depends(get_current_hospital_id),
):
    """Fan an Active alert out to its audience.

    Safe to repeat: deliveries already created are reused, and only pending
    ones that are due get sent.  With ``background`` the fan-out runs on a
    Celery worker and the response returns immediately.
    """
    if background:
        from tasks.dispatch_tasks import dispatch_alert as dispatch_alert_task

        alert = await alert_service.get_alert(store, alert_id, hospital_id=hospital_id)
        dispatch_alert_task.delay(alert.id, hospital_id)
        logger.info("Queued dispatch of alert %s", alert.id)
        return DispatchResponse(alert_id=alert.id, queued=True)

    result = await dispatcher.dispatch(alert_id, hospital_id=hospital_id)
    await log_audit(
        store,
        action="dispatch",
        resource="alert",
        resource_id=alert_id,
        hospital_id=hospital_id,
        details=f"audience={result.audience_size} attempted={result.attempted}",
        request=request,
    )
    return DispatchResponse(**result.to_dict())


@router.get("/alerts/{alert_id}/deliveries", response_model=DeliveryStatusResponse)
async def get_delivery_status(
    alert_id: str,
    state: Optional[DeliveryState] = None,
    channel: Optional[DeliveryChannel] = None,
    store: RecordStore = Depends(get_record_store),
    hospital_id: str = Depends(get_current_hospital_id),
):
    """Delivery records of an alert with per-state and per-channel counts."""
    status_data = await alert_service.get_delivery_status(store, alert_id, hospital_id=hospital_id)
    deliveries = status_data["deliveries"]
    if state is not None:
        deliveries = [d for d in deliveries if d.state == state]
    if channel is not None:
        deliveries = [d for d in deliveries if d.channel == channel]
    return DeliveryStatusResponse(
        alert_id=status_data["alert"].id,
        state=status_data["alert"].state,
        summary=status_data["summary"],
        deliveries=[DeliveryResponse.model_validate(d) for d in deliveries],
    )
