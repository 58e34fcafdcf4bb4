"""
Alert service: creation, lifecycle transitions, reach estimation and
delivery status.

Alerts are immutable once created except for their state, which only moves
along ``ALERT_TRANSITIONS``.  State writes are compare-and-set on the alert
record so a cancel racing an expiry sweep resolves to exactly one outcome.
Cancelling or expiring an alert also closes its open deliveries.
"""

from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Iterable

from donorlink.api.websocket.handler import broadcast_alert_state
from donorlink.config import get_settings
from donorlink.db.record_store import RecordStore
from donorlink.exceptions import (
    AlertExpiredError,
    ConcurrentUpdateError,
    InvalidInputError,
    InvalidTransitionError,
    NotFoundError,
)
from donorlink.models.alert import Alert, AlertState
from donorlink.models.alert_delivery import DeliveryChannel
from donorlink.models.base import utcnow
from donorlink.models.recipient import UrgencyLevel
from donorlink.services import directory_service
from donorlink.services.audience_service import resolve_audience
from donorlink.services.compatibility import parse_blood_group
from donorlink.services.delivery_tracker import MAX_CAS_RETRIES, DeliveryTracker

logger = logging.getLogger(__name__)

CLOSING_REASONS = {
    AlertState.CANCELLED: "alert_cancelled",
    AlertState.EXPIRED: "alert_expired",
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _parse_channels(channels: Iterable[str | DeliveryChannel] | None) -> list[DeliveryChannel]:
    raw = list(channels) if channels else list(get_settings().DISPATCH_CHANNELS)
    parsed: list[DeliveryChannel] = []
    for value in raw:
        try:
            channel = DeliveryChannel(value)
        except ValueError:
            raise InvalidInputError(f"Unknown delivery channel: {value!r}") from None
        if channel not in parsed:
            parsed.append(channel)
    if not parsed:
        raise InvalidInputError("At least one delivery channel is required")
    return parsed


def _default_max_distance(max_distance_km: float | None) -> float | None:
    if max_distance_km is not None:
        if max_distance_km <= 0:
            raise InvalidInputError("max_distance_km must be positive")
        return max_distance_km
    default = get_settings().ALERT_DEFAULT_MAX_DISTANCE_KM
    return default if default > 0 else None


async def _broadcast_state(alert: Alert) -> None:
    try:
        await broadcast_alert_state(alert.hospital_id, {
            "alert_id": alert.id,
            "state": alert.state.value,
            "updated_at": alert.updated_at.isoformat(),
        })
    except Exception:
        logger.exception("Failed to broadcast state of alert %s", alert.id)


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

async def get_alert(store: RecordStore, alert_id: str, *, hospital_id: str | None = None) -> Alert:
    """Load an alert; one issued by another hospital is reported as not found."""
    value = await store.get(Alert.key_for(alert_id))
    if value is None:
        raise NotFoundError("Alert", alert_id)
    alert = Alert.from_store(value)
    if hospital_id is not None and alert.hospital_id != hospital_id:
        raise NotFoundError("Alert", alert_id)
    return alert


async def list_alerts(
    store: RecordStore,
    *,
    hospital_id: str | None = None,
    state: AlertState | None = None,
) -> list[Alert]:
    """Alerts newest first, optionally narrowed to one hospital and state."""
    alerts = [Alert.from_store(v) for v in await store.scan_by_prefix(Alert.KEY_PREFIX)]
    if hospital_id is not None:
        alerts = [a for a in alerts if a.hospital_id == hospital_id]
    if state is not None:
        alerts = [a for a in alerts if a.state == state]
    alerts.sort(key=lambda a: (a.created_at, a.id), reverse=True)
    return alerts


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------

async def build_alert(
    store: RecordStore,
    *,
    hospital_id: str,
    title: str,
    message: str = "",
    recipient_id: str | None = None,
    urgency_level: UrgencyLevel | str = UrgencyLevel.HIGH,
    target_blood_groups: Iterable[str] | None = None,
    max_distance_km: float | None = None,
    channels: Iterable[str | DeliveryChannel] | None = None,
    expires_in_hours: float | None = None,
    now: datetime | None = None,
) -> Alert:
    """Validate an alert definition against the directory without storing it."""
    now = now or utcnow()
    await directory_service.get_hospital(store, hospital_id)
    if recipient_id is not None:
        await directory_service.get_recipient(store, recipient_id, hospital_id=hospital_id)

    groups = []
    for group in target_blood_groups or []:
        parsed = parse_blood_group(group)
        if parsed not in groups:
            groups.append(parsed)

    try:
        urgency = UrgencyLevel(urgency_level)
    except ValueError:
        raise InvalidInputError(f"Unknown urgency level: {urgency_level!r}") from None

    ttl_hours = expires_in_hours if expires_in_hours is not None else get_settings().ALERT_DEFAULT_TTL_HOURS
    if ttl_hours <= 0:
        raise InvalidInputError("expires_in_hours must be positive")

    return Alert(
        hospital_id=hospital_id,
        recipient_id=recipient_id,
        title=title,
        message=message,
        urgency_level=urgency,
        target_blood_groups=groups,
        max_distance_km=_default_max_distance(max_distance_km),
        channels=_parse_channels(channels),
        state=AlertState.DRAFT,
        created_at=now,
        updated_at=now,
        expires_at=now + timedelta(hours=ttl_hours),
    )


async def create_alert(
    store: RecordStore,
    *,
    activate: bool = False,
    now: datetime | None = None,
    **definition: Any,
) -> Alert:
    """Create a Draft alert, or an Active one when *activate* is set.

    *definition* takes the keyword arguments of ``build_alert``.
    """
    now = now or utcnow()
    alert = await build_alert(store, now=now, **definition)
    if activate:
        alert = alert.model_copy(update={"state": AlertState.ACTIVE})

    if not await store.put_if_version(alert.key, alert.to_store(), 0):
        raise ConcurrentUpdateError(f"Alert {alert.id} already exists")

    logger.info(
        "Created alert %s [%s] for hospital %s (recipient=%s, groups=%s, radius=%s km, channels=%s)",
        alert.id, alert.state.value, alert.hospital_id, alert.recipient_id,
        ",".join(g.value for g in alert.target_blood_groups) or "all",
        alert.max_distance_km, ",".join(c.value for c in alert.channels),
    )
    if activate:
        await _broadcast_state(alert)
    return alert


async def estimate_reach(store: RecordStore, **definition: Any) -> dict[str, Any]:
    """Audience size of an alert that has not been created yet."""
    alert = await build_alert(store, **definition)
    audience = await resolve_audience(store, alert)
    by_group = Counter(d.blood_group.value for d in audience)
    return {
        "audience_size": len(audience),
        "by_blood_group": dict(sorted(by_group.items())),
        "channels": [c.value for c in alert.channels],
        "max_distance_km": alert.max_distance_km,
    }


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

async def _transition(
    store: RecordStore,
    alert_id: str,
    new_state: AlertState,
    *,
    hospital_id: str | None,
    now: datetime,
) -> tuple[Alert, bool]:
    key = Alert.key_for(alert_id)
    for _ in range(MAX_CAS_RETRIES):
        found = await store.get_versioned(key)
        if found is None:
            raise NotFoundError("Alert", alert_id)
        value, version = found
        alert = Alert.from_store(value)
        if hospital_id is not None and alert.hospital_id != hospital_id:
            raise NotFoundError("Alert", alert_id)

        if alert.state == new_state:
            return alert, False
        if not alert.can_transition(new_state):
            raise InvalidTransitionError(f"Alert {alert_id}", alert.state.value, new_state.value)

        updated = alert.model_copy(update={"state": new_state, "updated_at": now})
        if await store.put_if_version(key, updated.to_store(), version):
            return updated, True
    raise ConcurrentUpdateError(f"Gave up updating alert {alert_id} after {MAX_CAS_RETRIES} conflicts")


async def activate_alert(
    store: RecordStore, alert_id: str, *, hospital_id: str | None = None, now: datetime | None = None,
) -> Alert:
    now = now or utcnow()
    current = await get_alert(store, alert_id, hospital_id=hospital_id)
    if current.state == AlertState.DRAFT and current.is_expired(now):
        raise AlertExpiredError(alert_id, current.state.value, f"Alert {alert_id} expired before activation")

    alert, changed = await _transition(store, alert_id, AlertState.ACTIVE, hospital_id=hospital_id, now=now)
    if changed:
        logger.info("Activated alert %s", alert.id)
        await _broadcast_state(alert)
    return alert


async def _close(
    store: RecordStore,
    alert_id: str,
    new_state: AlertState,
    *,
    hospital_id: str | None,
    now: datetime,
) -> Alert:
    alert, changed = await _transition(store, alert_id, new_state, hospital_id=hospital_id, now=now)
    # also on a repeated call, so deliveries left open by a crash get closed
    tracker = DeliveryTracker(store)
    await tracker.abandon_open(alert.id, reason=CLOSING_REASONS[new_state], now=now)
    if changed:
        logger.info("Alert %s is now %s", alert.id, new_state.value)
        await _broadcast_state(alert)
    return alert


async def cancel_alert(
    store: RecordStore, alert_id: str, *, hospital_id: str | None = None, now: datetime | None = None,
) -> Alert:
    """Stop new sends; in-flight sends finish, open deliveries become dead."""
    return await _close(store, alert_id, AlertState.CANCELLED, hospital_id=hospital_id, now=now or utcnow())


async def expire_alerts(store: RecordStore, *, now: datetime | None = None) -> list[str]:
    """Move every Active alert past its ``expires_at`` to Expired. Returns their ids."""
    now = now or utcnow()
    expired: list[str] = []
    for alert in await list_alerts(store, state=AlertState.ACTIVE):
        if not alert.is_expired(now):
            continue
        try:
            await _close(store, alert.id, AlertState.EXPIRED, hospital_id=None, now=now)
        except InvalidTransitionError:
            # cancelled between the scan and the write
            continue
        expired.append(alert.id)
    if expired:
        logger.info("Expired %d alerts", len(expired))
    return expired


# ---------------------------------------------------------------------------
# Delivery status
# ---------------------------------------------------------------------------

async def get_delivery_status(
    store: RecordStore, alert_id: str, *, hospital_id: str | None = None,
) -> dict[str, Any]:
    alert = await get_alert(store, alert_id, hospital_id=hospital_id)
    tracker = DeliveryTracker(store)
    deliveries = await tracker.list_for_alert(alert.id)
    summary = await tracker.summarize(alert.id, deliveries)
    return {
        "alert": alert,
        "summary": summary,
        "deliveries": deliveries,
    }
