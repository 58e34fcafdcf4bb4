import logging

import socketio

from donorlink.config import get_settings

logger = logging.getLogger(__name__)
_settings = get_settings()

# Use Redis manager so Celery workers can emit events via the same bus
_redis_mgr = socketio.AsyncRedisManager(_settings.REDIS_URL)
sio = socketio.AsyncServer(
    async_mode="asgi",
    cors_allowed_origins="*",
    client_manager=_redis_mgr,
)


def donor_room(donor_id: str) -> str:
    return f"donor_{donor_id}"


def hospital_room(hospital_id: str) -> str:
    return f"hospital_{hospital_id}"


def alert_room(alert_id: str) -> str:
    return f"alert_{alert_id}"


@sio.event
async def connect(sid, environ):
    logger.info("Socket.IO client connected: %s", sid)


@sio.event
async def disconnect(sid):
    logger.info("Socket.IO client disconnected: %s", sid)


@sio.event
async def join_hospital(sid, data):
    """Hospital dashboard joins its room for delivery updates."""
    hospital_id = (data or {}).get("hospital_id")
    if hospital_id:
        await sio.enter_room(sid, hospital_room(hospital_id))
        await sio.emit("joined", {"room": hospital_room(hospital_id)}, to=sid)


@sio.event
async def join_alert(sid, data):
    """Dashboard follows delivery progress of one alert."""
    alert_id = (data or {}).get("alert_id")
    if alert_id:
        await sio.enter_room(sid, alert_room(alert_id))
        await sio.emit("joined", {"room": alert_room(alert_id)}, to=sid)


@sio.event
async def join_donor(sid, data):
    """Donor app joins its personal room to receive alerts."""
    donor_id = (data or {}).get("donor_id")
    if donor_id:
        await sio.enter_room(sid, donor_room(donor_id))
        await sio.emit("joined", {"room": donor_room(donor_id)}, to=sid)


@sio.event
async def alert_received(sid, data):
    """Donor app confirms a pushed alert was shown; marks the push delivery delivered."""
    from donorlink.db.record_store import get_record_store
    from donorlink.exceptions import DonorLinkError
    from donorlink.models.alert_delivery import DeliveryChannel, DeliveryState
    from donorlink.services.dispatcher import build_dispatcher

    data = data or {}
    alert_id = data.get("alert_id")
    donor_id = data.get("donor_id")
    if not alert_id or not donor_id:
        await sio.emit("error", {"detail": "alert_id and donor_id are required"}, to=sid)
        return
    # only the donor's own connection may acknowledge
    if donor_room(donor_id) not in sio.rooms(sid):
        logger.warning("Push ack for donor %s from sid %s outside the donor room", donor_id, sid)
        await sio.emit("error", {"detail": "join the donor room before acknowledging"}, to=sid)
        return

    dispatcher = build_dispatcher(get_record_store())
    try:
        delivery = await dispatcher.handle_delivery_result(
            alert_id, donor_id, DeliveryChannel.PUSH, DeliveryState.DELIVERED,
        )
    except DonorLinkError as exc:
        logger.warning("Ignoring push ack for %s/%s: %s", alert_id, donor_id, exc)
        await sio.emit("error", {"detail": str(exc)}, to=sid)
        return
    await sio.emit("ack", {"alert_id": alert_id, "state": delivery.state.value}, to=sid)


# --- Broadcast functions (called from services) ---

async def push_donor_alert(donor_id: str, alert_data: dict):
    """Send an alert to a single donor's room."""
    await sio.emit("donor_alert", alert_data, room=donor_room(donor_id))


async def broadcast_delivery_update(alert_id: str, delivery_data: dict):
    """Push a delivery state change to dashboards following the alert."""
    await sio.emit("delivery_update", delivery_data, room=alert_room(alert_id))


async def broadcast_alert_state(hospital_id: str, alert_data: dict):
    """Push an alert lifecycle change (activated/cancelled/expired)."""
    await sio.emit("alert_state", alert_data, room=hospital_room(hospital_id))
