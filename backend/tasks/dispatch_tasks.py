"""Celery tasks for alert fan-out, delivery retries and alert expiry."""
import asyncio
import logging
from contextlib import asynccontextmanager

from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


def _run_async(coro):
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


@asynccontextmanager
async def _task_store():
    """Record store on a disposable engine for this task.

    Each _run_async() call uses a new event loop, but asyncpg connections
    are bound to the loop they were created on, so the web process's global
    engine cannot be shared here.
    """
    from donorlink.config import get_settings
    from donorlink.db.record_store import SqlRecordStore, get_record_store

    settings = get_settings()
    if settings.RECORD_STORE_BACKEND == "memory":
        yield get_record_store()
        return

    from donorlink.db.postgres import create_engine, session_factory

    eng = create_engine(pool_size=2, max_overflow=0)
    try:
        yield SqlRecordStore(session_factory(eng))
    finally:
        await eng.dispose()


def enqueue_retry(delivery, delay_seconds: float):
    """Schedule ``retry_delivery`` for a delivery once its backoff has elapsed."""
    retry_delivery.apply_async(
        args=[delivery.alert_id, delivery.donor_id, delivery.channel.value],
        countdown=delay_seconds,
    )


@celery_app.task(name="tasks.dispatch_tasks.dispatch_alert")
def dispatch_alert(alert_id: str, hospital_id: str | None = None):
    """Fan an Active alert out to its audience."""
    from donorlink.services.dispatcher import build_dispatcher

    async def _run():
        async with _task_store() as store:
            result = await build_dispatcher(store).dispatch(alert_id, hospital_id=hospital_id)
            return result.to_dict()

    return _run_async(_run())


@celery_app.task(name="tasks.dispatch_tasks.retry_delivery")
def retry_delivery(alert_id: str, donor_id: str, channel: str):
    """Run one scheduled retry for a single (alert, donor, channel) delivery."""
    from donorlink.services.dispatcher import build_dispatcher

    async def _run():
        async with _task_store() as store:
            delivery = await build_dispatcher(store).retry_delivery(alert_id, donor_id, channel)
            return {"key": delivery.key, "state": delivery.state.value, "attempt_count": delivery.attempt_count}

    return _run_async(_run())


@celery_app.task(name="tasks.dispatch_tasks.retry_due_deliveries")
def retry_due_deliveries():
    """Send every pending delivery whose backoff has elapsed."""
    from donorlink.services.dispatcher import build_dispatcher

    async def _run():
        async with _task_store() as store:
            return await build_dispatcher(store).retry_due()

    attempted = _run_async(_run())
    logger.info("Retry sweep: %d sends issued", attempted)
    return attempted


@celery_app.task(name="tasks.dispatch_tasks.expire_alerts")
def expire_alerts():
    """Move Active alerts past their expiry to Expired and close their deliveries."""
    from donorlink.services import alert_service

    async def _run():
        async with _task_store() as store:
            return await alert_service.expire_alerts(store)

    return {"expired": _run_async(_run())}
