"""
FastAPI dependencies shared by the routers.

Tests swap these through ``app.dependency_overrides``.
"""

from fastapi import Depends

from donorlink.db.record_store import RecordStore, get_record_store
from donorlink.notifications.gateway import NotificationGateway, get_gateway
from donorlink.services.dispatcher import AlertDispatcher, RetryScheduler, build_dispatcher


def get_retry_scheduler() -> RetryScheduler:
    from tasks.dispatch_tasks import enqueue_retry
    return enqueue_retry


def get_dispatcher(
    store: RecordStore = Depends(get_record_store),
    gateway: NotificationGateway = Depends(get_gateway),
    retry_scheduler: RetryScheduler = Depends(get_retry_scheduler),
) -> AlertDispatcher:
    return build_dispatcher(store, gateway, retry_scheduler=retry_scheduler)
