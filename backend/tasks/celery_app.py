from celery import Celery

from donorlink.config import get_settings

settings = get_settings()

celery_app = Celery(
    "donorlink",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
    include=[
        "tasks.dispatch_tasks",
    ],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_routes={
        "tasks.dispatch_tasks.dispatch_alert": {"queue": "alerts.dispatch"},     # HIGH priority
        "tasks.dispatch_tasks.retry_delivery": {"queue": "alerts.retry"},
        "tasks.dispatch_tasks.*": {"queue": "alerts.maintenance"},
    },
    beat_schedule={
        "retry-due-deliveries": {
            "task": "tasks.dispatch_tasks.retry_due_deliveries",
            "schedule": 60.0,  # Every minute
        },
        "expire-alerts": {
            "task": "tasks.dispatch_tasks.expire_alerts",
            "schedule": 300.0,  # Every 5 minutes
        },
    },
)
