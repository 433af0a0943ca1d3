from celery import Celery

from app.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "zapflow_api",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["app.automation.tasks"],
)
celery_app.conf.task_default_queue = "zapflow"
celery_app.conf.timezone = "UTC"

if settings.scheduler_enabled:
    celery_app.conf.beat_schedule = {
        "automation-process-queue": {
            "task": "automation.process_queue",
            "schedule": settings.automation_poll_seconds,
        },
        "webhooks-process-queue": {
            "task": "webhooks.process_queue",
            "schedule": settings.webhook_poll_seconds,
        },
        "webhooks-retry-due": {
            "task": "webhooks.retry_due",
            "schedule": settings.retry_poll_seconds,
        },
    }
