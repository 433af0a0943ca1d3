from __future__ import annotations

import logging
from typing import Any

from app.automation.queue import AutomationQueueConsumer
from app.automation.webhooks import WebhookDispatcher
from app.core.celery_app import celery_app
from app.core.database import SessionLocal


logger = logging.getLogger("app.automation.tasks")


@celery_app.task(name="automation.process_queue")
def process_automation_queue(batch_size: int | None = None) -> dict[str, Any]:
    session = SessionLocal()
    try:
        summary = AutomationQueueConsumer().process_pending(session, batch_size=batch_size)
        return {"processed": summary.processed}
    finally:
        session.close()


@celery_app.task(name="webhooks.process_queue")
def process_webhook_queue(batch_size: int | None = None) -> dict[str, Any]:
    session = SessionLocal()
    try:
        summary = WebhookDispatcher().process_queue_sync(session, limit=batch_size)
        return {"processed": summary.processed}
    finally:
        session.close()


@celery_app.task(name="webhooks.retry_due")
def retry_due_webhooks(batch_size: int | None = None) -> dict[str, Any]:
    session = SessionLocal()
    try:
        summary = WebhookDispatcher().retry_due_sync(session, limit=batch_size)
        if summary.processed:
            logger.info("webhook.retry.pass_finished", extra={"count": summary.processed})
        return {"processed": summary.processed}
    finally:
        session.close()
