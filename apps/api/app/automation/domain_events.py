from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any

from sqlalchemy import inspect
from sqlalchemy.orm import Session

from app import events
from app.automation.models import AutomationQueueItem, WebhookQueueItem, utcnow


logger = logging.getLogger("app.automation.events")


def row_to_dict(entity: Any) -> dict[str, Any]:
    mapper = inspect(entity).mapper
    snapshot: dict[str, Any] = {}
    for column in mapper.column_attrs:
        value = getattr(entity, column.key)
        if isinstance(value, (datetime, date)):
            value = value.isoformat()
        snapshot[column.key] = value
    return snapshot


def record_domain_event(session: Session, event: str, data: dict[str, Any]) -> AutomationQueueItem:
    """Queue a domain event for both the automation consumer and webhook delivery.

    Rows are added to the session only; they become visible to the consumers when
    the caller commits, and disappear with the caller's rollback.
    """
    payload = {"event": event, "timestamp": utcnow().isoformat(), "data": data}
    queue_item = AutomationQueueItem(event=event, payload=payload)
    webhook_item = WebhookQueueItem(event=event, payload=payload)
    session.add(queue_item)
    session.add(webhook_item)
    session.flush()

    events.publish({"event_type": event, "queue_id": queue_item.id, "payload": data})
    logger.info("automation.event.recorded", extra={"event_name": event, "queue_id": queue_item.id})
    return queue_item
