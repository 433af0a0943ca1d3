from __future__ import annotations

import uuid
from collections import deque
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any

from app.context import get_automation_id, get_correlation_id

# Most recent management-plane changes (rules, subscriptions) and automation side effects.
MAX_AUDIT_ENTRIES = 1000
audit_entries: deque[dict[str, Any]] = deque(maxlen=MAX_AUDIT_ENTRIES)


def snapshot(entity: Any, fields: Iterable[str]) -> dict[str, Any]:
    return {name: getattr(entity, name, None) for name in fields}


def record(
    actor_user_id: str,
    entity_type: str,
    entity_id: str,
    action: str,
    before: dict[str, Any] | None,
    after: dict[str, Any] | None,
    correlation_id: str | None = None,
) -> dict[str, Any]:
    entry = {
        "id": str(uuid.uuid4()),
        "actor_user_id": actor_user_id,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "action": action,
        "before": before,
        "after": after,
        "correlation_id": correlation_id or get_correlation_id(),
        "automation_id": get_automation_id(),
        "occurred_at": datetime.now(timezone.utc).isoformat(),
    }
    audit_entries.append(entry)
    return entry


def entries_for(entity_type: str, entity_id: str | None = None) -> list[dict[str, Any]]:
    return [
        entry
        for entry in audit_entries
        if entry["entity_type"] == entity_type and (entity_id is None or entry["entity_id"] == entity_id)
    ]
