from __future__ import annotations

from collections import deque
from typing import Any

from app.context import get_automation_id, get_correlation_id
from app.core.events import event_bus

MAX_RECENT_EVENTS = 1000
# Most recent envelopes, oldest dropped first.
published_events: deque[dict[str, Any]] = deque(maxlen=MAX_RECENT_EVENTS)


def publish(envelope: dict[str, Any]) -> None:
    if envelope.get("correlation_id") is None:
        envelope["correlation_id"] = get_correlation_id()

    existing_meta = envelope.get("meta")
    meta: dict[str, Any] = existing_meta.copy() if isinstance(existing_meta, dict) else {}
    automation_id = get_automation_id()
    if automation_id is not None and "automation_id" not in meta:
        meta["automation_id"] = automation_id
    if meta:
        envelope["meta"] = meta

    published_events.append(envelope)
    event_type = envelope.get("event_type")
    if isinstance(event_type, str) and event_type:
        event_bus.publish(event_type, envelope)
