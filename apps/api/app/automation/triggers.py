from __future__ import annotations

from enum import Enum


class AutomationTrigger(str, Enum):
    LEAD_CREATED = "lead_created"
    LEAD_STAGE_CHANGED = "lead_stage_changed"
    LEAD_TEMPERATURE_CHANGED = "lead_temperature_changed"
    LEAD_NO_RESPONSE = "lead_no_response"
    LEAD_LABEL_ADDED = "lead_label_added"
    TASK_OVERDUE = "task_overdue"
    CONVERSATION_NO_RESPONSE = "conversation_no_response"


EVENT_TRIGGERS: dict[str, AutomationTrigger] = {
    "lead.created": AutomationTrigger.LEAD_CREATED,
    "lead.stage_changed": AutomationTrigger.LEAD_STAGE_CHANGED,
    "lead.temperature_changed": AutomationTrigger.LEAD_TEMPERATURE_CHANGED,
    "lead.label_added": AutomationTrigger.LEAD_LABEL_ADDED,
    "lead.no_response": AutomationTrigger.LEAD_NO_RESPONSE,
    "task.overdue": AutomationTrigger.TASK_OVERDUE,
    "conversation.no_response": AutomationTrigger.CONVERSATION_NO_RESPONSE,
}


def resolve_trigger(event: str | None) -> AutomationTrigger | None:
    if not event:
        return None
    return EVENT_TRIGGERS.get(event)
