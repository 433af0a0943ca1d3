from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from opentelemetry import trace
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app import audit
from app.automation.domain_events import record_domain_event, row_to_dict
from app.automation.models import (
    Conversation,
    FunnelStage,
    Label,
    Lead,
    LeadLabel,
    Message,
    MessageTemplate,
    Notification,
    Task,
    utcnow,
)
from app.automation.schemas import ActionResult
from app.metrics import observe_action


logger = logging.getLogger("app.automation.actions")
tracer = trace.get_tracer("app.automation.actions")

SYSTEM_SENDER_ID = "00000000-0000-0000-0000-000000000000"
LEAD_TEMPERATURES = ("cold", "warm", "hot")

_NAME_PLACEHOLDER_RE = re.compile(r"\{\{nome\}\}", re.IGNORECASE)
_PHONE_PLACEHOLDER_RE = re.compile(r"\{\{telefone\}\}", re.IGNORECASE)


class ActionError(Exception):
    pass


@dataclass
class ActionContext:
    automation_id: str
    data: dict[str, Any]
    lead_id: str | None = None
    lead: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_event_data(cls, automation_id: str, data: Mapping[str, Any], lead_id: str | None) -> ActionContext:
        lead = data.get("lead")
        return cls(
            automation_id=automation_id,
            data=dict(data),
            lead_id=lead_id,
            lead=dict(lead) if isinstance(lead, Mapping) else {},
        )


class ActionHandler:
    """One domain mutation. Subclasses raise on failure and return result details."""

    action_type = ""

    def execute(self, session: Session, params: Mapping[str, Any], context: ActionContext) -> dict[str, Any]:
        raise NotImplementedError

    def _require_param(self, params: Mapping[str, Any], key: str) -> Any:
        value = params.get(key)
        if value is None or value == "":
            raise ActionError(f"{self.action_type} requires '{key}'")
        return value

    def _require_lead(self, session: Session, context: ActionContext) -> Lead:
        if not context.lead_id:
            raise ActionError("event data has no lead id")
        lead = session.get(Lead, context.lead_id)
        if lead is None:
            raise ActionError(f"lead not found: {context.lead_id}")
        return lead


class MoveLeadToStageHandler(ActionHandler):
    action_type = "move_lead_to_stage"

    def execute(self, session: Session, params: Mapping[str, Any], context: ActionContext) -> dict[str, Any]:
        stage_id = str(self._require_param(params, "stage_id"))
        lead = self._require_lead(session, context)
        if session.get(FunnelStage, stage_id) is None:
            raise ActionError(f"stage not found: {stage_id}")

        previous_stage_id = lead.stage_id
        if previous_stage_id != stage_id:
            lead.stage_id = stage_id
            lead.updated_at = utcnow()
            session.flush()
            record_domain_event(
                session,
                "lead.stage_changed",
                {"lead": row_to_dict(lead), "previous_stage_id": previous_stage_id, "new_stage_id": stage_id},
            )
        return {"lead_id": lead.id, "stage_id": stage_id}


class ChangeLeadTemperatureHandler(ActionHandler):
    action_type = "change_lead_temperature"

    def execute(self, session: Session, params: Mapping[str, Any], context: ActionContext) -> dict[str, Any]:
        temperature = str(self._require_param(params, "temperature"))
        if temperature not in LEAD_TEMPERATURES:
            raise ActionError(f"invalid temperature: {temperature}")
        lead = self._require_lead(session, context)

        previous_temperature = lead.temperature
        if previous_temperature != temperature:
            lead.temperature = temperature
            lead.updated_at = utcnow()
            session.flush()
            record_domain_event(
                session,
                "lead.temperature_changed",
                {
                    "lead": row_to_dict(lead),
                    "previous_temperature": previous_temperature,
                    "new_temperature": temperature,
                },
            )
        return {"lead_id": lead.id, "temperature": temperature}


class AddLabelHandler(ActionHandler):
    action_type = "add_label"

    def execute(self, session: Session, params: Mapping[str, Any], context: ActionContext) -> dict[str, Any]:
        label_id = str(self._require_param(params, "label_id"))
        lead = self._require_lead(session, context)
        label = session.get(Label, label_id)
        if label is None:
            raise ActionError(f"label not found: {label_id}")

        existing = session.scalar(
            select(LeadLabel).where(LeadLabel.lead_id == lead.id, LeadLabel.label_id == label_id)
        )
        if existing is not None:
            return {"lead_id": lead.id, "label_id": label_id, "already_present": True}

        session.add(LeadLabel(lead_id=lead.id, label_id=label_id))
        session.flush()
        record_domain_event(session, "lead.label_added", {"lead": row_to_dict(lead), "label": row_to_dict(label)})
        return {"lead_id": lead.id, "label_id": label_id, "already_present": False}


class RemoveLabelHandler(ActionHandler):
    action_type = "remove_label"

    def execute(self, session: Session, params: Mapping[str, Any], context: ActionContext) -> dict[str, Any]:
        label_id = str(self._require_param(params, "label_id"))
        lead = self._require_lead(session, context)

        link = session.scalar(select(LeadLabel).where(LeadLabel.lead_id == lead.id, LeadLabel.label_id == label_id))
        if link is None:
            return {"lead_id": lead.id, "label_id": label_id, "removed": False}

        session.delete(link)
        session.flush()
        label = session.get(Label, label_id)
        record_domain_event(
            session,
            "lead.label_removed",
            {"lead": row_to_dict(lead), "label": row_to_dict(label) if label is not None else {"id": label_id}},
        )
        return {"lead_id": lead.id, "label_id": label_id, "removed": True}


class CreateTaskHandler(ActionHandler):
    action_type = "create_task"

    def execute(self, session: Session, params: Mapping[str, Any], context: ActionContext) -> dict[str, Any]:
        title = str(self._require_param(params, "title"))
        lead = self._require_lead(session, context)
        try:
            due_days = int(params.get("due_days") or 1)
        except (TypeError, ValueError) as exc:
            raise ActionError(f"invalid due_days: {params.get('due_days')!r}") from exc

        task = Task(
            lead_id=lead.id,
            title=title,
            description=params.get("description"),
            priority=str(params.get("priority") or "medium"),
            status="todo",
            due_date=utcnow() + timedelta(days=due_days),
            assigned_to=params.get("assigned_to") or context.lead.get("assigned_to") or lead.assigned_to,
        )
        session.add(task)
        session.flush()
        record_domain_event(session, "task.created", {"task": row_to_dict(task), "lead": row_to_dict(lead)})
        return {"lead_id": lead.id, "task_id": task.id}


class NotifyUserHandler(ActionHandler):
    action_type = "notify_user"

    def execute(self, session: Session, params: Mapping[str, Any], context: ActionContext) -> dict[str, Any]:
        user_id = params.get("user_id") or context.lead.get("assigned_to")
        if not user_id:
            raise ActionError("notify_user requires 'user_id' or an assigned lead")
        title = str(self._require_param(params, "title"))

        extra_data = params.get("data")
        notification = Notification(
            user_id=str(user_id),
            title=title,
            message=str(params.get("message") or ""),
            type=str(params.get("type") or "info"),
            data={
                "automation_id": context.automation_id,
                "lead_id": context.lead_id,
                **(dict(extra_data) if isinstance(extra_data, Mapping) else {}),
            },
        )
        session.add(notification)
        session.flush()
        return {"user_id": notification.user_id, "notification_id": notification.id}


class AssignToUserHandler(ActionHandler):
    action_type = "assign_to_user"

    def execute(self, session: Session, params: Mapping[str, Any], context: ActionContext) -> dict[str, Any]:
        user_id = str(self._require_param(params, "user_id"))
        lead = self._require_lead(session, context)

        previous_assigned_to = lead.assigned_to
        lead.assigned_to = user_id
        lead.updated_at = utcnow()
        session.execute(
            update(Conversation).where(Conversation.lead_id == lead.id).values(assigned_to=user_id)
        )
        session.flush()
        if previous_assigned_to != user_id:
            record_domain_event(
                session,
                "lead.assigned",
                {
                    "lead": row_to_dict(lead),
                    "previous_assigned_to": previous_assigned_to,
                    "new_assigned_to": user_id,
                },
            )
        return {"lead_id": lead.id, "user_id": user_id}


class SendMessageHandler(ActionHandler):
    action_type = "send_message"

    def execute(self, session: Session, params: Mapping[str, Any], context: ActionContext) -> dict[str, Any]:
        lead = self._require_lead(session, context)

        content = params.get("content")
        template_id = params.get("template_id")
        if template_id:
            template = session.get(MessageTemplate, str(template_id))
            if template is not None:
                content = template.content
        if not content:
            raise ActionError("send_message requires 'content' or a valid 'template_id'")

        text = render_placeholders(str(content), lead)
        conversation = session.scalar(
            select(Conversation)
            .where(Conversation.lead_id == lead.id, Conversation.status != "resolved")
            .order_by(Conversation.created_at.desc())
            .limit(1)
        )
        if conversation is None:
            conversation = Conversation(lead_id=lead.id, status="open", assigned_to=lead.assigned_to)
            session.add(conversation)
            session.flush()
            record_domain_event(
                session,
                "conversation.created",
                {"conversation": row_to_dict(conversation), "lead": row_to_dict(lead)},
            )

        now = utcnow()
        message = Message(
            conversation_id=conversation.id,
            lead_id=lead.id,
            content=text,
            type="text",
            direction="outbound",
            sender_type="agent",
            sender_id=SYSTEM_SENDER_ID,
            created_at=now,
        )
        conversation.last_message_at = now
        session.add(message)
        session.flush()
        record_domain_event(session, "message.sent", {"message": row_to_dict(message), "lead": row_to_dict(lead)})
        return {"lead_id": lead.id, "conversation_id": conversation.id, "message_id": message.id}


def render_placeholders(template: str, lead: Lead) -> str:
    rendered = _NAME_PLACEHOLDER_RE.sub(lambda _: lead.name or "", template)
    return _PHONE_PLACEHOLDER_RE.sub(lambda _: lead.phone or "", rendered)


class ActionRegistry:
    def __init__(self) -> None:
        self._handlers: dict[str, ActionHandler] = {}

    def register(self, action_type: str, handler: ActionHandler) -> None:
        self._handlers[action_type] = handler

    def get(self, action_type: str) -> ActionHandler | None:
        return self._handlers.get(action_type)

    def types(self) -> list[str]:
        return sorted(self._handlers)


def build_default_registry() -> ActionRegistry:
    registry = ActionRegistry()
    for handler in (
        MoveLeadToStageHandler(),
        ChangeLeadTemperatureHandler(),
        AddLabelHandler(),
        RemoveLabelHandler(),
        CreateTaskHandler(),
        NotifyUserHandler(),
        AssignToUserHandler(),
        SendMessageHandler(),
    ):
        registry.register(handler.action_type, handler)
    return registry


class ActionExecutor:
    def __init__(self, registry: ActionRegistry | None = None) -> None:
        self.registry = registry or build_default_registry()

    def execute_actions(
        self,
        session: Session,
        actions: list[Any],
        context: ActionContext,
    ) -> tuple[bool, list[ActionResult]]:
        results: list[ActionResult] = []
        for action in actions:
            result = self._execute_one(session, action, context)
            observe_action(result.action, result.success)
            results.append(result)
        return all(result.success for result in results), results

    def _execute_one(self, session: Session, action: Any, context: ActionContext) -> ActionResult:
        if not isinstance(action, Mapping):
            return ActionResult(action="invalid", success=False, error="action must be an object")

        action_type = str(action.get("type") or "")
        raw_params = action.get("params")
        params: Mapping[str, Any] = raw_params if isinstance(raw_params, Mapping) else {}

        handler = self.registry.get(action_type)
        if handler is None:
            logger.warning("automation.action.unknown", extra={"action": action_type, "automation_id": context.automation_id})
            return ActionResult(action=action_type, success=False, error=f"Unknown action type: {action_type}")

        with tracer.start_as_current_span("automation.action") as span:
            span.set_attribute("automation.action", action_type)
            span.set_attribute("automation.id", context.automation_id)
            try:
                details = handler.execute(session, params, context)
                session.commit()
            except Exception as exc:
                session.rollback()
                span.set_attribute("automation.action.success", False)
                logger.warning(
                    "automation.action.failed",
                    extra={"action": action_type, "automation_id": context.automation_id, "error": str(exc)},
                )
                return ActionResult(action=action_type, success=False, error=str(exc) or exc.__class__.__name__)

            span.set_attribute("automation.action.success", True)

        audit.record(
            actor_user_id="system",
            entity_type="automation.action",
            entity_id=context.automation_id,
            action=action_type,
            before=None,
            after=details,
        )
        logger.info("automation.action.succeeded", extra={"action": action_type, "automation_id": context.automation_id})
        return ActionResult(action=action_type, success=True, details=details)
