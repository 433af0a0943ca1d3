from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    Tag,
    TypeAdapter,
    field_validator,
    model_validator,
)

from app.automation.triggers import AutomationTrigger


ConditionOperator = Literal["equals", "not_equals", "contains", "greater_than", "less_than", "in", "not_in"]

LABEL_EVENTS = frozenset({"lead.label_added", "lead.label_removed"})
_EVENT_KINDS = frozenset({"lead", "message", "conversation", "task"})


class Condition(BaseModel):
    field: str = Field(min_length=1)
    operator: ConditionOperator
    value: Any = None

    @model_validator(mode="after")
    def validate_membership_value(self) -> "Condition":
        if self.operator in {"in", "not_in"} and not isinstance(self.value, list):
            raise ValueError(f"{self.operator} requires a list value")
        return self


class ActionSpec(BaseModel):
    type: str = Field(min_length=1)
    params: dict[str, Any] = Field(default_factory=dict)


class AutomationRuleCreate(BaseModel):
    name: str = Field(min_length=1)
    description: str | None = None
    trigger: AutomationTrigger
    conditions: list[Condition] = Field(default_factory=list)
    actions: list[ActionSpec] = Field(min_length=1)
    is_active: bool = True


class AutomationRuleUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    description: str | None = None
    trigger: AutomationTrigger | None = None
    conditions: list[Condition] | None = None
    actions: list[ActionSpec] | None = Field(default=None, min_length=1)
    is_active: bool | None = None


class AutomationRuleRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    description: str | None
    trigger: str
    conditions: list[dict[str, Any]]
    actions: list[dict[str, Any]]
    is_active: bool
    created_at: datetime
    updated_at: datetime


class AutomationLogRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    automation_id: str
    queue_item_id: str | None
    trigger_event: str
    conditions_met: bool
    actions_executed: list[dict[str, Any]]
    status: str
    error_message: str | None
    execution_time_ms: int
    created_at: datetime


class ActionResult(BaseModel):
    action: str
    success: bool
    error: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)


class RuleResult(BaseModel):
    automation_id: str
    name: str
    matched: bool
    executed: bool
    results: list[ActionResult] = Field(default_factory=list)


class QueueItemResult(BaseModel):
    queue_id: str
    event: str
    trigger: str | None
    results: list[RuleResult] = Field(default_factory=list)
    error: str | None = None
    skipped: bool = False


class QueueRunSummary(BaseModel):
    processed: int
    results: list[QueueItemResult] = Field(default_factory=list)


class WebhookSubscriptionCreate(BaseModel):
    name: str = Field(min_length=1)
    url: str = Field(min_length=1)
    secret: str = Field(min_length=8)
    events: list[str] = Field(min_length=1)
    headers: dict[str, str] = Field(default_factory=dict)
    is_active: bool = True

    @field_validator("url")
    @classmethod
    def validate_url(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError("url must be http or https")
        return value


class WebhookSubscriptionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    url: str
    events: list[str]
    headers: dict[str, str]
    is_active: bool
    created_at: datetime


class DeliveryAttemptRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    webhook_id: str
    delivery_id: str
    event: str
    attempt: int
    status: str
    response_status: int | None
    response_body: str | None
    error_message: str | None
    created_at: datetime
    completed_at: datetime | None


class DeliveryOutcome(BaseModel):
    webhook_id: str
    delivery_id: str
    attempt: int
    status: Literal["success", "failed", "retrying"]
    response_status: int | None = None
    error: str | None = None
    next_attempt_at: datetime | None = None


class DispatchRequest(BaseModel):
    event: str = Field(min_length=1)
    data: dict[str, Any] = Field(default_factory=dict)


class DispatchSummary(BaseModel):
    event: str
    dispatched: int
    deliveries: list[DeliveryOutcome] = Field(default_factory=list)


class RetryRunSummary(BaseModel):
    processed: int
    deliveries: list[DeliveryOutcome] = Field(default_factory=list)


class WebhookQueueRunSummary(BaseModel):
    processed: int
    dispatches: list[DispatchSummary] = Field(default_factory=list)


class LeadSnapshot(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str | None = None
    name: str | None = None
    phone: str | None = None
    email: str | None = None
    cpf: str | None = None
    stage_id: str | None = None
    temperature: str | None = None
    assigned_to: str | None = None
    source: str | None = None


class MessageSnapshot(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str | None = None
    conversation_id: str | None = None
    lead_id: str | None = None
    content: str | None = None
    type: str | None = None
    direction: str | None = None
    status: str | None = None


class ConversationSnapshot(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str | None = None
    lead_id: str | None = None
    status: str | None = None
    assigned_to: str | None = None


class TaskSnapshot(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str | None = None
    lead_id: str | None = None
    title: str | None = None
    priority: str | None = None
    status: str | None = None
    assigned_to: str | None = None


class LabelSnapshot(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str | None = None
    name: str | None = None
    color: str | None = None
    category: str | None = None


class _EventData(BaseModel):
    model_config = ConfigDict(extra="allow")

    lead_id: str | None = None

    def resolve_lead_id(self) -> str | None:
        lead = getattr(self, "lead", None)
        if isinstance(lead, LeadSnapshot) and lead.id:
            return lead.id
        if isinstance(lead, dict) and isinstance(lead.get("id"), str):
            return lead["id"]
        return self.lead_id


class LeadEventData(_EventData):
    lead: LeadSnapshot | None = None
    previous_stage_id: str | None = None
    new_stage_id: str | None = None
    previous_temperature: str | None = None
    new_temperature: str | None = None
    previous_assigned_to: str | None = None
    new_assigned_to: str | None = None


class LabelEventData(_EventData):
    lead: LeadSnapshot | None = None
    label: LabelSnapshot | None = None


class MessageEventData(_EventData):
    message: MessageSnapshot | None = None
    lead: LeadSnapshot | None = None


class ConversationEventData(_EventData):
    conversation: ConversationSnapshot | None = None
    lead: LeadSnapshot | None = None


class TaskEventData(_EventData):
    task: TaskSnapshot | None = None
    lead: LeadSnapshot | None = None


class OpaqueEventData(_EventData):
    pass


class LeadEvent(BaseModel):
    kind: Literal["lead"] = "lead"
    event: str
    data: LeadEventData


class LabelEvent(BaseModel):
    kind: Literal["label"] = "label"
    event: str
    data: LabelEventData


class MessageEvent(BaseModel):
    kind: Literal["message"] = "message"
    event: str
    data: MessageEventData


class ConversationEvent(BaseModel):
    kind: Literal["conversation"] = "conversation"
    event: str
    data: ConversationEventData


class TaskEvent(BaseModel):
    kind: Literal["task"] = "task"
    event: str
    data: TaskEventData


class OpaqueEvent(BaseModel):
    kind: Literal["opaque"] = "opaque"
    event: str
    data: OpaqueEventData


def event_kind(event: str) -> str:
    if event in LABEL_EVENTS:
        return "label"
    prefix = event.split(".", 1)[0]
    return prefix if prefix in _EVENT_KINDS else "opaque"


def _discriminate_event(value: Any) -> str:
    if isinstance(value, dict):
        return event_kind(str(value.get("event") or ""))
    return getattr(value, "kind", "opaque")


DomainEvent = Annotated[
    Union[
        Annotated[LeadEvent, Tag("lead")],
        Annotated[LabelEvent, Tag("label")],
        Annotated[MessageEvent, Tag("message")],
        Annotated[ConversationEvent, Tag("conversation")],
        Annotated[TaskEvent, Tag("task")],
        Annotated[OpaqueEvent, Tag("opaque")],
    ],
    Discriminator(_discriminate_event),
]

_domain_event_adapter = TypeAdapter(DomainEvent)


def parse_domain_event(event: str, data: dict[str, Any]) -> DomainEvent:
    """Parse raw event data into its typed variant.

    Data that does not fit the variant for its event name (for example a lead
    field that is not an object) falls back to the opaque variant so that
    forward-compatible payloads never break the pipeline.
    """
    try:
        return _domain_event_adapter.validate_python({"event": event, "data": data})
    except ValueError:
        return OpaqueEvent(event=event, data=OpaqueEventData.model_validate(_opaque_data(data)))


def _opaque_data(data: dict[str, Any]) -> dict[str, Any]:
    cleaned = {key: value for key, value in data.items() if key != "lead_id"}
    if isinstance(data.get("lead_id"), str):
        cleaned["lead_id"] = data["lead_id"]
    return cleaned
