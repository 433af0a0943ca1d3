from app.automation.actions import ActionExecutor, ActionRegistry, build_default_registry
from app.automation.conditions import evaluate_condition, evaluate_conditions
from app.automation.ingestion import InboundWebhookHandler, extract_short_id, ingest_message
from app.automation.queue import AutomationQueueConsumer
from app.automation.signing import sign_payload, verify_signature
from app.automation.triggers import AutomationTrigger, resolve_trigger
from app.automation.webhooks import WebhookDispatcher

__all__ = [
    "ActionExecutor",
    "ActionRegistry",
    "build_default_registry",
    "evaluate_condition",
    "evaluate_conditions",
    "InboundWebhookHandler",
    "extract_short_id",
    "ingest_message",
    "AutomationQueueConsumer",
    "sign_payload",
    "verify_signature",
    "AutomationTrigger",
    "resolve_trigger",
    "WebhookDispatcher",
]
