from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from app.automation.ingestion import InboundWebhookHandler
from app.automation.queue import AutomationQueueConsumer
from app.automation.schemas import (
    AutomationLogRead,
    AutomationRuleCreate,
    AutomationRuleRead,
    AutomationRuleUpdate,
    DeliveryAttemptRead,
    DispatchRequest,
    DispatchSummary,
    QueueRunSummary,
    RetryRunSummary,
    WebhookQueueRunSummary,
    WebhookSubscriptionCreate,
    WebhookSubscriptionRead,
)
from app.automation.service import AutomationRuleService, WebhookSubscriptionService
from app.automation.signing import verify_signature
from app.automation.triggers import AutomationTrigger
from app.automation.webhooks import WebhookDispatcher
from app.context import get_correlation_id
from app.core.auth import AuthUser, get_current_user
from app.core.config import get_settings
from app.core.database import get_db

router = APIRouter(prefix="/api/automation", tags=["automation"])
webhooks_router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])
whatsapp_router = APIRouter(prefix="/api/whatsapp", tags=["whatsapp"])

INBOUND_SIGNATURE_HEADER = "X-Webhook-Hmac"

rule_service = AutomationRuleService()
subscription_service = WebhookSubscriptionService()
queue_consumer = AutomationQueueConsumer()
webhook_dispatcher = WebhookDispatcher()
inbound_handler = InboundWebhookHandler()


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


@router.post("/queue/process", response_model=QueueRunSummary)
def process_automation_queue(
    batch_size: int | None = Query(default=None, ge=1, le=1000),
    db: Session = Depends(get_db),
) -> QueueRunSummary:
    return queue_consumer.process_pending(db, batch_size=batch_size)


@router.get("/rules", response_model=list[AutomationRuleRead])
def list_automation_rules(
    trigger: AutomationTrigger | None = Query(default=None),
    active_only: bool = Query(default=False),
    db: Session = Depends(get_db),
) -> list[AutomationRuleRead]:
    return rule_service.list_rules(db, trigger=trigger, active_only=active_only)


@router.post("/rules", response_model=AutomationRuleRead, status_code=status.HTTP_201_CREATED)
def create_automation_rule(
    dto: AutomationRuleCreate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> AutomationRuleRead:
    return rule_service.create_rule(db, dto, user.sub)


@router.patch("/rules/{rule_id}", response_model=AutomationRuleRead)
def update_automation_rule(
    request: Request,
    rule_id: str,
    dto: AutomationRuleUpdate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> AutomationRuleRead | JSONResponse:
    try:
        return rule_service.update_rule(db, rule_id, dto, user.sub)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="automation_rule_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.get("/logs", response_model=list[AutomationLogRead])
def list_automation_logs(
    automation_id: str | None = Query(default=None),
    status_filter: str | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
) -> list[AutomationLogRead]:
    return rule_service.list_logs(db, automation_id=automation_id, status_filter=status_filter, limit=limit)


@webhooks_router.post("/dispatch", response_model=DispatchSummary)
def dispatch_webhook_event(dto: DispatchRequest, db: Session = Depends(get_db)) -> DispatchSummary:
    return webhook_dispatcher.dispatch_sync(db, dto.event, dto.data)


@webhooks_router.post("/queue/process", response_model=WebhookQueueRunSummary)
def process_webhook_queue(
    batch_size: int | None = Query(default=None, ge=1, le=1000),
    db: Session = Depends(get_db),
) -> WebhookQueueRunSummary:
    return webhook_dispatcher.process_queue_sync(db, limit=batch_size)


@webhooks_router.post("/retries/process", response_model=RetryRunSummary)
def process_webhook_retries(
    batch_size: int | None = Query(default=None, ge=1, le=1000),
    db: Session = Depends(get_db),
) -> RetryRunSummary:
    return webhook_dispatcher.retry_due_sync(db, limit=batch_size)


@webhooks_router.get("/subscriptions", response_model=list[WebhookSubscriptionRead])
def list_webhook_subscriptions(db: Session = Depends(get_db)) -> list[WebhookSubscriptionRead]:
    return subscription_service.list_subscriptions(db)


@webhooks_router.post("/subscriptions", response_model=WebhookSubscriptionRead, status_code=status.HTTP_201_CREATED)
def create_webhook_subscription(
    dto: WebhookSubscriptionCreate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> WebhookSubscriptionRead:
    return subscription_service.create_subscription(db, dto, user.sub)


@webhooks_router.get("/subscriptions/{webhook_id}/deliveries", response_model=list[DeliveryAttemptRead])
def list_webhook_deliveries(
    request: Request,
    webhook_id: str,
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
) -> list[DeliveryAttemptRead] | JSONResponse:
    try:
        return subscription_service.list_deliveries(db, webhook_id, limit=limit)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="webhook_delivery_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@whatsapp_router.post("/webhook", response_model=None)
async def receive_whatsapp_webhook(request: Request, db: Session = Depends(get_db)) -> dict[str, Any] | JSONResponse:
    raw_body = await request.body()
    secret = get_settings().waha_webhook_secret
    if secret and not verify_signature(raw_body, request.headers.get(INBOUND_SIGNATURE_HEADER), secret):
        return error_response(
            request,
            status_code=status.HTTP_401_UNAUTHORIZED,
            code="whatsapp_webhook_invalid_signature",
            message="Invalid webhook signature",
        )

    try:
        body = json.loads(raw_body or b"{}")
    except ValueError:
        body = None
    if not isinstance(body, dict):
        return error_response(
            request,
            status_code=status.HTTP_400_BAD_REQUEST,
            code="whatsapp_webhook_invalid_body",
            message="Webhook body must be a JSON object",
        )

    return await run_in_threadpool(inbound_handler.handle, db, body)
