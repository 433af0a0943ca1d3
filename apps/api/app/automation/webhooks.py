from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import httpx
from opentelemetry import trace
from sqlalchemy import and_, select, update
from sqlalchemy.orm import Session

from app.automation.claims import claim_rows, confirm_claim
from app.automation.models import (
    WebhookDeliveryAttempt,
    WebhookQueueItem,
    WebhookRetry,
    WebhookSubscription,
    utcnow,
)
from app.automation.payloads import WebhookPayloadBuilder, localized_event_name
from app.automation.queue import event_data
from app.automation.schemas import DeliveryOutcome, DispatchSummary, RetryRunSummary, WebhookQueueRunSummary
from app.automation.signing import sign_payload
from app.core.config import get_settings
from app.metrics import observe_job, observe_webhook_delivery


logger = logging.getLogger("app.automation.webhooks")
tracer = trace.get_tracer("app.automation.webhooks")

EVENT_HEADER = "X-Webhook-Evento"
RAW_EVENT_HEADER = "X-Webhook-Event"
TIMESTAMP_HEADER = "X-Webhook-Timestamp"
SIGNATURE_HEADER = "X-Webhook-Assinatura"
DELIVERY_ID_HEADER = "X-Webhook-Delivery-Id"
ATTEMPT_HEADER = "X-Webhook-Tentativa"

_RESERVED_HEADERS = {
    name.lower()
    for name in (
        "Content-Type",
        "Content-Length",
        "Host",
        EVENT_HEADER,
        RAW_EVENT_HEADER,
        TIMESTAMP_HEADER,
        SIGNATURE_HEADER,
        DELIVERY_ID_HEADER,
        ATTEMPT_HEADER,
    )
}


def serialize_payload(payload: dict[str, Any]) -> str:
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"), default=str)


@dataclass
class PendingDelivery:
    webhook_id: str
    url: str
    secret: str
    static_headers: dict[str, str]
    delivery_id: str
    event: str
    body: str
    attempt: int
    retry_id: str | None = None


@dataclass
class SendResult:
    delivery: PendingDelivery
    ok: bool
    response_status: int | None = None
    response_body: str | None = None
    error: str | None = None
    duration_ms: int = 0


def build_headers(delivery: PendingDelivery, sent_at: datetime) -> dict[str, str]:
    headers = {
        str(name): str(value)
        for name, value in (delivery.static_headers or {}).items()
        if str(name).lower() not in _RESERVED_HEADERS
    }
    headers.update(
        {
            "Content-Type": "application/json",
            EVENT_HEADER: localized_event_name(delivery.event),
            RAW_EVENT_HEADER: delivery.event,
            TIMESTAMP_HEADER: str(int(sent_at.timestamp())),
            DELIVERY_ID_HEADER: delivery.delivery_id,
            ATTEMPT_HEADER: str(delivery.attempt),
            SIGNATURE_HEADER: sign_payload(delivery.body.encode("utf-8"), delivery.secret),
        }
    )
    return headers


class WebhookDispatcher:
    def __init__(
        self,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float | None = None,
        payload_builder: WebhookPayloadBuilder | None = None,
    ) -> None:
        settings = get_settings()
        self.transport = transport
        self.timeout = timeout if timeout is not None else settings.webhook_timeout_seconds
        self.payload_builder = payload_builder or WebhookPayloadBuilder()

    def select_subscriptions(
        self,
        session: Session,
        event: str,
        webhook_id: str | None = None,
    ) -> list[WebhookSubscription]:
        stmt = select(WebhookSubscription).where(WebhookSubscription.is_active.is_(True))
        if webhook_id is not None:
            stmt = stmt.where(WebhookSubscription.id == webhook_id)
        rows = session.scalars(stmt.order_by(WebhookSubscription.created_at.asc())).all()
        return [row for row in rows if event in (row.events or [])]

    async def dispatch(
        self,
        session: Session,
        event: str,
        data: dict[str, Any],
        *,
        webhook_id: str | None = None,
        now: datetime | None = None,
    ) -> DispatchSummary:
        subscriptions = self.select_subscriptions(session, event, webhook_id)
        if not subscriptions:
            logger.info("webhook.dispatch.no_subscribers", extra={"event_name": event})
            return DispatchSummary(event=event, dispatched=0)

        body = self.payload_builder.build_body(session, event, data)
        deliveries: list[PendingDelivery] = []
        for subscription in subscriptions:
            delivery_id = str(uuid.uuid4())
            payload = self.payload_builder.envelope(event, body, delivery_id=delivery_id, now=now)
            deliveries.append(
                PendingDelivery(
                    webhook_id=subscription.id,
                    url=subscription.url,
                    secret=subscription.secret,
                    static_headers=dict(subscription.headers or {}),
                    delivery_id=delivery_id,
                    event=event,
                    body=serialize_payload(payload),
                    attempt=1,
                )
            )

        results = await self._send_all(deliveries, now)
        outcomes = [self._record_attempt(session, result, now) for result in results]
        session.commit()
        return DispatchSummary(event=event, dispatched=len(outcomes), deliveries=outcomes)

    async def retry_due(
        self,
        session: Session,
        *,
        now: datetime | None = None,
        limit: int | None = None,
        worker_id: str | None = None,
    ) -> RetryRunSummary:
        settings = get_settings()
        current = now or utcnow()
        worker = worker_id or f"webhook-retry-{uuid.uuid4().hex[:12]}"
        started = time.perf_counter()
        final_status = "failed"

        try:
            claimed_ids = claim_rows(
                session,
                WebhookRetry,
                pending=and_(WebhookRetry.done.is_(False), WebhookRetry.due_at <= current),
                limit=limit or settings.webhook_batch_size,
                worker_id=worker,
                timeout_seconds=settings.automation_claim_timeout_seconds,
                now=current,
            )
            retries = session.scalars(
                select(WebhookRetry).where(WebhookRetry.id.in_(claimed_ids)).order_by(WebhookRetry.due_at.asc())
            ).all()

            outcomes: list[DeliveryOutcome] = []
            deliveries: list[PendingDelivery] = []
            for retry in retries:
                if not confirm_claim(
                    session,
                    WebhookRetry,
                    retry.id,
                    pending=WebhookRetry.done.is_(False),
                    worker_id=worker,
                    now=current,
                ):
                    logger.warning(
                        "webhook.retry.claim_lost",
                        extra={"delivery_id": retry.delivery_id, "worker_id": worker},
                    )
                    continue
                subscription = session.get(WebhookSubscription, retry.webhook_id)
                if subscription is None or not subscription.is_active:
                    outcomes.append(self._close_inactive_retry(session, retry, current, worker))
                    continue
                deliveries.append(
                    PendingDelivery(
                        webhook_id=subscription.id,
                        url=subscription.url,
                        secret=subscription.secret,
                        static_headers=dict(subscription.headers or {}),
                        delivery_id=retry.delivery_id,
                        event=retry.event,
                        body=retry.body,
                        attempt=retry.attempt,
                        retry_id=retry.id,
                    )
                )
            session.commit()

            results = await self._send_all(deliveries, current)
            for result in results:
                if not self._mark_retry_done(session, result.delivery.retry_id, worker):
                    logger.warning(
                        "webhook.retry.claim_lost",
                        extra={"delivery_id": result.delivery.delivery_id, "worker_id": worker},
                    )
                    continue
                outcomes.append(self._record_attempt(session, result, current))
            session.commit()
            final_status = "succeeded"
            return RetryRunSummary(processed=len(outcomes), deliveries=outcomes)
        finally:
            observe_job("webhook_retry", final_status, time.perf_counter() - started)

    async def process_queue(
        self,
        session: Session,
        *,
        limit: int | None = None,
        worker_id: str | None = None,
    ) -> WebhookQueueRunSummary:
        settings = get_settings()
        worker = worker_id or f"webhook-queue-{uuid.uuid4().hex[:12]}"
        started = time.perf_counter()
        final_status = "failed"
        pending = WebhookQueueItem.processed.is_(False)

        try:
            claimed_ids = claim_rows(
                session,
                WebhookQueueItem,
                pending=pending,
                limit=limit or settings.webhook_batch_size,
                worker_id=worker,
                timeout_seconds=settings.automation_claim_timeout_seconds,
            )
            items = session.scalars(
                select(WebhookQueueItem)
                .where(WebhookQueueItem.id.in_(claimed_ids))
                .order_by(WebhookQueueItem.created_at.asc(), WebhookQueueItem.id.asc())
            ).all()
            item_refs = [(item.id, item.event, item.payload) for item in items]

            dispatches: list[DispatchSummary] = []
            handled = 0
            for queue_id, event, payload in item_refs:
                if not confirm_claim(session, WebhookQueueItem, queue_id, pending=pending, worker_id=worker):
                    logger.warning("webhook.queue.claim_lost", extra={"queue_id": queue_id, "worker_id": worker})
                    continue
                handled += 1
                try:
                    dispatches.append(await self.dispatch(session, event, event_data(payload)))
                except Exception as exc:
                    session.rollback()
                    logger.exception(
                        "webhook.queue.item_failed",
                        extra={"queue_id": queue_id, "event_name": event, "error": str(exc)},
                    )
                finally:
                    session.execute(
                        update(WebhookQueueItem)
                        .where(WebhookQueueItem.id == queue_id, WebhookQueueItem.claimed_by == worker, pending)
                        .values(processed=True, processed_at=utcnow())
                        .execution_options(synchronize_session=False)
                    )
                    session.commit()

            final_status = "succeeded"
            return WebhookQueueRunSummary(processed=handled, dispatches=dispatches)
        finally:
            observe_job("webhook_queue", final_status, time.perf_counter() - started)

    def dispatch_sync(self, session: Session, event: str, data: dict[str, Any], **kwargs: Any) -> DispatchSummary:
        return asyncio.run(self.dispatch(session, event, data, **kwargs))

    def retry_due_sync(self, session: Session, **kwargs: Any) -> RetryRunSummary:
        return asyncio.run(self.retry_due(session, **kwargs))

    def process_queue_sync(self, session: Session, **kwargs: Any) -> WebhookQueueRunSummary:
        return asyncio.run(self.process_queue(session, **kwargs))

    async def _send_all(self, deliveries: list[PendingDelivery], now: datetime | None) -> list[SendResult]:
        if not deliveries:
            return []
        async with httpx.AsyncClient(transport=self.transport, timeout=httpx.Timeout(self.timeout)) as client:
            return list(await asyncio.gather(*(self._send(client, delivery, now) for delivery in deliveries)))

    async def _send(self, client: httpx.AsyncClient, delivery: PendingDelivery, now: datetime | None) -> SendResult:
        limit = get_settings().webhook_response_body_limit
        headers = build_headers(delivery, now or utcnow())
        started = time.perf_counter()

        with tracer.start_as_current_span("webhook.deliver") as span:
            span.set_attribute("webhook.id", delivery.webhook_id)
            span.set_attribute("webhook.event", delivery.event)
            span.set_attribute("webhook.attempt", delivery.attempt)
            try:
                response = await client.post(delivery.url, content=delivery.body.encode("utf-8"), headers=headers)
            except httpx.TimeoutException:
                error = f"timed out after {self.timeout}s"
            except httpx.HTTPError as exc:
                error = f"{exc.__class__.__name__}: {exc}"
            except Exception as exc:
                error = f"{exc.__class__.__name__}: {exc}"
            else:
                ok = 200 <= response.status_code < 300
                span.set_attribute("http.status_code", response.status_code)
                return SendResult(
                    delivery=delivery,
                    ok=ok,
                    response_status=response.status_code,
                    response_body=response.text[:limit],
                    error=None if ok else f"HTTP {response.status_code}",
                    duration_ms=int((time.perf_counter() - started) * 1000),
                )

            span.set_attribute("webhook.error", error)
            return SendResult(
                delivery=delivery,
                ok=False,
                error=error,
                duration_ms=int((time.perf_counter() - started) * 1000),
            )

    def _retry_delay(self, attempt: int) -> int:
        tiers = get_settings().webhook_retry_tiers_seconds
        return tiers[min(attempt, len(tiers)) - 1]

    def _record_attempt(self, session: Session, result: SendResult, now: datetime | None) -> DeliveryOutcome:
        settings = get_settings()
        delivery = result.delivery
        completed_at = now or utcnow()
        next_attempt_at: datetime | None = None

        if result.ok:
            status = "success"
        elif delivery.attempt < settings.webhook_max_attempts:
            status = "retrying"
            next_attempt_at = completed_at + timedelta(seconds=self._retry_delay(delivery.attempt))
            session.add(
                WebhookRetry(
                    webhook_id=delivery.webhook_id,
                    delivery_id=delivery.delivery_id,
                    event=delivery.event,
                    body=delivery.body,
                    attempt=delivery.attempt + 1,
                    due_at=next_attempt_at,
                )
            )
        else:
            status = "failed"

        session.add(
            WebhookDeliveryAttempt(
                webhook_id=delivery.webhook_id,
                delivery_id=delivery.delivery_id,
                event=delivery.event,
                payload=delivery.body,
                attempt=delivery.attempt,
                status=status,
                response_status=result.response_status,
                response_body=result.response_body,
                error_message=result.error,
                duration_ms=result.duration_ms,
                completed_at=completed_at,
            )
        )
        observe_webhook_delivery(delivery.event, status, result.duration_ms / 1000)
        log_extra = {
            "webhook_id": delivery.webhook_id,
            "delivery_id": delivery.delivery_id,
            "event_name": delivery.event,
            "attempt": delivery.attempt,
            "status": status,
            "response_status": result.response_status,
        }
        if status == "success":
            logger.info("webhook.delivery.succeeded", extra=log_extra)
        elif status == "retrying":
            logger.warning(
                "webhook.delivery.retry_scheduled",
                extra={**log_extra, "error": result.error, "next_attempt_at": next_attempt_at.isoformat()},
            )
        else:
            logger.error("webhook.delivery.failed", extra={**log_extra, "error": result.error})

        return DeliveryOutcome(
            webhook_id=delivery.webhook_id,
            delivery_id=delivery.delivery_id,
            attempt=delivery.attempt,
            status=status,
            response_status=result.response_status,
            error=result.error,
            next_attempt_at=next_attempt_at,
        )

    def _close_inactive_retry(
        self,
        session: Session,
        retry: WebhookRetry,
        now: datetime,
        worker_id: str,
    ) -> DeliveryOutcome:
        error = "webhook inactive"
        session.add(
            WebhookDeliveryAttempt(
                webhook_id=retry.webhook_id,
                delivery_id=retry.delivery_id,
                event=retry.event,
                payload=retry.body,
                attempt=retry.attempt,
                status="failed",
                error_message=error,
                duration_ms=0,
                completed_at=now,
            )
        )
        self._mark_retry_done(session, retry.id, worker_id)
        logger.warning(
            "webhook.delivery.skipped_inactive",
            extra={"webhook_id": retry.webhook_id, "delivery_id": retry.delivery_id, "attempt": retry.attempt},
        )
        return DeliveryOutcome(
            webhook_id=retry.webhook_id,
            delivery_id=retry.delivery_id,
            attempt=retry.attempt,
            status="failed",
            error=error,
        )

    def _mark_retry_done(self, session: Session, retry_id: str | None, worker_id: str) -> bool:
        result = session.execute(
            update(WebhookRetry)
            .where(WebhookRetry.id == retry_id, WebhookRetry.done.is_(False), WebhookRetry.claimed_by == worker_id)
            .values(done=True)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
