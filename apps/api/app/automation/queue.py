from __future__ import annotations

import logging
import time
import uuid
from typing import Any

from opentelemetry import trace
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.automation.actions import ActionContext, ActionExecutor
from app.automation.claims import claim_rows, confirm_claim
from app.automation.conditions import evaluate_conditions
from app.automation.models import AutomationExecutionLog, AutomationQueueItem, AutomationRule, utcnow
from app.automation.schemas import QueueItemResult, QueueRunSummary, RuleResult, parse_domain_event
from app.automation.triggers import AutomationTrigger, resolve_trigger
from app.context import reset_automation_id, set_automation_id
from app.core.config import get_settings
from app.metrics import observe_job, observe_queue_item, observe_rule_execution


logger = logging.getLogger("app.automation.queue")
tracer = trace.get_tracer("app.automation.queue")


def event_data(payload: Any) -> dict[str, Any]:
    if not isinstance(payload, dict):
        return {}
    data = payload.get("data")
    if isinstance(data, dict) and data:
        return data
    return payload


class AutomationQueueConsumer:
    def __init__(self, executor: ActionExecutor | None = None) -> None:
        self.executor = executor or ActionExecutor()

    def process_pending(
        self,
        session: Session,
        batch_size: int | None = None,
        worker_id: str | None = None,
    ) -> QueueRunSummary:
        settings = get_settings()
        limit = batch_size or settings.automation_batch_size
        worker = worker_id or f"automation-{uuid.uuid4().hex[:12]}"
        started = time.perf_counter()
        final_status = "failed"

        with tracer.start_as_current_span("automation.queue.process") as span:
            span.set_attribute("automation.worker_id", worker)
            try:
                claimed_ids = claim_rows(
                    session,
                    AutomationQueueItem,
                    pending=AutomationQueueItem.processed.is_(False),
                    limit=limit,
                    worker_id=worker,
                    timeout_seconds=settings.automation_claim_timeout_seconds,
                )
                logger.info("automation.queue.claimed", extra={"worker_id": worker, "count": len(claimed_ids)})

                items = session.scalars(
                    select(AutomationQueueItem)
                    .where(AutomationQueueItem.id.in_(claimed_ids))
                    .order_by(AutomationQueueItem.created_at.asc(), AutomationQueueItem.id.asc())
                ).all()
                item_refs = [(item.id, item.event, item.payload) for item in items]

                results = [
                    self.process_item(session, queue_id, event, payload, worker_id=worker)
                    for queue_id, event, payload in item_refs
                ]
                processed = sum(1 for item in results if not item.skipped)
                span.set_attribute("automation.processed", processed)
                final_status = "succeeded"
                return QueueRunSummary(processed=processed, results=results)
            finally:
                duration = time.perf_counter() - started
                observe_job("automation_queue", final_status, duration)
                logger.info(
                    "automation.queue.finished",
                    extra={
                        "worker_id": worker,
                        "status": final_status,
                        "duration_ms": round(duration * 1000, 2),
                    },
                )

    def process_item(
        self,
        session: Session,
        queue_id: str,
        event: str,
        payload: Any,
        worker_id: str | None = None,
    ) -> QueueItemResult:
        trigger = resolve_trigger(event)
        result = QueueItemResult(queue_id=queue_id, event=event, trigger=trigger.value if trigger else None)

        if not self._still_owned(session, queue_id, worker_id):
            result.skipped = True
            observe_queue_item("claim_lost")
            logger.warning("automation.queue.claim_lost", extra={"queue_id": queue_id, "worker_id": worker_id})
            return result

        with tracer.start_as_current_span("automation.queue.item") as span:
            span.set_attribute("automation.event", event)
            try:
                if trigger is None:
                    logger.info("automation.queue.unmapped_event", extra={"queue_id": queue_id, "event_name": event})
                    observe_queue_item("unmapped")
                else:
                    rules = self.get_active_rules(session, trigger)
                    if not rules:
                        observe_queue_item("no_rules")
                    else:
                        data = event_data(payload)
                        lead_id = parse_domain_event(event, data).data.resolve_lead_id()
                        for rule_id, name, conditions, actions in rules:
                            result.results.append(
                                self._run_rule(session, queue_id, event, data, lead_id, rule_id, name, conditions, actions)
                            )
                        observe_queue_item("matched" if any(item.matched for item in result.results) else "unmatched")
            except Exception as exc:
                session.rollback()
                result.error = str(exc)[:2000]
                observe_queue_item("error")
                logger.exception("automation.queue.item_failed", extra={"queue_id": queue_id, "error": str(exc)})
            finally:
                self._mark_processed(session, queue_id, worker_id)

        logger.info(
            "automation.queue.item_processed",
            extra={
                "queue_id": queue_id,
                "event_name": event,
                "trigger": result.trigger,
                "count": len(result.results),
            },
        )
        return result

    def get_active_rules(
        self,
        session: Session,
        trigger: AutomationTrigger,
    ) -> list[tuple[str, str, list[Any], list[Any]]]:
        rows = session.scalars(
            select(AutomationRule)
            .where(AutomationRule.trigger == trigger.value, AutomationRule.is_active.is_(True))
            .order_by(AutomationRule.created_at.asc(), AutomationRule.id.asc())
        ).all()
        return [(row.id, row.name, list(row.conditions or []), list(row.actions or [])) for row in rows]

    def _run_rule(
        self,
        session: Session,
        queue_id: str,
        event: str,
        data: dict[str, Any],
        lead_id: str | None,
        rule_id: str,
        name: str,
        conditions: list[Any],
        actions: list[Any],
    ) -> RuleResult:
        token = set_automation_id(rule_id)
        started = time.perf_counter()
        try:
            matched = evaluate_conditions(conditions, data)
            if not matched:
                rule_result = RuleResult(automation_id=rule_id, name=name, matched=False, executed=False)
                status = "skipped"
            else:
                context = ActionContext.from_event_data(rule_id, data, lead_id)
                executed, action_results = self.executor.execute_actions(session, actions, context)
                rule_result = RuleResult(
                    automation_id=rule_id,
                    name=name,
                    matched=True,
                    executed=executed,
                    results=action_results,
                )
                status = "success" if executed else "failed"

            errors = [f"{item.action}: {item.error}" for item in rule_result.results if not item.success]
            session.add(
                AutomationExecutionLog(
                    automation_id=rule_id,
                    queue_item_id=queue_id,
                    trigger_event=event,
                    payload=data,
                    conditions_evaluated=conditions,
                    conditions_met=matched,
                    actions_executed=[item.model_dump() for item in rule_result.results],
                    status=status,
                    error_message="; ".join(errors) or None,
                    execution_time_ms=int((time.perf_counter() - started) * 1000),
                )
            )
            session.commit()
            observe_rule_execution(status)
            logger.info(
                "automation.rule.evaluated",
                extra={"automation_id": rule_id, "queue_id": queue_id, "status": status},
            )
            return rule_result
        finally:
            reset_automation_id(token)

    def _still_owned(self, session: Session, queue_id: str, worker_id: str | None) -> bool:
        pending = AutomationQueueItem.processed.is_(False)
        if worker_id is None:
            row = session.scalar(select(AutomationQueueItem.id).where(AutomationQueueItem.id == queue_id, pending))
            return row is not None
        return confirm_claim(session, AutomationQueueItem, queue_id, pending=pending, worker_id=worker_id)

    def _mark_processed(self, session: Session, queue_id: str, worker_id: str | None) -> None:
        stmt = update(AutomationQueueItem).where(
            AutomationQueueItem.id == queue_id,
            AutomationQueueItem.processed.is_(False),
        )
        if worker_id is not None:
            stmt = stmt.where(AutomationQueueItem.claimed_by == worker_id)
        session.execute(
            stmt.values(processed=True, processed_at=utcnow()).execution_options(synchronize_session=False)
        )
        session.commit()
