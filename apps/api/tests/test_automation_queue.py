from __future__ import annotations

from collections.abc import Generator, Mapping
from datetime import timedelta
from typing import Any

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.automation.actions import ActionContext, ActionExecutor, ActionHandler, build_default_registry
from app.automation.claims import claim_rows, confirm_claim
from app.automation.domain_events import record_domain_event
from app.automation.models import (
    AutomationExecutionLog,
    AutomationQueueItem,
    AutomationRule,
    Label,
    Lead,
    LeadLabel,
    Notification,
    WebhookQueueItem,
    utcnow,
)
from app.automation.queue import AutomationQueueConsumer
from app.core.config import get_settings
from app.core.database import Base


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    audit.audit_entries.clear()
    events.published_events.clear()
    yield
    get_settings.cache_clear()
    audit.audit_entries.clear()
    events.published_events.clear()


class ExplodingHandler(ActionHandler):
    action_type = "explode"

    def execute(self, session: Session, params: Mapping[str, Any], context: ActionContext) -> dict[str, Any]:
        raise RuntimeError("kaboom")


def _add_rule(
    session: Session,
    rule_id: str,
    *,
    trigger: str = "lead_created",
    conditions: list[dict[str, Any]] | None = None,
    actions: list[dict[str, Any]] | None = None,
    is_active: bool = True,
) -> AutomationRule:
    rule = AutomationRule(
        id=rule_id,
        name=f"Rule {rule_id}",
        trigger=trigger,
        conditions=conditions or [],
        actions=actions or [],
        is_active=is_active,
    )
    session.add(rule)
    session.commit()
    return rule


def _enqueue(session: Session, event: str, data: dict[str, Any]) -> str:
    item = record_domain_event(session, event, data)
    session.commit()
    return item.id


def test_hot_lead_rule_notifies_user(db_session: Session) -> None:
    _add_rule(
        db_session,
        "R1",
        conditions=[{"field": "lead.temperature", "operator": "equals", "value": "hot"}],
        actions=[{"type": "notify_user", "params": {"user_id": "U1", "title": "Hot lead"}}],
    )
    _enqueue(db_session, "lead.created", {"lead": {"id": "L1", "temperature": "hot"}})

    summary = AutomationQueueConsumer().process_pending(db_session)

    assert summary.processed == 1
    item_result = summary.results[0]
    assert item_result.trigger == "lead_created"
    assert item_result.error is None
    rule_result = item_result.results[0]
    assert rule_result.automation_id == "R1"
    assert rule_result.matched is True
    assert rule_result.executed is True

    notification = db_session.scalar(select(Notification))
    assert notification is not None
    assert notification.user_id == "U1"
    assert notification.title == "Hot lead"
    assert notification.data["automation_id"] == "R1"
    assert notification.data["lead_id"] == "L1"

    log = db_session.scalar(select(AutomationExecutionLog))
    assert log is not None
    assert log.status == "success"
    assert log.conditions_met is True
    assert any(entry["entity_type"] == "automation.action" for entry in audit.audit_entries)


def test_every_claimed_item_is_marked_processed(db_session: Session) -> None:
    _add_rule(
        db_session,
        "R1",
        trigger="lead_stage_changed",
        actions=[{"type": "does_not_exist", "params": {}}],
    )
    _enqueue(db_session, "lead.created", {"lead": {"id": "L1"}})
    _enqueue(db_session, "message.received", {"message": {"id": "M1"}})
    _enqueue(db_session, "lead.stage_changed", {"lead": {"id": "L1"}, "new_stage_id": "S2"})

    summary = AutomationQueueConsumer().process_pending(db_session)

    assert summary.processed == 3
    items = db_session.scalars(select(AutomationQueueItem)).all()
    assert len(items) == 3
    assert all(item.processed for item in items)
    assert all(item.processed_at is not None for item in items)

    failed = next(result for result in summary.results if result.event == "lead.stage_changed")
    assert failed.results[0].executed is False
    assert failed.results[0].results[0].error == "Unknown action type: does_not_exist"


def test_unmapped_event_is_processed_without_results(db_session: Session) -> None:
    _add_rule(db_session, "R1", actions=[{"type": "notify_user", "params": {"user_id": "U1", "title": "x"}}])
    queue_id = _enqueue(db_session, "message.received", {"message": {"id": "M1"}})

    summary = AutomationQueueConsumer().process_pending(db_session)

    assert summary.processed == 1
    assert summary.results[0].trigger is None
    assert summary.results[0].results == []
    item = db_session.get(AutomationQueueItem, queue_id)
    db_session.refresh(item)
    assert item.processed is True
    assert db_session.scalar(select(Notification)) is None


def test_failing_action_does_not_stop_following_actions(db_session: Session) -> None:
    db_session.add_all([Lead(id="L1", name="Ana", phone="5511999998888"), Label(id="LB1", name="VIP")])
    db_session.commit()
    _add_rule(
        db_session,
        "R1",
        actions=[
            {"type": "explode", "params": {}},
            {"type": "add_label", "params": {"label_id": "LB1"}},
        ],
    )
    _enqueue(db_session, "lead.created", {"lead": {"id": "L1"}})

    registry = build_default_registry()
    registry.register("explode", ExplodingHandler())
    summary = AutomationQueueConsumer(executor=ActionExecutor(registry)).process_pending(db_session)

    rule_result = summary.results[0].results[0]
    assert rule_result.matched is True
    assert rule_result.executed is False
    assert rule_result.results[0].action == "explode"
    assert rule_result.results[0].success is False
    assert rule_result.results[0].error == "kaboom"
    assert rule_result.results[1].action == "add_label"
    assert rule_result.results[1].success is True

    assert db_session.scalar(select(LeadLabel).where(LeadLabel.lead_id == "L1")) is not None
    log = db_session.scalar(select(AutomationExecutionLog))
    assert log.status == "failed"
    assert "explode: kaboom" in (log.error_message or "")


def test_rule_with_unmet_conditions_is_skipped(db_session: Session) -> None:
    _add_rule(
        db_session,
        "R1",
        conditions=[{"field": "lead.temperature", "operator": "equals", "value": "hot"}],
        actions=[{"type": "notify_user", "params": {"user_id": "U1", "title": "Hot lead"}}],
    )
    _add_rule(
        db_session,
        "R2",
        actions=[{"type": "notify_user", "params": {"user_id": "U2", "title": "Inactive"}}],
        is_active=False,
    )
    _enqueue(db_session, "lead.created", {"lead": {"id": "L1", "temperature": "cold"}})

    summary = AutomationQueueConsumer().process_pending(db_session)

    rule_results = summary.results[0].results
    assert [result.automation_id for result in rule_results] == ["R1"]
    assert rule_results[0].matched is False
    assert rule_results[0].executed is False
    assert db_session.scalar(select(Notification)) is None
    assert db_session.scalar(select(AutomationExecutionLog)).status == "skipped"


def test_item_errors_are_reported_and_item_still_processed(
    db_session: Session,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _add_rule(db_session, "R1", actions=[{"type": "notify_user", "params": {"user_id": "U1", "title": "x"}}])
    queue_id = _enqueue(db_session, "lead.created", {"lead": {"id": "L1"}})

    consumer = AutomationQueueConsumer()

    def broken_rules(session: Session, trigger: Any) -> list[Any]:
        raise RuntimeError("rules table unavailable")

    monkeypatch.setattr(consumer, "get_active_rules", broken_rules)
    summary = consumer.process_pending(db_session)

    assert summary.results[0].error == "rules table unavailable"
    item = db_session.get(AutomationQueueItem, queue_id)
    db_session.refresh(item)
    assert item.processed is True


def test_claimed_items_are_not_processed_by_another_consumer(db_session: Session) -> None:
    _enqueue(db_session, "lead.created", {"lead": {"id": "L1"}})
    _enqueue(db_session, "lead.created", {"lead": {"id": "L2"}})

    claimed = claim_rows(
        db_session,
        AutomationQueueItem,
        pending=AutomationQueueItem.processed.is_(False),
        limit=10,
        worker_id="worker-a",
        timeout_seconds=300,
    )
    assert len(claimed) == 2

    summary = AutomationQueueConsumer().process_pending(db_session, worker_id="worker-b")
    assert summary.processed == 0
    assert not any(item.processed for item in db_session.scalars(select(AutomationQueueItem)).all())

    again = claim_rows(
        db_session,
        AutomationQueueItem,
        pending=AutomationQueueItem.processed.is_(False),
        limit=10,
        worker_id="worker-b",
        timeout_seconds=300,
    )
    assert again == []

    taken_over = claim_rows(
        db_session,
        AutomationQueueItem,
        pending=AutomationQueueItem.processed.is_(False),
        limit=10,
        worker_id="worker-c",
        timeout_seconds=300,
        now=utcnow() + timedelta(seconds=301),
    )
    assert sorted(taken_over) == sorted(claimed)


def test_worker_that_lost_a_stale_claim_skips_the_item(db_session: Session) -> None:
    _add_rule(db_session, "R1", actions=[{"type": "notify_user", "params": {"user_id": "U1", "title": "Novo lead"}}])
    queue_id = _enqueue(db_session, "lead.created", {"lead": {"id": "L1"}})
    item = db_session.get(AutomationQueueItem, queue_id)
    assert item is not None
    event, payload = item.event, item.payload

    claim_rows(
        db_session,
        AutomationQueueItem,
        pending=AutomationQueueItem.processed.is_(False),
        limit=10,
        worker_id="worker-a",
        timeout_seconds=300,
        now=utcnow() - timedelta(seconds=400),
    )
    taken_over = AutomationQueueConsumer().process_pending(db_session, worker_id="worker-b")
    assert taken_over.processed == 1

    late = AutomationQueueConsumer().process_item(db_session, queue_id, event, payload, worker_id="worker-a")

    assert late.skipped is True
    assert late.results == []
    assert db_session.scalar(select(func.count()).select_from(Notification)) == 1
    db_session.refresh(item)
    assert item.claimed_by == "worker-b"
    assert item.processed is True


def test_processed_items_are_not_run_again(db_session: Session) -> None:
    _add_rule(db_session, "R1", actions=[{"type": "notify_user", "params": {"user_id": "U1", "title": "Novo lead"}}])
    queue_id = _enqueue(db_session, "lead.created", {"lead": {"id": "L1"}})
    consumer = AutomationQueueConsumer()
    consumer.process_pending(db_session)

    again = consumer.process_item(db_session, queue_id, "lead.created", {"data": {"lead": {"id": "L1"}}})

    assert again.skipped is True
    assert db_session.scalar(select(func.count()).select_from(Notification)) == 1


def test_confirm_claim_only_holds_for_the_current_owner(db_session: Session) -> None:
    queue_id = _enqueue(db_session, "lead.created", {"lead": {"id": "L1"}})
    pending = AutomationQueueItem.processed.is_(False)
    claim_rows(
        db_session,
        AutomationQueueItem,
        pending=pending,
        limit=10,
        worker_id="worker-a",
        timeout_seconds=300,
        now=utcnow() - timedelta(seconds=400),
    )
    claim_rows(db_session, AutomationQueueItem, pending=pending, limit=10, worker_id="worker-b", timeout_seconds=300)

    assert confirm_claim(db_session, AutomationQueueItem, queue_id, pending=pending, worker_id="worker-a") is False
    assert confirm_claim(db_session, AutomationQueueItem, queue_id, pending=pending, worker_id="worker-b") is True


def test_batch_size_limits_a_pass(db_session: Session) -> None:
    for index in range(3):
        _enqueue(db_session, "lead.created", {"lead": {"id": f"L{index}"}})

    consumer = AutomationQueueConsumer()
    first = consumer.process_pending(db_session, batch_size=2)
    second = consumer.process_pending(db_session, batch_size=2)

    assert first.processed == 2
    assert second.processed == 1


def test_actions_emit_follow_up_events(db_session: Session) -> None:
    db_session.add(Lead(id="L1", name="Ana", phone="5511999998888", temperature="cold"))
    db_session.commit()
    _add_rule(db_session, "R1", actions=[{"type": "change_lead_temperature", "params": {"temperature": "hot"}}])
    _enqueue(db_session, "lead.created", {"lead": {"id": "L1"}})

    AutomationQueueConsumer().process_pending(db_session)

    pending = db_session.scalars(select(AutomationQueueItem).where(AutomationQueueItem.processed.is_(False))).all()
    assert [item.event for item in pending] == ["lead.temperature_changed"]
    assert pending[0].payload["data"]["new_temperature"] == "hot"
    webhook_events = {item.event for item in db_session.scalars(select(WebhookQueueItem)).all()}
    assert webhook_events == {"lead.created", "lead.temperature_changed"}
    assert any(item.get("event_type") == "lead.temperature_changed" for item in events.published_events)


def test_in_process_buffers_keep_only_recent_entries() -> None:
    for index in range(audit.MAX_AUDIT_ENTRIES + 5):
        audit.record("system", "automation.action", f"A{index}", "execute", None, None)
    for index in range(events.MAX_RECENT_EVENTS + 5):
        events.publish({"event_type": "lead.created", "queue_id": f"Q{index}", "payload": {}})

    assert len(audit.audit_entries) == audit.MAX_AUDIT_ENTRIES
    assert audit.audit_entries[0]["entity_id"] == "A5"
    assert len(events.published_events) == events.MAX_RECENT_EVENTS
    assert events.published_events[0]["queue_id"] == "Q5"
