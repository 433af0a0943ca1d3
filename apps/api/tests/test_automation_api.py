from __future__ import annotations

import uuid
from collections.abc import Generator

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.automation import api as automation_api
from app.automation.domain_events import record_domain_event
from app.automation.models import Label, Lead, LeadLabel
from app.automation.webhooks import WebhookDispatcher
from app.core.auth import AuthUser, get_current_user as auth_get_current_user
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.main import app


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


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[auth_get_current_user] = lambda: AuthUser(sub="user-ops", roles=["user"])
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _rule_payload(**overrides: object) -> dict[str, object]:
    payload: dict[str, object] = {
        "name": "Lead quente",
        "trigger": "lead_created",
        "conditions": [{"field": "lead.temperature", "operator": "equals", "value": "hot"}],
        "actions": [{"type": "add_label", "params": {"label_id": "LB1"}}],
    }
    payload.update(overrides)
    return payload


def test_create_and_list_rules(client: TestClient) -> None:
    created = client.post("/api/automation/rules", json=_rule_payload(), headers={"X-Correlation-Id": "rule-corr-1"})
    assert created.status_code == 201
    body = created.json()
    assert body["trigger"] == "lead_created"
    assert body["is_active"] is True

    client.post("/api/automation/rules", json=_rule_payload(name="Sem resposta", trigger="lead_no_response"))

    all_rules = client.get("/api/automation/rules")
    filtered = client.get("/api/automation/rules", params={"trigger": "lead_no_response"})
    assert [rule["name"] for rule in all_rules.json()] == ["Lead quente", "Sem resposta"]
    assert [rule["name"] for rule in filtered.json()] == ["Sem resposta"]

    rule_audits = [entry for entry in audit.audit_entries if entry["entity_type"] == "automation_rule"]
    assert rule_audits[0]["actor_user_id"] == "user-ops"
    assert rule_audits[0]["entity_id"] == body["id"]
    assert rule_audits[0]["correlation_id"] == "rule-corr-1"


@pytest.mark.parametrize(
    "payload",
    [
        _rule_payload(trigger="lead_deleted"),
        _rule_payload(actions=[]),
        _rule_payload(conditions=[{"field": "lead.temperature", "operator": "in", "value": "hot"}]),
        _rule_payload(conditions=[{"field": "lead.temperature", "operator": "matches", "value": "h.*"}]),
    ],
)
def test_invalid_rules_are_rejected(client: TestClient, payload: dict[str, object]) -> None:
    response = client.post("/api/automation/rules", json=payload)

    assert response.status_code == 422


def test_update_rule_toggles_activity(client: TestClient) -> None:
    rule_id = client.post("/api/automation/rules", json=_rule_payload()).json()["id"]

    response = client.patch(f"/api/automation/rules/{rule_id}", json={"is_active": False})

    assert response.status_code == 200
    assert response.json()["is_active"] is False
    assert response.json()["name"] == "Lead quente"
    active = client.get("/api/automation/rules", params={"active_only": "true"})
    assert active.json() == []
    update_audit = [entry for entry in audit.audit_entries if entry["action"] == "update"][-1]
    assert update_audit["before"]["is_active"] is True
    assert update_audit["after"]["is_active"] is False


def test_update_missing_rule_returns_error_envelope(client: TestClient) -> None:
    response = client.patch(
        f"/api/automation/rules/{uuid.uuid4()}",
        json={"is_active": False},
        headers={"X-Correlation-Id": "missing-rule-1"},
    )

    assert response.status_code == 404
    assert response.json() == {
        "code": "automation_rule_update_failed",
        "message": "Automation rule not found",
        "details": "Automation rule not found",
        "correlation_id": "missing-rule-1",
    }
    assert response.headers.get("x-correlation-id") == "missing-rule-1"


def test_queue_endpoint_runs_rules_and_exposes_logs(client: TestClient, db_session: Session) -> None:
    db_session.add(Lead(id="L1", name="Ana", phone="5511999999999", temperature="hot"))
    db_session.add(Label(id="LB1", name="Quente"))
    db_session.commit()
    rule_id = client.post("/api/automation/rules", json=_rule_payload()).json()["id"]
    record_domain_event(db_session, "lead.created", {"lead": {"id": "L1", "temperature": "hot"}})
    db_session.commit()

    response = client.post("/api/automation/queue/process", params={"batch_size": 10})

    assert response.status_code == 200
    summary = response.json()
    assert summary["processed"] == 1
    assert summary["results"][0]["trigger"] == "lead_created"
    assert summary["results"][0]["results"][0]["executed"] is True
    assert db_session.query(LeadLabel).filter_by(lead_id="L1", label_id="LB1").count() == 1

    logs = client.get("/api/automation/logs", params={"automation_id": rule_id})
    assert logs.status_code == 200
    assert [(log["status"], log["conditions_met"]) for log in logs.json()] == [("success", True)]
    assert client.get("/api/automation/logs", params={"status": "failed"}).json() == []


def test_subscriptions_dispatch_and_delivery_log(
    client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(204)

    monkeypatch.setattr(
        automation_api,
        "webhook_dispatcher",
        WebhookDispatcher(transport=httpx.MockTransport(handler)),
    )

    created = client.post(
        "/api/webhooks/subscriptions",
        json={
            "name": "ERP",
            "url": "https://erp.example.com/hooks",
            "secret": "segredo-erp",
            "events": ["lead.created", "lead.created"],
        },
    )
    assert created.status_code == 201
    subscription = created.json()
    assert subscription["events"] == ["lead.created"]
    assert "secret" not in subscription

    dispatched = client.post("/api/webhooks/dispatch", json={"event": "lead.created", "data": {"lead": {"id": "L9"}}})
    assert dispatched.status_code == 200
    assert dispatched.json()["dispatched"] == 1
    assert dispatched.json()["deliveries"][0]["status"] == "success"
    assert len(calls) == 1

    deliveries = client.get(f"/api/webhooks/subscriptions/{subscription['id']}/deliveries")
    assert deliveries.status_code == 200
    assert [(row["attempt"], row["status"], row["response_status"]) for row in deliveries.json()] == [
        (1, "success", 204)
    ]

    listed = client.get("/api/webhooks/subscriptions")
    assert [row["id"] for row in listed.json()] == [subscription["id"]]


def test_subscription_url_must_be_http(client: TestClient) -> None:
    response = client.post(
        "/api/webhooks/subscriptions",
        json={"name": "FTP", "url": "ftp://files.example.com", "secret": "segredo-erp", "events": ["lead.created"]},
    )

    assert response.status_code == 422


def test_deliveries_for_unknown_subscription_return_error_envelope(client: TestClient) -> None:
    response = client.get(f"/api/webhooks/subscriptions/{uuid.uuid4()}/deliveries")

    assert response.status_code == 404
    body = response.json()
    assert body["code"] == "webhook_delivery_list_failed"
    assert body["correlation_id"] == response.headers.get("x-correlation-id")


def test_webhook_queue_and_retry_endpoints_report_counts(client: TestClient, db_session: Session) -> None:
    record_domain_event(db_session, "lead.created", {"lead": {"id": "L1"}})
    db_session.commit()

    queue = client.post("/api/webhooks/queue/process")
    retries = client.post("/api/webhooks/retries/process")

    assert queue.status_code == 200
    assert queue.json()["processed"] == 1
    assert queue.json()["dispatches"][0]["dispatched"] == 0
    assert retries.json() == {"processed": 0, "deliveries": []}
