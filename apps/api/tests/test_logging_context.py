from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.automation.domain_events import record_domain_event
from app.automation.models import AutomationRule, Lead
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.logging import JsonLogFormatter
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
    yield
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_logs_include_correlation_id_for_http(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    response = client.patch(
        f"/api/automation/rules/{uuid.uuid4()}",
        json={"is_active": False},
        headers={"X-Correlation-Id": "abc-123"},
    )
    assert response.status_code == 404

    records = [record for record in caplog.records if record.name == "app.request" and record.getMessage() == "http.request"]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "PATCH"
        and getattr(record, "path", None) == "/api/automation/rules/{id}"
        and getattr(record, "status_code", None) == 404
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_queue_logs_carry_rule_and_correlation_context(
    client: TestClient,
    db_session: Session,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)
    db_session.add(Lead(id="L1", name="Ana", phone="5511999999999"))
    db_session.add(
        AutomationRule(
            id="R1",
            name="Lead quente",
            trigger="lead_temperature_changed",
            conditions=[{"field": "new_temperature", "operator": "equals", "value": "hot"}],
            actions=[{"type": "assign_to_user", "params": {"user_id": "U1"}}],
        )
    )
    record_domain_event(
        db_session,
        "lead.temperature_changed",
        {"lead": {"id": "L1"}, "previous_temperature": "warm", "new_temperature": "hot"},
    )
    db_session.commit()

    response = client.post("/api/automation/queue/process", headers={"X-Correlation-Id": "queue-corr-1"})
    assert response.status_code == 200

    rule_records = [record for record in caplog.records if record.getMessage() == "automation.rule.evaluated"]
    assert any(
        getattr(record, "automation_id", None) == "R1"
        and getattr(record, "status", None) == "success"
        and getattr(record, "correlation_id", None) == "queue-corr-1"
        for record in rule_records
    )
    action_records = [record for record in caplog.records if record.name == "app.automation.actions"]
    assert any(
        record.getMessage() == "automation.action.succeeded" and getattr(record, "action", None) == "assign_to_user"
        for record in action_records
    )


def test_json_formatter_keeps_known_fields_only() -> None:
    record = logging.makeLogRecord(
        {
            "name": "app.automation.webhooks",
            "levelname": "ERROR",
            "msg": "webhook.delivery.failed",
            "webhook_id": "W1",
            "attempt": 3,
            "error": "x" * 800,
            "password": "hunter2",
            "correlation_id": "corr-json-1",
        }
    )

    payload = json.loads(JsonLogFormatter().format(record))

    assert payload["msg"] == "webhook.delivery.failed"
    assert payload["logger"] == "app.automation.webhooks"
    assert payload["correlation_id"] == "corr-json-1"
    assert payload["fields"]["webhook_id"] == "W1"
    assert payload["fields"]["attempt"] == 3
    assert len(payload["fields"]["error"]) == 500
    assert "password" not in payload["fields"]
