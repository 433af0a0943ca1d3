from __future__ import annotations

import json
import threading
from collections.abc import Generator
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import events
from app.automation.ingestion import InboundWebhookHandler, extract_short_id, ingest_message, normalize_phone
from app.automation.models import AutomationQueueItem, Conversation, Lead, Message
from app.automation.signing import sign_payload
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.main import app


SERIALIZED_ID = "true_5511999999999@c.us_3EB0725EB8EE5F6CC14B33"


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


@pytest.fixture()
def file_sessions(tmp_path: Path) -> Generator[sessionmaker[Session], None, None]:
    engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'ingestion.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield sessionmaker(bind=engine, autocommit=False, autoflush=False)
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.delenv("WAHA_WEBHOOK_SECRET", raising=False)
    get_settings.cache_clear()
    events.published_events.clear()
    yield
    get_settings.cache_clear()
    events.published_events.clear()


@pytest.fixture()
def conversation(db_session: Session) -> Conversation:
    db_session.add(Lead(id="L1", name="Ana", phone="5511999999999"))
    conversation = Conversation(id="C1", lead_id="L1")
    db_session.add(conversation)
    db_session.commit()
    return conversation


def _values(provider_message_id: str, **overrides: object) -> dict[str, object]:
    values: dict[str, object] = {
        "conversation_id": "C1",
        "lead_id": "L1",
        "content": "oi",
        "direction": "inbound",
        "sender_type": "lead",
        "provider_message_id": provider_message_id,
    }
    values.update(overrides)
    return values


def _message_body(message_id: str = SERIALIZED_ID, **payload: object) -> dict[str, object]:
    data: dict[str, object] = {
        "id": message_id,
        "from": "5511999999999@c.us",
        "fromMe": False,
        "body": "Olá, quero saber o preço",
        "type": "chat",
        "_data": {"notifyName": "Ana Souza"},
    }
    data.update(payload)
    return {"event": "message", "session": "default", "payload": data}


def _queued_events(session: Session) -> list[str]:
    rows = session.scalars(select(AutomationQueueItem).order_by(AutomationQueueItem.created_at.asc())).all()
    return [row.event for row in rows]


def test_extract_short_id_reduces_serialized_ids() -> None:
    assert extract_short_id(SERIALIZED_ID) == "3EB0725EB8EE5F6CC14B33"
    assert extract_short_id("3EB0725EB8EE5F6CC14B33") == "3EB0725EB8EE5F6CC14B33"
    assert extract_short_id("  false_5511@c.us_ABC  ") == "ABC"


@pytest.mark.parametrize("raw", [None, "", "   ", "true_5511@c.us_"])
def test_extract_short_id_rejects_empty_ids(raw: str | None) -> None:
    with pytest.raises(ValueError):
        extract_short_id(raw)


def test_normalize_phone_drops_domain_and_punctuation() -> None:
    assert normalize_phone("5511999999999@c.us") == "5511999999999"
    assert normalize_phone("+55 (11) 99999-9999") == "5511999999999"


def test_duplicate_ingest_keeps_a_single_row(db_session: Session, conversation: Conversation) -> None:
    first = ingest_message(db_session, _values("3EB0A"))
    db_session.commit()
    second = ingest_message(db_session, _values("3EB0A", content="repetida"))
    db_session.commit()

    assert first.created is True
    assert second.created is False
    assert second.message.id == first.message.id
    assert second.message.content == "oi"
    assert db_session.scalar(select(func.count()).select_from(Message)) == 1
    assert _queued_events(db_session) == ["message.received"]


def test_outbound_ingest_records_message_sent(db_session: Session, conversation: Conversation) -> None:
    result = ingest_message(
        db_session,
        _values("3EB0B", direction="outbound", sender_type="agent", source="mobile"),
    )
    db_session.commit()

    assert result.created is True
    assert result.message.status == "sent"
    assert _queued_events(db_session) == ["message.sent"]


def test_ingest_requires_provider_message_id(db_session: Session, conversation: Conversation) -> None:
    with pytest.raises(ValueError):
        ingest_message(db_session, _values(""))


def test_handler_creates_lead_conversation_and_message(db_session: Session) -> None:
    result = InboundWebhookHandler().handle(db_session, _message_body())

    assert result["status"] == "created"
    lead = db_session.get(Lead, result["lead_id"])
    assert lead is not None
    assert lead.phone == "5511999999999"
    assert lead.name == "Ana Souza"
    assert lead.whatsapp_name == "Ana Souza"

    message = db_session.get(Message, result["message_id"])
    assert message is not None
    assert message.provider_message_id == "3EB0725EB8EE5F6CC14B33"
    assert message.external_id == SERIALIZED_ID
    assert message.direction == "inbound"
    assert message.sender_type == "lead"
    assert message.sender_id == lead.id
    assert message.status == "delivered"

    conversation = db_session.get(Conversation, result["conversation_id"])
    assert conversation is not None
    assert conversation.last_message_at is not None
    assert _queued_events(db_session) == ["lead.created", "conversation.created", "message.received"]


def test_serialized_and_short_ids_are_the_same_message(db_session: Session) -> None:
    handler = InboundWebhookHandler()

    first = handler.handle(db_session, _message_body(SERIALIZED_ID))
    second = handler.handle(db_session, _message_body("3EB0725EB8EE5F6CC14B33"))

    assert first["status"] == "created"
    assert second["status"] == "duplicate"
    assert second["message_id"] == first["message_id"]
    assert db_session.scalar(select(func.count()).select_from(Message)) == 1
    assert db_session.scalar(select(func.count()).select_from(Lead)) == 1
    assert _queued_events(db_session).count("message.received") == 1


def test_redelivery_after_resolving_the_conversation_reports_the_stored_message(db_session: Session) -> None:
    handler = InboundWebhookHandler()
    first = handler.handle(db_session, _message_body())
    conversation = db_session.get(Conversation, first["conversation_id"])
    assert conversation is not None
    conversation.status = "resolved"
    db_session.commit()

    again = handler.handle(db_session, _message_body())

    assert again == {
        "status": "duplicate",
        "message_id": first["message_id"],
        "lead_id": first["lead_id"],
        "conversation_id": first["conversation_id"],
    }
    assert db_session.scalar(select(func.count()).select_from(Conversation)) == 1
    assert _queued_events(db_session) == ["lead.created", "conversation.created", "message.received"]


def test_concurrent_redeliveries_store_one_message_lead_and_conversation(
    file_sessions: sessionmaker[Session],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    both_checked = threading.Barrier(2, timeout=10)
    checked = threading.local()
    lookup = InboundWebhookHandler._existing_message

    def lookup_then_wait(self: InboundWebhookHandler, session: Session, provider_message_id: str) -> Message | None:
        found = lookup(self, session, provider_message_id)
        if not getattr(checked, "done", False):
            checked.done = True
            both_checked.wait()
        return found

    monkeypatch.setattr(InboundWebhookHandler, "_existing_message", lookup_then_wait)

    def deliver() -> dict[str, object]:
        with file_sessions() as session:
            return InboundWebhookHandler().handle(session, _message_body())

    with ThreadPoolExecutor(max_workers=2) as pool:
        results = list(pool.map(lambda _: deliver(), range(2)))

    assert sorted(str(result["status"]) for result in results) == ["created", "duplicate"]
    assert len({result["message_id"] for result in results}) == 1
    assert len({result["lead_id"] for result in results}) == 1
    assert len({result["conversation_id"] for result in results}) == 1
    with file_sessions() as session:
        assert session.scalar(select(func.count()).select_from(Message)) == 1
        assert session.scalar(select(func.count()).select_from(Lead)) == 1
        assert session.scalar(select(func.count()).select_from(Conversation)) == 1
        assert _queued_events(session) == ["lead.created", "conversation.created", "message.received"]


def test_messages_sent_from_the_phone_are_outbound(db_session: Session) -> None:
    body = _message_body(
        "true_5511988887777@c.us_ABC123",
        fromMe=True,
        to="5511988887777@c.us",
        **{"from": "5511000000000@c.us"},
    )

    result = InboundWebhookHandler().handle(db_session, body)

    lead = db_session.get(Lead, result["lead_id"])
    message = db_session.get(Message, result["message_id"])
    assert lead is not None and message is not None
    assert lead.phone == "5511988887777"
    assert message.direction == "outbound"
    assert message.sender_type == "agent"
    assert message.source == "mobile"
    assert message.status == "sent"
    assert "message.sent" in _queued_events(db_session)


def test_existing_open_conversation_is_reused(db_session: Session, conversation: Conversation) -> None:
    result = InboundWebhookHandler().handle(db_session, _message_body())

    assert result["lead_id"] == "L1"
    assert result["conversation_id"] == "C1"
    assert _queued_events(db_session) == ["message.received"]


def test_media_message_without_text_is_kept(db_session: Session) -> None:
    body = _message_body(body="", type="image", hasMedia=True, media={"url": "https://cdn.example.com/a.jpg"})

    result = InboundWebhookHandler().handle(db_session, body)

    message = db_session.get(Message, result["message_id"])
    assert message is not None
    assert message.type == "image"
    assert message.media_url == "https://cdn.example.com/a.jpg"


@pytest.mark.parametrize(
    ("payload", "reason"),
    [
        ({"from": "120363025555555555@g.us"}, "group"),
        ({"from": "status@broadcast"}, "status"),
        ({"from": "123456@newsletter"}, "broadcast"),
        ({"from": ""}, "missing_contact"),
        ({"id": ""}, "missing_message_id"),
        ({"body": ""}, "empty_content"),
    ],
)
def test_non_lead_traffic_is_ignored(db_session: Session, payload: dict[str, object], reason: str) -> None:
    result = InboundWebhookHandler().handle(db_session, _message_body(**payload))

    assert result == {"status": "ignored", "reason": reason}
    assert db_session.scalar(select(func.count()).select_from(Message)) == 0
    assert db_session.scalar(select(func.count()).select_from(Lead)) == 0


def test_unsupported_events_are_ignored(db_session: Session) -> None:
    result = InboundWebhookHandler().handle(db_session, {"event": "session.status", "payload": {}})

    assert result == {"status": "ignored", "reason": "unsupported_event", "event": "session.status"}


def test_ack_updates_message_status(db_session: Session) -> None:
    handler = InboundWebhookHandler()
    created = handler.handle(db_session, _message_body())

    read = handler.handle(db_session, {"event": "message.ack", "payload": {"id": SERIALIZED_ID, "ack": 3}})
    missing = handler.handle(
        db_session,
        {"event": "message.ack", "payload": {"id": "NOPE", "ackName": "DEVICE"}},
    )

    assert read == {"status": "updated", "message_status": "read"}
    assert missing == {"status": "not_found", "message_status": "delivered"}
    db_session.expire_all()
    message = db_session.get(Message, created["message_id"])
    assert message is not None
    assert message.status == "read"


def test_ack_without_a_usable_id_is_ignored(db_session: Session) -> None:
    result = InboundWebhookHandler().handle(db_session, {"event": "message.ack", "payload": {"id": "   ", "ack": 3}})

    assert result == {"status": "ignored", "reason": "missing_message_id"}


def test_webhook_endpoint_ingests_messages(db_session: Session) -> None:
    app.dependency_overrides[get_db] = lambda: db_session
    client = TestClient(app)

    try:
        response = client.post("/api/whatsapp/webhook", json=_message_body())
        repeat = client.post("/api/whatsapp/webhook", json=_message_body())
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 200
    assert response.json()["status"] == "created"
    assert repeat.json()["status"] == "duplicate"


def test_webhook_endpoint_verifies_signature(db_session: Session, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("WAHA_WEBHOOK_SECRET", "waha-secret")
    get_settings.cache_clear()
    app.dependency_overrides[get_db] = lambda: db_session
    client = TestClient(app)
    raw = json.dumps(_message_body()).encode("utf-8")

    try:
        forged = client.post(
            "/api/whatsapp/webhook",
            content=raw,
            headers={"Content-Type": "application/json", "X-Webhook-Hmac": "sha256=00"},
        )
        signed = client.post(
            "/api/whatsapp/webhook",
            content=raw,
            headers={"Content-Type": "application/json", "X-Webhook-Hmac": sign_payload(raw, "waha-secret")},
        )
    finally:
        app.dependency_overrides.clear()

    assert forged.status_code == 401
    assert forged.json()["code"] == "whatsapp_webhook_invalid_signature"
    assert signed.status_code == 200
    assert signed.json()["status"] == "created"


def test_webhook_endpoint_rejects_non_object_bodies(db_session: Session) -> None:
    app.dependency_overrides[get_db] = lambda: db_session
    client = TestClient(app)

    try:
        response = client.post("/api/whatsapp/webhook", json=["not", "an", "object"])
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 400
    assert response.json()["code"] == "whatsapp_webhook_invalid_body"
