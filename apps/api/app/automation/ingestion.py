from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any

from opentelemetry import trace
from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from app.automation.domain_events import record_domain_event, row_to_dict
from app.automation.models import Conversation, Lead, Message, new_id, utcnow
from app.metrics import observe_inbound_message


logger = logging.getLogger("app.automation.ingestion")
tracer = trace.get_tracer("app.automation.ingestion")

MESSAGE_EVENTS = {"message", "message.any"}
ACK_EVENTS = {"message.ack"}

MESSAGE_TYPES = {
    "chat": "text",
    "text": "text",
    "image": "image",
    "video": "video",
    "audio": "audio",
    "ptt": "audio",
    "document": "document",
    "location": "location",
    "sticker": "sticker",
}

ACK_STATUSES = {
    "DEVICE": "delivered",
    "DELIVERY_ACK": "delivered",
    "delivered": "delivered",
    "READ": "read",
    "PLAYED": "read",
    "read": "read",
}

_IGNORED_SUFFIXES = ("@g.us", "@broadcast", "@newsletter")
_NON_DIGITS_RE = re.compile(r"\D")


@dataclass
class IngestResult:
    message: Message
    created: bool


def extract_short_id(raw: str | None) -> str:
    """Return the provider's stable message key.

    Serialized ids such as ``true_5511999999999@c.us_3EB0ABC`` and the bare ``3EB0ABC``
    reduce to the same key.
    """
    value = (raw or "").strip()
    short_id = value.rsplit("_", 1)[-1]
    if not short_id:
        raise ValueError("provider message id is empty")
    return short_id


def normalize_phone(raw: str) -> str:
    return _NON_DIGITS_RE.sub("", raw.split("@", 1)[0])


def _insert_ignoring_duplicates(session: Session, model: Any, values: dict[str, Any], unique_column: str) -> int:
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        statement = postgresql.insert(model).values(**values)
    elif dialect == "sqlite":
        statement = sqlite.insert(model).values(**values)
    else:
        raise RuntimeError(f"Unsupported database dialect for inbound ingestion: {dialect}")
    statement = statement.on_conflict_do_nothing(index_elements=[unique_column])
    return session.execute(statement).rowcount


def ingest_message(session: Session, values: dict[str, Any]) -> IngestResult:
    """Insert a provider message once per ``provider_message_id``.

    The unique index decides between concurrent deliveries of the same message: the
    losing insert is a no-op and the existing row is returned with ``created=False``.
    """
    provider_message_id = values.get("provider_message_id")
    if not provider_message_id:
        raise ValueError("provider_message_id is required")

    row = dict(values)
    row.setdefault("id", new_id())
    row.setdefault("created_at", utcnow())

    with tracer.start_as_current_span("inbound.message.ingest") as span:
        span.set_attribute("inbound.provider_message_id", provider_message_id)
        inserted = _insert_ignoring_duplicates(session, Message, row, "provider_message_id")
        message = session.scalar(select(Message).where(Message.provider_message_id == provider_message_id))
        if message is None:
            raise RuntimeError(f"Message {provider_message_id} vanished after insert")

        if inserted == 0:
            span.set_attribute("inbound.duplicate", True)
            observe_inbound_message("duplicate")
            logger.info(
                "inbound.message.duplicate",
                extra={"provider_message_id": provider_message_id, "conversation_id": message.conversation_id},
            )
            return IngestResult(message=message, created=False)

        event = "message.sent" if message.direction == "outbound" else "message.received"
        data: dict[str, Any] = {"message": row_to_dict(message)}
        if message.lead_id:
            lead = session.get(Lead, message.lead_id)
            if lead is not None:
                data["lead"] = row_to_dict(lead)
        record_domain_event(session, event, data)
        observe_inbound_message("created")
        logger.info(
            "inbound.message.created",
            extra={
                "provider_message_id": provider_message_id,
                "conversation_id": message.conversation_id,
                "lead_id": message.lead_id,
            },
        )
        return IngestResult(message=message, created=True)


class InboundWebhookHandler:
    """Turns provider (WAHA) webhook bodies into leads, conversations and messages."""

    def handle(self, session: Session, body: dict[str, Any]) -> dict[str, Any]:
        event = body.get("event")
        payload = body.get("payload")
        if not isinstance(payload, dict):
            payload = {}

        if event in ACK_EVENTS:
            return self._handle_ack(session, payload)
        if event not in MESSAGE_EVENTS:
            observe_inbound_message("ignored")
            return {"status": "ignored", "reason": "unsupported_event", "event": event}
        return self._handle_message(session, payload)

    def _handle_message(self, session: Session, payload: dict[str, Any]) -> dict[str, Any]:
        from_me = bool(payload.get("fromMe"))
        if from_me:
            raw_contact = payload.get("to") or payload.get("chatId") or ""
        else:
            raw_contact = payload.get("from") or payload.get("chatId") or ""

        reason = self._filter_reason(str(raw_contact))
        if reason is not None:
            observe_inbound_message("ignored")
            return {"status": "ignored", "reason": reason}

        phone = normalize_phone(str(raw_contact))
        if not phone:
            observe_inbound_message("ignored")
            return {"status": "ignored", "reason": "invalid_phone"}

        try:
            provider_message_id = extract_short_id(payload.get("id"))
        except ValueError:
            observe_inbound_message("ignored")
            return {"status": "ignored", "reason": "missing_message_id"}

        content = str(payload.get("body") or "")
        media = payload.get("media") if isinstance(payload.get("media"), dict) else {}
        media_url = media.get("url") if payload.get("hasMedia") else None
        if not content and not media_url:
            observe_inbound_message("ignored")
            return {"status": "ignored", "reason": "empty_content"}

        existing = self._existing_message(session, provider_message_id)
        if existing is not None:
            observe_inbound_message("duplicate")
            logger.info(
                "inbound.message.duplicate",
                extra={"provider_message_id": provider_message_id, "conversation_id": existing.conversation_id},
            )
            return self._duplicate_response(existing)

        contact_name = self._contact_name(payload)
        lead = self._find_or_create_lead(session, phone, contact_name)
        conversation = self._find_or_create_conversation(session, lead)

        now = utcnow()
        values: dict[str, Any] = {
            "conversation_id": conversation.id,
            "lead_id": lead.id,
            "content": content,
            "type": MESSAGE_TYPES.get(str(payload.get("type") or "chat"), "text"),
            "media_url": media_url,
            "provider_message_id": provider_message_id,
            "external_id": str(payload.get("id")),
            "created_at": now,
        }
        if from_me:
            values.update(direction="outbound", sender_type="agent", source="mobile", status="sent")
        else:
            values.update(direction="inbound", sender_type="lead", sender_id=lead.id, source="lead", status="delivered")

        result = ingest_message(session, values)
        if not result.created:
            # A concurrent delivery stored the message first; its lead and conversation win.
            session.rollback()
            return self._duplicate_response(self._existing_message(session, provider_message_id))

        session.execute(
            update(Conversation)
            .where(Conversation.id == conversation.id)
            .values(last_message_at=now)
            .execution_options(synchronize_session=False)
        )
        session.commit()

        return {
            "status": "created",
            "message_id": result.message.id,
            "lead_id": lead.id,
            "conversation_id": conversation.id,
        }

    def _existing_message(self, session: Session, provider_message_id: str) -> Message | None:
        return session.scalar(select(Message).where(Message.provider_message_id == provider_message_id))

    def _duplicate_response(self, message: Message | None) -> dict[str, Any]:
        if message is None:
            raise RuntimeError("duplicate message is no longer stored")
        return {
            "status": "duplicate",
            "message_id": message.id,
            "lead_id": message.lead_id,
            "conversation_id": message.conversation_id,
        }

    def _handle_ack(self, session: Session, payload: dict[str, Any]) -> dict[str, Any]:
        ack_name = payload.get("ackName")
        status = ACK_STATUSES.get(str(ack_name)) if ack_name else None
        if status is None:
            status = {2: "delivered", 3: "read"}.get(payload.get("ack"))
        raw_id = payload.get("id")
        if status is None or not raw_id:
            observe_inbound_message("ignored")
            return {"status": "ignored", "reason": "unsupported_ack"}

        try:
            provider_message_id = extract_short_id(str(raw_id))
        except ValueError:
            observe_inbound_message("ignored")
            return {"status": "ignored", "reason": "missing_message_id"}

        updated = session.execute(
            update(Message)
            .where(Message.provider_message_id == provider_message_id)
            .values(status=status)
            .execution_options(synchronize_session=False)
        ).rowcount
        session.commit()
        observe_inbound_message("ack")
        logger.info(
            "inbound.message.ack",
            extra={"provider_message_id": provider_message_id, "status": status, "count": updated},
        )
        return {"status": "updated" if updated else "not_found", "message_status": status}

    def _filter_reason(self, raw_contact: str) -> str | None:
        if not raw_contact:
            return "missing_contact"
        if raw_contact == "status@broadcast" or raw_contact.startswith("status@"):
            return "status"
        if raw_contact.endswith("@g.us"):
            return "group"
        if raw_contact.endswith(_IGNORED_SUFFIXES):
            return "broadcast"
        return None

    def _contact_name(self, payload: dict[str, Any]) -> str | None:
        raw = payload.get("_data")
        if isinstance(raw, dict):
            name = raw.get("notifyName") or raw.get("pushName")
            if name:
                return str(name)
        return None

    def _find_or_create_lead(self, session: Session, phone: str, contact_name: str | None) -> Lead:
        lead = session.scalar(select(Lead).where(Lead.phone == phone))
        if lead is not None:
            if contact_name and not lead.whatsapp_name:
                lead.whatsapp_name = contact_name
            return lead

        values = {
            "id": new_id(),
            "name": contact_name or phone,
            "phone": phone,
            "whatsapp_name": contact_name,
            "source": "whatsapp",
            "created_at": utcnow(),
            "updated_at": utcnow(),
        }
        inserted = _insert_ignoring_duplicates(session, Lead, values, "phone")
        lead = session.scalar(select(Lead).where(Lead.phone == phone))
        if lead is None:
            raise RuntimeError(f"Lead {phone} vanished after insert")
        if inserted == 0:
            return lead

        record_domain_event(session, "lead.created", {"lead": row_to_dict(lead)})
        logger.info("inbound.lead.created", extra={"lead_id": lead.id})
        return lead

    def _find_or_create_conversation(self, session: Session, lead: Lead) -> Conversation:
        conversation = session.scalar(
            select(Conversation)
            .where(Conversation.lead_id == lead.id, Conversation.status != "resolved")
            .order_by(Conversation.created_at.desc())
            .limit(1)
        )
        if conversation is not None:
            return conversation

        conversation = Conversation(lead_id=lead.id, status="open", assigned_to=lead.assigned_to)
        session.add(conversation)
        session.flush()
        record_domain_event(
            session,
            "conversation.created",
            {"conversation": row_to_dict(conversation), "lead": row_to_dict(lead)},
        )
        return conversation
