"""Localized (pt-BR) webhook payloads.

Subscribers receive stable Portuguese field names, readable short ids instead of raw
uuids, formatted phone numbers and translated enum values. Every payload carries the
schema version, the original event name and its localized name.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.automation.cache import TTLCache
from app.automation.models import (
    Conversation,
    FunnelStage,
    Label,
    Lead,
    LeadLabel,
    Message,
    Profile,
    utcnow,
)
from app.core.config import get_settings


PAYLOAD_VERSION = "1.0"

READABLE_ID_PREFIXES = {
    "lead": "lead_",
    "message": "msg_",
    "conversation": "conv_",
    "user": "user_",
    "task": "task_",
    "instance": "inst_",
}

LOCALIZED_EVENTS = {
    "lead.created": "lead.criado",
    "lead.updated": "lead.atualizado",
    "lead.stage_changed": "lead.etapa_alterada",
    "lead.temperature_changed": "lead.temperatura_alterada",
    "lead.assigned": "lead.transferido",
    "lead.label_added": "lead.etiqueta_adicionada",
    "lead.label_removed": "lead.etiqueta_removida",
    "lead.summary_updated": "lead.resumo_atualizado",
    "message.received": "mensagem.recebida",
    "message.sent": "mensagem.enviada",
    "conversation.created": "conversa.criada",
    "conversation.resolved": "conversa.resolvida",
    "task.created": "tarefa.criada",
    "task.completed": "tarefa.concluida",
}

TEMPERATURES = {"cold": "frio", "warm": "morno", "hot": "quente"}
MESSAGE_TYPES = {
    "text": "texto",
    "image": "imagem",
    "audio": "audio",
    "video": "video",
    "document": "documento",
    "sticker": "sticker",
    "location": "localizacao",
}
CONVERSATION_STATUSES = {"open": "aberta", "pending": "pendente", "resolved": "resolvida"}
MESSAGE_STATUSES = {"sent": "enviada", "delivered": "entregue", "read": "lida"}
TASK_PRIORITIES = {"low": "baixa", "medium": "media", "high": "alta", "urgent": "urgente"}

_NON_DIGITS = re.compile(r"\D")


def readable_id(kind: str, raw_id: str | None) -> str | None:
    if not raw_id:
        return None
    return READABLE_ID_PREFIXES.get(kind, "") + raw_id.replace("-", "")[:8]


def localized_event_name(event: str) -> str:
    return LOCALIZED_EVENTS.get(event, event.replace(".", "_"))


def format_phone(number: str | None) -> str:
    if not number:
        return ""
    digits = _NON_DIGITS.sub("", number)
    if len(digits) == 13 and digits.startswith("55"):
        return f"+{digits[:2]} ({digits[2:4]}) {digits[4:9]}-{digits[9:]}"
    if len(digits) == 12 and digits.startswith("55"):
        return f"+{digits[:2]} ({digits[2:4]}) {digits[4:8]}-{digits[8:]}"
    if len(digits) == 11:
        return f"+55 ({digits[:2]}) {digits[2:7]}-{digits[7:]}"
    if len(digits) == 10:
        return f"+55 ({digits[:2]}) {digits[2:6]}-{digits[6:]}"
    return number


def format_cpf(cpf: str | None) -> str | None:
    if not cpf:
        return None
    digits = _NON_DIGITS.sub("", cpf)
    if len(digits) != 11:
        return cpf
    return f"{digits[:3]}.{digits[3:6]}.{digits[6:9]}-{digits[9:]}"


def format_timestamp(moment: datetime | None = None, offset_hours: int | None = None) -> str:
    if offset_hours is None:
        offset_hours = get_settings().webhook_timezone_offset_hours
    value = moment or utcnow()
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone(timedelta(hours=offset_hours))).isoformat(timespec="milliseconds")


def _translate(mapping: Mapping[str, str], value: Any) -> Any:
    if not isinstance(value, str):
        return value
    return mapping.get(value, value)


def _iso(value: Any) -> Any:
    if isinstance(value, datetime):
        return format_timestamp(value)
    return value


def _mapping(value: Any) -> dict[str, Any]:
    return dict(value) if isinstance(value, Mapping) else {}


class WebhookPayloadBuilder:
    def __init__(self, cache: TTLCache[Any] | None = None) -> None:
        self.cache = cache or TTLCache(ttl_seconds=get_settings().webhook_lookup_cache_ttl_seconds)
        self._builders: dict[str, Callable[[Session, dict[str, Any]], dict[str, Any]]] = {
            "message.received": self._message_received,
            "message.sent": self._message_sent,
            "lead.created": self._lead_created,
            "lead.updated": self._lead_updated,
            "lead.stage_changed": self._lead_stage_changed,
            "lead.temperature_changed": self._lead_temperature_changed,
            "lead.assigned": self._lead_assigned,
            "lead.label_added": self._lead_label_added,
            "lead.label_removed": self._lead_label_removed,
            "lead.summary_updated": self._lead_summary_updated,
            "conversation.created": self._conversation_created,
            "conversation.resolved": self._conversation_resolved,
            "task.created": self._task_created,
            "task.completed": self._task_completed,
        }

    def build_body(self, session: Session, event: str, data: Mapping[str, Any]) -> dict[str, Any]:
        event_data = _mapping(data.get("data")) or dict(data)
        builder = self._builders.get(event)
        if builder is None:
            return {"dados": event_data}
        return builder(session, event_data)

    def envelope(
        self,
        event: str,
        body: Mapping[str, Any],
        *,
        delivery_id: str,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        return {
            "versao": PAYLOAD_VERSION,
            "evento": localized_event_name(event),
            "event": event,
            "timestamp": format_timestamp(now),
            "delivery_id": delivery_id,
            "request_id": "req_" + delivery_id.replace("-", "")[:8],
            **body,
        }

    def invalidate_stage(self, stage_id: str) -> None:
        self.cache.invalidate(("stage", stage_id))

    def invalidate_profile(self, profile_id: str) -> None:
        self.cache.invalidate(("profile", profile_id))

    def _stage_name(self, session: Session, stage_id: str | None) -> str | None:
        if not stage_id:
            return None

        def load() -> str | None:
            stage = session.get(FunnelStage, stage_id)
            return stage.name if stage is not None else None

        return self.cache.get_or_load(("stage", stage_id), load)

    def _user(self, session: Session, user_id: str | None) -> dict[str, Any] | None:
        if not user_id:
            return None

        def load() -> dict[str, Any] | None:
            profile = session.get(Profile, user_id)
            if profile is None:
                return None
            return {"id": readable_id("user", profile.id), "nome": profile.name}

        return self.cache.get_or_load(("profile", user_id), load)

    def _lead(self, session: Session, lead_id: str | None) -> dict[str, Any] | None:
        if not lead_id:
            return None
        lead = session.get(Lead, lead_id)
        if lead is None:
            return None

        label_names = session.scalars(
            select(Label.name)
            .join(LeadLabel, LeadLabel.label_id == Label.id)
            .where(LeadLabel.lead_id == lead.id)
            .order_by(Label.name.asc())
        ).all()
        return {
            "id": readable_id("lead", lead.id),
            "id_original": lead.id,
            "nome": lead.name,
            "whatsapp": format_phone(lead.phone),
            "email": lead.email,
            "cpf": format_cpf(lead.cpf),
            "temperatura": _translate(TEMPERATURES, lead.temperature),
            "etapa_funil": self._stage_name(session, lead.stage_id),
            "etiquetas": list(label_names),
            "origem": lead.source,
            "resumo": lead.summary,
            "criado_em": _iso(lead.created_at),
            "responsavel": self._user(session, lead.assigned_to),
        }

    def _conversation(self, session: Session, conversation_id: str | None) -> dict[str, Any] | None:
        if not conversation_id:
            return None
        conversation = session.get(Conversation, conversation_id)
        if conversation is None:
            return None
        total = session.scalar(
            select(func.count()).select_from(Message).where(Message.conversation_id == conversation.id)
        )
        return {
            "id": readable_id("conversation", conversation.id),
            "id_original": conversation.id,
            "status": _translate(CONVERSATION_STATUSES, conversation.status),
            "total_mensagens": int(total or 0),
            "lead_id": conversation.lead_id,
        }

    @staticmethod
    def _lead_summary(lead: dict[str, Any] | None, *fields: str) -> dict[str, Any] | None:
        if lead is None:
            return None
        return {field: lead.get(field) for field in ("id", "nome", "whatsapp", *fields)}

    def _lead_id_from(self, event_data: dict[str, Any], nested_key: str | None = None) -> str | None:
        lead = _mapping(event_data.get("lead"))
        nested = _mapping(event_data.get(nested_key)) if nested_key else {}
        return lead.get("id") or nested.get("lead_id") or event_data.get("lead_id")

    def _message_fields(self, message: dict[str, Any], timestamp_key: str) -> dict[str, Any]:
        return {
            "id": readable_id("message", message.get("id")),
            "tipo": _translate(MESSAGE_TYPES, message.get("type") or "text"),
            "conteudo": message.get("content"),
            "midia_url": message.get("media_url"),
            timestamp_key: message.get("created_at") or format_timestamp(),
        }

    def _message_received(self, session: Session, event_data: dict[str, Any]) -> dict[str, Any]:
        message = _mapping(event_data.get("message")) or event_data
        lead = self._lead(session, message.get("lead_id") or self._lead_id_from(event_data))
        conversation = self._conversation(session, message.get("conversation_id") or event_data.get("conversation_id"))
        return {
            "mensagem": self._message_fields(message, "recebida_em"),
            "lead": self._lead_summary(lead, "temperatura", "etapa_funil", "etiquetas"),
            "conversa": {"id": conversation["id"], "status": conversation["status"]} if conversation else None,
            "responsavel": lead["responsavel"] if lead else None,
        }

    def _message_sent(self, session: Session, event_data: dict[str, Any]) -> dict[str, Any]:
        message = _mapping(event_data.get("message")) or event_data
        lead = self._lead(session, message.get("lead_id") or self._lead_id_from(event_data))
        conversation = self._conversation(session, message.get("conversation_id") or event_data.get("conversation_id"))
        fields = self._message_fields(message, "enviada_em")
        fields["status"] = _translate(MESSAGE_STATUSES, message.get("status") or "sent")
        return {
            "mensagem": fields,
            "lead": self._lead_summary(lead, "temperatura", "etapa_funil", "etiquetas"),
            "conversa": {"id": conversation["id"], "status": conversation["status"]} if conversation else None,
            "enviada_por": self._user(session, message.get("sender_id")),
        }

    def _lead_created(self, session: Session, event_data: dict[str, Any]) -> dict[str, Any]:
        lead = self._lead(session, self._lead_id_from(event_data))
        return {
            "lead": self._lead_summary(
                lead,
                "email",
                "cpf",
                "temperatura",
                "etapa_funil",
                "etiquetas",
                "origem",
                "criado_em",
            ),
            "responsavel": lead["responsavel"] if lead else None,
        }

    def _lead_updated(self, session: Session, event_data: dict[str, Any]) -> dict[str, Any]:
        lead = self._lead(session, self._lead_id_from(event_data))
        return {"lead": self._lead_summary(lead, "temperatura", "etapa_funil", "etiquetas")}

    def _lead_summary_updated(self, session: Session, event_data: dict[str, Any]) -> dict[str, Any]:
        lead = self._lead(session, self._lead_id_from(event_data))
        return {"lead": self._lead_summary(lead, "etapa_funil"), "resumo": lead["resumo"] if lead else None}

    def _lead_stage_changed(self, session: Session, event_data: dict[str, Any]) -> dict[str, Any]:
        lead = self._lead(session, self._lead_id_from(event_data))
        new_stage = self._stage_name(session, event_data.get("new_stage_id"))
        return {
            "lead": self._lead_summary(lead, "temperatura", "etiquetas"),
            "etapa_anterior": self._stage_name(session, event_data.get("previous_stage_id")),
            "etapa_nova": new_stage or (lead["etapa_funil"] if lead else None),
            "alterado_por": lead["responsavel"] if lead else None,
        }

    def _lead_temperature_changed(self, session: Session, event_data: dict[str, Any]) -> dict[str, Any]:
        lead = self._lead(session, self._lead_id_from(event_data))
        new_temperature = event_data.get("new_temperature")
        return {
            "lead": self._lead_summary(lead, "etapa_funil", "etiquetas"),
            "temperatura_anterior": _translate(TEMPERATURES, event_data.get("previous_temperature")),
            "temperatura_nova": (
                _translate(TEMPERATURES, new_temperature) if new_temperature else (lead["temperatura"] if lead else None)
            ),
            "alterado_por": lead["responsavel"] if lead else None,
        }

    def _lead_assigned(self, session: Session, event_data: dict[str, Any]) -> dict[str, Any]:
        lead = self._lead(session, self._lead_id_from(event_data))
        return {
            "lead": self._lead_summary(lead, "temperatura", "etapa_funil", "etiquetas"),
            "de": self._user(session, event_data.get("previous_assigned_to")),
            "para": self._user(session, event_data.get("new_assigned_to")),
        }

    def _lead_label(self, session: Session, event_data: dict[str, Any]) -> dict[str, Any]:
        lead = self._lead(session, self._lead_id_from(event_data))
        label = _mapping(event_data.get("label"))
        return {
            "lead": self._lead_summary(lead),
            "etiqueta": label.get("name") or event_data.get("label_name"),
            "etiquetas_atuais": lead["etiquetas"] if lead else [],
            "alterado_por": lead["responsavel"] if lead else None,
        }

    def _lead_label_added(self, session: Session, event_data: dict[str, Any]) -> dict[str, Any]:
        return self._lead_label(session, event_data)

    def _lead_label_removed(self, session: Session, event_data: dict[str, Any]) -> dict[str, Any]:
        return self._lead_label(session, event_data)

    def _conversation_created(self, session: Session, event_data: dict[str, Any]) -> dict[str, Any]:
        conversation_data = _mapping(event_data.get("conversation")) or event_data
        conversation = self._conversation(session, conversation_data.get("id"))
        lead_id = conversation_data.get("lead_id") or (conversation["lead_id"] if conversation else None)
        lead = self._lead(session, lead_id)
        return {
            "conversa": {"id": conversation["id"], "status": conversation["status"]} if conversation else None,
            "lead": self._lead_summary(lead, "temperatura", "etapa_funil", "etiquetas"),
            "responsavel": lead["responsavel"] if lead else None,
        }

    def _conversation_resolved(self, session: Session, event_data: dict[str, Any]) -> dict[str, Any]:
        conversation_data = _mapping(event_data.get("conversation")) or event_data
        conversation = self._conversation(session, conversation_data.get("id"))
        lead_id = conversation_data.get("lead_id") or (conversation["lead_id"] if conversation else None)
        lead = self._lead(session, lead_id)

        duration_minutes = 0
        if conversation is not None:
            first_message_at = session.scalar(
                select(func.min(Message.created_at)).where(Message.conversation_id == conversation["id_original"])
            )
            if first_message_at is not None:
                if first_message_at.tzinfo is None:
                    first_message_at = first_message_at.replace(tzinfo=timezone.utc)
                duration_minutes = round((utcnow() - first_message_at).total_seconds() / 60)

        return {
            "conversa": (
                {
                    "id": conversation["id"],
                    "total_mensagens": conversation["total_mensagens"],
                    "duracao_minutos": duration_minutes,
                }
                if conversation
                else None
            ),
            "lead": self._lead_summary(lead, "etapa_funil", "etiquetas"),
            "resolvida_por": lead["responsavel"] if lead else None,
        }

    def _task_created(self, session: Session, event_data: dict[str, Any]) -> dict[str, Any]:
        task = _mapping(event_data.get("task")) or event_data
        lead = self._lead(session, task.get("lead_id") or self._lead_id_from(event_data))
        return {
            "tarefa": {
                "id": readable_id("task", task.get("id")),
                "titulo": task.get("title"),
                "descricao": task.get("description"),
                "prioridade": _translate(TASK_PRIORITIES, task.get("priority") or "medium"),
                "vencimento": task.get("due_date"),
                "status": "pendente",
            },
            "lead": self._lead_summary(lead),
            "responsavel": self._user(session, task.get("assigned_to")),
        }

    def _task_completed(self, session: Session, event_data: dict[str, Any]) -> dict[str, Any]:
        task = _mapping(event_data.get("task")) or event_data
        lead = self._lead(session, task.get("lead_id") or self._lead_id_from(event_data))
        return {
            "tarefa": {
                "id": readable_id("task", task.get("id")),
                "titulo": task.get("title"),
                "concluida_em": task.get("completed_at") or format_timestamp(),
            },
            "lead": self._lead_summary(lead),
            "concluida_por": self._user(session, task.get("assigned_to")),
        }
