from __future__ import annotations

import logging

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from app import audit
from app.automation.models import (
    AutomationExecutionLog,
    AutomationRule,
    WebhookDeliveryAttempt,
    WebhookSubscription,
)
from app.automation.schemas import (
    AutomationLogRead,
    AutomationRuleCreate,
    AutomationRuleRead,
    AutomationRuleUpdate,
    DeliveryAttemptRead,
    WebhookSubscriptionCreate,
    WebhookSubscriptionRead,
)
from app.automation.triggers import AutomationTrigger


logger = logging.getLogger("app.automation.service")

RULE_AUDIT_FIELDS = ("name", "trigger", "is_active")
SUBSCRIPTION_AUDIT_FIELDS = ("url", "events", "is_active")


class AutomationRuleService:
    def list_rules(
        self,
        session: Session,
        *,
        trigger: AutomationTrigger | None = None,
        active_only: bool = False,
    ) -> list[AutomationRuleRead]:
        stmt = select(AutomationRule)
        if trigger is not None:
            stmt = stmt.where(AutomationRule.trigger == trigger.value)
        if active_only:
            stmt = stmt.where(AutomationRule.is_active.is_(True))
        rows = session.scalars(stmt.order_by(AutomationRule.created_at.asc(), AutomationRule.id.asc())).all()
        return [AutomationRuleRead.model_validate(row) for row in rows]

    def create_rule(self, session: Session, dto: AutomationRuleCreate, actor_user_id: str) -> AutomationRuleRead:
        rule = AutomationRule(
            name=dto.name,
            description=dto.description,
            trigger=dto.trigger.value,
            conditions=[condition.model_dump() for condition in dto.conditions],
            actions=[action.model_dump() for action in dto.actions],
            is_active=dto.is_active,
        )
        session.add(rule)
        session.commit()
        session.refresh(rule)
        audit.record(
            actor_user_id=actor_user_id,
            entity_type="automation_rule",
            entity_id=rule.id,
            action="create",
            before=None,
            after=audit.snapshot(rule, RULE_AUDIT_FIELDS),
        )
        logger.info("automation.rule.created", extra={"automation_id": rule.id, "trigger": rule.trigger})
        return AutomationRuleRead.model_validate(rule)

    def update_rule(
        self,
        session: Session,
        rule_id: str,
        dto: AutomationRuleUpdate,
        actor_user_id: str,
    ) -> AutomationRuleRead:
        rule = session.get(AutomationRule, rule_id)
        if rule is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Automation rule not found")

        before = audit.snapshot(rule, RULE_AUDIT_FIELDS)
        changes = dto.model_dump(exclude_unset=True)
        if "name" in changes and changes["name"] is not None:
            rule.name = changes["name"]
        if "description" in changes:
            rule.description = changes["description"]
        if dto.trigger is not None:
            rule.trigger = dto.trigger.value
        if dto.conditions is not None:
            rule.conditions = [condition.model_dump() for condition in dto.conditions]
        if dto.actions is not None:
            rule.actions = [action.model_dump() for action in dto.actions]
        if dto.is_active is not None:
            rule.is_active = dto.is_active

        session.commit()
        session.refresh(rule)
        audit.record(
            actor_user_id=actor_user_id,
            entity_type="automation_rule",
            entity_id=rule.id,
            action="update",
            before=before,
            after=audit.snapshot(rule, RULE_AUDIT_FIELDS),
        )
        return AutomationRuleRead.model_validate(rule)

    def list_logs(
        self,
        session: Session,
        *,
        automation_id: str | None = None,
        status_filter: str | None = None,
        limit: int = 50,
    ) -> list[AutomationLogRead]:
        stmt = select(AutomationExecutionLog)
        if automation_id is not None:
            stmt = stmt.where(AutomationExecutionLog.automation_id == automation_id)
        if status_filter is not None:
            stmt = stmt.where(AutomationExecutionLog.status == status_filter)
        rows = session.scalars(
            stmt.order_by(AutomationExecutionLog.created_at.desc(), AutomationExecutionLog.id.desc()).limit(limit)
        ).all()
        return [AutomationLogRead.model_validate(row) for row in rows]


class WebhookSubscriptionService:
    def list_subscriptions(self, session: Session) -> list[WebhookSubscriptionRead]:
        rows = session.scalars(
            select(WebhookSubscription).order_by(WebhookSubscription.created_at.asc(), WebhookSubscription.id.asc())
        ).all()
        return [WebhookSubscriptionRead.model_validate(row) for row in rows]

    def create_subscription(
        self,
        session: Session,
        dto: WebhookSubscriptionCreate,
        actor_user_id: str,
    ) -> WebhookSubscriptionRead:
        subscription = WebhookSubscription(
            name=dto.name,
            url=dto.url,
            secret=dto.secret,
            events=list(dict.fromkeys(dto.events)),
            headers=dict(dto.headers),
            is_active=dto.is_active,
        )
        session.add(subscription)
        session.commit()
        session.refresh(subscription)
        audit.record(
            actor_user_id=actor_user_id,
            entity_type="webhook_subscription",
            entity_id=subscription.id,
            action="create",
            before=None,
            after=audit.snapshot(subscription, SUBSCRIPTION_AUDIT_FIELDS),
        )
        logger.info("webhook.subscription.created", extra={"webhook_id": subscription.id})
        return WebhookSubscriptionRead.model_validate(subscription)

    def list_deliveries(self, session: Session, webhook_id: str, *, limit: int = 50) -> list[DeliveryAttemptRead]:
        if session.get(WebhookSubscription, webhook_id) is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Webhook subscription not found")
        rows = session.scalars(
            select(WebhookDeliveryAttempt)
            .where(WebhookDeliveryAttempt.webhook_id == webhook_id)
            .order_by(WebhookDeliveryAttempt.created_at.desc(), WebhookDeliveryAttempt.attempt.desc())
            .limit(limit)
        ).all()
        return [DeliveryAttemptRead.model_validate(row) for row in rows]
