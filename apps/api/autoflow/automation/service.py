from __future__ import annotations

import logging
import uuid
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from autoflow.automation.engine import AutomationEngine, automation_engine, next_run_for
from autoflow.automation.executor import ExecutionMode
from autoflow.automation.ledger import RunPage
from autoflow.automation.models import Automation, utcnow
from autoflow.automation.schemas import (
    AutomationCreate,
    AutomationUpdate,
    normalize_actions,
    normalize_conditions,
    normalize_trigger_config,
)
from autoflow.automation.seed import TEMPLATES, AutomationTemplate, default_templates, get_template
from autoflow.core.errors import NotFoundError, ValidationError
from autoflow.records.repository import parse_uuid
from autoflow.services.audit import write_audit_log


logger = logging.getLogger("autoflow.automation.service")


def _invalid(field_name: str, exc: ValueError) -> ValidationError:
    message = str(exc).splitlines()[0] if str(exc) else "invalid"
    return ValidationError(f"{field_name}: {message}", details=[{"field": field_name, "message": str(exc)}])


class AutomationService:
    def __init__(self, engine: AutomationEngine = automation_engine) -> None:
        self.engine = engine

    def list_automations(
        self,
        session: Session,
        user_id: uuid.UUID,
        *,
        category: str | None = None,
        enabled: bool | None = None,
        is_default: bool | None = None,
    ) -> list[Automation]:
        stmt = select(Automation).where(Automation.user_id == user_id)
        if category is not None:
            stmt = stmt.where(Automation.category == category)
        if enabled is not None:
            stmt = stmt.where(Automation.enabled.is_(enabled))
        if is_default is not None:
            stmt = stmt.where(Automation.is_default.is_(is_default))
        stmt = stmt.order_by(Automation.is_default.desc(), Automation.created_at.desc())
        return list(session.scalars(stmt).all())

    def get_automation(self, session: Session, user_id: uuid.UUID, automation_id: Any) -> Automation:
        parsed = parse_uuid(automation_id)
        automation = None
        if parsed is not None:
            automation = session.scalar(
                select(Automation).where(Automation.id == parsed, Automation.user_id == user_id)
            )
        if automation is None:
            raise NotFoundError("Automation not found")
        return automation

    def create_automation(self, session: Session, user_id: uuid.UUID, payload: AutomationCreate) -> Automation:
        data = payload.model_dump()
        is_default = False
        if payload.template_id is not None:
            template = get_template(payload.template_id)
            if template is None:
                raise NotFoundError("Template not found")
            data = self._merge_template(template, data)
            is_default = template.is_default

        automation = Automation(
            user_id=user_id,
            name=data["name"],
            description=data.get("description"),
            category=data["category"],
            trigger_type=data["trigger_type"],
            trigger_config=data["trigger_config"],
            conditions=data.get("conditions"),
            actions=data["actions"],
            failure_policy=data["failure_policy"],
            enabled=data["enabled"],
            is_default=is_default,
            template_id=payload.template_id,
        )
        automation.next_run_at = next_run_for(automation, utcnow())
        session.add(automation)
        session.flush()
        write_audit_log(
            session,
            actor_id=str(user_id),
            user_id=str(user_id),
            action="automation.created",
            entity_type="automation",
            entity_id=str(automation.id),
            metadata={"name": automation.name, "template_id": automation.template_id},
            commit=False,
        )
        session.commit()
        session.refresh(automation)
        logger.info("automation.created", extra={"automation_id": str(automation.id), "user_id": str(user_id)})
        return automation

    def update_automation(
        self,
        session: Session,
        user_id: uuid.UUID,
        automation_id: Any,
        payload: AutomationUpdate,
    ) -> Automation:
        automation = self.get_automation(session, user_id, automation_id)
        changes = payload.model_dump(exclude_unset=True)

        if "trigger_config" in changes:
            if changes["trigger_config"] is None:
                raise ValidationError("trigger_config: required", details=[{"field": "trigger_config", "message": "required"}])
            try:
                changes["trigger_config"] = normalize_trigger_config(automation.trigger_type, changes["trigger_config"])
            except ValueError as exc:
                raise _invalid("trigger_config", exc) from exc
        if "conditions" in changes:
            try:
                changes["conditions"] = normalize_conditions(automation.category, changes["conditions"])
            except ValueError as exc:
                raise _invalid("conditions", exc) from exc
        if "actions" in changes and changes["actions"] is None:
            raise ValidationError("actions: required", details=[{"field": "actions", "message": "required"}])
        for key in ("name", "failure_policy", "enabled"):
            if key in changes and changes[key] is None:
                changes.pop(key)

        for key, value in changes.items():
            setattr(automation, key, value)
        if "trigger_config" in changes or "enabled" in changes:
            automation.next_run_at = next_run_for(automation, utcnow())

        write_audit_log(
            session,
            actor_id=str(user_id),
            user_id=str(user_id),
            action="automation.updated",
            entity_type="automation",
            entity_id=str(automation.id),
            metadata={"fields": sorted(changes)},
            commit=False,
        )
        session.commit()
        session.refresh(automation)
        return automation

    def toggle_automation(self, session: Session, user_id: uuid.UUID, automation_id: Any) -> Automation:
        automation = self.get_automation(session, user_id, automation_id)
        automation.enabled = not automation.enabled
        automation.next_run_at = next_run_for(automation, utcnow())
        write_audit_log(
            session,
            actor_id=str(user_id),
            user_id=str(user_id),
            action="automation.toggled",
            entity_type="automation",
            entity_id=str(automation.id),
            metadata={"enabled": automation.enabled},
            commit=False,
        )
        session.commit()
        session.refresh(automation)
        return automation

    def delete_automation(self, session: Session, user_id: uuid.UUID, automation_id: Any) -> dict[str, Any]:
        """Remove an automation; seeded defaults are only switched off."""
        automation = self.get_automation(session, user_id, automation_id)
        entity_id = str(automation.id)
        if automation.is_default:
            automation.enabled = False
            automation.next_run_at = None
            outcome = {"id": entity_id, "deleted": False, "disabled": True}
        else:
            session.delete(automation)
            outcome = {"id": entity_id, "deleted": True, "disabled": False}

        write_audit_log(
            session,
            actor_id=str(user_id),
            user_id=str(user_id),
            action="automation.deleted" if outcome["deleted"] else "automation.disabled",
            entity_type="automation",
            entity_id=entity_id,
            commit=False,
        )
        session.commit()
        return outcome

    def test_automation(self, session: Session, user_id: uuid.UUID, automation_id: Any) -> dict[str, Any]:
        automation = self.get_automation(session, user_id, automation_id)
        result = self.engine.executor.execute(session, automation, ExecutionMode.DRY_RUN)
        return result.preview or {}

    def list_runs(
        self,
        session: Session,
        user_id: uuid.UUID,
        automation_id: Any,
        *,
        page: int = 1,
        limit: int = 10,
    ) -> RunPage:
        automation = self.get_automation(session, user_id, automation_id)
        return self.engine.ledger.list_runs(session, automation.id, page=page, limit=limit)

    def list_templates(self) -> list[AutomationTemplate]:
        return sorted(TEMPLATES, key=lambda template: template.order)

    def seed_default_automations(self, session: Session, user_id: uuid.UUID) -> list[Automation]:
        existing = set(
            session.scalars(
                select(Automation.template_id).where(
                    Automation.user_id == user_id,
                    Automation.template_id.is_not(None),
                )
            ).all()
        )
        created: list[Automation] = []
        for template in default_templates():
            if template.id in existing:
                continue
            created.append(
                self.create_automation(
                    session,
                    user_id,
                    AutomationCreate(name=template.name, description=template.description, template_id=template.id),
                )
            )
        if created:
            logger.info("automation.defaults_seeded", extra={"user_id": str(user_id), "processed": len(created)})
        return created

    def _merge_template(self, template: AutomationTemplate, data: dict[str, Any]) -> dict[str, Any]:
        if data.get("category") not in (None, template.category):
            raise ValidationError(
                "category: does not match the template",
                details=[{"field": "category", "message": f"template {template.id} is for {template.category}"}],
            )
        if data.get("trigger_type") not in (None, template.trigger_type):
            raise ValidationError(
                "trigger_type: does not match the template",
                details=[{"field": "trigger_type", "message": f"template {template.id} is a {template.trigger_type} trigger"}],
            )
        merged = {
            **data,
            "description": data.get("description") or template.description,
            "category": template.category,
            "trigger_type": template.trigger_type,
        }
        try:
            merged["trigger_config"] = normalize_trigger_config(
                template.trigger_type,
                data.get("trigger_config") or template.default_trigger_config,
            )
        except ValueError as exc:
            raise _invalid("trigger_config", exc) from exc
        try:
            merged["conditions"] = normalize_conditions(
                template.category,
                data.get("conditions") or template.default_conditions,
            )
        except ValueError as exc:
            raise _invalid("conditions", exc) from exc
        merged["actions"] = data.get("actions") or normalize_actions(template.default_actions)
        return merged


automation_service = AutomationService()
