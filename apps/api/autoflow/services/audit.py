from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from autoflow.context import get_correlation_id
from autoflow.models.audit import AuditLog


def write_audit_log(
    db: Session,
    *,
    actor_id: str,
    action: str,
    entity_type: str,
    entity_id: str,
    user_id: str | None = None,
    actor_type: str = "user",
    outcome: str = "success",
    metadata: dict[str, Any] | None = None,
    commit: bool = True,
) -> AuditLog:
    event = AuditLog(
        actor_id=actor_id,
        actor_type=actor_type,
        user_id=user_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        outcome=outcome,
        event_metadata=metadata or {},
        correlation_id=get_correlation_id(),
    )
    db.add(event)
    if commit:
        db.commit()
        db.refresh(event)
    else:
        db.flush()
    return event


def list_audit_logs(db: Session, *, user_id: str | None = None, action: str | None = None, limit: int = 100) -> list[AuditLog]:
    stmt = select(AuditLog)
    if user_id is not None:
        stmt = stmt.where(AuditLog.user_id == user_id)
    if action is not None:
        stmt = stmt.where(AuditLog.action == action)
    return list(db.scalars(stmt.order_by(AuditLog.id.desc()).limit(limit)).all())
