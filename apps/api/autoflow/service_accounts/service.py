from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from autoflow.automation.models import as_utc, utcnow
from autoflow.core.auth import AuthUser
from autoflow.core.config import get_settings
from autoflow.core.errors import ForbiddenError, NotFoundError, RateLimitedError, UnauthorizedError, ValidationError
from autoflow.metrics import observe_service_auth_failure
from autoflow.records.repository import UserRepository, parse_uuid
from autoflow.service_accounts.credentials import (
    display_prefix,
    generate_credential,
    hash_credential,
    verify_credential,
)
from autoflow.service_accounts.models import ServiceAccount
from autoflow.service_accounts.schemas import ServiceAccountCreate, ServiceAccountUpdate
from autoflow.services.audit import write_audit_log


logger = logging.getLogger("autoflow.service_accounts")

CREATED_WARNING = "API key will only be shown once. Save it securely."
ROTATED_WARNING = "Old API key is now invalid. Save this new key securely - it will only be shown once."


@dataclass(frozen=True)
class Principal:
    service_account_id: uuid.UUID
    name: str
    bound_user_id: uuid.UUID | None
    permissions: list[str] = field(default_factory=list)


class ServiceAccountAuthenticator:
    """Resolves a raw API key to the service account behind it.

    Usage and rate-limit counters move through single-row conditional
    UPDATEs so concurrent calls with the same key never lose an increment.
    """

    def authenticate(self, session: Session, raw_credential: str | None) -> Principal:
        if not raw_credential:
            observe_service_auth_failure("missing")
            raise UnauthorizedError("API key required")

        digest = hash_credential(raw_credential)
        account = session.scalar(select(ServiceAccount).where(ServiceAccount.api_key_hash == digest))
        if account is None or not verify_credential(raw_credential, account.api_key_hash):
            observe_service_auth_failure("invalid")
            raise UnauthorizedError("Invalid API key")
        if not account.active:
            observe_service_auth_failure("inactive")
            raise ForbiddenError("Service account is inactive")

        now = utcnow()
        account_id = account.id
        increment = (
            update(ServiceAccount)
            .where(ServiceAccount.id == account_id, ServiceAccount.active.is_(True))
            .values(usage_count=ServiceAccount.usage_count + 1, last_used_at=now)
            .execution_options(synchronize_session=False)
        )

        if account.rate_limit is not None:
            window = timedelta(seconds=get_settings().service_rate_limit_window_seconds)
            session.execute(
                update(ServiceAccount)
                .where(
                    ServiceAccount.id == account_id,
                    or_(ServiceAccount.rate_limit_reset.is_(None), ServiceAccount.rate_limit_reset <= now),
                )
                .values(rate_limit_used=0, rate_limit_reset=now + window)
                .execution_options(synchronize_session=False)
            )
            increment = increment.where(ServiceAccount.rate_limit_used < ServiceAccount.rate_limit).values(
                rate_limit_used=ServiceAccount.rate_limit_used + 1
            )

        result = session.execute(increment)
        if result.rowcount != 1:
            session.commit()
            current = session.get(ServiceAccount, account_id, populate_existing=True)
            if current is None or not current.active:
                observe_service_auth_failure("inactive")
                raise ForbiddenError("Service account is inactive")
            reset_at = as_utc(current.rate_limit_reset) or now
            observe_service_auth_failure("rate_limited")
            logger.warning(
                "service_account.rate_limited",
                extra={"service_account_id": str(account_id), "reason": "rate_limited"},
            )
            raise RateLimitedError(
                "Rate limit exceeded",
                retry_after=math.ceil((reset_at - now).total_seconds()),
                details={"limit": current.rate_limit},
            )
        session.commit()

        account = session.get(ServiceAccount, account_id, populate_existing=True)
        if account is None:
            raise UnauthorizedError("Invalid API key")
        return Principal(
            service_account_id=account.id,
            name=account.name,
            bound_user_id=account.user_id,
            permissions=list(account.permissions or []),
        )


class ServiceAccountService:
    def __init__(self) -> None:
        self.users = UserRepository()

    def list_accounts(self, session: Session, owner_user_id: uuid.UUID) -> list[ServiceAccount]:
        return list(
            session.scalars(
                select(ServiceAccount)
                .where(ServiceAccount.owner_user_id == owner_user_id)
                .order_by(ServiceAccount.created_at.desc())
            ).all()
        )

    def get_account(self, session: Session, owner_user_id: uuid.UUID, account_id: Any) -> ServiceAccount:
        parsed = parse_uuid(account_id)
        account = None
        if parsed is not None:
            account = session.scalar(
                select(ServiceAccount).where(
                    ServiceAccount.id == parsed,
                    ServiceAccount.owner_user_id == owner_user_id,
                )
            )
        if account is None:
            raise NotFoundError("Service account not found")
        return account

    def create_account(self, session: Session, owner: AuthUser, payload: ServiceAccountCreate) -> tuple[ServiceAccount, str]:
        owner_user_id = parse_uuid(owner.sub)
        if owner_user_id is None:
            raise UnauthorizedError("Invalid token")

        if payload.global_account:
            if "admin" not in {role.lower() for role in owner.roles}:
                raise ForbiddenError("Only administrators can create global service accounts")
            bound_user_id = None
        else:
            bound_user_id = payload.user_id or owner_user_id
            if bound_user_id != owner_user_id and "admin" not in {role.lower() for role in owner.roles}:
                raise ForbiddenError("Service accounts can only be bound to your own account")
            if self.users.get(session, bound_user_id) is None:
                raise ValidationError("userId: unknown user", details=[{"field": "userId", "message": "unknown user"}])

        raw_key = generate_credential(get_settings().service_key_prefix)
        account = ServiceAccount(
            name=payload.name,
            description=payload.description,
            owner_user_id=owner_user_id,
            user_id=bound_user_id,
            key_prefix=display_prefix(raw_key),
            api_key_hash=hash_credential(raw_key),
            permissions=payload.permissions,
            rate_limit=payload.rate_limit,
            account_metadata=payload.metadata,
        )
        session.add(account)
        session.flush()
        write_audit_log(
            session,
            actor_id=str(owner_user_id),
            user_id=str(owner_user_id),
            action="service_account.created",
            entity_type="service_account",
            entity_id=str(account.id),
            metadata={"name": account.name, "global": bound_user_id is None, "permissions": account.permissions},
            commit=False,
        )
        session.commit()
        session.refresh(account)
        logger.info("service_account.created", extra={"service_account_id": str(account.id), "user_id": str(owner_user_id)})
        return account, raw_key

    def update_account(
        self,
        session: Session,
        owner_user_id: uuid.UUID,
        account_id: Any,
        payload: ServiceAccountUpdate,
    ) -> ServiceAccount:
        account = self.get_account(session, owner_user_id, account_id)
        changes = payload.model_dump(exclude_unset=True)
        for key in ("name", "permissions", "active"):
            if key in changes and changes[key] is None:
                changes.pop(key)
        if "metadata" in changes:
            account.account_metadata = changes.pop("metadata") or {}
        for key, value in changes.items():
            setattr(account, key, value)
        write_audit_log(
            session,
            actor_id=str(owner_user_id),
            user_id=str(owner_user_id),
            action="service_account.updated",
            entity_type="service_account",
            entity_id=str(account.id),
            metadata={"fields": sorted(payload.model_dump(exclude_unset=True))},
            commit=False,
        )
        session.commit()
        session.refresh(account)
        return account

    def deactivate_account(self, session: Session, owner_user_id: uuid.UUID, account_id: Any) -> ServiceAccount:
        account = self.get_account(session, owner_user_id, account_id)
        account.active = False
        write_audit_log(
            session,
            actor_id=str(owner_user_id),
            user_id=str(owner_user_id),
            action="service_account.deactivated",
            entity_type="service_account",
            entity_id=str(account.id),
            commit=False,
        )
        session.commit()
        session.refresh(account)
        return account

    def regenerate_credential(self, session: Session, owner_user_id: uuid.UUID, account_id: Any) -> tuple[ServiceAccount, str]:
        """Replace the API key; the old one stops working immediately."""
        account = self.get_account(session, owner_user_id, account_id)
        raw_key = generate_credential(get_settings().service_key_prefix)
        account.api_key_hash = hash_credential(raw_key)
        account.key_prefix = display_prefix(raw_key)
        account.usage_count = 0
        account.rate_limit_used = 0
        account.rate_limit_reset = None
        account.last_used_at = None
        write_audit_log(
            session,
            actor_id=str(owner_user_id),
            user_id=str(owner_user_id),
            action="service_account.key_rotated",
            entity_type="service_account",
            entity_id=str(account.id),
            commit=False,
        )
        session.commit()
        session.refresh(account)
        logger.info("service_account.key_rotated", extra={"service_account_id": str(account.id), "user_id": str(owner_user_id)})
        return account, raw_key


service_account_authenticator = ServiceAccountAuthenticator()
service_account_service = ServiceAccountService()
