from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from sqlalchemy.orm import Session

from autoflow.core.errors import AmbiguousContextError, ForbiddenError, NotFoundError
from autoflow.records.repository import UserRepository, parse_uuid
from autoflow.service_accounts.service import Principal


@dataclass(frozen=True)
class WorkflowContext:
    """Who a single dispatch acts as. Built per request, never stored."""

    user_id: uuid.UUID
    user_email: str | None
    user_name: str | None
    service_account_id: uuid.UUID
    service_account_name: str
    permissions: tuple[str, ...]


def _normalized(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    parsed = parse_uuid(text)
    return str(parsed) if parsed is not None else text


def resolve_user_id(service_account_id: Any, bound_tenant_id: Any, requested_user_id: Any) -> str:
    """Pick the one tenant a call may act for.

    A tenant bound on the service account is the boundary: a request may only
    repeat it. Global accounts have to name the tenant on every call.
    """
    bound = _normalized(bound_tenant_id)
    requested = _normalized(requested_user_id)
    if bound is not None:
        if requested is not None and requested != bound:
            raise ForbiddenError(
                "Service account is not allowed to act for this user",
                details={"service_account_id": _normalized(service_account_id), "user_id": requested},
            )
        return bound
    if requested is not None:
        return requested
    raise AmbiguousContextError(
        "userId is required: the service account is not bound to a user",
        details={"service_account_id": _normalized(service_account_id)},
    )


class UserContextResolver:
    def __init__(self) -> None:
        self.users = UserRepository()

    def build_context(self, session: Session, principal: Principal, requested_user_id: Any) -> WorkflowContext:
        user_id = resolve_user_id(principal.service_account_id, principal.bound_user_id, requested_user_id)
        user = self.users.get(session, user_id)
        if user is None:
            raise NotFoundError("User not found", details={"user_id": user_id})
        return WorkflowContext(
            user_id=user.id,
            user_email=user.email,
            user_name=user.name,
            service_account_id=principal.service_account_id,
            service_account_name=principal.name,
            permissions=tuple(principal.permissions),
        )


user_context_resolver = UserContextResolver()
