from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from autoflow.core.database import get_db
from autoflow.core.errors import AutoflowError, RateLimitedError
from autoflow.service_accounts.credentials import extract_credential
from autoflow.service_accounts.service import service_account_authenticator
from autoflow.workflow.context import user_context_resolver
from autoflow.workflow.router import workflow_router


router = APIRouter(prefix="/api/workflows", tags=["workflows"])

_ERROR_LABELS = {
    "unauthorized": "Unauthorized",
    "forbidden": "Forbidden",
    "rate_limited": "RateLimited",
    "ambiguous_context": "AmbiguousContext",
    "not_found": "NotFound",
    "validation_error": "ValidationError",
}


class WorkflowDispatchRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    action: str = Field(min_length=1)
    parameters: dict[str, Any] = Field(default_factory=dict)
    user_id: str | None = Field(default=None, alias="userId")


def _rejected(exc: AutoflowError) -> JSONResponse:
    headers = {"Retry-After": str(exc.retry_after)} if isinstance(exc, RateLimitedError) else None
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": _ERROR_LABELS.get(exc.code, exc.code), "message": exc.message},
        headers=headers,
    )


@router.post("/dispatch")
def dispatch_workflow_action(
    request: Request,
    dto: WorkflowDispatchRequest,
    user_id: str | None = Query(default=None, alias="userId"),
    db: Session = Depends(get_db),
) -> JSONResponse:
    requested_user_id = dto.user_id or user_id or request.headers.get("x-user-id")
    try:
        principal = service_account_authenticator.authenticate(db, extract_credential(request.headers))
        ctx = user_context_resolver.build_context(db, principal, requested_user_id)
    except AutoflowError as exc:
        return _rejected(exc)

    request.state.user_id = str(ctx.user_id)
    result = workflow_router.dispatch(db, dto.action, dto.parameters, ctx)
    return JSONResponse(status_code=result.status_code if not result.success else 200, content=result.envelope())


@router.get("/actions")
def list_workflow_actions(request: Request, db: Session = Depends(get_db)) -> JSONResponse:
    try:
        principal = service_account_authenticator.authenticate(db, extract_credential(request.headers))
    except AutoflowError as exc:
        return _rejected(exc)
    return JSONResponse(
        content={
            "serviceAccount": {
                "id": str(principal.service_account_id),
                "name": principal.name,
                "userId": str(principal.bound_user_id) if principal.bound_user_id else None,
            },
            "actions": workflow_router.available_actions(principal.permissions),
        }
    )
