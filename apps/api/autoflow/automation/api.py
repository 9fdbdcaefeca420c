from __future__ import annotations

import hmac
import uuid

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from autoflow.api.errors import domain_error_response
from autoflow.automation.engine import AutomationEngine, automation_engine
from autoflow.automation.models import utcnow
from autoflow.automation.schemas import (
    AutomationCreate,
    AutomationEventRequest,
    AutomationEventResponse,
    AutomationPreview,
    AutomationRead,
    AutomationRunPage,
    AutomationRunRead,
    AutomationTemplateRead,
    AutomationUpdate,
    Pagination,
    ScheduledRunResponse,
)
from autoflow.automation.service import automation_service
from autoflow.core.auth import AuthUser, get_current_user
from autoflow.core.config import get_settings
from autoflow.core.database import get_db
from autoflow.core.errors import AutoflowError, UnauthorizedError
from autoflow.records.repository import parse_uuid


router = APIRouter(prefix="/api/automations", tags=["automations"])
cron_router = APIRouter(prefix="/api/cron", tags=["cron"])


def current_user_id(user: AuthUser = Depends(get_current_user)) -> uuid.UUID:
    parsed = parse_uuid(user.sub)
    if parsed is None:
        raise UnauthorizedError("Invalid token")
    return parsed


def get_automation_engine() -> AutomationEngine:
    return automation_engine


@router.get("", response_model=list[AutomationRead])
def list_automations(
    request: Request,
    category: str | None = Query(default=None),
    enabled: bool | None = Query(default=None),
    is_default: bool | None = Query(default=None, alias="isDefault"),
    db: Session = Depends(get_db),
    user_id: uuid.UUID = Depends(current_user_id),
) -> list[AutomationRead] | JSONResponse:
    try:
        rows = automation_service.list_automations(db, user_id, category=category, enabled=enabled, is_default=is_default)
        return [AutomationRead.model_validate(row) for row in rows]
    except AutoflowError as exc:
        return domain_error_response(request, exc)


@router.post("", response_model=AutomationRead, status_code=status.HTTP_201_CREATED)
def create_automation(
    request: Request,
    dto: AutomationCreate,
    db: Session = Depends(get_db),
    user_id: uuid.UUID = Depends(current_user_id),
) -> AutomationRead | JSONResponse:
    try:
        return AutomationRead.model_validate(automation_service.create_automation(db, user_id, dto))
    except AutoflowError as exc:
        return domain_error_response(request, exc)


@router.get("/templates", response_model=list[AutomationTemplateRead])
def list_templates(user_id: uuid.UUID = Depends(current_user_id)) -> list[AutomationTemplateRead]:
    return [AutomationTemplateRead.model_validate(template.as_dict()) for template in automation_service.list_templates()]


@router.post("/defaults", response_model=list[AutomationRead])
def seed_defaults(
    request: Request,
    db: Session = Depends(get_db),
    user_id: uuid.UUID = Depends(current_user_id),
) -> list[AutomationRead] | JSONResponse:
    try:
        return [AutomationRead.model_validate(row) for row in automation_service.seed_default_automations(db, user_id)]
    except AutoflowError as exc:
        return domain_error_response(request, exc)


@router.post("/events", response_model=AutomationEventResponse)
def trigger_event_automations(
    request: Request,
    dto: AutomationEventRequest,
    db: Session = Depends(get_db),
    user_id: uuid.UUID = Depends(current_user_id),
    engine: AutomationEngine = Depends(get_automation_engine),
) -> AutomationEventResponse | JSONResponse:
    try:
        run_ids = engine.handle_event(db, dto.event.strip(), dto.payload, user_id)
    except AutoflowError as exc:
        return domain_error_response(request, exc)
    return AutomationEventResponse(event=dto.event.strip(), runs=run_ids)


@router.get("/{automation_id}", response_model=AutomationRead)
def get_automation(
    request: Request,
    automation_id: str,
    db: Session = Depends(get_db),
    user_id: uuid.UUID = Depends(current_user_id),
) -> AutomationRead | JSONResponse:
    try:
        return AutomationRead.model_validate(automation_service.get_automation(db, user_id, automation_id))
    except AutoflowError as exc:
        return domain_error_response(request, exc)


@router.patch("/{automation_id}", response_model=AutomationRead)
def update_automation(
    request: Request,
    automation_id: str,
    dto: AutomationUpdate,
    db: Session = Depends(get_db),
    user_id: uuid.UUID = Depends(current_user_id),
) -> AutomationRead | JSONResponse:
    try:
        return AutomationRead.model_validate(automation_service.update_automation(db, user_id, automation_id, dto))
    except AutoflowError as exc:
        return domain_error_response(request, exc)


@router.delete("/{automation_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_automation(
    request: Request,
    automation_id: str,
    db: Session = Depends(get_db),
    user_id: uuid.UUID = Depends(current_user_id),
) -> dict[str, object] | JSONResponse:
    try:
        return automation_service.delete_automation(db, user_id, automation_id)
    except AutoflowError as exc:
        return domain_error_response(request, exc)


@router.post("/{automation_id}/toggle", response_model=AutomationRead)
def toggle_automation(
    request: Request,
    automation_id: str,
    db: Session = Depends(get_db),
    user_id: uuid.UUID = Depends(current_user_id),
) -> AutomationRead | JSONResponse:
    try:
        return AutomationRead.model_validate(automation_service.toggle_automation(db, user_id, automation_id))
    except AutoflowError as exc:
        return domain_error_response(request, exc)


@router.post("/{automation_id}/test", response_model=AutomationPreview)
def test_automation(
    request: Request,
    automation_id: str,
    db: Session = Depends(get_db),
    user_id: uuid.UUID = Depends(current_user_id),
) -> AutomationPreview | JSONResponse:
    try:
        return AutomationPreview.model_validate(automation_service.test_automation(db, user_id, automation_id))
    except AutoflowError as exc:
        return domain_error_response(request, exc)


@router.get("/{automation_id}/runs", response_model=AutomationRunPage)
def list_runs(
    request: Request,
    automation_id: str,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    db: Session = Depends(get_db),
    user_id: uuid.UUID = Depends(current_user_id),
) -> AutomationRunPage | JSONResponse:
    try:
        result = automation_service.list_runs(db, user_id, automation_id, page=page, limit=limit)
    except AutoflowError as exc:
        return domain_error_response(request, exc)
    return AutomationRunPage(
        runs=[AutomationRunRead.model_validate(run) for run in result.runs],
        pagination=Pagination(page=result.page, limit=result.limit, total=result.total, pages=result.pages),
    )


def require_cron_secret(request: Request) -> None:
    secret = get_settings().cron_secret
    if not secret:
        return
    supplied = request.headers.get("authorization", "")
    if not hmac.compare_digest(supplied.encode("utf-8"), f"Bearer {secret}".encode("utf-8")):
        raise UnauthorizedError("Unauthorized")


@cron_router.api_route("/run-automations", methods=["GET", "POST"], response_model=ScheduledRunResponse)
def run_automations(
    _: None = Depends(require_cron_secret),
    engine: AutomationEngine = Depends(get_automation_engine),
) -> ScheduledRunResponse:
    processed = engine.run_scheduled_automations()
    return ScheduledRunResponse(success=True, processed=processed, timestamp=utcnow())
