from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from autoflow.api.errors import domain_error_response
from autoflow.automation.api import current_user_id
from autoflow.core.auth import AuthUser, get_current_user
from autoflow.core.database import get_db
from autoflow.core.errors import AutoflowError
from autoflow.service_accounts.schemas import (
    ServiceAccountCreate,
    ServiceAccountCreated,
    ServiceAccountRead,
    ServiceAccountUpdate,
    ServiceKeyRotated,
    ServiceKeyRotateRequest,
)
from autoflow.service_accounts.service import CREATED_WARNING, ROTATED_WARNING, service_account_service


router = APIRouter(prefix="/api/service-accounts", tags=["service-accounts"])
auth_router = APIRouter(prefix="/api/auth", tags=["auth"])


@router.get("", response_model=list[ServiceAccountRead])
def list_service_accounts(
    db: Session = Depends(get_db),
    user_id: uuid.UUID = Depends(current_user_id),
) -> list[ServiceAccountRead]:
    return [ServiceAccountRead.model_validate(row) for row in service_account_service.list_accounts(db, user_id)]


@router.post("", response_model=ServiceAccountCreated, status_code=status.HTTP_201_CREATED)
def create_service_account(
    request: Request,
    dto: ServiceAccountCreate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> ServiceAccountCreated | JSONResponse:
    try:
        account, raw_key = service_account_service.create_account(db, user, dto)
    except AutoflowError as exc:
        return domain_error_response(request, exc)
    return ServiceAccountCreated(
        service_account=ServiceAccountRead.model_validate(account),
        api_key=raw_key,
        warning=CREATED_WARNING,
    )


@router.get("/{account_id}", response_model=ServiceAccountRead)
def get_service_account(
    request: Request,
    account_id: str,
    db: Session = Depends(get_db),
    user_id: uuid.UUID = Depends(current_user_id),
) -> ServiceAccountRead | JSONResponse:
    try:
        return ServiceAccountRead.model_validate(service_account_service.get_account(db, user_id, account_id))
    except AutoflowError as exc:
        return domain_error_response(request, exc)


@router.patch("/{account_id}", response_model=ServiceAccountRead)
def update_service_account(
    request: Request,
    account_id: str,
    dto: ServiceAccountUpdate,
    db: Session = Depends(get_db),
    user_id: uuid.UUID = Depends(current_user_id),
) -> ServiceAccountRead | JSONResponse:
    try:
        return ServiceAccountRead.model_validate(service_account_service.update_account(db, user_id, account_id, dto))
    except AutoflowError as exc:
        return domain_error_response(request, exc)


@router.delete("/{account_id}", response_model=ServiceAccountRead)
def deactivate_service_account(
    request: Request,
    account_id: str,
    db: Session = Depends(get_db),
    user_id: uuid.UUID = Depends(current_user_id),
) -> ServiceAccountRead | JSONResponse:
    try:
        return ServiceAccountRead.model_validate(service_account_service.deactivate_account(db, user_id, account_id))
    except AutoflowError as exc:
        return domain_error_response(request, exc)


@auth_router.post("/service-key", response_model=ServiceKeyRotated)
def rotate_service_key(
    request: Request,
    dto: ServiceKeyRotateRequest,
    db: Session = Depends(get_db),
    user_id: uuid.UUID = Depends(current_user_id),
) -> ServiceKeyRotated | JSONResponse:
    try:
        account, raw_key = service_account_service.regenerate_credential(db, user_id, dto.service_account_id)
    except AutoflowError as exc:
        return domain_error_response(request, exc)
    return ServiceKeyRotated(service_account_id=account.id, api_key=raw_key, warning=ROTATED_WARNING)
