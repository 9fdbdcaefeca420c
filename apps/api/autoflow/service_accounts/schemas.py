from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _clean_permissions(values: list[str] | None) -> list[str] | None:
    if values is None:
        return None
    cleaned: list[str] = []
    for value in values:
        item = value.strip()
        if not item:
            raise ValueError("permissions must not contain empty entries")
        if item not in cleaned:
            cleaned.append(item)
    return cleaned


class ServiceAccountCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(min_length=1, max_length=255)
    description: str | None = Field(default=None, max_length=1024)
    user_id: UUID | None = Field(default=None, alias="userId")
    global_account: bool = Field(default=False, alias="global")
    permissions: list[str] = Field(default_factory=list)
    rate_limit: int | None = Field(default=None, ge=1, alias="rateLimit")
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("permissions")
    @classmethod
    def validate_permissions(cls, value: list[str]) -> list[str]:
        return _clean_permissions(value) or []


class ServiceAccountUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = Field(default=None, max_length=1024)
    permissions: list[str] | None = None
    active: bool | None = None
    rate_limit: int | None = Field(default=None, ge=1, alias="rateLimit")
    metadata: dict[str, Any] | None = None

    @field_validator("permissions")
    @classmethod
    def validate_permissions(cls, value: list[str] | None) -> list[str] | None:
        return _clean_permissions(value)


class ServiceAccountRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: UUID
    name: str
    description: str | None
    owner_user_id: UUID
    user_id: UUID | None
    key_prefix: str
    permissions: list[str]
    active: bool
    rate_limit: int | None
    rate_limit_used: int
    rate_limit_reset: datetime | None
    usage_count: int
    last_used_at: datetime | None
    metadata: dict[str, Any] = Field(validation_alias="account_metadata")
    created_at: datetime
    updated_at: datetime


class ServiceAccountCreated(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    service_account: ServiceAccountRead = Field(alias="serviceAccount")
    api_key: str = Field(alias="apiKey")
    warning: str


class ServiceKeyRotateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    service_account_id: UUID = Field(alias="serviceAccountId")


class ServiceKeyRotated(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    service_account_id: UUID = Field(alias="serviceAccountId")
    api_key: str = Field(alias="apiKey")
    warning: str
