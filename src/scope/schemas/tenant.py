"""Pydantic schemas for tenant API endpoints."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic.alias_generators import to_camel

from src.scope.models.tenant import TenantRole, TenantType

_CAMEL = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str) and not value.strip():
        return None
    return value


class TenantCreate(BaseModel):
    """Request schema for creating a new tenant."""

    model_config = _CAMEL

    name: str = Field(..., min_length=1, max_length=200, examples=["Northfield Academy"])
    type: TenantType = TenantType.SCHOOL
    description: str | None = Field(None, max_length=2000)
    website: str | None = Field(None, max_length=500)
    logo_url: str | None = Field(None, max_length=500)
    contact_email: EmailStr | None = None
    contact_phone: str | None = Field(None, max_length=50)

    @field_validator("website", "logo_url", "contact_email", "contact_phone", mode="before")
    @classmethod
    def empty_as_none(cls, value: Any) -> Any:
        return _blank_to_none(value)


class TenantUpdate(BaseModel):
    """Partial update. Only fields present in the request are changed."""

    model_config = _CAMEL

    name: str | None = Field(None, min_length=1, max_length=200)
    type: TenantType | None = None
    description: str | None = Field(None, max_length=2000)
    website: str | None = Field(None, max_length=500)
    logo_url: str | None = Field(None, max_length=500)
    contact_email: EmailStr | None = None
    contact_phone: str | None = Field(None, max_length=50)

    @field_validator("website", "logo_url", "contact_email", "contact_phone", mode="before")
    @classmethod
    def empty_as_none(cls, value: Any) -> Any:
        return _blank_to_none(value)

    @field_validator("name", "type")
    @classmethod
    def reject_null(cls, value: Any) -> Any:
        if value is None:
            raise ValueError("field cannot be null")
        return value


class TenantResponse(BaseModel):
    """Response schema for tenant data."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    id: uuid.UUID
    name: str
    type: TenantType
    description: str | None = None
    website: str | None = None
    logo_url: str | None = None
    contact_email: str | None = None
    contact_phone: str | None = None
    created_by: uuid.UUID | None = None
    updated_by: uuid.UUID | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class TenantListParams(BaseModel):
    """Query parameters for the tenant listing."""

    page: int = Field(1, ge=1)
    limit: int = Field(10, ge=1, le=100)
    sortBy: Literal["name", "type", "createdAt", "updatedAt"] = "createdAt"
    sortOrder: Literal["asc", "desc"] = "desc"


class MemberCreate(BaseModel):
    model_config = _CAMEL

    user_id: uuid.UUID
    role: TenantRole = TenantRole.STUDENT


class MembershipResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    id: uuid.UUID
    user_id: uuid.UUID
    tenant_id: uuid.UUID
    role: TenantRole
    is_active: bool
