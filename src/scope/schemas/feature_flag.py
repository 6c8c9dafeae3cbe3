"""Pydantic schemas for feature flag endpoints."""

from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class FeatureFlagCreate(BaseModel):
    key: str = Field(..., min_length=1, max_length=100, pattern=r"^[a-z0-9][a-z0-9_.-]*$")
    description: str | None = Field(None, max_length=2000)
    enabled: bool = False


class FeatureFlagUpdate(BaseModel):
    description: str | None = Field(None, max_length=2000)
    enabled: bool | None = None

    @field_validator("enabled")
    @classmethod
    def reject_null(cls, value: bool | None) -> bool:
        if value is None:
            raise ValueError("enabled cannot be null")
        return value


class FeatureFlagResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    id: uuid.UUID
    tenant_id: uuid.UUID
    key: str
    description: str | None = None
    enabled: bool
    created_at: datetime | None = None
    updated_at: datetime | None = None
