"""Response envelope shared by all JSON endpoints."""

from __future__ import annotations

from typing import Any, Generic, TypeVar

from pydantic import BaseModel

T = TypeVar("T")


class SuccessResponse(BaseModel, Generic[T]):
    """``{"success": true, "data": ..., "meta"?: ...}``"""

    success: bool = True
    data: T
    meta: dict[str, Any] | None = None


class PageMeta(BaseModel):
    page: int
    limit: int
    total: int
    totalPages: int
