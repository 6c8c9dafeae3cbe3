"""Revoked JWT records.

A row for a token value means the token is no longer valid regardless of
its embedded expiry. Rows are only needed until that expiry passes, after
which the daily purge removes them.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import DateTime, Index, String, Text, func, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.scope.core.database import Base


class BlacklistedToken(Base):
    __tablename__ = "blacklisted_tokens"
    __table_args__ = (
        Index("ix_blacklisted_tokens_token", "token", unique=True),
        Index("ix_blacklisted_tokens_user_id", "user_id"),
        Index("ix_blacklisted_tokens_expires_at", "expires_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    token: Mapped[str] = mapped_column(Text, nullable=False)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    reason: Mapped[str | None] = mapped_column(String(50), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
