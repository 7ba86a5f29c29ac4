from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# JSONB on Postgres, plain JSON elsewhere (sqlite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


class StackCredential(Base):
    __tablename__ = "stack_credentials"
    __table_args__ = (
        Index("ix_stack_credentials_active_expires", "is_active", "expires_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    # One row per stack; upserts keep historical state on the same row.
    stack_api_key: Mapped[str] = mapped_column(String, unique=True, index=True)
    access_token: Mapped[str] = mapped_column(Text)
    refresh_token: Mapped[str] = mapped_column(Text)
    token_type: Mapped[str] = mapped_column(String, default="Bearer")
    organization_uid: Mapped[str | None] = mapped_column(String, nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Drives the retention purge of long-inactive credentials.
    deactivated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Set when the token endpoint rejected the refresh token; only a new handshake clears it.
    refresh_rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class SearchLog(Base):
    __tablename__ = "search_logs"
    __table_args__ = (
        Index("ix_search_logs_stack_created", "stack_api_key", "created_at"),
        Index("ix_search_logs_success_created", "success", "created_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    stack_api_key: Mapped[str] = mapped_column(String)
    query: Mapped[str] = mapped_column(String(500))
    search_type: Mapped[str] = mapped_column(String, default="semantic")
    results_count: Mapped[int] = mapped_column(Integer, default=0)
    latency_ms: Mapped[float] = mapped_column(Float, default=0.0)
    success: Mapped[bool] = mapped_column(Boolean)
    error_message: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    environment: Mapped[str | None] = mapped_column(String, nullable=True)
    filters_json: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    user_agent: Mapped[str | None] = mapped_column(String(500), nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)


class FieldPatternOverride(Base):
    __tablename__ = "field_pattern_overrides"
    __table_args__ = (
        UniqueConstraint(
            "stack_api_key", "content_type", "category", "pattern", name="uq_field_pattern_overrides_key"
        ),
        Index("ix_field_pattern_overrides_stack", "stack_api_key"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    stack_api_key: Mapped[str] = mapped_column(String)
    content_type: Mapped[str] = mapped_column(String(100))
    # One of title, description or metadata.
    category: Mapped[str] = mapped_column(String(32))
    pattern: Mapped[str] = mapped_column(String(100))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
