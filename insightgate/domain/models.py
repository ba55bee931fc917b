from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# JSONB on Postgres, plain JSON elsewhere (SQLite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


class TenantDatabase(Base):
    __tablename__ = "tenant_databases"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: uuid4().hex)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    name: Mapped[str] = mapped_column(String)
    engine: Mapped[str] = mapped_column(String(32))
    database_name: Mapped[str] = mapped_column(String)
    # Fernet token of the tenant's connection string; plaintext is never stored.
    encrypted_secret: Mapped[str] = mapped_column(Text)
    schema_cache: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    last_schema_update: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    # Soft delete: rows are deactivated, never removed.
    disconnected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (Index("ix_tenant_databases_tenant_active", "tenant_id", "is_active"),)


class Plan(Base):
    __tablename__ = "plans"

    # Plan catalog; the id selects the rate-limit tier.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class TenantPlanAssignment(Base):
    __tablename__ = "tenant_plan_assignments"

    # Track tenant plan history while enforcing a single active assignment.
    tenant_id: Mapped[str] = mapped_column(String, primary_key=True)
    effective_from: Mapped[datetime] = mapped_column(DateTime(timezone=True), primary_key=True)
    plan_id: Mapped[str] = mapped_column(String, ForeignKey("plans.id"), nullable=False)
    effective_to: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
