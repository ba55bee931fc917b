"""init

Revision ID: 0001_init
Revises: 
Create Date: 2026-10-19 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "tenant_databases",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("engine", sa.String(length=32), nullable=False),
        sa.Column("database_name", sa.String(), nullable=False),
        # Fernet token only; plaintext connection strings never reach this table.
        sa.Column("encrypted_secret", sa.Text(), nullable=False),
        sa.Column("schema_cache", postgresql.JSONB(), nullable=True),
        sa.Column("last_schema_update", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("disconnected_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_tenant_databases_tenant_id", "tenant_databases", ["tenant_id"])
    op.create_index("ix_tenant_databases_tenant_active", "tenant_databases", ["tenant_id", "is_active"])

    op.create_table(
        "plans",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "tenant_plan_assignments",
        sa.Column("tenant_id", sa.String(), primary_key=True),
        sa.Column("effective_from", sa.DateTime(timezone=True), primary_key=True),
        sa.Column("plan_id", sa.String(), sa.ForeignKey("plans.id"), nullable=False),
        sa.Column("effective_to", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    # Enforce a single active plan per tenant.
    op.create_index(
        "uq_tenant_plan_assignments_active",
        "tenant_plan_assignments",
        ["tenant_id"],
        unique=True,
        postgresql_where=sa.text("is_active"),
    )

    # Seed the plan catalog that maps onto rate-limit tiers.
    plans = sa.table(
        "plans",
        sa.column("id", sa.String()),
        sa.column("name", sa.String()),
        sa.column("is_active", sa.Boolean()),
    )
    op.bulk_insert(
        plans,
        [
            {"id": "free", "name": "Free", "is_active": True},
            {"id": "pro", "name": "Pro", "is_active": True},
            {"id": "business", "name": "Business", "is_active": True},
        ],
    )


def downgrade() -> None:
    op.drop_index("uq_tenant_plan_assignments_active", table_name="tenant_plan_assignments")
    op.drop_table("tenant_plan_assignments")
    op.drop_table("plans")
    op.drop_index("ix_tenant_databases_tenant_active", table_name="tenant_databases")
    op.drop_index("ix_tenant_databases_tenant_id", table_name="tenant_databases")
    op.drop_table("tenant_databases")
