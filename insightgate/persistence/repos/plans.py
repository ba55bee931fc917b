from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from insightgate.domain.models import Plan, TenantPlanAssignment


async def get_active_plan_assignment(
    session: AsyncSession,
    tenant_id: str,
    *,
    now: datetime | None = None,
) -> TenantPlanAssignment | None:
    # Select the active plan assignment for the tenant if present.
    now = now or datetime.now(timezone.utc)
    result = await session.execute(
        select(TenantPlanAssignment)
        .where(
            TenantPlanAssignment.tenant_id == tenant_id,
            TenantPlanAssignment.is_active.is_(True),
            TenantPlanAssignment.effective_from <= now,
            or_(TenantPlanAssignment.effective_to.is_(None), TenantPlanAssignment.effective_to > now),
        )
        .order_by(TenantPlanAssignment.effective_from.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_plan(session: AsyncSession, plan_id: str) -> Plan | None:
    result = await session.execute(select(Plan).where(Plan.id == plan_id))
    return result.scalar_one_or_none()
