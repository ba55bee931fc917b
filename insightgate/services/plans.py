from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from insightgate.persistence.repos import plans as plans_repo


@dataclass(frozen=True)
class PlanInfo:
    plan_id: str
    name: str | None = None


class PlanLookup(Protocol):
    async def get_active_plan(self, tenant_id: str) -> PlanInfo | None:
        ...


class StaticPlanLookup:
    """Fixed tenant -> plan mapping for tests and single-tenant deployments."""

    def __init__(self, plans: dict[str, str] | None = None, *, default_plan: str | None = None) -> None:
        self._plans = dict(plans or {})
        self._default_plan = default_plan
        self.calls = 0

    async def get_active_plan(self, tenant_id: str) -> PlanInfo | None:
        self.calls += 1
        plan_id = self._plans.get(tenant_id, self._default_plan)
        return PlanInfo(plan_id=plan_id) if plan_id else None


class SqlPlanLookup:
    def __init__(self, session_factory: Callable[[], AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_active_plan(self, tenant_id: str) -> PlanInfo | None:
        async with self._session_factory() as session:
            assignment = await plans_repo.get_active_plan_assignment(session, tenant_id)
            if assignment is None:
                return None
            plan = await plans_repo.get_plan(session, assignment.plan_id)
            if plan is not None and not plan.is_active:
                return None
            return PlanInfo(plan_id=assignment.plan_id, name=plan.name if plan is not None else None)
