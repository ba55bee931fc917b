from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel

from insightgate.apps.api.deps import get_analysis_service
from insightgate.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from insightgate.apps.api.response import SuccessEnvelope, success_response
from insightgate.services.analysis import AnalysisService

# Operator surface; the upstream identity layer restricts who can reach /admin.
router = APIRouter(prefix="/admin", tags=["admin"], responses=DEFAULT_ERROR_RESPONSES)


class CacheInvalidationResponse(BaseModel):
    scope: str
    removed: dict[str, int]


class CacheStatsResponse(BaseModel):
    tenant_id: str | None = None
    caches: dict[str, dict[str, int]]


class CacheCleanupResponse(BaseModel):
    removed: dict[str, int]


class RateLimitStatusResponse(BaseModel):
    tenant_id: str
    allowed: bool
    remaining: int
    reset_at: float | None = None
    degraded: bool = False
    limit: int | None = None
    tier: str | None = None


class RateLimitResetResponse(BaseModel):
    tenant_id: str
    reset: bool


@router.delete("/cache", response_model=SuccessEnvelope[CacheInvalidationResponse])
async def invalidate_cache(
    request: Request,
    tenant_id: str | None = Query(default=None),
    database_id: str | None = Query(default=None),
    service: AnalysisService = Depends(get_analysis_service),
) -> dict:
    # No tenant clears every cache; a database id narrows a tenant-wide flush.
    if tenant_id is None:
        removed = service.invalidate_all_caches()
        scope = "all"
    else:
        removed = service.invalidate_cache(tenant_id, database_id)
        scope = "database" if database_id else "tenant"
    return success_response(request=request, data=CacheInvalidationResponse(scope=scope, removed=removed))


@router.get("/cache/stats", response_model=SuccessEnvelope[CacheStatsResponse])
async def cache_stats(
    request: Request,
    tenant_id: str | None = Query(default=None),
    service: AnalysisService = Depends(get_analysis_service),
) -> dict:
    payload = CacheStatsResponse(tenant_id=tenant_id, caches=service.cache_stats(tenant_id))
    return success_response(request=request, data=payload)


@router.post("/cache/cleanup", response_model=SuccessEnvelope[CacheCleanupResponse])
async def cache_cleanup(
    request: Request,
    service: AnalysisService = Depends(get_analysis_service),
) -> dict:
    return success_response(request=request, data=CacheCleanupResponse(removed=service.cleanup_caches()))


@router.get("/rate-limit/{tenant_id}", response_model=SuccessEnvelope[RateLimitStatusResponse])
async def rate_limit_status(
    tenant_id: str,
    request: Request,
    service: AnalysisService = Depends(get_analysis_service),
) -> dict:
    decision = await service.rate_limit_status(tenant_id)
    payload = RateLimitStatusResponse(tenant_id=tenant_id, **decision.to_dict())
    return success_response(request=request, data=payload)


@router.delete("/rate-limit/{tenant_id}", response_model=SuccessEnvelope[RateLimitResetResponse])
async def reset_rate_limit(
    tenant_id: str,
    request: Request,
    service: AnalysisService = Depends(get_analysis_service),
) -> dict:
    await service.reset_rate_limit(tenant_id)
    return success_response(request=request, data=RateLimitResetResponse(tenant_id=tenant_id, reset=True))
