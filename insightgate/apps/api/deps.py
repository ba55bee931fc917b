from __future__ import annotations

from fastapi import Header, HTTPException, Request, status

from insightgate.core.config import Settings, get_settings
from insightgate.services.analysis import AnalysisService


def require_tenant(x_tenant_id: str | None = Header(default=None, alias="X-Tenant-Id")) -> str:
    # Tenant identity is asserted by the upstream identity layer.
    tenant_id = (x_tenant_id or "").strip()
    if not tenant_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "TENANT_REQUIRED", "message": "X-Tenant-Id header is required"},
        )
    return tenant_id


def build_analysis_service(settings: Settings | None = None) -> AnalysisService:
    """Wire the production service graph from settings."""
    # Imported here so apps with an injected service never touch the control-plane engine.
    from insightgate.persistence.db import SessionLocal
    from insightgate.providers.llm.factory import get_completion_provider, get_embedding_provider
    from insightgate.services.cache.manager import CacheService
    from insightgate.services.gateway import DatabaseGateway
    from insightgate.services.plans import SqlPlanLookup
    from insightgate.services.rate_limit import RateLimiter, build_rate_limit_store
    from insightgate.services.registry import SqlConnectionRegistry
    from insightgate.services.security.secrets import ConnectionSecretBox

    settings = settings or get_settings()
    secret_box = ConnectionSecretBox()
    return AnalysisService(
        registry=SqlConnectionRegistry(SessionLocal, secret_box=secret_box),
        gateway=DatabaseGateway(settings=settings, secret_box=secret_box),
        cache=CacheService(settings),
        rate_limiter=RateLimiter(
            SqlPlanLookup(SessionLocal),
            store=build_rate_limit_store(settings),
            settings=settings,
        ),
        completion=get_completion_provider(),
        embeddings=get_embedding_provider(),
        settings=settings,
    )


def get_analysis_service(request: Request) -> AnalysisService:
    # One service per app; built on first use when none was injected.
    service = getattr(request.app.state, "analysis_service", None)
    if service is None:
        service = build_analysis_service()
        request.app.state.analysis_service = service
    return service
