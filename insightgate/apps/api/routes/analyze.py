from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from insightgate.apps.api.deps import get_analysis_service, require_tenant
from insightgate.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from insightgate.apps.api.response import SuccessEnvelope, success_response
from insightgate.services.analysis import AnalysisService

router = APIRouter(tags=["analysis"], responses=DEFAULT_ERROR_RESPONSES)


class AnalyzeRequest(BaseModel):
    question: str = Field(min_length=1, max_length=4000)
    database_id: str | None = None
    conversation_context: str | None = Field(default=None, max_length=8000)
    # None defers to the analysis_insights_enabled setting.
    include_insights: bool | None = None


class InsightsPayload(BaseModel):
    insights: str
    recommendations: list[str] = Field(default_factory=list)
    confidence: int | None = None


class AnalyzeResponse(BaseModel):
    query_text: str
    rows: list[dict[str, Any]]
    row_count: int
    cached: bool
    engine: str
    database_id: str | None = None
    relaxed: bool = False
    fallback: bool = False
    reason: str | None = None
    insights: InsightsPayload | None = None


@router.post("/analyze", response_model=SuccessEnvelope[AnalyzeResponse])
async def analyze(
    payload: AnalyzeRequest,
    request: Request,
    tenant_id: str = Depends(require_tenant),
    service: AnalysisService = Depends(get_analysis_service),
) -> dict:
    # Domain errors propagate to the InsightGateError handler for a stable envelope.
    result = await service.analyze(
        tenant_id,
        payload.question,
        database_id=payload.database_id,
        conversation_context=payload.conversation_context,
        include_insights=payload.include_insights,
    )
    return success_response(request=request, data=AnalyzeResponse.model_validate(result.to_dict()))
