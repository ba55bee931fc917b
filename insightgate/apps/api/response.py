from __future__ import annotations

from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel, Field, SerializerFunctionWrapHandler, model_serializer

from insightgate.core.errors import InsightGateError


API_VERSION = "v1"
TENANT_HEADER = "X-Tenant-Id"

T = TypeVar("T")


class ResponseMeta(BaseModel):
    request_id: str
    api_version: str = Field(default=API_VERSION)
    # Echoed so operators can correlate envelopes with tenant-scoped logs.
    tenant_id: str | None = None

    @model_serializer(mode="wrap")
    def _omit_missing_tenant(self, handler: SerializerFunctionWrapHandler):
        # Response models re-serialize meta, so an absent tenant is dropped in the model itself.
        data = handler(self)
        if data.get("tenant_id") is None:
            data.pop("tenant_id", None)
        return data


class ErrorDetail(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class SuccessEnvelope(BaseModel, Generic[T]):
    data: T
    meta: ResponseMeta


class ErrorEnvelope(BaseModel):
    error: ErrorDetail
    meta: ResponseMeta


def get_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    request_id = request.headers.get("X-Request-Id") or str(uuid4())
    request.state.request_id = request_id
    return request_id


def _meta(request: Request) -> dict[str, Any]:
    tenant_id = (request.headers.get(TENANT_HEADER) or "").strip() or None
    meta = ResponseMeta(request_id=get_request_id(request), tenant_id=tenant_id)
    return meta.model_dump()


def success_response(*, request: Request, data: Any) -> dict[str, Any]:
    if isinstance(data, BaseModel):
        data = data.model_dump()
    return {"data": data, "meta": _meta(request)}


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error = ErrorDetail(code=code, message=message, details=details)
    return {"error": error.model_dump(exclude_none=True), "meta": _meta(request)}


def domain_error_response(*, request: Request, exc: InsightGateError) -> dict[str, Any]:
    # Only the public message and structured details leave the process; `detail` stays in logs.
    return error_response(request=request, code=exc.code, message=exc.message, details=exc.to_details())
