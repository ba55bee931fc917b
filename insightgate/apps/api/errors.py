from __future__ import annotations

import logging
import math
import time
from typing import Any

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from insightgate.apps.api.response import domain_error_response, error_response
from insightgate.core.errors import InsightGateError, RateLimitExceeded


logger = logging.getLogger(__name__)

# Codes for framework-raised errors that carry no code of their own.
_HTTP_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

# Stable HTTP status per domain error code.
ERROR_STATUS: dict[str, int] = {
    "UNSUPPORTED_ENGINE": 400,
    "NO_ACTIVE_DATABASE": 404,
    "UNSAFE_QUERY": 422,
    "RATE_LIMITED": 429,
    "CONNECTION_FAILED": 502,
    "QUERY_EXECUTION_FAILED": 502,
    "QUERY_GENERATION_FAILED": 502,
    "PROVIDER_ERROR": 502,
    "PROVIDER_CONFIG_ERROR": 503,
    "INTEGRATION_UNAVAILABLE": 503,
    "SECRET_CONFIGURATION_ERROR": 500,
    "CACHE_CORRUPT": 500,
}


def status_for(exc: InsightGateError) -> int:
    return ERROR_STATUS.get(exc.code, 500)


def _retry_after(exc: RateLimitExceeded) -> dict[str, str] | None:
    if exc.reset_at is None:
        return None
    return {"Retry-After": str(max(0, int(math.ceil(exc.reset_at - time.time()))))}


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Dependencies raise HTTPException(detail={"code": ..., "message": ...}); plain strings come from Starlette.
    fallback_code = _HTTP_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")
    if isinstance(detail, dict):
        code = str(detail.get("code") or fallback_code)
        message = str(detail.get("message") or "Request failed")
        extra = {key: value for key, value in detail.items() if key not in {"code", "message"}}
        return code, message, extra or None
    if isinstance(detail, str):
        return fallback_code, detail, None
    return fallback_code, "Request failed", None


async def insightgate_exception_handler(request: Request, exc: InsightGateError) -> JSONResponse:
    status_code = status_for(exc)
    logger.info(
        "request_failed path=%s status=%d code=%s detail=%s",
        request.url.path,
        status_code,
        exc.code,
        exc.detail,
    )
    headers = _retry_after(exc) if isinstance(exc, RateLimitExceeded) else None
    payload = domain_error_response(request=request, exc=exc)
    return JSONResponse(content=payload, status_code=status_code, headers=headers)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    # FastAPI's HTTPException subclasses Starlette's, so one handler covers routing 404/405 and dependencies.
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=getattr(exc, "headers", None))


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Drop echoed inputs: a rejected question may contain tenant data.
    errors = [{"loc": list(item.get("loc", ())), "msg": item.get("msg"), "type": item.get("type")} for item in exc.errors()]
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": errors},
    )
    return JSONResponse(content=payload, status_code=422)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_error path=%s", request.url.path, exc_info=exc)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)
