from __future__ import annotations

from typing import Any

from insightgate.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    # Build a consistent error envelope example for OpenAPI docs.
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, example: dict[str, Any]) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": example}},
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    400: _response(
        "Unsupported database engine",
        _error_example(code="UNSUPPORTED_ENGINE", message="Unsupported database engine"),
    ),
    404: _response(
        "No active database",
        _error_example(code="NO_ACTIVE_DATABASE", message="No active database connection found"),
    ),
    422: _response(
        "Rejected query or invalid request",
        _error_example(
            code="UNSAFE_QUERY",
            message="Generated query was rejected because it is not a read-only statement.",
        ),
    ),
    429: _response(
        "Rate limited",
        _error_example(
            code="RATE_LIMITED",
            message="Rate limit exceeded. Try again later.",
            details={"reset_at": 1767225600.0, "remaining": 0},
        ),
    ),
    500: _response(
        "Internal error",
        _error_example(code="INTERNAL_ERROR", message="Internal server error"),
    ),
    502: _response(
        "Tenant database or provider failure",
        _error_example(code="QUERY_EXECUTION_FAILED", message="Query execution failed"),
    ),
    503: _response(
        "Integration unavailable",
        _error_example(code="INTEGRATION_UNAVAILABLE", message="openai circuit open"),
    ),
}
