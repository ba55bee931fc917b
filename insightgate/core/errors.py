from __future__ import annotations

from typing import Any


class InsightGateError(Exception):
    """Base error for InsightGate."""

    code = "INTERNAL_ERROR"
    # Messages shown to callers; the constructor argument is kept as private detail.
    public_message: str | None = None

    def __init__(self, message: str = "", *, detail: str | None = None) -> None:
        super().__init__(message)
        self.detail = detail

    @property
    def message(self) -> str:
        if self.public_message is not None:
            return self.public_message
        return str(self) or self.code

    def to_details(self) -> dict[str, Any] | None:
        return None


class UnsupportedEngine(InsightGateError):
    """Descriptor does not match any supported database family."""

    code = "UNSUPPORTED_ENGINE"


class ConnectionFailed(InsightGateError):
    """Tenant database could not be reached or authenticated."""

    code = "CONNECTION_FAILED"


class UnsafeQuery(InsightGateError):
    """Generated text is not a pure read statement."""

    code = "UNSAFE_QUERY"
    public_message = "Generated query was rejected because it is not a read-only statement."

    def __init__(
        self,
        message: str = "",
        *,
        detail: str | None = None,
        mutation: bool = False,
    ) -> None:
        super().__init__(message, detail=detail)
        # Mutation keywords are fatal; merely malformed text can still be repaired.
        self.mutation = mutation


class QueryExecutionFailed(InsightGateError):
    """Tenant database rejected or failed a read query."""

    code = "QUERY_EXECUTION_FAILED"


class QueryGenerationFailed(InsightGateError):
    """Draft, repair and fallback attempts were all exhausted."""

    code = "QUERY_GENERATION_FAILED"


class NoActiveDatabase(InsightGateError):
    """Tenant has no registered database."""

    code = "NO_ACTIVE_DATABASE"


class RateLimitExceeded(InsightGateError):
    """Tenant exhausted its analysis allowance."""

    code = "RATE_LIMITED"
    public_message = "Rate limit exceeded. Try again later."

    def __init__(
        self,
        message: str = "",
        *,
        detail: str | None = None,
        reset_at: float | None = None,
        remaining: int = 0,
    ) -> None:
        super().__init__(message, detail=detail)
        self.reset_at = reset_at
        self.remaining = remaining

    def to_details(self) -> dict[str, Any] | None:
        return {"reset_at": self.reset_at, "remaining": self.remaining}


class CacheCorrupt(InsightGateError):
    """Cached payload failed to deserialize; treated as a miss."""

    code = "CACHE_CORRUPT"


class ProviderConfigError(InsightGateError):
    """Missing or invalid provider configuration."""

    code = "PROVIDER_CONFIG_ERROR"


class ProviderError(InsightGateError):
    """Completion or embedding provider request failure."""

    code = "PROVIDER_ERROR"


class IntegrationUnavailableError(ProviderError):
    """Integration is temporarily unavailable (circuit open)."""

    code = "INTEGRATION_UNAVAILABLE"


class SecretConfigurationError(InsightGateError):
    """Connection secret encryption is not configured."""

    code = "SECRET_CONFIGURATION_ERROR"
