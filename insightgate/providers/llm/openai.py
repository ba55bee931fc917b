from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from insightgate.core.config import get_settings
from insightgate.core.errors import ProviderConfigError, ProviderError
from insightgate.services.resilience import CircuitBreaker
from insightgate.services.telemetry import record_external_call


logger = logging.getLogger(__name__)


class _OpenAIClient:
    """Shared HTTP plumbing: one client, one breaker, telemetry per call."""

    integration = "llm.openai"

    def __init__(self, client: httpx.AsyncClient | None = None, breaker: CircuitBreaker | None = None) -> None:
        self._settings = get_settings()
        self._client = client
        self._breaker = breaker

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client per provider for connection pooling.
        timeout_s = self._settings.ext_call_timeout_ms / 1000.0
        self._client = httpx.AsyncClient(timeout=timeout_s)
        return self._client

    def _get_breaker(self) -> CircuitBreaker:
        if self._breaker is None:
            self._breaker = CircuitBreaker(self.integration)
        return self._breaker

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        api_key = self._settings.openai_api_key
        if not api_key:
            raise ProviderConfigError("OPENAI_API_KEY is required for the openai provider")

        url = self._settings.openai_base_url.rstrip("/") + path
        headers = {"Authorization": f"Bearer {api_key}"}
        breaker = self._get_breaker()
        await breaker.before_call()
        start = time.monotonic()
        try:
            response = await self._get_client().post(url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            await breaker.record_failure()
            record_external_call(
                integration=self.integration,
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            logger.warning("openai_request_failed path=%s error=%s", path, type(exc).__name__)
            raise ProviderError("OpenAI request failed.") from exc

        if response.status_code in {401, 403}:
            raise ProviderConfigError("OpenAI auth error: check OPENAI_API_KEY.")
        if response.status_code >= 500:
            await breaker.record_failure()
        if response.status_code >= 400:
            record_external_call(
                integration=self.integration,
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            raise ProviderError(f"OpenAI error: {response.status_code}")

        await breaker.record_success()
        record_external_call(
            integration=self.integration,
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=True,
        )
        try:
            return response.json()
        except ValueError as exc:
            raise ProviderError("OpenAI returned a non-JSON body.") from exc


class OpenAICompletionProvider(_OpenAIClient):
    async def complete(self, prompt: str) -> str:
        payload = {
            "model": self._settings.openai_query_model,
            "temperature": self._settings.openai_temperature,
            "messages": [{"role": "user", "content": prompt}],
        }
        body = await self._post("/chat/completions", payload)
        try:
            content = body["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise ProviderError("OpenAI completion response is malformed.") from exc
        return (content or "").strip()


class OpenAIEmbeddingProvider(_OpenAIClient):
    async def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        payload = {"model": self._settings.openai_embedding_model, "input": texts}
        body = await self._post("/embeddings", payload)
        try:
            items = sorted(body["data"], key=lambda item: item["index"])
            return [list(item["embedding"]) for item in items]
        except (KeyError, TypeError) as exc:
            raise ProviderError("OpenAI embedding response is malformed.") from exc
