from __future__ import annotations

import asyncio
import logging
import time

from insightgate.core.config import get_settings
from insightgate.core.errors import ProviderConfigError, ProviderError
from insightgate.services.telemetry import record_external_call

logger = logging.getLogger(__name__)


def _validate_config() -> tuple[str, str]:
    # Fail fast to avoid confusing downstream SDK errors.
    settings = get_settings()
    missing = []
    if not settings.google_cloud_project:
        missing.append("GOOGLE_CLOUD_PROJECT")
    if not settings.google_cloud_location:
        missing.append("GOOGLE_CLOUD_LOCATION")
    if missing:
        raise ProviderConfigError(f"Vertex config missing: set {', '.join(missing)} in .env.")
    return settings.google_cloud_project, settings.google_cloud_location


class GeminiVertexProvider:
    def __init__(self, model_name: str | None = None) -> None:
        self._settings = get_settings()
        self._model_name = model_name or self._settings.gemini_model

    def _complete_sync(self, prompt: str) -> str:
        project, location = _validate_config()
        try:
            from vertexai import init
            from vertexai.generative_models import GenerativeModel
        except Exception as exc:  # pragma: no cover - import errors are environment-specific
            raise ProviderConfigError("Vertex AI SDK not available. Install google-cloud-aiplatform.") from exc

        init(project=project, location=location)
        response = GenerativeModel(self._model_name).generate_content(prompt)
        return (getattr(response, "text", None) or "").strip()

    async def complete(self, prompt: str) -> str:
        timeout_s = max(1.0, self._settings.ext_call_timeout_ms / 1000.0)
        start = time.monotonic()
        try:
            text = await asyncio.wait_for(asyncio.to_thread(self._complete_sync, prompt), timeout=timeout_s)
        except ProviderConfigError:
            raise
        except asyncio.TimeoutError:
            logger.warning("vertex_complete_timeout model=%s", self._model_name)
            record_external_call(integration="llm.vertex", latency_ms=(time.monotonic() - start) * 1000.0, success=False)
            raise
        except Exception as exc:
            logger.error("vertex_complete_error model=%s error=%s", self._model_name, type(exc).__name__)
            record_external_call(integration="llm.vertex", latency_ms=(time.monotonic() - start) * 1000.0, success=False)
            raise ProviderError("Vertex AI request failed. Check credentials and model access.") from exc
        record_external_call(integration="llm.vertex", latency_ms=(time.monotonic() - start) * 1000.0, success=True)
        return text


class VertexEmbeddingProvider:
    def __init__(self, model_name: str | None = None) -> None:
        self._settings = get_settings()
        self._model_name = model_name or self._settings.vertex_embedding_model

    def _embed_sync(self, texts: list[str]) -> list[list[float]]:
        project, location = _validate_config()
        try:
            from vertexai import init
            from vertexai.language_models import TextEmbeddingModel
        except Exception as exc:  # pragma: no cover - import errors are environment-specific
            raise ProviderConfigError("Vertex AI SDK not available. Install google-cloud-aiplatform.") from exc

        init(project=project, location=location)
        model = TextEmbeddingModel.from_pretrained(self._model_name)
        return [list(item.values) for item in model.get_embeddings(texts)]

    async def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        timeout_s = max(1.0, self._settings.ext_call_timeout_ms / 1000.0)
        try:
            return await asyncio.wait_for(asyncio.to_thread(self._embed_sync, texts), timeout=timeout_s)
        except ProviderConfigError:
            raise
        except Exception as exc:
            logger.error("vertex_embed_error model=%s error=%s", self._model_name, type(exc).__name__)
            raise ProviderError("Vertex AI embedding request failed.") from exc
