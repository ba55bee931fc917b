from __future__ import annotations

from insightgate.core.config import get_settings
from insightgate.core.errors import ProviderConfigError
from insightgate.providers.llm.base import CompletionProvider, EmbeddingProvider
from insightgate.providers.llm.fake import FakeCompletionProvider, FakeEmbeddingProvider
from insightgate.providers.llm.gemini_vertex import GeminiVertexProvider, VertexEmbeddingProvider
from insightgate.providers.llm.openai import OpenAICompletionProvider, OpenAIEmbeddingProvider


def get_completion_provider() -> CompletionProvider:
    settings = get_settings()
    provider = (settings.llm_provider or "openai").lower()

    if provider == "fake":
        return FakeCompletionProvider()
    if provider == "openai":
        return OpenAICompletionProvider()
    if provider == "vertex":
        return GeminiVertexProvider()
    raise ProviderConfigError(f"Unknown llm_provider: {provider}")


def get_embedding_provider() -> EmbeddingProvider:
    settings = get_settings()
    provider = (settings.embedding_provider or "fake").lower()

    if provider == "fake":
        return FakeEmbeddingProvider()
    if provider == "openai":
        return OpenAIEmbeddingProvider()
    if provider == "vertex":
        return VertexEmbeddingProvider()
    raise ProviderConfigError(f"Unknown embedding_provider: {provider}")
