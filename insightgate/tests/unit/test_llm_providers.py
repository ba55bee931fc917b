from __future__ import annotations

import json

import httpx
import pytest

from insightgate.core.config import get_settings
from insightgate.core.errors import IntegrationUnavailableError, ProviderConfigError, ProviderError
from insightgate.providers.llm.factory import get_completion_provider, get_embedding_provider
from insightgate.providers.llm.fake import FakeCompletionProvider, FakeEmbeddingProvider, embed_text
from insightgate.providers.llm.gemini_vertex import GeminiVertexProvider
from insightgate.providers.llm.openai import OpenAICompletionProvider, OpenAIEmbeddingProvider
from insightgate.services.resilience import CircuitBreaker, CircuitBreakerConfig
from insightgate.services.telemetry import external_latency_by_integration


@pytest.fixture
def openai_env(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.setenv("OPENAI_BASE_URL", "https://llm.example.test/v1")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_openai_completion_posts_chat_request(openai_env) -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"choices": [{"message": {"content": "  SELECT 1  "}}]})

    provider = OpenAICompletionProvider(client=_client(handler))
    assert await provider.complete("question") == "SELECT 1"

    request = seen[0]
    assert str(request.url) == "https://llm.example.test/v1/chat/completions"
    assert request.headers["Authorization"] == "Bearer sk-test"
    body = json.loads(request.content)
    assert body["messages"] == [{"role": "user", "content": "question"}]
    assert body["temperature"] == 0.0
    assert external_latency_by_integration(60)["llm.openai"]["failures"] == 0


@pytest.mark.asyncio
async def test_openai_embeddings_are_ordered_by_index(openai_env) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={"data": [{"index": 1, "embedding": [0.0, 1.0]}, {"index": 0, "embedding": [1.0, 0.0]}]},
        )

    provider = OpenAIEmbeddingProvider(client=_client(handler))
    assert await provider.embed(["a", "b"]) == [[1.0, 0.0], [0.0, 1.0]]
    assert await provider.embed([]) == []


@pytest.mark.asyncio
async def test_openai_missing_key_is_a_config_error(monkeypatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    get_settings.cache_clear()
    provider = OpenAICompletionProvider(client=_client(lambda request: httpx.Response(200)))

    with pytest.raises(ProviderConfigError):
        await provider.complete("question")


@pytest.mark.asyncio
async def test_openai_auth_and_server_errors(openai_env) -> None:
    statuses = iter([401, 503, 200])

    def handler(request: httpx.Request) -> httpx.Response:
        status = next(statuses)
        if status == 200:
            return httpx.Response(200, json={"choices": []})
        return httpx.Response(status, json={"error": "nope"})

    provider = OpenAICompletionProvider(client=_client(handler))
    with pytest.raises(ProviderConfigError):
        await provider.complete("q")
    with pytest.raises(ProviderError, match="503"):
        await provider.complete("q")
    with pytest.raises(ProviderError, match="malformed"):
        await provider.complete("q")


@pytest.mark.asyncio
async def test_openai_breaker_short_circuits_after_failures(openai_env) -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        raise httpx.ConnectError("refused", request=request)

    breaker = CircuitBreaker(
        "llm.openai",
        config=CircuitBreakerConfig(failure_threshold=2, open_seconds=60, half_open_trials=1),
    )
    provider = OpenAICompletionProvider(client=_client(handler), breaker=breaker)
    for _ in range(2):
        with pytest.raises(ProviderError):
            await provider.complete("q")

    with pytest.raises(IntegrationUnavailableError):
        await provider.complete("q")
    assert calls == 2


@pytest.mark.asyncio
async def test_vertex_requires_project_and_location(monkeypatch) -> None:
    monkeypatch.delenv("GOOGLE_CLOUD_PROJECT", raising=False)
    monkeypatch.delenv("GOOGLE_CLOUD_LOCATION", raising=False)
    get_settings.cache_clear()

    with pytest.raises(ProviderConfigError, match="GOOGLE_CLOUD_PROJECT"):
        await GeminiVertexProvider().complete("q")


@pytest.mark.asyncio
async def test_fake_completion_replays_script() -> None:
    provider = FakeCompletionProvider(["first", ProviderError("down"), "last"])
    assert await provider.complete("a") == "first"
    with pytest.raises(ProviderError):
        await provider.complete("b")
    assert await provider.complete("c") == "last"
    assert await provider.complete("d") == "last"
    assert provider.prompts == ["a", "b", "c", "d"]


@pytest.mark.asyncio
async def test_fake_embeddings_are_deterministic_and_normalized() -> None:
    provider = FakeEmbeddingProvider()
    first, second = await provider.embed(["Total sales by region", "total SALES by region!"])
    assert first == second
    assert abs(sum(value * value for value in first) - 1.0) < 1e-9
    assert embed_text("") == [0.0] * len(first)


def test_factory_selects_provider_from_settings(monkeypatch) -> None:
    monkeypatch.setenv("LLM_PROVIDER", "fake")
    monkeypatch.setenv("EMBEDDING_PROVIDER", "openai")
    get_settings.cache_clear()
    assert isinstance(get_completion_provider(), FakeCompletionProvider)
    assert isinstance(get_embedding_provider(), OpenAIEmbeddingProvider)

    monkeypatch.setenv("LLM_PROVIDER", "vertex")
    get_settings.cache_clear()
    assert isinstance(get_completion_provider(), GeminiVertexProvider)

    monkeypatch.setenv("LLM_PROVIDER", "carrier-pigeon")
    get_settings.cache_clear()
    with pytest.raises(ProviderConfigError):
        get_completion_provider()
