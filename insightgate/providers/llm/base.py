from __future__ import annotations

from typing import Protocol


class CompletionProvider(Protocol):
    async def complete(self, prompt: str) -> str:
        ...


class EmbeddingProvider(Protocol):
    async def embed(self, texts: list[str]) -> list[list[float]]:
        ...
