from __future__ import annotations

import hashlib
import math
import re
from typing import Iterable

from insightgate.core.config import EMBED_DIM


_TOKEN_RE = re.compile(r"[A-Za-z0-9_]+")


class FakeCompletionProvider:
    def __init__(self, responses: Iterable[str | Exception] | str = "SELECT 1") -> None:
        # Scripted responses keep tests deterministic; the last one repeats.
        if isinstance(responses, str):
            responses = [responses]
        self._responses = list(responses) or [""]
        self.prompts: list[str] = []

    @property
    def calls(self) -> int:
        return len(self.prompts)

    async def complete(self, prompt: str) -> str:
        self.prompts.append(prompt)
        index = min(len(self.prompts), len(self._responses)) - 1
        response = self._responses[index]
        if isinstance(response, Exception):
            raise response
        return response


def _hash_token(token: str) -> tuple[int, float]:
    digest = hashlib.sha256(token.encode("utf-8")).hexdigest()
    # Hash to a stable index within the fixed embedding dimension.
    idx = int(digest[:8], 16) % EMBED_DIM
    sign = 1.0 if int(digest[8:12], 16) % 2 == 0 else -1.0
    magnitude = (int(digest[12:20], 16) % 1000) / 1000.0
    return idx, sign * (0.2 + magnitude)


def embed_text(text: str) -> list[float]:
    vector = [0.0] * EMBED_DIM
    tokens = _TOKEN_RE.findall(text.lower())
    if not tokens:
        return vector

    for token in tokens:
        idx, value = _hash_token(token)
        vector[idx] += value

    norm = math.sqrt(sum(v * v for v in vector))
    if norm == 0:
        return vector
    return [v / norm for v in vector]


class FakeEmbeddingProvider:
    def __init__(self) -> None:
        self.calls = 0

    async def embed(self, texts: list[str]) -> list[list[float]]:
        self.calls += 1
        return [embed_text(text) for text in texts]
