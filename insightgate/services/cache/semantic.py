from __future__ import annotations

from dataclasses import dataclass
import math
import threading
import time
from typing import Callable, Sequence


@dataclass(frozen=True)
class SemanticEntry:
    question: str
    embedding: tuple[float, ...]
    query_text: str
    schema_hash: str
    created_at: float


@dataclass(frozen=True)
class SemanticMatch:
    question: str
    query_text: str
    similarity: float


def cosine_similarity(left: Sequence[float], right: Sequence[float]) -> float | None:
    # None when the score is undefined: zero vectors or mismatched dimensions.
    if len(left) != len(right) or not left:
        return None
    left_norm = math.sqrt(sum(value * value for value in left))
    right_norm = math.sqrt(sum(value * value for value in right))
    if left_norm == 0.0 or right_norm == 0.0:
        return None
    dot = sum(a * b for a, b in zip(left, right))
    return dot / (left_norm * right_norm)


class SemanticCache:
    """Approximate question matching scoped per (tenant, database)."""

    def __init__(
        self,
        *,
        threshold: float,
        ttl_s: float,
        max_entries_per_scope: int,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        self._threshold = threshold
        self._ttl_s = ttl_s
        self._max_entries = max(1, max_entries_per_scope)
        self._time = time_source or time.time
        self._scopes: dict[tuple[str, str | None], list[SemanticEntry]] = {}
        self._lock = threading.Lock()

    def record(
        self,
        tenant_id: str,
        database_id: str | None,
        *,
        question: str,
        embedding: Sequence[float],
        query_text: str,
        schema_hash: str,
    ) -> None:
        entry = SemanticEntry(
            question=question,
            embedding=tuple(float(value) for value in embedding),
            query_text=query_text,
            schema_hash=schema_hash,
            created_at=self._time(),
        )
        with self._lock:
            entries = self._scopes.setdefault((tenant_id, database_id), [])
            entries[:] = [item for item in entries if item.question != question]
            entries.append(entry)
            if len(entries) > self._max_entries:
                # Oldest first; entries are appended in creation order.
                del entries[: len(entries) - self._max_entries]

    def lookup(
        self,
        tenant_id: str,
        database_id: str | None,
        embedding: Sequence[float],
        schema_hash: str,
    ) -> SemanticMatch | None:
        cutoff = self._time() - self._ttl_s
        best: SemanticMatch | None = None
        with self._lock:
            entries = self._scopes.get((tenant_id, database_id))
            if not entries:
                return None
            entries[:] = [item for item in entries if item.created_at > cutoff]
            for item in entries:
                if item.schema_hash != schema_hash:
                    continue
                score = cosine_similarity(embedding, item.embedding)
                if score is None or score < self._threshold:
                    continue
                if best is None or score > best.similarity:
                    best = SemanticMatch(question=item.question, query_text=item.query_text, similarity=score)
        return best

    def discard(self, tenant_id: str, database_id: str | None, query_text: str) -> None:
        with self._lock:
            entries = self._scopes.get((tenant_id, database_id))
            if entries:
                entries[:] = [item for item in entries if item.query_text != query_text]

    def invalidate(self, tenant_id: str, database_id: str | None = None) -> int:
        with self._lock:
            scopes = [
                scope for scope in self._scopes
                if scope[0] == tenant_id and (database_id is None or scope[1] == database_id)
            ]
            removed = sum(len(self._scopes.pop(scope)) for scope in scopes)
        return removed

    def clear(self) -> int:
        with self._lock:
            removed = sum(len(entries) for entries in self._scopes.values())
            self._scopes.clear()
        return removed

    def entry_count(self, tenant_id: str | None = None) -> int:
        with self._lock:
            return sum(
                len(entries) for scope, entries in self._scopes.items()
                if tenant_id is None or scope[0] == tenant_id
            )

    def cleanup_expired(self) -> int:
        cutoff = self._time() - self._ttl_s
        removed = 0
        with self._lock:
            for scope in list(self._scopes):
                entries = self._scopes[scope]
                kept = [item for item in entries if item.created_at > cutoff]
                removed += len(entries) - len(kept)
                if kept:
                    self._scopes[scope] = kept
                else:
                    del self._scopes[scope]
        return removed
