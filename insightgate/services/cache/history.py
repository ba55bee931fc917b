from __future__ import annotations

from dataclasses import dataclass
import threading
import time
from typing import Any, Callable, Sequence

from insightgate.services.cache.semantic import cosine_similarity


@dataclass(frozen=True)
class HistoryEntry:
    question: str
    summary: str
    embedding: tuple[float, ...]
    created_at: float


def summarize_result(question: str, rows: list[dict[str, Any]]) -> str:
    """Compact text describing an answered question, embedded for later recall."""
    if not rows:
        return f'No data found for the question: "{question}". Query returned 0 records.'
    numeric = [
        key for key, value in rows[0].items()
        if isinstance(value, (int, float)) and not isinstance(value, bool)
    ]
    metrics: list[str] = []
    for column in numeric:
        values = [
            row[column] for row in rows
            if isinstance(row.get(column), (int, float)) and not isinstance(row.get(column), bool)
        ]
        if not values:
            continue
        total = sum(values)
        metrics.append(
            f"{column}_sum: {total}, {column}_avg: {total / len(values):g}, "
            f"{column}_max: {max(values)}, {column}_min: {min(values)}"
        )
    return "\n".join(
        [
            f"Question: {question}",
            f"Total Records: {len(rows)}",
            f"Key Metrics: {', '.join(metrics) if metrics else 'none'}",
            f"Columns: {', '.join(str(key) for key in rows[0])}",
        ]
    )


class AnalysisHistory:
    """Embedded summaries of past answers per (tenant, database), recalled by similarity."""

    def __init__(
        self,
        *,
        ttl_s: float,
        max_entries_per_scope: int,
        min_similarity: float = 0.0,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        self._ttl_s = ttl_s
        self._max_entries = max(1, max_entries_per_scope)
        self._min_similarity = min_similarity
        self._time = time_source or time.time
        self._scopes: dict[tuple[str, str | None], list[HistoryEntry]] = {}
        self._lock = threading.Lock()

    def remember(
        self,
        tenant_id: str,
        database_id: str | None,
        *,
        question: str,
        summary: str,
        embedding: Sequence[float],
    ) -> None:
        entry = HistoryEntry(
            question=question,
            summary=summary,
            embedding=tuple(float(value) for value in embedding),
            created_at=self._time(),
        )
        with self._lock:
            entries = self._scopes.setdefault((tenant_id, database_id), [])
            entries[:] = [item for item in entries if item.question != question]
            entries.append(entry)
            if len(entries) > self._max_entries:
                del entries[: len(entries) - self._max_entries]

    def recall(
        self,
        tenant_id: str,
        database_id: str | None,
        embedding: Sequence[float],
        *,
        limit: int,
        exclude_question: str | None = None,
    ) -> list[HistoryEntry]:
        cutoff = self._time() - self._ttl_s
        scored: list[tuple[float, HistoryEntry]] = []
        with self._lock:
            entries = self._scopes.get((tenant_id, database_id))
            if not entries:
                return []
            entries[:] = [item for item in entries if item.created_at > cutoff]
            for item in entries:
                if exclude_question is not None and item.question == exclude_question:
                    continue
                score = cosine_similarity(embedding, item.embedding)
                # Undefined scores never count as related.
                if score is None or score < self._min_similarity:
                    continue
                scored.append((score, item))
        scored.sort(key=lambda pair: pair[0], reverse=True)
        return [item for _, item in scored[: max(0, limit)]]

    def invalidate(self, tenant_id: str, database_id: str | None = None) -> int:
        with self._lock:
            scopes = [
                scope for scope in self._scopes
                if scope[0] == tenant_id and (database_id is None or scope[1] == database_id)
            ]
            return sum(len(self._scopes.pop(scope)) for scope in scopes)

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
