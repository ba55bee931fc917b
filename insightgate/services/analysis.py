from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
import json
import logging
from typing import Any, Callable

from insightgate.agent.prompts import build_insight_prompt
from insightgate.agent.synthesis import QuerySynthesizer, SynthesisPolicy
from insightgate.agent.validation import strip_code_fences
from insightgate.core.config import Settings, get_settings
from insightgate.core.errors import (
    NoActiveDatabase,
    ProviderConfigError,
    ProviderError,
    QueryExecutionFailed,
    RateLimitExceeded,
    UnsafeQuery,
)
from insightgate.domain.schema import ConnectionDescriptor, SchemaSnapshot
from insightgate.providers.llm.base import CompletionProvider, EmbeddingProvider
from insightgate.services.cache.history import summarize_result
from insightgate.services.cache.keys import schema_hash
from insightgate.services.cache.manager import CacheService
from insightgate.services.gateway import DatabaseGateway
from insightgate.services.rate_limit import RateLimitDecision, RateLimiter
from insightgate.services.registry import ConnectionRegistry, as_utc
from insightgate.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

# Embedding inputs are capped; the cache key still hashes the full content.
_EMBED_INPUT_LIMIT = 8000


@dataclass(frozen=True)
class Insights:
    insights: str
    recommendations: list[str] = field(default_factory=list)
    confidence: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "insights": self.insights,
            "recommendations": list(self.recommendations),
            "confidence": self.confidence,
        }


@dataclass(frozen=True)
class AnalysisResult:
    query_text: str
    rows: list[dict[str, Any]]
    cached: bool
    engine: str
    database_id: str | None
    relaxed: bool = False
    fallback: bool = False
    reason: str | None = None
    insights: Insights | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "query_text": self.query_text,
            "rows": self.rows,
            "row_count": len(self.rows),
            "cached": self.cached,
            "engine": self.engine,
            "database_id": self.database_id,
            "relaxed": self.relaxed,
            "fallback": self.fallback,
            "reason": self.reason,
            "insights": self.insights.to_dict() if self.insights is not None else None,
        }


def parse_insights(text: str) -> Insights | None:
    try:
        payload = json.loads(strip_code_fences(text))
    except (TypeError, ValueError):
        return None
    if not isinstance(payload, dict) or not isinstance(payload.get("insights"), str):
        return None
    recommendations = payload.get("recommendations") or []
    if not isinstance(recommendations, list):
        recommendations = [str(recommendations)]
    confidence = payload.get("confidence")
    try:
        confidence = max(1, min(10, int(confidence))) if confidence is not None else None
    except (TypeError, ValueError):
        confidence = None
    return Insights(
        insights=payload["insights"],
        recommendations=[str(item) for item in recommendations],
        confidence=confidence,
    )


class AnalysisService:
    """Orchestrates rate limiting, schema resolution, caching and synthesis."""

    def __init__(
        self,
        *,
        registry: ConnectionRegistry,
        gateway: DatabaseGateway,
        cache: CacheService,
        rate_limiter: RateLimiter,
        completion: CompletionProvider,
        embeddings: EmbeddingProvider | None = None,
        settings: Settings | None = None,
        now_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._registry = registry
        self._gateway = gateway
        self._cache = cache
        self._rate_limiter = rate_limiter
        self._completion = completion
        self._embeddings = embeddings
        self._now = now_provider or (lambda: datetime.now(timezone.utc))
        status_values = tuple(
            value.strip() for value in self._settings.relax_status_values.split(",") if value.strip()
        )
        self._synthesizer = QuerySynthesizer(
            completion=completion,
            gateway=gateway,
            policy=SynthesisPolicy(
                relax_strategy=self._settings.relax_status_strategy,
                status_values=status_values,
                probe_limit=self._settings.fallback_probe_limit,
            ),
        )

    async def analyze(
        self,
        tenant_id: str,
        question: str,
        *,
        database_id: str | None = None,
        conversation_context: str | None = None,
        include_insights: bool | None = None,
    ) -> AnalysisResult:
        if self._settings.rate_limit_enabled:
            decision = await self._rate_limiter.check_and_consume(tenant_id)
            if not decision.allowed:
                raise RateLimitExceeded(
                    "Rate limit exceeded",
                    detail="limiter unavailable" if decision.degraded else None,
                    reset_at=decision.reset_at,
                    remaining=decision.remaining,
                )

        descriptor = await self._registry.get_connection_descriptor(tenant_id, database_id)
        if descriptor is None:
            raise NoActiveDatabase("No active database connection found", detail=f"database_id={database_id or '*'}")
        db_id = descriptor.database_id or database_id or descriptor.database_name

        snapshot = await self._resolve_schema(tenant_id, db_id, descriptor)
        schema_digest = schema_hash(snapshot.to_dict())

        result = await self._from_cache(tenant_id, db_id, descriptor, question, schema_digest)
        embedding: list[float] | None = None
        wants_history = conversation_context is None and self._cache.history is not None
        if result is None or wants_history:
            embedding = await self._embed(tenant_id, question)
        if wants_history and embedding is not None:
            conversation_context = self._recall(tenant_id, db_id, question, embedding)
        if result is None:
            result = await self._from_semantic(tenant_id, db_id, descriptor, embedding, schema_digest)
        if result is None:
            result = await self._synthesize(
                tenant_id,
                db_id,
                descriptor,
                snapshot,
                question,
                conversation_context,
                schema_digest,
                embedding,
            )

        if result.rows:
            await self._remember(tenant_id, db_id, question, result.rows)

        if include_insights is None:
            include_insights = self._settings.analysis_insights_enabled
        if include_insights and result.rows:
            insights = await self._insights(question, result.query_text, result.rows, conversation_context)
            if insights is not None:
                result = replace(result, insights=insights)

        logger.info(
            "analysis_completed tenant_id=%s database_id=%s engine=%s cached=%s relaxed=%s fallback=%s rows=%d",
            tenant_id,
            db_id,
            descriptor.engine.value,
            result.cached,
            result.relaxed,
            result.fallback,
            len(result.rows),
        )
        return result

    async def _resolve_schema(
        self,
        tenant_id: str,
        database_id: str,
        descriptor: ConnectionDescriptor,
    ) -> SchemaSnapshot:
        snapshot = self._cache.get_schema(tenant_id, database_id)
        if snapshot is not None:
            return snapshot

        now = self._now()
        stored = await self._registry.load_schema_snapshot(database_id)
        if stored is not None:
            age_s = (as_utc(now) - stored.updated_at).total_seconds()
            if age_s < self._settings.schema_freshness_window_s:
                self._cache.put_schema(tenant_id, database_id, stored.snapshot)
                return stored.snapshot

        snapshot = await self._gateway.introspect_schema(descriptor)
        try:
            await self._registry.save_schema_snapshot(database_id, snapshot, now)
        except Exception as exc:  # noqa: BLE001 - persistence is best-effort; the cache still holds it
            logger.warning("schema_snapshot_save_failed database_id=%s error=%s", database_id, type(exc).__name__)
        self._cache.put_schema(tenant_id, database_id, snapshot)
        return snapshot

    async def _from_cache(
        self,
        tenant_id: str,
        database_id: str,
        descriptor: ConnectionDescriptor,
        question: str,
        schema_digest: str,
    ) -> AnalysisResult | None:
        record = self._cache.get_query(tenant_id, database_id, question, schema_digest)
        if record is None:
            return None
        try:
            rows = await self._gateway.execute_read_query(descriptor, record.query_text)
        except (QueryExecutionFailed, UnsafeQuery) as exc:
            # Schema drift: forget the query and generate a new one.
            logger.warning("cached_query_failed tenant_id=%s database_id=%s code=%s", tenant_id, database_id, exc.code)
            self._cache.invalidate_query(tenant_id, database_id, question, schema_digest)
            if self._cache.semantic is not None:
                self._cache.semantic.discard(tenant_id, database_id, record.query_text)
            return None
        increment_counter("analysis_cache_hits_total")
        return AnalysisResult(
            query_text=record.query_text,
            rows=rows,
            cached=True,
            engine=descriptor.engine.value,
            database_id=database_id,
            reason=None if rows else "no_data",
        )

    async def _from_semantic(
        self,
        tenant_id: str,
        database_id: str,
        descriptor: ConnectionDescriptor,
        embedding: list[float] | None,
        schema_digest: str,
    ) -> AnalysisResult | None:
        semantic = self._cache.semantic
        if semantic is None or embedding is None:
            return None
        match = semantic.lookup(tenant_id, database_id, embedding, schema_digest)
        if match is None:
            return None
        try:
            rows = await self._gateway.execute_read_query(descriptor, match.query_text)
        except (QueryExecutionFailed, UnsafeQuery) as exc:
            logger.warning("semantic_query_failed tenant_id=%s database_id=%s code=%s", tenant_id, database_id, exc.code)
            semantic.discard(tenant_id, database_id, match.query_text)
            return None
        increment_counter("analysis_semantic_hits_total")
        logger.info("semantic_cache_hit tenant_id=%s similarity=%.3f", tenant_id, match.similarity)
        return AnalysisResult(
            query_text=match.query_text,
            rows=rows,
            cached=True,
            engine=descriptor.engine.value,
            database_id=database_id,
            reason="semantic_match",
        )

    async def _synthesize(
        self,
        tenant_id: str,
        database_id: str,
        descriptor: ConnectionDescriptor,
        snapshot: SchemaSnapshot,
        question: str,
        conversation_context: str | None,
        schema_digest: str,
        embedding: list[float] | None,
    ) -> AnalysisResult:
        outcome = await self._synthesizer.run(
            descriptor=descriptor,
            snapshot=snapshot,
            question=question,
            conversation_context=conversation_context,
        )
        if outcome.cacheable:
            self._cache.put_query(
                tenant_id,
                database_id,
                question,
                schema_digest,
                engine=descriptor.engine,
                query_text=outcome.query_text,
            )
            if self._cache.semantic is not None and embedding is not None:
                self._cache.semantic.record(
                    tenant_id,
                    database_id,
                    question=question,
                    embedding=embedding,
                    query_text=outcome.query_text,
                    schema_hash=schema_digest,
                )
        return AnalysisResult(
            query_text=outcome.query_text,
            rows=outcome.rows,
            cached=False,
            engine=descriptor.engine.value,
            database_id=database_id,
            relaxed=outcome.relaxed,
            fallback=outcome.fallback,
            reason=outcome.reason,
        )

    async def _embed(self, tenant_id: str, content: str) -> list[float] | None:
        if self._embeddings is None:
            return None
        cached = self._cache.get_embedding(tenant_id, content)
        if cached is not None:
            return cached
        try:
            vectors = await self._embeddings.embed([content[:_EMBED_INPUT_LIMIT]])
        except Exception as exc:  # noqa: BLE001 - embeddings only enable approximate reuse
            logger.warning("embedding_failed tenant_id=%s error=%s", tenant_id, type(exc).__name__)
            return None
        if not vectors:
            return None
        self._cache.put_embedding(tenant_id, content, vectors[0])
        return list(vectors[0])

    def _recall(self, tenant_id: str, database_id: str, question: str, embedding: list[float]) -> str | None:
        history = self._cache.history
        if history is None:
            return None
        entries = history.recall(
            tenant_id,
            database_id,
            embedding,
            limit=self._settings.analysis_history_context_entries,
            exclude_question=question,
        )
        if not entries:
            return None
        logger.info(
            "analysis_history_recalled tenant_id=%s database_id=%s entries=%d", tenant_id, database_id, len(entries)
        )
        return "\n\n".join(entry.summary for entry in entries)

    async def _remember(self, tenant_id: str, database_id: str, question: str, rows: list[dict[str, Any]]) -> None:
        history = self._cache.history
        if history is None:
            return
        summary = summarize_result(question, rows)
        embedding = await self._embed(tenant_id, summary)
        if embedding is None:
            return
        history.remember(tenant_id, database_id, question=question, summary=summary, embedding=embedding)

    async def _insights(
        self,
        question: str,
        query_text: str,
        rows: list[dict[str, Any]],
        conversation_context: str | None,
    ) -> Insights | None:
        sample = rows[: self._settings.analysis_insight_sample_rows]
        prompt = build_insight_prompt(question, query_text, sample, conversation_context)
        try:
            text = await self._completion.complete(prompt)
        except (ProviderError, ProviderConfigError, asyncio.TimeoutError) as exc:
            logger.warning("insights_provider_failed error=%s", type(exc).__name__)
            return None
        insights = parse_insights(text)
        if insights is None:
            logger.warning("insights_unparseable length=%d", len(text or ""))
        return insights

    def invalidate_cache(self, tenant_id: str, database_id: str | None = None) -> dict[str, int]:
        return self._cache.invalidate(tenant_id, database_id)

    def invalidate_all_caches(self) -> dict[str, int]:
        return self._cache.invalidate_all()

    def cache_stats(self, tenant_id: str | None = None) -> dict[str, dict[str, int]]:
        return {kind: stats.to_dict() for kind, stats in self._cache.stats(tenant_id).items()}

    def cleanup_caches(self) -> dict[str, int]:
        removed = self._cache.cleanup_expired()
        removed["rate_limit"] = self._rate_limiter.cleanup()
        logger.info("cache_cleanup removed=%d", sum(removed.values()))
        return removed

    async def rate_limit_status(self, tenant_id: str) -> RateLimitDecision:
        return await self._rate_limiter.peek(tenant_id)

    async def reset_rate_limit(self, tenant_id: str) -> None:
        await self._rate_limiter.reset(tenant_id)
