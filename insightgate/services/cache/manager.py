from __future__ import annotations

from dataclasses import dataclass
import logging
import time
from typing import Any, Callable

from insightgate.core.config import Settings, get_settings
from insightgate.domain.schema import EngineTag, SchemaSnapshot
from insightgate.services.cache.history import AnalysisHistory
from insightgate.services.cache.keys import content_hash, question_hash
from insightgate.services.cache.semantic import SemanticCache
from insightgate.services.cache.store import CacheKey, CacheStats, TTLCache


logger = logging.getLogger(__name__)

SCHEMA = "schema"
QUERY = "query"
EMBEDDING = "embedding"
SEMANTIC = "semantic"
HISTORY = "history"


@dataclass(frozen=True)
class GeneratedQueryRecord:
    question_hash: str
    schema_hash: str
    engine: EngineTag
    query_text: str
    created_at: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "question_hash": self.question_hash,
            "schema_hash": self.schema_hash,
            "engine": self.engine.value,
            "query_text": self.query_text,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "GeneratedQueryRecord":
        return cls(
            question_hash=str(payload["question_hash"]),
            schema_hash=str(payload["schema_hash"]),
            engine=EngineTag(payload["engine"]),
            query_text=str(payload["query_text"]),
            created_at=float(payload["created_at"]),
        )


class CacheService:
    """Schema, generated-query and embedding caches plus the semantic and history layers.

    Every key carries the tenant id, and query/schema keys the database id,
    so no lookup can cross a tenant boundary.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        settings = settings or get_settings()
        self._time = time_source or time.time
        bound = settings.cache_max_entries_per_tenant
        self.schemas = TTLCache(
            SCHEMA,
            default_ttl_s=settings.cache_schema_ttl_s,
            max_entries_per_tenant=bound,
            time_source=self._time,
        )
        self.queries = TTLCache(
            QUERY,
            default_ttl_s=settings.cache_query_ttl_s,
            max_entries_per_tenant=bound,
            time_source=self._time,
        )
        self.embeddings = TTLCache(
            EMBEDDING,
            default_ttl_s=settings.cache_embedding_ttl_s,
            max_entries_per_tenant=bound,
            time_source=self._time,
        )
        self.semantic: SemanticCache | None = None
        if settings.semantic_cache_enabled:
            self.semantic = SemanticCache(
                threshold=settings.semantic_similarity_threshold,
                ttl_s=settings.cache_query_ttl_s,
                max_entries_per_scope=settings.semantic_cache_max_entries_per_scope,
                time_source=self._time,
            )
        self.history: AnalysisHistory | None = None
        if settings.analysis_history_enabled:
            self.history = AnalysisHistory(
                ttl_s=settings.cache_embedding_ttl_s,
                max_entries_per_scope=settings.analysis_history_max_entries_per_scope,
                min_similarity=settings.analysis_history_min_similarity,
                time_source=self._time,
            )

    def _caches(self) -> dict[str, TTLCache]:
        return {SCHEMA: self.schemas, QUERY: self.queries, EMBEDDING: self.embeddings}

    @staticmethod
    def _schema_key(tenant_id: str, database_id: str) -> CacheKey:
        return CacheKey(tenant_id, database_id, SCHEMA)

    @staticmethod
    def _query_key(tenant_id: str, database_id: str, question: str, schema_digest: str) -> CacheKey:
        return CacheKey(tenant_id, database_id, f"{question_hash(question)}:{schema_digest}")

    def get_schema(self, tenant_id: str, database_id: str) -> SchemaSnapshot | None:
        key = self._schema_key(tenant_id, database_id)
        payload = self.schemas.get(key)
        if payload is None:
            return None
        try:
            return SchemaSnapshot.from_dict(payload)
        except (KeyError, TypeError, ValueError) as exc:
            self.schemas.invalidate(key)
            logger.warning("cache_corrupt cache=%s tenant_id=%s error=%s", SCHEMA, tenant_id, type(exc).__name__)
            return None

    def put_schema(self, tenant_id: str, database_id: str, snapshot: SchemaSnapshot) -> None:
        self.schemas.put(self._schema_key(tenant_id, database_id), snapshot.to_dict())

    def get_query(
        self,
        tenant_id: str,
        database_id: str,
        question: str,
        schema_digest: str,
    ) -> GeneratedQueryRecord | None:
        key = self._query_key(tenant_id, database_id, question, schema_digest)
        payload = self.queries.get(key)
        if payload is None:
            return None
        try:
            return GeneratedQueryRecord.from_dict(payload)
        except (KeyError, TypeError, ValueError) as exc:
            self.queries.invalidate(key)
            logger.warning("cache_corrupt cache=%s tenant_id=%s error=%s", QUERY, tenant_id, type(exc).__name__)
            return None

    def put_query(
        self,
        tenant_id: str,
        database_id: str,
        question: str,
        schema_digest: str,
        *,
        engine: EngineTag,
        query_text: str,
    ) -> GeneratedQueryRecord:
        record = GeneratedQueryRecord(
            question_hash=question_hash(question),
            schema_hash=schema_digest,
            engine=engine,
            query_text=query_text,
            created_at=self._time(),
        )
        self.queries.put(self._query_key(tenant_id, database_id, question, schema_digest), record.to_dict())
        return record

    def invalidate_query(self, tenant_id: str, database_id: str, question: str, schema_digest: str) -> bool:
        return self.queries.invalidate(self._query_key(tenant_id, database_id, question, schema_digest))

    def get_embedding(self, tenant_id: str, content: str) -> list[float] | None:
        payload = self.embeddings.get(CacheKey(tenant_id, None, content_hash(content)))
        if payload is None:
            return None
        if not isinstance(payload, list):
            logger.warning("cache_corrupt cache=%s tenant_id=%s", EMBEDDING, tenant_id)
            return None
        return [float(value) for value in payload]

    def put_embedding(self, tenant_id: str, content: str, vector: list[float]) -> None:
        self.embeddings.put(CacheKey(tenant_id, None, content_hash(content)), list(vector))

    def invalidate(self, tenant_id: str, database_id: str | None = None) -> dict[str, int]:
        removed: dict[str, int] = {}
        for kind, cache in self._caches().items():
            if database_id is None:
                removed[kind] = cache.invalidate_tenant(tenant_id)
            elif kind == EMBEDDING:
                # Embeddings are tenant-scoped content hashes, not tied to one database.
                removed[kind] = 0
            else:
                removed[kind] = cache.invalidate_database(tenant_id, database_id)
        if self.semantic is not None:
            removed[SEMANTIC] = self.semantic.invalidate(tenant_id, database_id)
        if self.history is not None:
            removed[HISTORY] = self.history.invalidate(tenant_id, database_id)
        logger.info(
            "cache_invalidated tenant_id=%s database_id=%s removed=%d",
            tenant_id,
            database_id or "*",
            sum(removed.values()),
        )
        return removed

    def invalidate_all(self) -> dict[str, int]:
        removed = {kind: cache.clear() for kind, cache in self._caches().items()}
        if self.semantic is not None:
            removed[SEMANTIC] = self.semantic.clear()
        if self.history is not None:
            removed[HISTORY] = self.history.clear()
        logger.info("cache_cleared removed=%d", sum(removed.values()))
        return removed

    def stats(self, tenant_id: str | None = None) -> dict[str, CacheStats]:
        result = {kind: cache.stats(tenant_id) for kind, cache in self._caches().items()}
        if self.semantic is not None:
            result[SEMANTIC] = CacheStats(entry_count=self.semantic.entry_count(tenant_id), hit_count=0)
        if self.history is not None:
            result[HISTORY] = CacheStats(entry_count=self.history.entry_count(tenant_id), hit_count=0)
        return result

    def cleanup_expired(self) -> dict[str, int]:
        removed = {kind: cache.cleanup_expired() for kind, cache in self._caches().items()}
        if self.semantic is not None:
            removed[SEMANTIC] = self.semantic.cleanup_expired()
        if self.history is not None:
            removed[HISTORY] = self.history.cleanup_expired()
        return removed
