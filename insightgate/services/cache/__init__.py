from __future__ import annotations

# Re-export cache services for centralized imports.

from insightgate.services.cache.history import AnalysisHistory, HistoryEntry, summarize_result
from insightgate.services.cache.keys import canonical_json, content_hash, question_hash, schema_hash
from insightgate.services.cache.manager import CacheService, GeneratedQueryRecord
from insightgate.services.cache.semantic import SemanticCache, SemanticMatch
from insightgate.services.cache.store import CacheKey, CacheStats, TTLCache

__all__ = [
    "AnalysisHistory",
    "CacheKey",
    "CacheService",
    "CacheStats",
    "GeneratedQueryRecord",
    "HistoryEntry",
    "SemanticCache",
    "SemanticMatch",
    "TTLCache",
    "canonical_json",
    "content_hash",
    "question_hash",
    "schema_hash",
    "summarize_result",
]
