from __future__ import annotations

from dataclasses import dataclass
import json
import logging
import threading
import time
from typing import Any, Callable

from insightgate.core.errors import CacheCorrupt


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheKey:
    tenant_id: str
    database_id: str | None
    digest: str


@dataclass
class CacheEntry:
    key: CacheKey
    payload: str
    created_at: float
    expires_at: float
    hit_count: int = 0
    last_accessed_at: float = 0.0


@dataclass(frozen=True)
class CacheStats:
    entry_count: int
    hit_count: int

    def to_dict(self) -> dict[str, int]:
        return {"entry_count": self.entry_count, "hit_count": self.hit_count}


class TTLCache:
    """Tenant-bounded TTL map with lazy expiry and approximate LRU eviction.

    Payloads are stored JSON-encoded, so callers always receive a fresh
    object and a payload that fails to decode is dropped and reported as a
    miss instead of an error.
    """

    def __init__(
        self,
        name: str,
        *,
        default_ttl_s: float,
        max_entries_per_tenant: int,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        self.name = name
        self._default_ttl_s = default_ttl_s
        self._max_entries = max(1, max_entries_per_tenant)
        self._time = time_source or time.time
        self._entries: dict[CacheKey, CacheEntry] = {}
        self._lock = threading.Lock()

    def _decode(self, entry: CacheEntry) -> Any:
        try:
            return json.loads(entry.payload)
        except (TypeError, ValueError) as exc:
            raise CacheCorrupt(f"{self.name} payload failed to decode") from exc

    def get(self, key: CacheKey) -> Any | None:
        now = self._time()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expires_at <= now:
                # Lazy expiry: the read that finds it stale removes it.
                del self._entries[key]
                return None
            try:
                payload = self._decode(entry)
            except CacheCorrupt as exc:
                del self._entries[key]
                logger.warning("cache_corrupt cache=%s tenant_id=%s error=%s", self.name, key.tenant_id, exc)
                return None
            entry.hit_count += 1
            entry.last_accessed_at = now
            return payload

    def entry(self, key: CacheKey) -> CacheEntry | None:
        # Metadata view for diagnostics and tests; never refreshes access time.
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            return CacheEntry(**vars(entry))

    def put(self, key: CacheKey, payload: Any, ttl_s: float | None = None) -> None:
        encoded = json.dumps(payload, default=str)
        now = self._time()
        ttl = self._default_ttl_s if ttl_s is None else ttl_s
        with self._lock:
            self._entries[key] = CacheEntry(
                key=key,
                payload=encoded,
                created_at=now,
                expires_at=now + ttl,
                hit_count=0,
                last_accessed_at=now,
            )
            self._evict_over_bound(key.tenant_id)

    def _evict_over_bound(self, tenant_id: str) -> None:
        tenant_keys = [key for key in self._entries if key.tenant_id == tenant_id]
        overflow = len(tenant_keys) - self._max_entries
        if overflow <= 0:
            return
        tenant_keys.sort(key=lambda key: self._entries[key].last_accessed_at)
        for key in tenant_keys[:overflow]:
            del self._entries[key]
        logger.info("cache_evicted cache=%s tenant_id=%s count=%d", self.name, tenant_id, overflow)

    def invalidate(self, key: CacheKey) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def invalidate_tenant(self, tenant_id: str) -> int:
        with self._lock:
            keys = [key for key in self._entries if key.tenant_id == tenant_id]
            for key in keys:
                del self._entries[key]
        return len(keys)

    def invalidate_database(self, tenant_id: str, database_id: str) -> int:
        with self._lock:
            keys = [
                key for key in self._entries
                if key.tenant_id == tenant_id and key.database_id == database_id
            ]
            for key in keys:
                del self._entries[key]
        return len(keys)

    def clear(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        return count

    def stats(self, tenant_id: str | None = None) -> CacheStats:
        with self._lock:
            entries = [
                entry for entry in self._entries.values()
                if tenant_id is None or entry.key.tenant_id == tenant_id
            ]
            return CacheStats(
                entry_count=len(entries),
                hit_count=sum(entry.hit_count for entry in entries),
            )

    def cleanup_expired(self) -> int:
        now = self._time()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if entry.expires_at <= now]
            for key in expired:
                del self._entries[key]
        return len(expired)
