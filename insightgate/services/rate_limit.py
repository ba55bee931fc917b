from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import threading
import time
from typing import Callable, Protocol

from redis.asyncio import Redis

from insightgate.core.config import Settings, get_settings
from insightgate.services.plans import PlanInfo, PlanLookup
from insightgate.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitConfig:
    # Fixed window of `points` analyses; exceeding it blocks for `block_seconds`.
    points: int
    window_seconds: int
    block_seconds: int
    tier: str


NO_PLAN = RateLimitConfig(points=10, window_seconds=3600, block_seconds=3600, tier="none")
TIER_A = RateLimitConfig(points=50, window_seconds=3600, block_seconds=3600, tier="A")
TIER_B = RateLimitConfig(points=200, window_seconds=3600, block_seconds=1800, tier="B")
TIER_C = RateLimitConfig(points=1000, window_seconds=3600, block_seconds=900, tier="C")

PLAN_TIERS: dict[str, RateLimitConfig] = {
    "free": TIER_A,
    "pro": TIER_B,
    "business": TIER_C,
}


def config_for_plan(plan: PlanInfo | None) -> RateLimitConfig:
    if plan is None:
        return NO_PLAN
    # Unknown but active plans get the entry tier rather than the no-plan allowance.
    return PLAN_TIERS.get(plan.plan_id.lower(), TIER_A)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_at: float | None
    degraded: bool = False
    limit: int | None = None
    tier: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "allowed": self.allowed,
            "remaining": self.remaining,
            "reset_at": self.reset_at,
            "degraded": self.degraded,
            "limit": self.limit,
            "tier": self.tier,
        }


@dataclass
class BucketState:
    points_consumed: int
    window_end: float
    blocked_until: float | None = None


class RateLimitStore(Protocol):
    async def consume(self, tenant_id: str, config: RateLimitConfig, now: float) -> RateLimitDecision:
        ...

    async def peek(self, tenant_id: str, config: RateLimitConfig, now: float) -> RateLimitDecision:
        ...

    async def reset(self, tenant_id: str) -> None:
        ...

    def prune(self, now: float) -> int:
        ...


class InMemoryRateLimitStore:
    """Single-process store; a restart gives every tenant a full allowance."""

    def __init__(self) -> None:
        self._states: dict[str, BucketState] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _expired(state: BucketState, now: float) -> bool:
        if state.blocked_until is not None:
            # Block served: the next call opens a fresh bucket.
            return now >= state.blocked_until
        return now >= state.window_end

    def _current(self, tenant_id: str, now: float) -> BucketState | None:
        state = self._states.get(tenant_id)
        if state is None:
            return None
        if self._expired(state, now):
            del self._states[tenant_id]
            return None
        return state

    async def consume(self, tenant_id: str, config: RateLimitConfig, now: float) -> RateLimitDecision:
        with self._lock:
            state = self._current(tenant_id, now)
            if state is not None and state.blocked_until is not None:
                return RateLimitDecision(False, 0, state.blocked_until, limit=config.points, tier=config.tier)
            if state is None:
                state = BucketState(points_consumed=0, window_end=now + config.window_seconds)
                self._states[tenant_id] = state
            if state.points_consumed < config.points:
                state.points_consumed += 1
                return RateLimitDecision(
                    True,
                    config.points - state.points_consumed,
                    state.window_end,
                    limit=config.points,
                    tier=config.tier,
                )
            state.blocked_until = now + config.block_seconds
            return RateLimitDecision(False, 0, state.blocked_until, limit=config.points, tier=config.tier)

    async def peek(self, tenant_id: str, config: RateLimitConfig, now: float) -> RateLimitDecision:
        with self._lock:
            state = self._current(tenant_id, now)
            if state is None:
                return RateLimitDecision(True, config.points, None, limit=config.points, tier=config.tier)
            if state.blocked_until is not None:
                return RateLimitDecision(False, 0, state.blocked_until, limit=config.points, tier=config.tier)
            remaining = config.points - state.points_consumed
            return RateLimitDecision(remaining > 0, remaining, state.window_end, limit=config.points, tier=config.tier)

    async def reset(self, tenant_id: str) -> None:
        with self._lock:
            self._states.pop(tenant_id, None)

    def prune(self, now: float) -> int:
        with self._lock:
            expired = [tenant_id for tenant_id, state in self._states.items() if self._expired(state, now)]
            for tenant_id in expired:
                del self._states[tenant_id]
        return len(expired)


# KEYS[1] = bucket hash; ARGV = now_ms, points, window_ms, block_ms, consume flag.
_FIXED_WINDOW_LUA = r"""
local now_ms = tonumber(ARGV[1])
local points = tonumber(ARGV[2])
local window_ms = tonumber(ARGV[3])
local block_ms = tonumber(ARGV[4])
local consume = tonumber(ARGV[5])

local data = redis.call("HMGET", KEYS[1], "consumed", "window_end", "blocked_until")
local consumed = tonumber(data[1])
local window_end = tonumber(data[2])
local blocked_until = tonumber(data[3])

if blocked_until ~= nil and now_ms < blocked_until then
  return {0, 0, blocked_until}
end
if consumed == nil or blocked_until ~= nil or now_ms >= window_end then
  consumed = 0
  window_end = now_ms + window_ms
  blocked_until = nil
  if consume == 0 then
    return {1, points, -1}
  end
end

if consume == 0 then
  local remaining = points - consumed
  return {remaining > 0 and 1 or 0, remaining, window_end}
end

if consumed < points then
  consumed = consumed + 1
  redis.call("HSET", KEYS[1], "consumed", consumed, "window_end", window_end)
  redis.call("HDEL", KEYS[1], "blocked_until")
  redis.call("PEXPIRE", KEYS[1], math.max(window_end - now_ms, 1))
  return {1, points - consumed, window_end}
end

blocked_until = now_ms + block_ms
redis.call("HSET", KEYS[1], "consumed", consumed, "window_end", window_end, "blocked_until", blocked_until)
redis.call("PEXPIRE", KEYS[1], block_ms)
return {0, 0, blocked_until}
"""


class RedisRateLimitStore:
    """Shared store so every API process sees the same per-tenant bucket."""

    def __init__(self, redis: Redis | None = None, *, prefix: str | None = None) -> None:
        settings = get_settings()
        self._redis = redis
        self._prefix = prefix or settings.rl_redis_prefix
        self._redis_url = settings.redis_url
        self._redis_loop: asyncio.AbstractEventLoop | None = None

    def _client(self) -> Redis:
        # Rebind when the event loop changes (tests create one loop per test).
        current_loop = asyncio.get_running_loop()
        if self._redis is None or (self._redis_loop is not None and self._redis_loop != current_loop):
            self._redis = Redis.from_url(self._redis_url, encoding="utf-8", decode_responses=True)
            self._redis_loop = current_loop
        return self._redis

    def _key(self, tenant_id: str) -> str:
        return f"{self._prefix}:tenant:{tenant_id}"

    async def _eval(self, tenant_id: str, config: RateLimitConfig, now: float, *, consume: bool) -> RateLimitDecision:
        result = await self._client().eval(
            _FIXED_WINDOW_LUA,
            1,
            self._key(tenant_id),
            int(now * 1000),
            config.points,
            config.window_seconds * 1000,
            config.block_seconds * 1000,
            1 if consume else 0,
        )
        allowed = int(result[0]) == 1
        remaining = int(result[1])
        reset_ms = int(result[2])
        return RateLimitDecision(
            allowed,
            remaining,
            reset_ms / 1000.0 if reset_ms >= 0 else None,
            limit=config.points,
            tier=config.tier,
        )

    async def consume(self, tenant_id: str, config: RateLimitConfig, now: float) -> RateLimitDecision:
        return await self._eval(tenant_id, config, now, consume=True)

    async def peek(self, tenant_id: str, config: RateLimitConfig, now: float) -> RateLimitDecision:
        return await self._eval(tenant_id, config, now, consume=False)

    async def reset(self, tenant_id: str) -> None:
        await self._client().delete(self._key(tenant_id))

    def prune(self, now: float) -> int:
        # Buckets carry a PEXPIRE, so Redis drops them on its own.
        return 0


class RateLimiter:
    """Per-tenant analysis allowance derived from the tenant's plan.

    Failures inside the limiter (plan lookup, store) follow `rl_fail_mode`:
    "open" lets the request through flagged as degraded, "closed" rejects it.
    """

    def __init__(
        self,
        plan_lookup: PlanLookup,
        *,
        store: RateLimitStore | None = None,
        settings: Settings | None = None,
        time_provider: Callable[[], float] | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._plan_lookup = plan_lookup
        self._store = store or InMemoryRateLimitStore()
        # Allow injecting time for deterministic tests.
        self._time_provider = time_provider or time.time
        # Resolved tier per tenant with the time it goes stale; plan changes apply after one window.
        self._configs: dict[str, tuple[RateLimitConfig, float]] = {}

    async def config_for(self, tenant_id: str) -> RateLimitConfig:
        now = self._time_provider()
        cached = self._configs.get(tenant_id)
        if cached is not None and now < cached[1]:
            return cached[0]
        plan = await self._plan_lookup.get_active_plan(tenant_id)
        config = config_for_plan(plan)
        self._configs[tenant_id] = (config, now + config.window_seconds)
        return config

    def _degraded(self, tenant_id: str, exc: Exception) -> RateLimitDecision:
        increment_counter("rate_limit_degraded_total")
        if self._settings.rl_fail_mode.lower() == "closed":
            logger.error("rate_limit_unavailable tenant_id=%s error=%s", tenant_id, type(exc).__name__)
            return RateLimitDecision(False, 0, None, degraded=True)
        logger.warning("rate_limit_degraded tenant_id=%s error=%s", tenant_id, type(exc).__name__)
        return RateLimitDecision(True, 0, None, degraded=True)

    async def check_and_consume(self, tenant_id: str) -> RateLimitDecision:
        try:
            config = await self.config_for(tenant_id)
            decision = await self._store.consume(tenant_id, config, self._time_provider())
        except Exception as exc:  # noqa: BLE001 - limiter faults follow the configured fail mode
            return self._degraded(tenant_id, exc)
        if not decision.allowed:
            increment_counter("rate_limit_rejected_total")
            logger.info("rate_limited tenant_id=%s tier=%s reset_at=%s", tenant_id, decision.tier, decision.reset_at)
        return decision

    async def peek(self, tenant_id: str) -> RateLimitDecision:
        try:
            config = await self.config_for(tenant_id)
            return await self._store.peek(tenant_id, config, self._time_provider())
        except Exception as exc:  # noqa: BLE001 - limiter faults follow the configured fail mode
            return self._degraded(tenant_id, exc)

    async def reset(self, tenant_id: str) -> None:
        self._configs.pop(tenant_id, None)
        await self._store.reset(tenant_id)
        logger.info("rate_limit_reset tenant_id=%s", tenant_id)

    def cleanup(self) -> int:
        """Drop stale tier lookups and expired buckets; returns the buckets removed."""
        now = self._time_provider()
        for tenant_id in [key for key, (_, stale_at) in self._configs.items() if now >= stale_at]:
            del self._configs[tenant_id]
        return self._store.prune(now)


def build_rate_limit_store(settings: Settings | None = None) -> RateLimitStore:
    settings = settings or get_settings()
    if settings.rl_backend.lower() == "redis":
        return RedisRateLimitStore(prefix=settings.rl_redis_prefix)
    return InMemoryRateLimitStore()
