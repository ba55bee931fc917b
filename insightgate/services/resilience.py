from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

from insightgate.core.config import get_settings
from insightgate.core.errors import IntegrationUnavailableError
from insightgate.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int
    open_seconds: int
    half_open_trials: int


@dataclass
class CircuitBreakerState:
    state: str
    failures: int
    opened_at: float | None
    half_open_trials: int


class CircuitBreaker:
    """Process-local breaker guarding one provider integration."""

    def __init__(
        self,
        name: str,
        *,
        config: CircuitBreakerConfig | None = None,
        time_source: Callable[[], float] | None = None,
        on_transition: Callable[[str, str], Awaitable[None]] | None = None,
    ) -> None:
        self._name = name
        if config is None:
            settings = get_settings()
            config = CircuitBreakerConfig(
                failure_threshold=settings.cb_failure_threshold,
                open_seconds=settings.cb_open_seconds,
                half_open_trials=settings.cb_half_open_trials,
            )
        self._config = config
        self._time = time_source or time.monotonic
        self._on_transition = on_transition
        self._state = CircuitBreakerState("closed", 0, None, 0)

    @property
    def name(self) -> str:
        return self._name

    @property
    def state(self) -> str:
        return self._state.state

    async def _transition(self, target: str) -> None:
        if self._state.state != target:
            logger.warning("circuit_breaker_transition name=%s from=%s to=%s", self._name, self._state.state, target)
            increment_counter(f"circuit_breaker_transition_total.{self._name}.{target}")
            if self._on_transition is not None:
                await self._on_transition(self._name, target)
        self._state = CircuitBreakerState(target, 0, self._time() if target == "open" else None, 0)

    async def before_call(self) -> None:
        # Reject while open; allow a bounded number of half-open trial calls.
        state = self._state
        if state.state == "open":
            if state.opened_at is not None and (self._time() - state.opened_at) >= self._config.open_seconds:
                await self._transition("half_open")
            else:
                raise IntegrationUnavailableError(f"{self._name} is temporarily unavailable")
        if self._state.state == "half_open":
            if self._state.half_open_trials >= self._config.half_open_trials:
                raise IntegrationUnavailableError(f"{self._name} is temporarily unavailable")
            self._state.half_open_trials += 1

    async def record_success(self) -> None:
        if self._state.state != "closed":
            await self._transition("closed")
            return
        self._state.failures = 0

    async def record_failure(self) -> None:
        if self._state.state == "half_open":
            await self._transition("open")
            return
        failures = self._state.failures + 1
        if failures >= self._config.failure_threshold:
            await self._transition("open")
        else:
            self._state.failures = failures
