from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class ExternalCallSample:
    ts: float
    integration: str
    latency_ms: float
    success: bool


_external_samples: Deque[ExternalCallSample] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    # Capture latency and outcome of tenant database and provider calls.
    _external_samples.append(
        ExternalCallSample(
            ts=time.time(),
            integration=integration,
            latency_ms=latency_ms,
            success=success,
        )
    )


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def external_latency_by_integration(window_s: int) -> dict[str, dict[str, float | int | None]]:
    # Aggregate p95/max latency and failures per integration in the window.
    cutoff = time.time() - window_s
    by_integration: dict[str, list[ExternalCallSample]] = defaultdict(list)
    for sample in _external_samples:
        if sample.ts < cutoff:
            continue
        by_integration[sample.integration].append(sample)
    result: dict[str, dict[str, float | int | None]] = {}
    for integration, samples in by_integration.items():
        latencies = sorted(sample.latency_ms for sample in samples)
        p95_idx = max(0, math.ceil(0.95 * len(latencies)) - 1)
        result[integration] = {
            "p95": latencies[p95_idx],
            "max": latencies[-1],
            "failures": sum(1 for sample in samples if not sample.success),
        }
    return result


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def reset_telemetry() -> None:
    # Test helper; process state otherwise lives for the process lifetime.
    _external_samples.clear()
    _counters.clear()
