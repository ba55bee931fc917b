from __future__ import annotations

import asyncio
import logging

from insightgate.services.analysis import AnalysisService


logger = logging.getLogger(__name__)


async def run_cache_sweeper(service: AnalysisService, interval_s: float, stop: asyncio.Event) -> None:
    """Sweep on a fixed interval until `stop` is set; one failed sweep never stops the loop."""
    while not stop.is_set():
        try:
            await asyncio.wait_for(stop.wait(), timeout=interval_s)
            break
        except asyncio.TimeoutError:
            pass
        try:
            service.cleanup_caches()
        except Exception as exc:  # noqa: BLE001 - keep sweeping on unexpected errors
            logger.warning("cache_sweep_failed error=%s", type(exc).__name__)
