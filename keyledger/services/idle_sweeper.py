"""
Idle Sweeper: periodic memory reclamation for the cache and rate limiter.
==========================================================================

Runs during FastAPI lifespan:
1. Every sweep_interval_s (5 min default), three independent passes:
   - cooldowns past their expiry
   - cache entries older than grace × cache lifetime
   - in-flight markers older than the ceiling (a path that never released)
2. Never touches the document store.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Dict, Optional

from keyledger.services.key_cache import KeyCache
from keyledger.services.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)


class IdleSweeper:
    """Owns the background sweep loop."""

    def __init__(
        self,
        cache: KeyCache,
        limiter: RateLimiter,
        interval_s: float = 300,
        cache_ttl_s: float = 600,
        cache_grace_multiplier: float = 2,
        clock: Callable[[], float] = time.time,
    ):
        self._cache = cache
        self._limiter = limiter
        self.interval_s = interval_s
        self.cache_max_age_s = cache_ttl_s * cache_grace_multiplier
        self._clock = clock
        self._background_task: Optional[asyncio.Task] = None

    def sweep_once(self) -> Dict[str, int]:
        now = self._clock()
        removed = {
            "cooldowns": self._limiter.sweep_cooldowns(now),
            "cache_entries": self._cache.sweep(now, self.cache_max_age_s),
            "in_flight": self._limiter.sweep_in_flight(now),
        }
        if any(removed.values()):
            logger.info(
                "Idle sweep: %d cooldowns, %d cache entries, %d in-flight markers removed",
                removed["cooldowns"], removed["cache_entries"], removed["in_flight"],
            )
        return removed

    async def start(self) -> None:
        if self._background_task is None:
            self._background_task = asyncio.create_task(self._background_loop())

    async def stop(self) -> None:
        """Cancel the background loop."""
        if self._background_task:
            self._background_task.cancel()
            try:
                await self._background_task
            except asyncio.CancelledError:
                pass
            self._background_task = None

    @property
    def running(self) -> bool:
        return self._background_task is not None and not self._background_task.done()

    async def _background_loop(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.interval_s)
                try:
                    self.sweep_once()
                except Exception:
                    logger.exception("Idle sweep iteration failed")
        except asyncio.CancelledError:
            logger.info("Idle sweeper background loop cancelled")
            raise
