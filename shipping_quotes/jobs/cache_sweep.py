"""
Background sweep of expired quote cache entries.

Reads expire lazily, but entries nobody asks for again would otherwise stay in
memory until LRU eviction. The sweep runs on its own task and never blocks
request handling.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from shipping_quotes.core.config import settings
from shipping_quotes.core.quote_cache import QuoteCache

logger = logging.getLogger(__name__)


class CacheSweepRunner:
    """
    Periodically calls QuoteCache.sweep().
    """

    def __init__(self, cache: QuoteCache, interval_seconds: Optional[int] = None):
        self.cache = cache
        self.interval_seconds = interval_seconds or settings.QUOTE_CACHE_SWEEP_INTERVAL_SECONDS
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._consecutive_failures = 0
        self.last_run: Optional[datetime] = None
        self.last_removed = 0

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        if self._running:
            logger.warning("Quote cache sweep already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._sweep_loop())
        logger.info(f"Quote cache sweep started (every {self.interval_seconds}s)")

    async def stop(self):
        self._running = False

        if self._task:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

        logger.info("Quote cache sweep stopped")

    async def run_once(self) -> int:
        """Run a single sweep cycle."""
        removed = await self.cache.sweep()
        self.last_run = datetime.now(timezone.utc)
        self.last_removed = removed
        if removed:
            logger.info(f"Quote cache sweep removed {removed} expired entries")
        return removed

    async def _sweep_loop(self):
        while self._running:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.run_once()
                self._consecutive_failures = 0
            except Exception as e:
                self._consecutive_failures += 1
                logger.error(f"Quote cache sweep error ({self._consecutive_failures} in a row): {e}")

    def heartbeat(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "interval_seconds": self.interval_seconds,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "last_removed": self.last_removed,
            "consecutive_failures": self._consecutive_failures,
        }
