"""
Periodic sweep of expired response cache entries.

Reads never depend on it; it only keeps the backing store from growing
without bound when the store has no expiry of its own.
"""

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from loguru import logger

from moviehub.services.cache import ResponseCache


class CacheSweeper:
    """APScheduler job wrapper around ResponseCache.invalidate_expired."""

    def __init__(self, cache: ResponseCache, interval_minutes: int = 30):
        self.cache = cache
        self.interval_minutes = interval_minutes
        self.scheduler = AsyncIOScheduler()
        self._is_running = False

    async def sweep_job(self) -> None:
        """Scheduled sweep; failures are logged and retried next interval."""
        try:
            await self.cache.invalidate_expired()
        except Exception as e:
            logger.error(f"Error in scheduled cache sweep: {e}")

    def start(self) -> None:
        """Start the sweeper. Must be called with a running event loop."""
        if self._is_running:
            logger.warning("Cache sweeper is already running")
            return

        self.scheduler.add_job(
            self.sweep_job,
            trigger="interval",
            minutes=self.interval_minutes,
            id="response_cache_sweep",
            name="Response Cache Sweeper",
            replace_existing=True,
        )
        self.scheduler.start()
        self._is_running = True
        logger.info(f"Cache sweeper started: every {self.interval_minutes} minutes")

    def stop(self) -> None:
        """Stop the sweeper."""
        if not self._is_running:
            return

        self.scheduler.shutdown(wait=False)
        self._is_running = False
        logger.info("Cache sweeper stopped")

    def is_running(self) -> bool:
        return self._is_running

    async def sweep_now(self) -> int:
        """Run one sweep immediately."""
        return await self.cache.invalidate_expired()
