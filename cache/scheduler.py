"""Background maintenance sweeps for the search cache.

Two independent asyncio tasks run on the application's event loop:

- cleanup sweep: ``perform_scheduled_cleanup`` every cleanup interval
- temporal sweep: ``invalidate_temporal_queries`` every temporal interval,
  only while the local hour is inside the configured window

Both tasks are owned by the scheduler and cancelled by ``stop()``.
"""

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Callable, List, Optional

from cache_config import CACHE_CONFIG_DEFAULT, CacheConfig
from utils import is_within_hours

if TYPE_CHECKING:
    from cache.manager import CacheManager

logger = logging.getLogger(__name__)


class CacheMaintenanceScheduler:
    """Runs the periodic cache sweeps of a CacheManager.

    Example:
        >>> scheduler = CacheMaintenanceScheduler(manager, CACHE_CONFIG_DEFAULT)
        >>> await scheduler.start()
        >>> scheduler.is_running
        True
        >>> await scheduler.stop()
    """

    def __init__(
        self,
        manager: "CacheManager",
        config: CacheConfig = CACHE_CONFIG_DEFAULT,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the scheduler.

        Args:
            manager: Cache manager whose sweeps are scheduled
            config: Sweep intervals and temporal window
            clock: Source of the current epoch time in seconds

        Raises:
            ValueError: If an interval is not positive or the window hours
                are outside 0-23
        """
        if config.cleanup_interval_seconds <= 0 or config.temporal_sweep_interval_seconds <= 0:
            raise ValueError("Sweep intervals must be positive")
        for hour in (config.temporal_sweep_start_hour, config.temporal_sweep_end_hour):
            if not 0 <= hour <= 23:
                raise ValueError(f"Temporal sweep hour out of range: {hour}")

        self.manager = manager
        self.config = config
        self._clock = clock
        self._tasks: List[asyncio.Task] = []

    @property
    def is_running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def start(self) -> None:
        """Start both sweep tasks on the running event loop. Idempotent."""
        if self.is_running:
            logger.debug("Cache maintenance already running")
            return

        self._tasks = [
            asyncio.create_task(self._cleanup_loop(), name="cache-cleanup-sweep"),
            asyncio.create_task(self._temporal_loop(), name="cache-temporal-sweep"),
        ]
        logger.info(
            "Cache maintenance started (cleanup every %ss, temporal sweep every %ss during %02d:00-%02d:00)",
            self.config.cleanup_interval_seconds,
            self.config.temporal_sweep_interval_seconds,
            self.config.temporal_sweep_start_hour,
            self.config.temporal_sweep_end_hour,
        )

    async def stop(self) -> None:
        """Cancel both sweep tasks and wait for them to finish."""
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("Cache maintenance stopped")

    def in_temporal_window(self, timestamp: Optional[float] = None) -> bool:
        """Whether the temporal sweep is active at ``timestamp`` (default: now)."""
        if timestamp is None:
            timestamp = self._clock()
        return is_within_hours(
            timestamp,
            self.config.temporal_sweep_start_hour,
            self.config.temporal_sweep_end_hour,
        )

    def run_cleanup_once(self) -> None:
        try:
            self.manager.perform_scheduled_cleanup()
        except Exception:
            logger.exception("Scheduled cache cleanup failed")

    def run_temporal_sweep_once(self) -> bool:
        """Run the temporal sweep if inside the window.

        Returns:
            True if the sweep ran
        """
        if not self.in_temporal_window():
            logger.debug("Outside temporal sweep window, skipping")
            return False
        try:
            self.manager.invalidate_temporal_queries()
        except Exception:
            logger.exception("Temporal query sweep failed")
        return True

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.cleanup_interval_seconds)
            self.run_cleanup_once()

    async def _temporal_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.temporal_sweep_interval_seconds)
            self.run_temporal_sweep_once()
