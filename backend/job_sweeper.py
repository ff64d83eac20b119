"""
Job Sweeper.

Background loop that keeps the job table healthy:
- Fails jobs that have not been updated within the staleness window
- Removes their cached artifacts and orphaned empty EPG files
- Deletes completed/failed jobs past the retention window
"""
import asyncio
import logging
from typing import Optional

from config import get_settings
from job_runner import JobService

logger = logging.getLogger(__name__)

# Initial wait before the first sweep (seconds)
STARTUP_DELAY = 5


class JobSweeper:
    """Periodic stale-job and retention sweep."""

    def __init__(self, service: Optional[JobService] = None, check_interval: Optional[int] = None):
        self.service = service or JobService()
        self.check_interval = check_interval or get_settings().sweep_interval_seconds
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """Start the sweep loop."""
        if self._running:
            logger.warning("[SWEEP] Job sweeper already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._sweep_loop())
        logger.info("[SWEEP] Job sweeper started (check_interval=%ss)", self.check_interval)

    async def stop(self) -> None:
        """Stop the sweep loop."""
        if not self._running:
            return

        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("[SWEEP] Job sweeper stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    def run_once(self) -> dict:
        """Run one sweep and return the counts."""
        result = self.service.sweep()
        if result["failed"] or result["deleted"]:
            logger.info(
                "[SWEEP] Failed %d stale jobs, deleted %d expired jobs",
                result["failed"], result["deleted"],
            )
        return result

    async def _sweep_loop(self) -> None:
        try:
            await asyncio.sleep(STARTUP_DELAY)
        except asyncio.CancelledError:
            return

        while self._running:
            try:
                self.run_once()
            except Exception as e:
                logger.exception("[SWEEP] Error in sweep loop: %s", e)

            try:
                await asyncio.sleep(self.check_interval)
            except asyncio.CancelledError:
                break


# Global sweeper instance
_sweeper: Optional[JobSweeper] = None


def get_sweeper() -> JobSweeper:
    """Get the global job sweeper instance."""
    global _sweeper
    if _sweeper is None:
        _sweeper = JobSweeper()
    return _sweeper


async def start_sweeper() -> None:
    await get_sweeper().start()


async def stop_sweeper() -> None:
    await get_sweeper().stop()
