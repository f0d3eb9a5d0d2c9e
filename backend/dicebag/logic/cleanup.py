"""Periodic removal of expired usage records."""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any

from dicebag.pool_store import PoolStore

logger = logging.getLogger(__name__)


class CleanupService:
    """Background task that prunes usage records past the retention window."""

    def __init__(self, store: PoolStore, retention_days: int, interval_hours: float):
        self._store = store
        self.retention_days = retention_days
        self.interval_seconds = interval_hours * 3600
        self._task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Run a cleanup now and then every interval, until stop()."""
        if self.is_running:
            logger.info("Cleanup service is already running")
            return
        self._task = asyncio.create_task(self._loop())
        logger.info(
            "Started periodic cleanup every %.1f hours", self.interval_seconds / 3600
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Stopped periodic cleanup")

    async def _loop(self) -> None:
        while True:
            await self.run_cleanup()
            await asyncio.sleep(self.interval_seconds)

    async def run_cleanup(self) -> int:
        """One cleanup pass. Returns records deleted, 0 if the pass failed."""
        try:
            deleted = await self._store.cleanup_old_usage(self.retention_days)
            stats = await self._store.usage_statistics()
        except Exception as e:
            logger.error("Error during usage cleanup: %s", e)
            return 0
        logger.info(
            "Cleanup completed: %d records deleted, %d total records, %d today",
            deleted,
            stats["totalRecords"],
            stats["todayRecords"],
        )
        return deleted

    def status(self) -> dict[str, Any]:
        return {
            "isRunning": self.is_running,
            "retentionDays": self.retention_days,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
