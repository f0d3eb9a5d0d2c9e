"""Startup pool initialization and pool health reporting."""
import logging
from datetime import datetime, timezone
from typing import Any

from dicebag.logic.models import DIE_TYPES
from dicebag.logic.pool_manager import PoolManager
from dicebag.pool_store import PoolStore

logger = logging.getLogger(__name__)


class RecoveryService:
    """Makes sure public pools exist at boot and flags pools running low."""

    def __init__(self, store: PoolStore, manager: PoolManager, low_pool_threshold: int):
        self._store = store
        self._manager = manager
        self.low_pool_threshold = low_pool_threshold

    async def initialize_pools(self) -> None:
        """
        Create every public pool that does not exist yet.

        Best effort: a die type that fails is logged and skipped.
        """
        logger.info("Starting pool initialization")
        for die in DIE_TYPES:
            try:
                await self._store.get_or_create_pool(die)
            except Exception as e:
                logger.error("Failed to initialize public pool for %s: %s", die.value, e)

        try:
            public_pools, user_pools = await self._store.load_all_pools()
        except Exception as e:
            logger.error("Failed to load pools after initialization: %s", e)
            return
        logger.info(
            "Pool initialization completed: %d public pools, %d user pools",
            len(public_pools),
            len(user_pools),
        )
        for pool in public_pools:
            logger.info("Public %s: %d numbers remaining", pool.die_type.value, pool.remaining)

    async def recover_pools(self) -> None:
        """Initialize pools, then log their status and today's usage."""
        await self.initialize_pools()
        try:
            status = await self._manager.get_pool_status()
            usage = await self._store.usage_statistics()
        except Exception as e:
            logger.error("Pool recovery check failed: %s", e)
            return
        logger.info("Pool recovery completed. Pool status: %s", status)
        logger.info("Usage statistics: %s", usage)

    async def health_check(self) -> dict[str, Any]:
        """Pool levels with every die below the low-water mark listed in lowPools."""
        timestamp = datetime.now(timezone.utc).isoformat()
        try:
            status = await self._manager.get_pool_status()
            stats = await self._manager.get_stats()
        except Exception as e:
            logger.error("Health check failed: %s", e)
            return {"status": "unhealthy", "error": str(e), "timestamp": timestamp}

        low_pools = [
            die for die, pool in status.items() if pool["remaining"] < self.low_pool_threshold
        ]
        return {
            "status": "healthy",
            "poolStatus": status,
            "usageStats": stats["usageStats"],
            "lowPools": low_pools or None,
            "timestamp": timestamp,
        }
