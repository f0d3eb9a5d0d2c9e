"""
Pool consumption and refill coordination.

Numbers are drawn FIFO from store-resident pools. An empty pool is
refilled with one batch from the random source; concurrent requests for
the same pool key share that single in-flight refill instead of issuing
their own upstream calls.
"""
import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any

from dicebag.config import Settings, settings as default_settings
from dicebag.errors import DiceError, ErrorCode
from dicebag.logic.models import DIE_TYPES, DieType, RefillStats, parse_die_type, pool_key
from dicebag.logic.random_source import RandomSource
from dicebag.logic.usage_tracker import UsageTracker
from dicebag.pool_store import PoolStore
from dicebag.telemetry import PoolRefilledEvent, TelemetryService, telemetry_service

logger = logging.getLogger(__name__)

ANONYMOUS_IDENTITY = "anonymous"


def _retrieve_exception(task: asyncio.Task) -> None:
    # A refill may outlive every caller that awaited it.
    if not task.cancelled():
        task.exception()


class PoolManager:
    """
    Owns the refill lock and the process-local roll counters.

    Construct once per process and share it between request handlers.
    The refill lock is in-memory only: two processes sharing one store
    can still refill the same pool concurrently, and the last write wins.
    """

    def __init__(
        self,
        store: PoolStore,
        source: RandomSource,
        tracker: UsageTracker,
        settings: Settings = default_settings,
        telemetry: TelemetryService = telemetry_service,
    ):
        self._store = store
        self._source = source
        self._tracker = tracker
        self._settings = settings
        self._telemetry = telemetry

        # pool key -> in-flight refill
        self._refills: dict[str, asyncio.Task] = {}
        # pool key -> lock held while a pool's numbers are rewritten
        self._draw_locks: dict[str, asyncio.Lock] = {}

        self.stats = RefillStats()

    def refill_batch_size(self, user_id: str | None = None) -> int:
        """Shared public pools fetch larger batches than per-user pools."""
        if user_id:
            return self._settings.user_refill_size
        return self._settings.public_refill_size

    def is_refilling(self, die_type: DieType, user_id: str | None = None) -> bool:
        return pool_key(die_type, user_id) in self._refills

    def _draw_lock(self, key: str) -> asyncio.Lock:
        lock = self._draw_locks.get(key)
        if lock is None:
            lock = self._draw_locks[key] = asyncio.Lock()
        return lock

    async def get_next_number(self, die_type: DieType, user_id: str | None = None) -> int:
        """
        Pop the next number from the (user_id, die_type) pool.

        Refills an empty pool first. A pool that concurrent draws emptied
        between the check and the pop is refilled once more. Raises
        REFILL_FAILED only if the pool is still empty after this caller's
        refill; upstream errors propagate unchanged.
        """
        key = pool_key(die_type, user_id)
        pool = await self._store.get_or_create_pool(die_type, user_id)
        refilled = False
        if not pool.numbers:
            await self.refill(die_type, user_id)
            refilled = True

        while True:
            async with self._draw_lock(key):
                pool = await self._store.get_or_create_pool(die_type, user_id)
                if pool.numbers:
                    number = pool.numbers.pop(0)
                    await self._store.replace_pool_numbers(pool.id, pool.numbers)
                    break
                if refilled:
                    raise DiceError(
                        ErrorCode.REFILL_FAILED,
                        f"Failed to refill {pool.scope} pool for {die_type.value}",
                    )
            await self.refill(die_type, user_id)
            refilled = True

        self.stats.totalRolls += 1
        logger.debug(
            "Retrieved %d for %s (%d remaining)", number, key, len(pool.numbers)
        )
        return number

    async def refill(self, die_type: DieType, user_id: str | None = None) -> None:
        """
        Replace the pool with a fresh batch, at most one fetch per key at a time.

        A caller that finds a refill already in flight waits for it to
        finish and returns without fetching; its outcome is visible by
        re-reading the pool. The caller that starts the refill sees any
        error it raises. Cancelling a caller does not cancel the refill.
        """
        key = pool_key(die_type, user_id)
        in_flight = self._refills.get(key)
        if in_flight is not None:
            logger.info("Refill already in progress for %s, waiting", key)
            await asyncio.wait({in_flight})
            return

        task = asyncio.ensure_future(self._run_refill(die_type, user_id, key))
        task.add_done_callback(_retrieve_exception)
        self._refills[key] = task
        await asyncio.shield(task)

    async def _run_refill(self, die_type: DieType, user_id: str | None, key: str) -> None:
        tier = "user" if user_id else "public"
        batch_size = self.refill_batch_size(user_id)
        started = time.monotonic()
        try:
            logger.info("Starting refill for %s pool %s with %d numbers", tier, key, batch_size)
            numbers = await self._source.fetch(die_type, batch_size)
            pool = await self._store.get_or_create_pool(die_type, user_id)
            async with self._draw_lock(key):
                await self._store.replace_pool_numbers(pool.id, numbers)

            self.stats.totalApiCalls += 1
            self.stats.lastRefill[key] = datetime.now(timezone.utc).isoformat()
            duration_ms = (time.monotonic() - started) * 1000
            logger.info(
                "Refill completed for %s pool %s: %d numbers in %.0fms",
                tier,
                key,
                len(numbers),
                duration_ms,
            )
            self._telemetry.emit(
                PoolRefilledEvent(
                    pool_key=key,
                    tier=tier,
                    batch_size=len(numbers),
                    duration_ms=duration_ms,
                )
            )
        except Exception as e:
            logger.error("Refill failed for %s pool %s: %s", tier, key, e)
            raise
        finally:
            self._refills.pop(key, None)

    def _checked_die(self, die_type: str | DieType, quantity: int) -> DieType:
        die = parse_die_type(die_type)
        if die is None:
            raise DiceError(ErrorCode.INVALID_DIE_TYPE, f"Invalid die type: {die_type}")

        max_per_type = self._settings.max_dice_per_type
        if quantity > max_per_type:
            raise DiceError(
                ErrorCode.INVALID_QUANTITY,
                f"Maximum {max_per_type} dice per die type allowed, requested: {quantity}",
            )
        return die

    async def _draw(self, die: DieType, quantity: int, user_id: str | None) -> list[int]:
        logger.info(
            "Getting %d numbers for %s %s",
            quantity,
            "user" if user_id else "public",
            die.value,
        )
        return [await self.get_next_number(die, user_id) for _ in range(quantity)]

    async def get_numbers(
        self,
        die_type: str | DieType,
        quantity: int,
        user_id: str | None = None,
        client_ip: str | None = None,
    ) -> list[int]:
        """
        Draw quantity numbers for die_type.

        Anonymous callers (no user_id) are checked against the daily
        quota before any pool is touched, and charged once all draws
        succeed. A failed draw aborts the call without charging.
        """
        if quantity <= 0:
            return []

        die = self._checked_die(die_type, quantity)
        identity = None if user_id else client_ip or ANONYMOUS_IDENTITY
        if identity is not None:
            await self._tracker.validate(quantity, identity)

        results = await self._draw(die, quantity, user_id)

        if identity is not None:
            await self._tracker.record(quantity, identity)
        return results

    async def roll_many(
        self,
        quantities: dict[str | DieType, int],
        user_id: str | None = None,
        client_ip: str | None = None,
    ) -> dict[DieType, list[int]]:
        """
        Draw several die types as one roll.

        The anonymous quota is checked once for the total before any pool
        is touched and charged once after every draw succeeds, so a
        rejected roll never consumes numbers from some of its pools.
        """
        dice: dict[DieType, int] = {}
        for die_type, quantity in quantities.items():
            if quantity > 0:
                dice[self._checked_die(die_type, quantity)] = quantity
        total = sum(dice.values())
        if not total:
            return {}

        identity = None if user_id else client_ip or ANONYMOUS_IDENTITY
        if identity is not None:
            await self._tracker.validate(total, identity)

        results = {}
        for die, quantity in dice.items():
            results[die] = await self._draw(die, quantity, user_id)

        if identity is not None:
            await self._tracker.record(total, identity)
        return results

    async def get_pool_status(self, user_id: str | None = None) -> dict[str, dict[str, Any]]:
        """Remaining count and last refill time for every die type."""
        status = {}
        for die in DIE_TYPES:
            pool = await self._store.get_pool(die, user_id)
            last_refill = self.stats.lastRefill.get(pool_key(die, user_id))
            if last_refill is None and pool is not None:
                last_refill = pool.last_refill.isoformat()
            status[die.value] = {
                "remaining": pool.remaining if pool else 0,
                "lastRefill": last_refill,
            }
        return status

    async def get_stats(self, client_ip: str | None = None) -> dict[str, Any]:
        """Process counters plus the caller's quota snapshot."""
        usage = await self._tracker.stats(client_ip)
        return {
            **self.stats.model_dump(),
            "usageStats": usage.model_dump(),
        }
