"""Startup recovery, health and usage cleanup tests."""
import asyncio
from datetime import timedelta

import pytest

from dicebag.logic.cleanup import CleanupService
from dicebag.logic.models import DIE_TYPES, DieType
from dicebag.logic.recovery import RecoveryService
from dicebag.pool_store import PoolStore


@pytest.fixture
def recovery(store, manager, test_settings) -> RecoveryService:
    return RecoveryService(store, manager, test_settings.low_pool_threshold)


class TestInitializePools:
    """Boot-time pool creation."""

    @pytest.mark.asyncio
    async def test_creates_every_public_pool(self, recovery, store: PoolStore, fake_source):
        """Boot creates one empty public pool per die without fetching."""
        await recovery.initialize_pools()

        public_pools, user_pools = await store.load_all_pools()
        assert {p.die_type for p in public_pools} == set(DIE_TYPES)
        assert user_pools == []
        assert fake_source.calls == []

    @pytest.mark.asyncio
    async def test_keeps_existing_numbers(self, recovery, store: PoolStore):
        """Boot leaves numbers already in a pool alone."""
        pool = await store.get_or_create_pool(DieType.D20)
        await store.replace_pool_numbers(pool.id, [20, 19])

        await recovery.initialize_pools()

        assert (await store.get_or_create_pool(DieType.D20)).numbers == [20, 19]

    @pytest.mark.asyncio
    async def test_one_failing_die_does_not_stop_the_rest(self, recovery, store: PoolStore, monkeypatch):
        """A store error on one die does not block the others."""
        original = store.get_or_create_pool

        async def flaky(die_type, user_id=None):
            if die_type == DieType.D8:
                raise ConnectionError("redis unavailable")
            return await original(die_type, user_id)

        monkeypatch.setattr(store, "get_or_create_pool", flaky)
        await recovery.initialize_pools()

        public_pools, _ = await store.load_all_pools()
        assert {p.die_type for p in public_pools} == set(DIE_TYPES) - {DieType.D8}

    @pytest.mark.asyncio
    async def test_recover_pools(self, recovery, store: PoolStore):
        """recover_pools initializes every public pool."""
        await recovery.recover_pools()
        public_pools, _ = await store.load_all_pools()
        assert len(public_pools) == len(DIE_TYPES)


class TestHealthCheck:
    """Low-water-mark reporting."""

    @pytest.mark.asyncio
    async def test_reports_low_pools(self, recovery, manager, store: PoolStore):
        """Pools under the threshold are listed as low."""
        await recovery.initialize_pools()
        await manager.get_numbers(DieType.D6, 5, client_ip="192.0.2.1")
        pool = await store.get_or_create_pool(DieType.D4)
        await store.replace_pool_numbers(pool.id, [1] * 9)

        health = await recovery.health_check()

        assert health["status"] == "healthy"
        assert health["poolStatus"]["d6"]["remaining"] == 15
        assert health["poolStatus"]["d4"]["remaining"] == 9
        assert "d6" not in health["lowPools"]
        assert "d4" in health["lowPools"]
        assert "d100" in health["lowPools"]
        assert health["usageStats"]["dailyLimit"] == 50
        assert "timestamp" in health

    @pytest.mark.asyncio
    async def test_no_low_pools(self, recovery, store: PoolStore):
        """A fully stocked service reports no low pools."""
        for die in DIE_TYPES:
            pool = await store.get_or_create_pool(die)
            await store.replace_pool_numbers(pool.id, [1] * 10)

        health = await recovery.health_check()
        assert health["lowPools"] is None

    @pytest.mark.asyncio
    async def test_store_failure_reports_unhealthy(self, recovery, store: PoolStore):
        """A store error makes the health check unhealthy instead of raising."""
        store._client = None
        health = await recovery.health_check()
        assert health["status"] == "unhealthy"
        assert "Redis not connected" in health["error"]


class TestCleanupService:
    """Usage record housekeeping."""

    async def _seed(self, store: PoolStore, mock_redis, days_ago: int) -> None:
        day = store.today() - timedelta(days=days_ago)
        await mock_redis.hset(store.usage_id("192.0.2.1", day), mapping={"total_rolls": 3})

    @pytest.mark.asyncio
    async def test_run_cleanup(self, store: PoolStore, mock_redis):
        """A cleanup run deletes expired usage and returns the count."""
        await self._seed(store, mock_redis, 0)
        await self._seed(store, mock_redis, 10)
        cleanup = CleanupService(store, retention_days=7, interval_hours=24)

        assert await cleanup.run_cleanup() == 1
        assert await cleanup.run_cleanup() == 0

    @pytest.mark.asyncio
    async def test_run_cleanup_survives_store_failure(self, store: PoolStore):
        """A failing cleanup run returns zero instead of raising."""
        store._client = None
        cleanup = CleanupService(store, retention_days=7, interval_hours=24)
        assert await cleanup.run_cleanup() == 0

    @pytest.mark.asyncio
    async def test_start_runs_immediately_and_stop(self, store: PoolStore, mock_redis):
        """The cleanup loop runs once on start and stops cleanly."""
        await self._seed(store, mock_redis, 30)
        cleanup = CleanupService(store, retention_days=7, interval_hours=24)

        cleanup.start()
        assert cleanup.is_running
        cleanup.start()  # no second task
        for _ in range(5):
            await asyncio.sleep(0)

        assert mock_redis._hashes == {}
        assert cleanup.status()["isRunning"] is True
        await cleanup.stop()
        assert cleanup.is_running is False
        assert cleanup.status()["isRunning"] is False
