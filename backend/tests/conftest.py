"""Pytest fixtures for backend tests."""
import asyncio
import fnmatch
from typing import Any, Generator

import pytest
from fastapi.testclient import TestClient

from dicebag.config import Settings
from dicebag.logic.models import DieType
from dicebag.logic.pool_manager import PoolManager
from dicebag.logic.random_source import RandomSource
from dicebag.logic.usage_tracker import UsageTracker
from dicebag.pool_store import PoolStore
from dicebag.telemetry import TelemetryService


class MockRedis:
    """Mock Redis client for testing (hash and counter commands)."""

    def __init__(self):
        self._hashes: dict[str, dict[str, str]] = {}
        self._counters: dict[str, int] = {}
        self.ttls: dict[str, int] = {}

    async def hgetall(self, key: str) -> dict[str, str]:
        return dict(self._hashes.get(key, {}))

    async def hget(self, key: str, field: str) -> str | None:
        return self._hashes.get(key, {}).get(field)

    async def hset(self, key: str, field: str | None = None, value: Any = None, mapping: dict | None = None) -> int:
        items = dict(mapping or {})
        if field is not None:
            items[field] = value
        h = self._hashes.setdefault(key, {})
        added = sum(1 for f in items if f not in h)
        h.update({f: str(v) for f, v in items.items()})
        return added

    async def hsetnx(self, key: str, field: str, value: Any) -> int:
        h = self._hashes.setdefault(key, {})
        if field in h:
            return 0
        h[field] = str(value)
        return 1

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        h = self._hashes.setdefault(key, {})
        h[field] = str(int(h.get(field, 0)) + amount)
        return int(h[field])

    async def incr(self, key: str) -> int:
        self._counters[key] = self._counters.get(key, 0) + 1
        return self._counters[key]

    async def expire(self, key: str, seconds: int) -> bool:
        if key not in self._counters:
            return False
        self.ttls[key] = seconds
        return True

    async def delete(self, *keys: str) -> int:
        deleted = 0
        for key in keys:
            if self._hashes.pop(key, None) is not None:
                deleted += 1
        return deleted

    async def scan_iter(self, match: str | None = None, count: int | None = None):
        for key in list(self._hashes):
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key

    async def aclose(self) -> None:
        pass

    def clear(self) -> None:
        self._hashes.clear()
        self._counters.clear()
        self.ttls.clear()


class FailingRedis(MockRedis):
    """Mock Redis whose usage commands fail, as if the store were unreachable."""

    async def incr(self, key: str) -> int:
        raise ConnectionError("redis unavailable")

    async def hget(self, key: str, field: str) -> str | None:
        raise ConnectionError("redis unavailable")

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        raise ConnectionError("redis unavailable")


class YieldingRedis(MockRedis):
    """Mock Redis that suspends on every read, like a network round trip."""

    async def hgetall(self, key: str) -> dict[str, str]:
        await asyncio.sleep(0)
        return await super().hgetall(key)


class FakeRandomSource(RandomSource):
    """
    Counting random source.

    Values cycle through each die's faces so batches are predictable.
    Set gate to hold fetches open, error to make them fail.
    """

    def __init__(self):
        self.calls: list[tuple[DieType, int]] = []
        self.batches: list[list[int]] = []
        self.gate: asyncio.Event | None = None
        self.error: Exception | None = None
        self.empty = False
        self._served = 0

    async def fetch(self, die_type, quantity: int) -> list[int]:
        die = DieType(die_type)
        self.calls.append((die, quantity))
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        if self.empty:
            return []
        batch = [(self._served + i) % die.max_value + 1 for i in range(quantity)]
        self._served += quantity
        self.batches.append(batch)
        return batch


class RecordingTelemetrySink:
    """Telemetry sink that keeps every event."""

    def __init__(self):
        self.events: list[tuple[str, dict[str, Any]]] = []

    def emit(self, event_name: str, data: dict[str, Any]) -> None:
        self.events.append((event_name, data))

    def get_events(self, name: str) -> list[dict[str, Any]]:
        return [data for event_name, data in self.events if event_name == name]


@pytest.fixture
def mock_redis() -> MockRedis:
    """Create a fresh mock Redis for each test."""
    return MockRedis()


@pytest.fixture
def test_settings() -> Settings:
    """Small batches so refills are easy to trigger."""
    return Settings(
        public_refill_size=20,
        user_refill_size=10,
        public_daily_limit=50,
        max_dice_per_type=50,
        low_pool_threshold=10,
        enable_cleanup=False,
    )


@pytest.fixture
def store(mock_redis: MockRedis) -> PoolStore:
    """PoolStore with mock client."""
    service = PoolStore(redis_url="redis://unused", usage_timezone="UTC")
    service._client = mock_redis
    return service


@pytest.fixture
def failing_store() -> PoolStore:
    """PoolStore whose usage commands raise."""
    service = PoolStore(redis_url="redis://unused", usage_timezone="UTC")
    service._client = FailingRedis()
    return service


@pytest.fixture
def yielding_store() -> PoolStore:
    """PoolStore whose reads suspend, so concurrent draws interleave."""
    service = PoolStore(redis_url="redis://unused", usage_timezone="UTC")
    service._client = YieldingRedis()
    return service


@pytest.fixture
def fake_source() -> FakeRandomSource:
    return FakeRandomSource()


@pytest.fixture
def telemetry_sink() -> RecordingTelemetrySink:
    return RecordingTelemetrySink()


@pytest.fixture
def tracker(store: PoolStore, test_settings: Settings) -> UsageTracker:
    return UsageTracker(store, test_settings.public_daily_limit)


@pytest.fixture
def manager(
    store: PoolStore,
    fake_source: FakeRandomSource,
    tracker: UsageTracker,
    test_settings: Settings,
    telemetry_sink: RecordingTelemetrySink,
) -> PoolManager:
    return PoolManager(
        store, fake_source, tracker, test_settings, TelemetryService(telemetry_sink)
    )


@pytest.fixture
def client_with_mock_redis(
    mock_redis: MockRedis, fake_source: FakeRandomSource, monkeypatch: pytest.MonkeyPatch
) -> Generator[TestClient, None, None]:
    """Create TestClient with mocked Redis and a counting random source."""
    import dicebag.main
    from dicebag.config import settings
    from dicebag.pool_store import pool_store

    monkeypatch.setattr(dicebag.main, "build_random_source", lambda _settings: fake_source)
    monkeypatch.setattr(settings, "enable_cleanup", False)

    # Patch the global pool_store client
    original_client = pool_store._client
    pool_store._client = mock_redis

    with TestClient(dicebag.main.app) as client:
        yield client

    # Restore original
    pool_store._client = original_client
    mock_redis.clear()
