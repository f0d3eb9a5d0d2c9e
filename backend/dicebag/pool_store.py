"""Redis-backed persistence for dice pools and anonymous usage records."""
import json
import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any
from zoneinfo import ZoneInfo

import redis.asyncio as redis

from dicebag.config import settings
from dicebag.logic.models import DieType, Pool, UsageRecord

logger = logging.getLogger(__name__)

POOL_FIELDS = frozenset({"die_type", "user_id", "numbers", "last_refill"})


def _now() -> datetime:
    return datetime.now(timezone.utc)


class PoolStore:
    """
    Document store over Redis hashes.

    Pools live at pool:public:<die> and pool:user:<user_id>:<die> with
    fields die_type, user_id, numbers (JSON list) and last_refill (ISO).
    Usage records live at usage:<YYYY-MM-DD>:<identity> with fields
    day, identity and total_rolls.
    Rate-limit counters are plain integers at
    ratelimit:<scope>:<identity>:<window> that expire with their window.
    """

    # Key prefixes
    PUBLIC_POOL_PREFIX = "pool:public:"
    USER_POOL_PREFIX = "pool:user:"
    USAGE_PREFIX = "usage:"
    RATE_PREFIX = "ratelimit:"

    def __init__(self, redis_url: str | None = None, usage_timezone: str | None = None):
        self._url = redis_url or settings.redis_url
        self._tz = ZoneInfo(usage_timezone or settings.usage_timezone)
        self._client: redis.Redis | None = None

    async def connect(self) -> None:
        """Connect to Redis."""
        if self._client is None:
            self._client = redis.from_url(self._url, decode_responses=True)

    async def close(self) -> None:
        """Close Redis connection."""
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> redis.Redis:
        """Get Redis client, raise if not connected."""
        if self._client is None:
            raise RuntimeError("Redis not connected")
        return self._client

    def today(self) -> date:
        """Current usage day, bounded by midnight in the configured timezone."""
        return datetime.now(self._tz).date()

    # === Pools ===

    def pool_id(self, die_type: DieType, user_id: str | None = None) -> str:
        if user_id:
            return f"{self.USER_POOL_PREFIX}{user_id}:{die_type.value}"
        return f"{self.PUBLIC_POOL_PREFIX}{die_type.value}"

    @staticmethod
    def _to_pool(pool_id: str, data: dict[str, str]) -> Pool:
        return Pool(
            id=pool_id,
            die_type=DieType(data["die_type"]),
            user_id=data.get("user_id") or None,
            numbers=json.loads(data.get("numbers") or "[]"),
            last_refill=datetime.fromisoformat(data["last_refill"]),
        )

    async def get_or_create_pool(self, die_type: DieType, user_id: str | None = None) -> Pool:
        """
        Return the pool for (user_id, die_type), creating an empty one if missing.

        Creation sets each field only if absent, so concurrent creators
        converge on one document and never clobber a refill.
        """
        key = self.pool_id(die_type, user_id)
        data = await self.client.hgetall(key)
        if not POOL_FIELDS <= data.keys():
            defaults = {
                "die_type": die_type.value,
                "user_id": user_id or "",
                "numbers": "[]",
                "last_refill": _now().isoformat(),
            }
            created = False
            for field, value in defaults.items():
                created = bool(await self.client.hsetnx(key, field, value)) or created
            if created:
                scope = f"user {user_id}" if user_id else "public"
                logger.info("Created new %s pool for %s", scope, die_type.value)
            data = await self.client.hgetall(key)
        return self._to_pool(key, data)

    async def get_pool(self, die_type: DieType, user_id: str | None = None) -> Pool | None:
        """Return the pool for (user_id, die_type) without creating it."""
        key = self.pool_id(die_type, user_id)
        data = await self.client.hgetall(key)
        if not POOL_FIELDS <= data.keys():
            return None
        return self._to_pool(key, data)

    async def replace_pool_numbers(self, pool_id: str, numbers: list[int]) -> None:
        """Overwrite a pool's numbers and stamp last_refill. Never merges."""
        await self.client.hset(
            pool_id,
            mapping={"numbers": json.dumps(numbers), "last_refill": _now().isoformat()},
        )
        logger.debug("Updated pool %s with %d numbers", pool_id, len(numbers))

    async def load_all_pools(self) -> tuple[list[Pool], list[Pool]]:
        """Return (public_pools, user_pools) currently stored."""
        public_pools: list[Pool] = []
        user_pools: list[Pool] = []
        async for key in self.client.scan_iter(match="pool:*"):
            data = await self.client.hgetall(key)
            if not POOL_FIELDS <= data.keys():
                continue
            pool = self._to_pool(key, data)
            (user_pools if pool.user_id else public_pools).append(pool)
        logger.info(
            "Loaded %d public pools and %d user pools", len(public_pools), len(user_pools)
        )
        return public_pools, user_pools

    # === Usage ===

    def usage_id(self, identity: str, day: date | None = None) -> str:
        return f"{self.USAGE_PREFIX}{(day or self.today()).isoformat()}:{identity}"

    @staticmethod
    def _to_usage(data: dict[str, str], day: date, identity: str) -> UsageRecord:
        return UsageRecord(day=day, identity=identity, total_rolls=int(data.get("total_rolls", 0)))

    async def get_or_create_today_usage(self, identity: str) -> UsageRecord:
        """Return today's usage record for identity, creating it at zero."""
        day = self.today()
        key = self.usage_id(identity, day)
        data = await self.client.hgetall(key)
        if not data:
            await self.client.hsetnx(key, "day", day.isoformat())
            await self.client.hsetnx(key, "identity", identity)
            if await self.client.hsetnx(key, "total_rolls", 0):
                logger.info("Created usage record for %s on %s", identity, day.isoformat())
            data = await self.client.hgetall(key)
        return self._to_usage(data, day, identity)

    async def increment_today_usage(self, identity: str, delta: int = 1) -> UsageRecord:
        """Atomically add delta to today's rolls for identity (upsert)."""
        day = self.today()
        key = self.usage_id(identity, day)
        total = await self.client.hincrby(key, "total_rolls", delta)
        await self.client.hsetnx(key, "day", day.isoformat())
        await self.client.hsetnx(key, "identity", identity)
        logger.debug("Incremented usage for %s by %d, total: %d", identity, delta, total)
        return UsageRecord(day=day, identity=identity, total_rolls=int(total))

    async def get_today_usage(self, identity: str) -> int:
        """Today's roll count for identity, 0 if there is no record."""
        value = await self.client.hget(self.usage_id(identity), "total_rolls")
        return int(value) if value is not None else 0

    async def _iter_usage(self):
        async for key in self.client.scan_iter(match=f"{self.USAGE_PREFIX}*"):
            try:
                _, day_str, identity = key.split(":", 2)
                day = date.fromisoformat(day_str)
            except ValueError:
                continue
            yield key, day, identity

    async def cleanup_old_usage(self, retention_days: int) -> int:
        """Delete usage records older than retention_days; return how many."""
        cutoff = self.today() - timedelta(days=retention_days)
        stale = [key async for key, day, _ in self._iter_usage() if day < cutoff]
        deleted = 0
        if stale:
            deleted = await self.client.delete(*stale)
        logger.info("Deleted %d usage records older than %s", deleted, cutoff.isoformat())
        return deleted

    async def usage_statistics(self) -> dict[str, Any]:
        """Record counts and today's summed rolls across all identities."""
        today = self.today()
        total_records = 0
        today_records = 0
        today_rolls = 0
        async for key, day, _ in self._iter_usage():
            total_records += 1
            if day == today:
                today_records += 1
                value = await self.client.hget(key, "total_rolls")
                today_rolls += int(value or 0)
        return {
            "totalRecords": total_records,
            "todayRecords": today_records,
            "todayRolls": today_rolls,
        }

    async def hit_rate_window(
        self, scope: str, identity: str, window_seconds: int
    ) -> tuple[int, int]:
        """
        Count one request in the current fixed window.

        Returns the count so far in this window and the seconds left
        until it resets.
        """
        now = int(_now().timestamp())
        window = now // window_seconds
        key = f"{self.RATE_PREFIX}{scope}:{identity}:{window}"
        count = await self.client.incr(key)
        if count == 1:
            await self.client.expire(key, window_seconds)
        return count, (window + 1) * window_seconds - now


# Global instance
pool_store = PoolStore()
