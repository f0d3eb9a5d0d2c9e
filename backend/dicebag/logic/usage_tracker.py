"""Daily roll quota for anonymous callers."""
import logging

from dicebag.errors import DiceError, ErrorCode
from dicebag.logic.models import UsageStats
from dicebag.pool_store import PoolStore

logger = logging.getLogger(__name__)


class UsageTracker:
    """
    Enforces the public daily limit per anonymous identity.

    Authenticated callers never reach this class. Store failures fail
    open: a roll is never refused or revoked because tracking broke.
    """

    def __init__(self, store: PoolStore, daily_limit: int):
        self._store = store
        self.daily_limit = daily_limit

    async def _today_usage(self, identity: str) -> int | None:
        try:
            return await self._store.get_today_usage(identity)
        except Exception as e:
            logger.error("Failed to read usage for %s: %s", identity, e)
            return None

    async def validate(self, requested: int, identity: str) -> None:
        """
        Raise QUOTA_EXCEEDED if identity cannot roll requested more dice today.

        Permits the roll when usage cannot be read.
        """
        today = await self._today_usage(identity)
        if today is None:
            return
        if today + requested > self.daily_limit:
            logger.info(
                "Public roll limit would be exceeded for %s: %d + %d > %d",
                identity,
                today,
                requested,
                self.daily_limit,
            )
            raise DiceError(
                ErrorCode.QUOTA_EXCEEDED,
                f"Daily roll limit exceeded. You have used {today}/{self.daily_limit} "
                "rolls today. Please try again tomorrow or sign in for unlimited rolls.",
            )

    async def record(self, count: int, identity: str) -> None:
        """Add count to identity's usage; errors are logged, never raised."""
        try:
            record = await self._store.increment_today_usage(identity, count)
        except Exception as e:
            logger.error("Failed to record %d rolls for %s: %s", count, identity, e)
            return
        logger.info(
            "Recorded %d public rolls for %s (today: %d)", count, identity, record.total_rolls
        )

    async def stats(self, identity: str | None = None) -> UsageStats:
        """Quota snapshot for identity; zero usage when unknown or unreadable."""
        today = 0
        if identity:
            today = await self._today_usage(identity) or 0
        return UsageStats(
            todayUsage=today,
            dailyLimit=self.daily_limit,
            remainingRolls=max(0, self.daily_limit - today),
            limitExceeded=today >= self.daily_limit,
            identity=identity,
        )
