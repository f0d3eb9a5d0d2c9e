"""Per-address request rate limits over fixed Redis windows."""
import logging

from dicebag.config import Settings, settings as default_settings
from dicebag.errors import DiceError, ErrorCode
from dicebag.pool_store import PoolStore

logger = logging.getLogger(__name__)

ROLL = "roll"
POOLS = "pools"

_MESSAGES = {
    ROLL: "Too many dice rolls, please try again later.",
    POOLS: "Too many status checks, please try again later.",
}


class RateLimiter:
    """
    Counts requests per (scope, address) and rejects those over the limit.

    Limits are read from settings on every check. A store failure lets
    the request through.
    """

    def __init__(self, store: PoolStore, settings: Settings = default_settings):
        self._store = store
        self._settings = settings

    def limits(self, scope: str) -> tuple[int, int]:
        """(max requests, window seconds) for scope."""
        if scope == ROLL:
            return self._settings.roll_rate_limit, self._settings.roll_rate_window_seconds
        if scope == POOLS:
            return self._settings.pools_rate_limit, self._settings.pools_rate_window_seconds
        raise ValueError(f"Unknown rate limit scope: {scope}")

    async def check(self, scope: str, identity: str) -> None:
        if not self._settings.enable_rate_limit:
            return
        limit, window_seconds = self.limits(scope)
        try:
            count, reset_in = await self._store.hit_rate_window(scope, identity, window_seconds)
        except Exception as e:
            logger.warning("Rate limit check for %s failed, allowing request: %s", identity, e)
            return

        if count > limit:
            logger.info("%s rate limit exceeded for %s (%d/%d)", scope, identity, count, limit)
            raise DiceError(ErrorCode.RATE_LIMIT_EXCEEDED, _MESSAGES[scope], retry_after=reset_in)
