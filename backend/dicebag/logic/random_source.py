"""Random number sources that feed the dice pools."""
import itertools
import logging
import random
import secrets
from abc import ABC, abstractmethod
from typing import Any

import httpx

from dicebag.config import Settings
from dicebag.errors import DiceError, ErrorCode
from dicebag.logic.models import DieType, parse_die_type

logger = logging.getLogger(__name__)

# random.org JSON-RPC error codes meaning the key ran out of requests or bits.
# 5 is kept for the legacy endpoint.
QUOTA_ERROR_CODES = frozenset({5, 402, 403})

USER_AGENT = "DiceBag/1.0"


def _require_die_type(die_type: str | DieType) -> DieType:
    parsed = parse_die_type(die_type)
    if parsed is None:
        raise DiceError(ErrorCode.INVALID_DIE_TYPE, f"Invalid die type: {die_type}")
    return parsed


class RandomSource(ABC):
    """Batch provider of uniform integers in [1, die max]."""

    @abstractmethod
    async def fetch(self, die_type: str | DieType, quantity: int) -> list[int]:
        """Return quantity independent rolls of die_type."""
        pass

    async def close(self) -> None:
        """Release any held connections."""
        pass


class RandomOrgSource(RandomSource):
    """
    random.org JSON-RPC client.

    One generateIntegerSequences call per fetch, no retries. Quota
    errors map to UPSTREAM_QUOTA_EXCEEDED; everything else that goes
    wrong on the wire maps to UPSTREAM_UNAVAILABLE.
    """

    def __init__(
        self,
        api_key: str,
        url: str,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ):
        self._api_key = api_key
        self._url = url
        self._client = client or httpx.AsyncClient(
            timeout=timeout, headers={"User-Agent": USER_AGENT}
        )
        self._request_ids = itertools.count(1)

    async def close(self) -> None:
        await self._client.aclose()

    def _build_request(self, die_type: DieType, quantity: int, request_id: int) -> dict[str, Any]:
        return {
            "jsonrpc": "2.0",
            "method": "generateIntegerSequences",
            "params": {
                "apiKey": self._api_key,
                "n": 1,
                "length": quantity,
                "min": 1,
                "max": die_type.max_value,
                "replacement": True,
                "base": 10,
            },
            "id": request_id,
        }

    async def fetch(self, die_type: str | DieType, quantity: int) -> list[int]:
        die = _require_die_type(die_type)
        request_id = next(self._request_ids)
        payload = self._build_request(die, quantity, request_id)

        logger.info(
            "Requesting %d numbers for %s (request %d)", quantity, die.value, request_id
        )
        try:
            response = await self._client.post(self._url, json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error("random.org HTTP %d (request %d)", e.response.status_code, request_id)
            raise DiceError(
                ErrorCode.UPSTREAM_UNAVAILABLE,
                f"Random source returned HTTP {e.response.status_code}.",
            ) from e
        except httpx.HTTPError as e:
            logger.error("random.org transport error (request %d): %s", request_id, e)
            raise DiceError(
                ErrorCode.UPSTREAM_UNAVAILABLE, "Random source is unreachable."
            ) from e
        except ValueError as e:
            logger.error("random.org returned invalid JSON (request %d)", request_id)
            raise DiceError(
                ErrorCode.UPSTREAM_UNAVAILABLE, "Random source returned an invalid response."
            ) from e

        error = data.get("error") if isinstance(data, dict) else None
        if error:
            logger.error("random.org API error (request %d): %s", request_id, error)
            if error.get("code") in QUOTA_ERROR_CODES:
                raise DiceError(
                    ErrorCode.UPSTREAM_QUOTA_EXCEEDED,
                    "Random source quota exceeded. Please try again later.",
                )
            raise DiceError(
                ErrorCode.UPSTREAM_UNAVAILABLE,
                f"Random source error: {error.get('message', 'unknown error')}",
            )

        numbers = self._extract_numbers(data, die, quantity)
        result = data["result"]
        logger.info(
            "random.org success (request %d): %d numbers, bitsLeft=%s, requestsLeft=%s",
            request_id,
            len(numbers),
            result.get("bitsLeft"),
            result.get("requestsLeft"),
        )
        return numbers

    @staticmethod
    def _extract_numbers(data: Any, die: DieType, quantity: int) -> list[int]:
        try:
            numbers = data["result"]["random"]["data"][0]
        except (KeyError, IndexError, TypeError) as e:
            raise DiceError(
                ErrorCode.UPSTREAM_UNAVAILABLE, "Random source returned a malformed result."
            ) from e
        if not isinstance(numbers, list) or len(numbers) != quantity:
            raise DiceError(
                ErrorCode.UPSTREAM_UNAVAILABLE, "Random source returned a malformed result."
            )
        for n in numbers:
            if not isinstance(n, int) or isinstance(n, bool) or not 1 <= n <= die.max_value:
                raise DiceError(
                    ErrorCode.UPSTREAM_UNAVAILABLE,
                    f"Random source returned {n!r} outside 1..{die.max_value}.",
                )
        return numbers


class LocalRandomSource(RandomSource):
    """
    OS CSPRNG source for development without an API key.

    Uses the secrets module, no fixed seed.
    """

    async def fetch(self, die_type: str | DieType, quantity: int) -> list[int]:
        die = _require_die_type(die_type)
        return [secrets.randbelow(die.max_value) + 1 for _ in range(quantity)]


class SeededRandomSource(RandomSource):
    """
    Deterministic source for tests and simulations.

    Fully controlled by seed.
    """

    def __init__(self, seed: int):
        self._rng = random.Random(seed)
        self.seed = seed

    async def fetch(self, die_type: str | DieType, quantity: int) -> list[int]:
        die = _require_die_type(die_type)
        return [self._rng.randint(1, die.max_value) for _ in range(quantity)]


def build_random_source(settings: Settings) -> RandomSource:
    """Pick the source named by settings.random_source."""
    if settings.random_source == "random_org":
        return RandomOrgSource(
            api_key=settings.random_org_api_key,
            url=settings.random_org_url,
            timeout=settings.random_org_timeout_seconds,
        )
    return LocalRandomSource()
