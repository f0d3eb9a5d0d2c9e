"""Pool and usage models."""
from datetime import date, datetime
from enum import Enum

from pydantic import BaseModel, Field


class DieType(str, Enum):
    """Supported die types."""
    D4 = "d4"
    D6 = "d6"
    D8 = "d8"
    D10 = "d10"
    D12 = "d12"
    D20 = "d20"
    D100 = "d100"

    @property
    def max_value(self) -> int:
        """Highest face of the die; the lowest is always 1."""
        return int(self.value[1:])


DIE_TYPES: tuple[DieType, ...] = tuple(DieType)


def parse_die_type(value: str | DieType) -> DieType | None:
    """Return the DieType for value, or None if it is not a supported die."""
    if isinstance(value, DieType):
        return value
    try:
        return DieType(value)
    except ValueError:
        return None


def pool_key(die_type: DieType, user_id: str | None = None) -> str:
    """Refill lock key: "<user_id>:<die>" for user pools, "<die>" for public."""
    return f"{user_id}:{die_type.value}" if user_id else die_type.value


class Pool(BaseModel):
    """
    Reservoir of unused random numbers for one die type.

    user_id is None for the shared public pool. numbers are consumed
    from the front and replaced wholesale on refill.
    """
    id: str
    die_type: DieType
    user_id: str | None = None
    numbers: list[int] = Field(default_factory=list)
    last_refill: datetime

    @property
    def scope(self) -> str:
        return "user" if self.user_id else "public"

    @property
    def remaining(self) -> int:
        return len(self.numbers)


class UsageRecord(BaseModel):
    """Rolls made by one anonymous identity on one day."""
    day: date
    identity: str
    total_rolls: int = 0


class UsageStats(BaseModel):
    """Quota snapshot for one anonymous identity."""
    todayUsage: int
    dailyLimit: int
    remainingRolls: int
    limitExceeded: bool
    identity: str | None = None


class RefillStats(BaseModel):
    """Process-local counters; best-effort, never persisted."""
    totalRolls: int = 0
    totalApiCalls: int = 0
    lastRefill: dict[str, str] = Field(default_factory=dict)
