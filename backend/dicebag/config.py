"""Application configuration derived from environment."""
import re
from typing import Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import ConfigDict, Field, field_validator, model_validator
from pydantic_settings import BaseSettings

API_KEY_PATTERN = re.compile(
    r"^[a-f0-9]{8}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{12}$", re.IGNORECASE
)


class Settings(BaseSettings):
    """Server settings, every option overridable via DICEBAG_* variables."""

    model_config = ConfigDict(env_prefix="DICEBAG_")

    # Server
    debug: bool = False
    redis_url: str = "redis://localhost:6379/0"

    # Protocol
    protocol_version: str = "1.0"

    # Random source
    random_source: Literal["random_org", "local"] = "local"
    random_org_api_key: str | None = None
    random_org_url: str = "https://api.random.org/json-rpc/4/invoke"
    random_org_timeout_seconds: float = Field(default=30.0, gt=0)

    # Peers allowed to set X-Forwarded-For; empty means the socket peer is the client
    trusted_proxies: list[str] = Field(default_factory=list)

    # Refill batch sizes per tier
    public_refill_size: int = Field(default=100, gt=0)
    user_refill_size: int = Field(default=50, gt=0)

    # Anonymous quota (rolls per identity per day)
    public_daily_limit: int = Field(default=50, gt=0)

    # Per-address request rate limits (fixed windows)
    enable_rate_limit: bool = True
    roll_rate_limit: int = Field(default=100, gt=0)
    roll_rate_window_seconds: int = Field(default=15 * 60, gt=0)
    pools_rate_limit: int = Field(default=50, gt=0)
    pools_rate_window_seconds: int = Field(default=5 * 60, gt=0)

    # Request caps
    max_dice_per_type: int = Field(default=50, gt=0)
    max_dice_per_roll: int = Field(default=100, gt=0)

    # Health
    low_pool_threshold: int = Field(default=10, ge=0)

    # Usage record housekeeping
    usage_retention_days: int = Field(default=7, gt=0)
    cleanup_interval_hours: float = Field(default=24.0, gt=0)
    enable_cleanup: bool = True
    usage_timezone: str = "UTC"

    @field_validator("usage_timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone: {value}") from e
        return value

    @model_validator(mode="after")
    def _check_random_org_key(self) -> "Settings":
        if self.random_source != "random_org":
            return self
        if not self.random_org_api_key:
            raise ValueError("random_org_api_key is required when random_source=random_org")
        if not API_KEY_PATTERN.match(self.random_org_api_key):
            raise ValueError("random_org_api_key is not a valid API key")
        return self


settings = Settings()
