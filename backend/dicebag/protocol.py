"""Request and response models for the dice HTTP API."""
from typing import Any

from pydantic import BaseModel, Field

from dicebag.config import settings


# === Request Models ===


class RollRequest(BaseModel):
    """POST /roll request body: die type -> number of dice."""

    diceQuantities: dict[str, int] = Field(..., description='e.g. {"d6": 3, "d20": 1}')


# === Response Models ===


class DieRoll(BaseModel):
    """Results for one die type within a roll."""

    diceType: str
    quantity: int
    results: list[int]
    total: int


class RollResponse(BaseModel):
    """POST /roll response."""

    protocolVersion: str = settings.protocol_version
    rolls: list[DieRoll] = Field(default_factory=list)
    grandTotal: int
    timestamp: str
    duration: float


class PoolStatusResponse(BaseModel):
    """GET /pools response."""

    protocolVersion: str = settings.protocol_version
    tier: str
    poolStatus: dict[str, dict[str, Any]]
    timestamp: str
