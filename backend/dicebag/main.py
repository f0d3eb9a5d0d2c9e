"""DiceBag FastAPI Application."""
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError

from dicebag.config import settings
from dicebag.errors import DiceError, ErrorCode
from dicebag.logic.cleanup import CleanupService
from dicebag.logic.pool_manager import ANONYMOUS_IDENTITY, PoolManager
from dicebag.logic.random_source import build_random_source
from dicebag.logic.recovery import RecoveryService
from dicebag.logic.usage_tracker import UsageTracker
from dicebag.middleware import ErrorHandlerMiddleware, IdentityMiddleware
from dicebag.pool_store import pool_store
from dicebag.protocol import DieRoll, PoolStatusResponse, RollRequest, RollResponse
from dicebag.rate_limit import POOLS, ROLL, RateLimiter
from dicebag.telemetry import RollRejectedEvent, RollServedEvent, telemetry_service
from dicebag.validators import validate_roll_request

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Connect the store, wire the services and restore pools on boot."""
    await pool_store.connect()

    source = build_random_source(settings)
    tracker = UsageTracker(pool_store, settings.public_daily_limit)
    manager = PoolManager(pool_store, source, tracker, settings, telemetry_service)
    recovery = RecoveryService(pool_store, manager, settings.low_pool_threshold)
    cleanup = CleanupService(
        pool_store, settings.usage_retention_days, settings.cleanup_interval_hours
    )
    rate_limiter = RateLimiter(pool_store, settings)

    app.state.random_source = source
    app.state.usage_tracker = tracker
    app.state.pool_manager = manager
    app.state.recovery = recovery
    app.state.cleanup = cleanup
    app.state.rate_limiter = rate_limiter

    await recovery.recover_pools()
    if settings.enable_cleanup:
        cleanup.start()
    yield
    await cleanup.stop()
    await source.close()
    await pool_store.close()


app = FastAPI(
    title="DiceBag",
    version="0.1.0",
    description="Dice rolls served from pre-fetched pools of true random numbers",
    lifespan=lifespan,
)

app.add_middleware(ErrorHandlerMiddleware)
app.add_middleware(IdentityMiddleware, settings=settings)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Malformed bodies become INVALID_REQUEST."""
    return DiceError(ErrorCode.INVALID_REQUEST, "Invalid request body.").to_response()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@app.get("/health")
async def health(request: Request) -> dict:
    """Pool health for external alerting."""
    return await request.app.state.recovery.health_check()


@app.post("/roll")
async def roll(request: Request, body: RollRequest) -> dict:
    """
    POST /roll.

    - Rate limit by caller address
    - Validate die types and quantity caps
    - Draw every die type as one roll, charging the anonymous quota once
    """
    manager: PoolManager = request.app.state.pool_manager
    user_id = request.state.user_id
    identity = request.state.client_ip or ANONYMOUS_IDENTITY
    tier = "user" if user_id else "public"
    started = time.monotonic()

    try:
        await request.app.state.rate_limiter.check(ROLL, identity)
        quantities = validate_roll_request(body)
        results = await manager.roll_many(quantities, user_id, request.state.client_ip)
    except DiceError as e:
        logger.info("Roll rejected for %s caller: %s", tier, e.code.value)
        telemetry_service.emit(RollRejectedEvent(tier=tier, reason=e.code.value))
        raise

    rolls = [
        DieRoll(diceType=die.value, quantity=len(numbers), results=numbers, total=sum(numbers))
        for die, numbers in results.items()
    ]
    duration_ms = (time.monotonic() - started) * 1000
    telemetry_service.emit(
        RollServedEvent(
            tier=tier,
            dice={die.value: quantity for die, quantity in quantities.items()},
            total_dice=sum(quantities.values()),
            duration_ms=duration_ms,
        )
    )
    response = RollResponse(
        rolls=rolls,
        grandTotal=sum(r.total for r in rolls),
        timestamp=_now_iso(),
        duration=duration_ms,
    )
    return response.model_dump()


@app.get("/pools")
async def pools(request: Request) -> dict:
    """Pool levels for the caller's tier."""
    await request.app.state.rate_limiter.check(
        POOLS, request.state.client_ip or ANONYMOUS_IDENTITY
    )
    user_id = request.state.user_id
    status = await request.app.state.pool_manager.get_pool_status(user_id)
    response = PoolStatusResponse(
        tier="user" if user_id else "public",
        poolStatus=status,
        timestamp=_now_iso(),
    )
    return response.model_dump()


@app.get("/stats")
async def stats(request: Request) -> dict:
    """Service counters and the caller's quota."""
    result = await request.app.state.pool_manager.get_stats(request.state.client_ip)
    return {"stats": result, "timestamp": _now_iso()}


@app.get("/usage")
async def usage(request: Request) -> dict:
    """The anonymous caller's quota for today."""
    identity = request.state.client_ip or ANONYMOUS_IDENTITY
    snapshot = await request.app.state.usage_tracker.stats(identity)
    return snapshot.model_dump()
