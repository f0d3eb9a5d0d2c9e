"""Server-side telemetry for rolls and refills."""
import logging
from dataclasses import asdict, dataclass
from typing import Any, ClassVar, Protocol


logger = logging.getLogger(__name__)


class TelemetrySink(Protocol):
    """Protocol for telemetry sinks."""

    def emit(self, event_name: str, data: dict[str, Any]) -> None:
        """Emit a telemetry event."""
        ...


class LoggingTelemetrySink:
    """Default sink that logs telemetry events."""

    def emit(self, event_name: str, data: dict[str, Any]) -> None:
        """Log telemetry event."""
        logger.info("TELEMETRY %s: %s", event_name, data)


class TelemetryEvent:
    """Base for events; subclasses are dataclasses naming their event."""

    name: ClassVar[str]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class RollServedEvent(TelemetryEvent):
    """One successful /roll request."""

    name: ClassVar[str] = "roll_served"

    tier: str  # "public" | "user"
    dice: dict[str, int]
    total_dice: int
    duration_ms: float


@dataclass
class RollRejectedEvent(TelemetryEvent):
    """A /roll request that ended in a DiceError."""

    name: ClassVar[str] = "roll_rejected"

    tier: str
    reason: str  # ErrorCode value


@dataclass
class PoolRefilledEvent(TelemetryEvent):
    """One upstream fetch that replaced a pool."""

    name: ClassVar[str] = "pool_refilled"

    pool_key: str
    tier: str
    batch_size: int
    duration_ms: float


class TelemetryService:
    """Hands events to the configured sink."""

    def __init__(self, sink: TelemetrySink | None = None):
        self._sink = sink or LoggingTelemetrySink()
        self.sink_errors = 0

    def set_sink(self, sink: TelemetrySink) -> None:
        self._sink = sink

    def emit(self, event: TelemetryEvent) -> None:
        """Deliver one event. A failing sink is counted, never raised."""
        try:
            self._sink.emit(event.name, event.to_dict())
        except Exception as e:
            self.sink_errors += 1
            logger.warning(
                "Telemetry sink failed on %s (%d failures so far): %s",
                event.name,
                self.sink_errors,
                e,
            )


telemetry_service = TelemetryService()
