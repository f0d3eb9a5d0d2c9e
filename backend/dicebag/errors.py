"""Error codes and the exception type shared by the pool service."""
from enum import Enum

from fastapi.responses import JSONResponse
from pydantic import BaseModel

from dicebag.config import settings


class ErrorCode(str, Enum):
    """Error codes surfaced to callers."""

    INVALID_REQUEST = "INVALID_REQUEST"
    INVALID_DIE_TYPE = "INVALID_DIE_TYPE"
    INVALID_QUANTITY = "INVALID_QUANTITY"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    UPSTREAM_QUOTA_EXCEEDED = "UPSTREAM_QUOTA_EXCEEDED"
    UPSTREAM_UNAVAILABLE = "UPSTREAM_UNAVAILABLE"
    REFILL_FAILED = "REFILL_FAILED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


ERROR_HTTP_STATUS: dict[ErrorCode, int] = {
    ErrorCode.INVALID_REQUEST: 400,
    ErrorCode.INVALID_DIE_TYPE: 400,
    ErrorCode.INVALID_QUANTITY: 400,
    ErrorCode.QUOTA_EXCEEDED: 429,
    ErrorCode.RATE_LIMIT_EXCEEDED: 429,
    ErrorCode.UPSTREAM_QUOTA_EXCEEDED: 409,
    ErrorCode.UPSTREAM_UNAVAILABLE: 503,
    ErrorCode.REFILL_FAILED: 503,
    ErrorCode.INTERNAL_ERROR: 500,
}

# Quota and upstream failures clear up on their own; bad input does not.
ERROR_RECOVERABLE: dict[ErrorCode, bool] = {
    ErrorCode.INVALID_REQUEST: False,
    ErrorCode.INVALID_DIE_TYPE: False,
    ErrorCode.INVALID_QUANTITY: False,
    ErrorCode.QUOTA_EXCEEDED: True,
    ErrorCode.RATE_LIMIT_EXCEEDED: True,
    ErrorCode.UPSTREAM_QUOTA_EXCEEDED: True,
    ErrorCode.UPSTREAM_UNAVAILABLE: True,
    ErrorCode.REFILL_FAILED: True,
    ErrorCode.INTERNAL_ERROR: True,
}

DEFAULT_MESSAGES: dict[ErrorCode, str] = {
    ErrorCode.QUOTA_EXCEEDED: "Daily roll limit reached, sign in or try again tomorrow.",
    ErrorCode.RATE_LIMIT_EXCEEDED: "Too many requests, please try again later.",
    ErrorCode.UPSTREAM_QUOTA_EXCEEDED: "Random number provider quota exhausted.",
    ErrorCode.UPSTREAM_UNAVAILABLE: "Random number provider unavailable.",
}


class ErrorBody(BaseModel):
    code: ErrorCode
    message: str
    recoverable: bool


class ErrorResponse(BaseModel):
    protocolVersion: str = settings.protocol_version
    error: ErrorBody


class DiceError(Exception):
    """
    A failure with a stable code, mapped to an HTTP status and error body.

    retry_after (seconds) is sent as a Retry-After header for errors that
    clear up once a window has passed.
    """

    def __init__(self, code: ErrorCode, message: str | None = None, retry_after: int | None = None):
        self.code = code
        self.message = message or DEFAULT_MESSAGES.get(code, f"Error: {code.value}")
        self.retry_after = retry_after
        super().__init__(self.message)

    @property
    def status_code(self) -> int:
        return ERROR_HTTP_STATUS[self.code]

    @property
    def recoverable(self) -> bool:
        return ERROR_RECOVERABLE[self.code]

    def to_response(self) -> JSONResponse:
        body = ErrorResponse(
            error=ErrorBody(code=self.code, message=self.message, recoverable=self.recoverable)
        )
        headers = {"Retry-After": str(self.retry_after)} if self.retry_after else None
        return JSONResponse(
            status_code=self.status_code,
            content=body.model_dump(mode="json"),
            headers=headers,
        )
