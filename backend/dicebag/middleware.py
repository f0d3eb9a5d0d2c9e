"""Middleware for caller identity and error handling."""
import logging

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from dicebag.config import Settings, settings as default_settings
from dicebag.errors import DiceError, ErrorCode

logger = logging.getLogger(__name__)


def resolve_client_ip(
    peer: str | None, forwarded_for: str | None, trusted_proxies: list[str]
) -> str | None:
    """
    Address of the caller behind any trusted proxies.

    X-Forwarded-For is only read when the socket peer is a trusted proxy.
    Hops are taken from the right, skipping further trusted proxies, so a
    value the client prepended itself is never used.
    """
    if peer is None or peer not in trusted_proxies or not forwarded_for:
        return peer

    hops = [hop.strip() for hop in forwarded_for.split(",") if hop.strip()]
    for hop in reversed(hops):
        if hop not in trusted_proxies:
            return hop
    return peer


class IdentityMiddleware(BaseHTTPMiddleware):
    """
    Resolve who is calling.

    X-User-Id is set by the authentication layer in front of this
    service; an absent or empty header means an anonymous caller, who
    is identified for quota purposes by network address.
    """

    def __init__(self, app, settings: Settings = default_settings):
        super().__init__(app)
        self._settings = settings

    async def dispatch(self, request: Request, call_next):
        request.state.user_id = request.headers.get("X-User-Id") or None
        request.state.client_ip = resolve_client_ip(
            request.client.host if request.client else None,
            request.headers.get("X-Forwarded-For"),
            self._settings.trusted_proxies,
        )
        return await call_next(request)


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Last-resort conversion of escaped exceptions into error bodies."""

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except DiceError as e:
            return e.to_response()
        except Exception:
            logger.exception("Unhandled error on %s %s", request.method, request.url.path)
            return DiceError(ErrorCode.INTERNAL_ERROR, "Internal server error.").to_response()
