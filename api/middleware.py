"""Request-scoped middleware and helpers for API requests."""

import ipaddress
from typing import Collection
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Assigns a unique request ID to every request, honouring an inbound X-Request-ID."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


def _valid_ip(value: str | None) -> str | None:
    if not value:
        return None
    value = value.strip()
    try:
        ipaddress.ip_address(value)
        return value
    except ValueError:
        return None


def get_client_ip(request: Request, trusted_proxies: Collection[str] | None = None) -> str | None:
    """
    The caller's address for rate limiting and audit.

    Forwarding headers (first X-Forwarded-For hop, then X-Real-IP) are only
    believed when the socket peer is a trusted proxy; otherwise the peer
    itself is the client. Trusted proxies default to `app.state.trusted_proxies`.
    """
    peer = request.client.host if request.client else None
    if trusted_proxies is None:
        trusted_proxies = getattr(request.app.state, "trusted_proxies", ())
    if peer is None or peer not in trusted_proxies:
        return _valid_ip(peer)

    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        ip = _valid_ip(forwarded.split(",")[0])
        if ip:
            return ip
    ip = _valid_ip(request.headers.get("X-Real-IP"))
    if ip:
        return ip
    return _valid_ip(peer)
