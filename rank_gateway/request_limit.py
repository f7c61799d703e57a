"""Blanket per-IP request limit covering every route.

One limiter per process, shared by all routes under a single scope, so a
caller's requests count against the same bucket whichever endpoint they hit.
"""

from slowapi import Limiter
from starlette.requests import Request

from rank_gateway.access import client_ip

REQUEST_RATE_LIMIT = "10/minute"


def request_key(request: Request) -> str:
    return client_ip(request, request.app.state.gateway.settings.trust_proxy)


limiter = Limiter(key_func=request_key)
_request_rate_limit = REQUEST_RATE_LIMIT


def configure_request_limit(limit: str):
    """Sets the shared limit and clears every bucket."""
    global _request_rate_limit
    _request_rate_limit = limit
    limiter.reset()


def current_request_limit() -> str:
    return _request_rate_limit


request_limit = limiter.shared_limit(current_request_limit, scope="requests")
