from __future__ import annotations

from typing import Callable, Optional

from fastapi import Header, Request

from rideauth.config import EndpointClass
from rideauth.service.rate_limit import RateLimitDecision
from rideauth.service.runtime import get_runtime
from rideauth.service.sessions import AuthenticationResult


def client_address(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def require_auth(authorization: Optional[str] = Header(None)) -> AuthenticationResult:
    """Resolve the caller's Bearer token to an active session.

    Raises ``Unauthenticated``, ``TokenExpired`` or ``SessionInvalid``; the
    exception handlers turn those into 401 envelopes.
    """
    return get_runtime().sessions.authenticate_header(authorization)


def rate_limited(
    endpoint_class: EndpointClass | str,
) -> Callable[[Request], RateLimitDecision]:
    """Build a dependency that counts the request against ``endpoint_class``."""
    endpoint_class = EndpointClass(endpoint_class)

    def _enforce(request: Request) -> RateLimitDecision:
        return get_runtime().limiter.enforce(client_address(request), endpoint_class)

    return _enforce
