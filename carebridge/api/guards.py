"""FastAPI dependencies that put the guards in front of route handlers.

Denials short-circuit the request by raising :class:`GuardRejectedError`,
which the registered exception handler renders as the error envelope.
"""

import hmac
from dataclasses import dataclass
from typing import Optional

from fastapi import Header, Request, Response

from carebridge.config import ROUTE_CLASSES
from carebridge.logging import get_logger
from carebridge.service import bruteforce as bruteforce_service
from carebridge.service.errors import (
    AuthenticationError,
    ConfigurationError,
    ForbiddenError,
    GuardRejectedError,
    ServiceError,
)
from carebridge.service.rate_limit import KeyExtractor, RateLimitResult
from carebridge.service.runtime import get_runtime

logger = get_logger(__name__)


class RateLimitGuard:
    """Spend rate limit tokens for the request before the handler runs."""

    def __init__(self, route_class: str, key_extractor: Optional[KeyExtractor], cost: int = 1) -> None:
        if key_extractor is None:
            raise ConfigurationError(f"rate limit guard for {route_class!r} needs a key extractor")
        if route_class not in ROUTE_CLASSES:
            raise ConfigurationError(f"unknown rate limit route class: {route_class}")
        # Bucket capacity comes from the runtime, so the limiter checks the upper bound
        if cost < 1:
            raise ConfigurationError(f"rate limit cost must be at least 1, got {cost}")
        self.route_class = route_class
        self.key_extractor = key_extractor
        self.cost = cost

    async def __call__(self, request: Request, response: Response) -> RateLimitResult:
        runtime = get_runtime()
        address = runtime.client_address(request)
        key = self.key_extractor(request)
        result = runtime.rate_limiter.allow(
            key, self.cost, route_class=self.route_class, address=address
        )
        if not result.allowed:
            exc = GuardRejectedError(result.decision())
            exc.headers.update(result.headers())
            raise exc
        response.headers.update(result.headers())
        return result


@dataclass
class LoginAttempt:
    """Handle given to an authentication route to report its outcome."""

    key: str
    guard: bruteforce_service.BruteForceGuard
    status: bruteforce_service.LockoutStatus

    def report_failure(self) -> bruteforce_service.LockoutStatus:
        self.status = self.guard.record_failure(self.key)
        return self.status

    def report_success(self) -> None:
        self.guard.clear(self.key)

    def failure_error(self) -> ServiceError:
        """Record a failure and return the exception the route should raise."""
        status = self.report_failure()
        if status.locked:
            return GuardRejectedError(self.guard.decision_for(status))
        remaining = max(0, self.guard.policy.max_attempts - status.attempts)
        return AuthenticationError(status.message, detail={"attempts_remaining": remaining})


class BruteForceGuard:
    """Refuse requests from locked keys and hand the route a :class:`LoginAttempt`."""

    def __init__(self, key_extractor: Optional[KeyExtractor]) -> None:
        if key_extractor is None:
            raise ConfigurationError("brute-force guard needs a key extractor")
        self.key_extractor = key_extractor

    async def __call__(self, request: Request) -> LoginAttempt:
        guard = get_runtime().bruteforce
        key = self.key_extractor(request)
        status = guard.check(key)
        if status.locked:
            logger.warning("bruteforce_request_blocked", key=key, remaining_ms=status.remaining_ms)
            raise GuardRejectedError(guard.decision_for(status))
        return LoginAttempt(key=key, guard=guard, status=status)


async def require_admin_token(x_admin_token: Optional[str] = Header(None)) -> None:
    expected = get_runtime().settings.admin_api_token
    if not expected:
        raise ForbiddenError("administrative routes are disabled")
    if not x_admin_token or not hmac.compare_digest(x_admin_token.encode(), expected.encode()):
        raise AuthenticationError("invalid admin token")
