from __future__ import annotations

from typing import Optional

from carebridge.service.decisions import GuardDecision


class ServiceError(Exception):
    """Base class for pipeline exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP ``status_code`` and a stable
    ``error_code``:
    - unauthorized (401)
    - forbidden (403)
    - rate_limited (429)
    - validation_error (400)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}
        self.headers = headers or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class RateLimitedError(ServiceError):
    """Rate limit or lockout in effect (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


_STATUS_TO_CODE = {
    401: AuthenticationError.error_code,
    403: ForbiddenError.error_code,
    429: RateLimitedError.error_code,
}


class GuardRejectedError(ServiceError):
    """A guard denied the request; carries the decision that did it."""

    def __init__(self, decision: GuardDecision) -> None:
        headers = {}
        if decision.retry_after_seconds is not None:
            headers["Retry-After"] = str(decision.retry_after_seconds)
        super().__init__(
            decision.message,
            status_code=decision.http_status,
            error_code=_STATUS_TO_CODE.get(decision.http_status, ForbiddenError.error_code),
            detail=decision.details(),
            headers=headers,
        )
        self.decision = decision


class ConfigurationError(Exception):
    """A guard was wired incorrectly. Raised at construction, never per request."""


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "RateLimitedError",
    "ServerError",
    "GuardRejectedError",
    "ConfigurationError",
]
