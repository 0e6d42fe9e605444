from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Optional


class GuardReason(str, Enum):
    """Machine-readable reason codes returned with every guard decision."""

    ALLOWED = "allowed"
    LOCKED_OUT = "locked_out"
    RATE_LIMITED = "rate_limited"
    BLACKLISTED = "blacklisted"
    MISSING_TOKEN = "missing_token"
    INVALID_TOKEN = "invalid_token"
    EXPIRED_TOKEN = "expired_token"
    ALREADY_CONSUMED_TOKEN = "already_consumed_token"
    INVALID_CODE = "invalid_code"
    MAX_MFA_ATTEMPTS_EXCEEDED = "max_mfa_attempts_exceeded"
    SESSION_EXPIRED = "session_expired"


# HTTP status codes the pipeline answers with for each denial
REASON_STATUS: dict[GuardReason, int] = {
    GuardReason.LOCKED_OUT: 429,
    GuardReason.RATE_LIMITED: 429,
    GuardReason.BLACKLISTED: 403,
    GuardReason.MISSING_TOKEN: 403,
    GuardReason.INVALID_TOKEN: 403,
    GuardReason.EXPIRED_TOKEN: 403,
    GuardReason.ALREADY_CONSUMED_TOKEN: 403,
    GuardReason.INVALID_CODE: 401,
    GuardReason.MAX_MFA_ATTEMPTS_EXCEEDED: 429,
    GuardReason.SESSION_EXPIRED: 401,
}


@dataclass(frozen=True)
class GuardDecision:
    """Outcome handed from a guard to the request pipeline.

    Denials are ordinary values; the pipeline turns them into terminal
    responses (see ``carebridge.api.guards``).
    """

    allowed: bool
    reason: GuardReason
    message: str
    http_status: int = 200
    retry_after_seconds: Optional[int] = None
    attempts_remaining: Optional[int] = None

    @classmethod
    def allow(
        cls, message: str = "ok", *, attempts_remaining: Optional[int] = None
    ) -> "GuardDecision":
        return cls(
            allowed=True,
            reason=GuardReason.ALLOWED,
            message=message,
            attempts_remaining=attempts_remaining,
        )

    @classmethod
    def deny(
        cls,
        reason: GuardReason,
        message: str,
        *,
        retry_after_seconds: Optional[int] = None,
        attempts_remaining: Optional[int] = None,
    ) -> "GuardDecision":
        return cls(
            allowed=False,
            reason=reason,
            message=message,
            http_status=REASON_STATUS.get(reason, 403),
            retry_after_seconds=retry_after_seconds,
            attempts_remaining=attempts_remaining,
        )

    def details(self) -> dict[str, Any]:
        """Machine-readable part of the decision for error envelopes."""
        payload = asdict(self)
        payload["reason"] = self.reason.value
        payload.pop("message", None)
        payload.pop("allowed", None)
        payload.pop("http_status", None)
        return {key: value for key, value in payload.items() if value is not None}
