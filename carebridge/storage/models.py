"""Guard state records.

All timestamps are epoch milliseconds as returned by the guard clocks.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional


@dataclass
class AttemptRecord:
    key: str
    attempts: int = 0
    last_attempt_at: float = 0.0
    locked_until: Optional[float] = None


@dataclass
class TokenBucket:
    key: str
    tokens: float
    last_refill_at: float


class MFAMethod(str, Enum):
    """Delivery channel for an MFA challenge."""

    TOTP = "totp"
    SMS = "sms"
    EMAIL = "email"


@dataclass
class MFASession:
    session_id: str
    subject_id: str
    method: MFAMethod
    created_at: float
    expires_at: float
    attempts: int = 0
    max_attempts: int = 3
    verified: bool = False
    meta: dict = field(default_factory=dict)

    @property
    def attempts_remaining(self) -> int:
        return max(0, self.max_attempts - self.attempts)

    @property
    def locked(self) -> bool:
        return self.attempts >= self.max_attempts


@dataclass
class BackupCode:
    code: str
    created_at: float
    used: bool = False


@dataclass
class OTPCode:
    code: str
    expires_at: float
    expires_in: int


@dataclass
class CSRFToken:
    token: str
    created_at: float
    expires_at: float
    used: bool = False


Clock = Callable[[], float]


def now_ms() -> float:
    """Wall-clock time in epoch milliseconds."""
    return time.time() * 1000.0
