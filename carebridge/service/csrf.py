"""Double-submit CSRF token lifecycle.

Tokens are issued on safe requests and must be echoed back in a header or
body field on unsafe ones. Consumed tokens are kept, marked ``used``, until
they expire so a replay is reported as such rather than as an unknown token.
"""

from __future__ import annotations

import math
import secrets
from dataclasses import dataclass
from typing import Optional

from carebridge.logging import get_logger
from carebridge.service.decisions import GuardDecision, GuardReason
from carebridge.storage.keystore import KeyedLocks, KeyStore, MemoryKeyStore, evict_where
from carebridge.storage.models import Clock, CSRFToken, now_ms

logger = get_logger(__name__)

_MESSAGES = {
    GuardReason.MISSING_TOKEN: "CSRF token is required",
    GuardReason.INVALID_TOKEN: "Invalid CSRF token",
    GuardReason.EXPIRED_TOKEN: "CSRF token has expired",
    GuardReason.ALREADY_CONSUMED_TOKEN: "CSRF token has already been used",
}


@dataclass(frozen=True)
class IssuedToken:
    token: str
    expires_in: int


@dataclass(frozen=True)
class TokenValidation:
    valid: bool
    reason: GuardReason
    message: str

    @classmethod
    def ok(cls) -> "TokenValidation":
        return cls(True, GuardReason.ALLOWED, "CSRF token is valid")

    @classmethod
    def rejected(cls, reason: GuardReason) -> "TokenValidation":
        return cls(False, reason, _MESSAGES[reason])

    def decision(self) -> GuardDecision:
        if self.valid:
            return GuardDecision.allow(self.message)
        return GuardDecision.deny(self.reason, self.message)


class CSRFTokenManager:
    def __init__(
        self,
        expiry_ms: int = 24 * 60 * 60 * 1000,
        *,
        store: Optional[KeyStore[CSRFToken]] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.expiry_ms = expiry_ms
        self.store: KeyStore[CSRFToken] = store if store is not None else MemoryKeyStore("csrf_tokens")
        self._clock = clock or now_ms
        self._locks = KeyedLocks()

    @property
    def expires_in(self) -> int:
        return math.ceil(self.expiry_ms / 1000)

    def issue(self) -> IssuedToken:
        now = self._clock()
        token = secrets.token_hex(32)
        self.store.set(token, CSRFToken(token=token, created_at=now, expires_at=now + self.expiry_ms))
        return IssuedToken(token=token, expires_in=self.expires_in)

    def get(self, token: str) -> Optional[CSRFToken]:
        if not token:
            return None
        record = self.store.get(token)
        if record is None or self._clock() > record.expires_at:
            return None
        return record

    def validate(self, token: Optional[str]) -> TokenValidation:
        """Check that ``token`` exists, is unexpired and unused. Does not consume."""
        if not token:
            return TokenValidation.rejected(GuardReason.MISSING_TOKEN)
        with self._locks.hold(token):
            record = self.store.get(token)
            if record is None:
                result = TokenValidation.rejected(GuardReason.INVALID_TOKEN)
            elif self._clock() > record.expires_at:
                self.store.delete(token)
                result = TokenValidation.rejected(GuardReason.EXPIRED_TOKEN)
            elif record.used:
                result = TokenValidation.rejected(GuardReason.ALREADY_CONSUMED_TOKEN)
            else:
                return TokenValidation.ok()
        logger.warning("csrf_token_rejected", reason=result.reason.value, csrf=token)
        return result

    def consume(self, token: Optional[str]) -> bool:
        """Mark ``token`` used. False when it is absent, expired or already used."""
        if not token:
            return False
        with self._locks.hold(token):
            record = self.store.get(token)
            if record is None or record.used:
                return False
            if self._clock() > record.expires_at:
                self.store.delete(token)
                return False
            record.used = True
            self.store.set(token, record)
        logger.debug("csrf_token_consumed", csrf=token)
        return True

    def invalidate(self, token: str) -> bool:
        with self._locks.hold(token):
            removed = self.store.delete(token)
        if removed:
            logger.info("csrf_token_invalidated", csrf=token)
        return removed

    def sweep(self) -> int:
        now = self._clock()
        removed = evict_where(self.store, self._locks, lambda record: now > record.expires_at, name="csrf")
        if removed:
            logger.debug("csrf_sweep", removed=removed, remaining=len(self.store))
        return removed
