"""Failed-attempt tracking with escalating lockout windows.

Callers report authentication outcomes explicitly: ``record_failure`` after a
rejected credential and ``clear`` after a successful one. Every outcome is
returned as a :class:`LockoutStatus`; nothing here raises for a locked key.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional

from carebridge.config import Settings
from carebridge.logging import get_logger
from carebridge.service.decisions import GuardDecision, GuardReason
from carebridge.storage.keystore import KeyedLocks, KeyStore, MemoryKeyStore, evict_where
from carebridge.storage.models import AttemptRecord, Clock, now_ms

logger = get_logger(__name__)


@dataclass(frozen=True)
class LockoutPolicy:
    max_attempts: int = 5
    initial_delay_ms: int = 1000
    max_delay_ms: int = 15 * 60 * 1000
    reset_interval_ms: int = 60 * 60 * 1000

    @classmethod
    def from_settings(cls, settings: Settings) -> "LockoutPolicy":
        return cls(
            max_attempts=settings.bruteforce_max_attempts,
            initial_delay_ms=settings.bruteforce_initial_delay_ms,
            max_delay_ms=settings.bruteforce_max_delay_ms,
            reset_interval_ms=settings.bruteforce_reset_interval_ms,
        )


def lockout_duration_ms(attempts: int, policy: LockoutPolicy) -> int:
    """Lockout window after ``attempts`` consecutive failures.

    Zero below the threshold. From the threshold on the window doubles per
    failure and holds flat at ``max_delay_ms`` once it reaches the cap.
    """
    if attempts < policy.max_attempts:
        return 0
    # Bound the exponent so huge attempt counts never build giant integers
    exponent = min(attempts - 1, 62)
    return int(min(policy.initial_delay_ms * (2 ** exponent), policy.max_delay_ms))


@dataclass(frozen=True)
class LockoutStatus:
    locked: bool
    remaining_ms: int
    attempts: int
    message: str = ""

    @property
    def retry_after_seconds(self) -> int:
        return math.ceil(self.remaining_ms / 1000) if self.remaining_ms > 0 else 0


class BruteForceGuard:
    def __init__(
        self,
        policy: Optional[LockoutPolicy] = None,
        *,
        store: Optional[KeyStore[AttemptRecord]] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.policy = policy or LockoutPolicy()
        self.store: KeyStore[AttemptRecord] = store if store is not None else MemoryKeyStore("bruteforce")
        self._clock = clock or now_ms
        self._locks = KeyedLocks()

    def _remaining_ms(self, record: Optional[AttemptRecord], now: float) -> int:
        if record is None or record.locked_until is None:
            return 0
        return max(0, math.ceil(record.locked_until - now))

    def check(self, key: str) -> LockoutStatus:
        """Current lock status for ``key``. Never mutates state."""
        with self._locks.hold(key):
            record = self.store.get(key)
            if record is None:
                return LockoutStatus(locked=False, remaining_ms=0, attempts=0)
            remaining = self._remaining_ms(record, self._clock())
            return LockoutStatus(locked=remaining > 0, remaining_ms=remaining, attempts=record.attempts)

    def is_locked(self, key: str) -> bool:
        return self.check(key).locked

    def record_failure(self, key: str) -> LockoutStatus:
        with self._locks.hold(key):
            now = self._clock()
            record = self.store.get(key) or AttemptRecord(key=key)
            record.attempts += 1
            record.last_attempt_at = now
            duration = lockout_duration_ms(record.attempts, self.policy)
            if duration > 0:
                record.locked_until = now + duration
            self.store.set(key, record)
            attempts = record.attempts
            remaining = self._remaining_ms(record, now)

        if remaining > 0:
            seconds = math.ceil(remaining / 1000)
            message = f"Too many failed attempts. Please try again in {seconds} seconds."
            logger.warning(
                "bruteforce_lockout",
                key=key,
                attempts=attempts,
                lockout_ms=remaining,
            )
        else:
            left = max(0, self.policy.max_attempts - attempts)
            message = f"Invalid credentials. {left} attempts remaining."
            logger.info("bruteforce_failure_recorded", key=key, attempts=attempts)
        return LockoutStatus(locked=remaining > 0, remaining_ms=remaining, attempts=attempts, message=message)

    def clear(self, key: str) -> None:
        with self._locks.hold(key):
            existed = self.store.delete(key)
        if existed:
            logger.debug("bruteforce_cleared", key=key)

    def sweep(self) -> int:
        """Drop records idle longer than the reset interval. Locked records stay."""
        now = self._clock()

        def _stale(record: AttemptRecord) -> bool:
            if self._remaining_ms(record, now) > 0:
                return False
            return now - record.last_attempt_at > self.policy.reset_interval_ms

        removed = evict_where(self.store, self._locks, _stale, name="bruteforce")
        if removed:
            logger.debug("bruteforce_sweep", removed=removed, remaining=len(self.store))
        return removed

    def decision_for(self, status: LockoutStatus) -> GuardDecision:
        if status.locked:
            message = status.message or (
                f"Too many failed attempts. Please try again in {status.retry_after_seconds} seconds."
            )
            return GuardDecision.deny(
                GuardReason.LOCKED_OUT,
                message,
                retry_after_seconds=status.retry_after_seconds,
                attempts_remaining=0,
            )
        return GuardDecision.allow(
            status.message or "ok",
            attempts_remaining=max(0, self.policy.max_attempts - status.attempts),
        )
