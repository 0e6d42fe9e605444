from __future__ import annotations

import threading
from typing import Optional

from carebridge.config import Settings, get_settings, reset_settings_cache
from carebridge.logging import get_logger
from carebridge.service.bruteforce import BruteForceGuard, LockoutPolicy
from carebridge.service.csrf import CSRFTokenManager
from carebridge.service.mfa import MFAManager, MFAPolicy
from carebridge.service.rate_limit import ClientAddressKey, TokenBucketLimiter
from carebridge.service.sweeper import PeriodicSweeper
from carebridge.storage.models import Clock

logger = get_logger(__name__)


class Runtime:
    """Holds the guard singletons and their sweepers for one process."""

    def __init__(self, settings: Optional[Settings] = None, *, clock: Optional[Clock] = None):
        self.settings = settings or get_settings()
        s = self.settings

        self.bruteforce = BruteForceGuard(LockoutPolicy.from_settings(s), clock=clock)
        self.rate_limiter = TokenBucketLimiter.from_settings(s, clock=clock)
        self.mfa = MFAManager(MFAPolicy.from_settings(s), clock=clock)
        self.csrf = CSRFTokenManager(s.csrf_token_expiry_ms, clock=clock)
        self.client_address = ClientAddressKey.from_settings(s)

        self.sweepers = [
            PeriodicSweeper("bruteforce", self.bruteforce.sweep, s.bruteforce_sweep_interval_seconds),
            PeriodicSweeper("rate_limit", self.rate_limiter.sweep, s.rate_limit_sweep_interval_seconds),
            PeriodicSweeper("mfa", self.mfa.sweep, s.mfa_sweep_interval_seconds),
            PeriodicSweeper("csrf", self.csrf.sweep, s.csrf_sweep_interval_seconds),
        ]
        logger.info(
            "runtime_initialized",
            test_mode=s.test_mode,
            whitelist=len(s.rate_limit_whitelist),
            blacklist=len(s.rate_limit_blacklist),
        )

    async def start_sweepers(self) -> None:
        for sweeper in self.sweepers:
            await sweeper.start()

    async def stop_sweepers(self) -> None:
        for sweeper in self.sweepers:
            await sweeper.stop()

    def sweep_all(self) -> dict[str, int]:
        """Run every sweeper once; returns removed counts by name."""
        return {sweeper.name: sweeper.run_once() for sweeper in self.sweepers}


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked: the fast path skips the lock once the runtime exists.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def set_runtime(instance: Runtime) -> Runtime:
    """Install an explicitly built runtime, e.g. from ``create_app(settings)``."""
    global runtime
    with _runtime_lock:
        runtime = instance
    return instance


def reset_runtime_for_tests(settings: Optional[Settings] = None, *, clock: Optional[Clock] = None) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if settings is None:
            reset_settings_cache()
            settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings, clock=clock)
        return runtime
