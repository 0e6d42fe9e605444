"""Token-bucket rate limiting with static allow/deny lists.

Buckets refill lazily at ``max_tokens / window_ms`` whenever they are checked;
there is no background ticking. Each route class keeps its own quota, so the
same client may hold one bucket per class.
"""

from __future__ import annotations

import math
import threading
from dataclasses import dataclass
from typing import Iterable, Mapping, Optional, Protocol

from fastapi import Request

from carebridge.config import ROUTE_CLASSES, Settings
from carebridge.logging import get_logger
from carebridge.service.decisions import GuardDecision, GuardReason
from carebridge.service.errors import ConfigurationError
from carebridge.storage.keystore import KeyedLocks, KeyStore, MemoryKeyStore, evict_where
from carebridge.storage.models import Clock, TokenBucket, now_ms

logger = get_logger(__name__)

UNKNOWN_CLIENT = "unknown"


@dataclass(frozen=True)
class RateLimitRule:
    max_tokens: int
    window_ms: int

    def __post_init__(self) -> None:
        if self.max_tokens <= 0 or self.window_ms <= 0:
            raise ConfigurationError(
                f"rate limit rule needs positive max_tokens and window_ms, got {self.max_tokens}/{self.window_ms}"
            )

    @property
    def refill_per_ms(self) -> float:
        return self.max_tokens / self.window_ms

    @classmethod
    def from_settings(cls, settings: Settings, route_class: str) -> "RateLimitRule":
        max_tokens, window_ms = settings.rate_limit_rule(route_class)
        return cls(max_tokens=max_tokens, window_ms=window_ms)


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    retry_after_seconds: int
    limit: int
    reason: GuardReason = GuardReason.ALLOWED

    def decision(self) -> GuardDecision:
        if self.allowed:
            return GuardDecision.allow()
        if self.reason is GuardReason.BLACKLISTED:
            return GuardDecision.deny(GuardReason.BLACKLISTED, "Access denied")
        return GuardDecision.deny(
            GuardReason.RATE_LIMITED,
            "Too many requests",
            retry_after_seconds=self.retry_after_seconds,
        )

    def headers(self) -> dict[str, str]:
        """Informational ``RateLimit-*`` headers for the response."""
        if self.reason is GuardReason.BLACKLISTED:
            return {}
        headers = {
            "RateLimit-Limit": str(self.limit),
            "RateLimit-Remaining": str(self.remaining),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after_seconds)
        return headers


class AllowDenyLists:
    """Administrative key lists checked before any token accounting."""

    def __init__(self, whitelist: Iterable[str] = (), blacklist: Iterable[str] = ()) -> None:
        self._lock = threading.Lock()
        self._whitelist: set[str] = set(whitelist)
        self._blacklist: set[str] = set(blacklist)

    def whitelist(self, key: str) -> None:
        with self._lock:
            self._whitelist.add(key)
        logger.info("rate_limit_whitelist_added", key=key)

    def blacklist(self, key: str) -> None:
        with self._lock:
            self._blacklist.add(key)
        logger.warning("rate_limit_blacklist_added", key=key)

    def remove_whitelist(self, key: str) -> bool:
        with self._lock:
            present = key in self._whitelist
            self._whitelist.discard(key)
        if present:
            logger.info("rate_limit_whitelist_removed", key=key)
        return present

    def remove_blacklist(self, key: str) -> bool:
        with self._lock:
            present = key in self._blacklist
            self._blacklist.discard(key)
        if present:
            logger.info("rate_limit_blacklist_removed", key=key)
        return present

    def is_whitelisted(self, key: str) -> bool:
        with self._lock:
            return key in self._whitelist

    def is_blacklisted(self, key: str) -> bool:
        with self._lock:
            return key in self._blacklist

    def snapshot(self) -> dict[str, list[str]]:
        with self._lock:
            return {
                "whitelist": sorted(self._whitelist),
                "blacklist": sorted(self._blacklist),
            }


class TokenBucketLimiter:
    def __init__(
        self,
        rules: Mapping[str, RateLimitRule],
        *,
        lists: Optional[AllowDenyLists] = None,
        store: Optional[KeyStore[TokenBucket]] = None,
        clock: Optional[Clock] = None,
        idle_eviction_ms: int = 60 * 60 * 1000,
    ) -> None:
        if not rules:
            raise ConfigurationError("at least one rate limit rule is required")
        self.rules = dict(rules)
        self.lists = lists or AllowDenyLists()
        self.store: KeyStore[TokenBucket] = store if store is not None else MemoryKeyStore("rate_limit")
        self.idle_eviction_ms = idle_eviction_ms
        self._clock = clock or now_ms
        self._locks = KeyedLocks()

    @classmethod
    def from_settings(cls, settings: Settings, *, clock: Optional[Clock] = None) -> "TokenBucketLimiter":
        return cls(
            {route_class: RateLimitRule.from_settings(settings, route_class) for route_class in ROUTE_CLASSES},
            lists=AllowDenyLists(settings.rate_limit_whitelist, settings.rate_limit_blacklist),
            clock=clock,
            idle_eviction_ms=settings.rate_limit_idle_eviction_ms,
        )

    def rule_for(self, route_class: str) -> RateLimitRule:
        try:
            return self.rules[route_class]
        except KeyError:
            raise ConfigurationError(f"unknown rate limit route class: {route_class}") from None

    @staticmethod
    def _check_cost(rule: RateLimitRule, cost: int, route_class: str) -> None:
        if cost < 1:
            raise ConfigurationError(f"rate limit cost must be at least 1, got {cost}")
        if cost > rule.max_tokens:
            raise ConfigurationError(
                f"rate limit cost {cost} exceeds the {route_class} bucket capacity of {rule.max_tokens}"
            )

    def allow(
        self,
        key: str,
        cost: int = 1,
        *,
        route_class: str = "global",
        address: Optional[str] = None,
    ) -> RateLimitResult:
        """Spend ``cost`` tokens from the ``route_class`` bucket for ``key``.

        Allow/deny lists are consulted against both ``key`` and ``address``.
        A blacklist hit on either refuses the call; otherwise a whitelist hit on
        either admits it without touching any bucket.
        """
        rule = self.rule_for(route_class)
        self._check_cost(rule, cost, route_class)
        list_keys = [key] if not address or address == key else [key, address]
        blacklisted = next((k for k in list_keys if self.lists.is_blacklisted(k)), None)
        if blacklisted is not None:
            logger.warning("rate_limit_blacklisted", key=blacklisted, route_class=route_class)
            return RateLimitResult(
                allowed=False,
                remaining=0,
                retry_after_seconds=0,
                limit=rule.max_tokens,
                reason=GuardReason.BLACKLISTED,
            )
        if any(self.lists.is_whitelisted(k) for k in list_keys):
            return RateLimitResult(
                allowed=True,
                remaining=rule.max_tokens,
                retry_after_seconds=0,
                limit=rule.max_tokens,
            )

        bucket_key = f"{route_class}|{key}"
        with self._locks.hold(bucket_key):
            now = self._clock()
            bucket = self.store.get(bucket_key)
            if bucket is None:
                bucket = TokenBucket(key=bucket_key, tokens=float(rule.max_tokens), last_refill_at=now)
            elapsed = max(0.0, now - bucket.last_refill_at)
            tokens = min(float(rule.max_tokens), bucket.tokens + elapsed * rule.refill_per_ms)
            allowed = tokens >= cost
            if allowed:
                tokens -= cost
                retry_after = 0
            else:
                deficit_ms = (cost - tokens) * rule.window_ms / rule.max_tokens
                retry_after = max(1, math.ceil(deficit_ms / 1000))
            bucket.tokens = tokens
            bucket.last_refill_at = now
            self.store.set(bucket_key, bucket)

        if not allowed:
            logger.warning(
                "rate_limit_exceeded",
                key=key,
                route_class=route_class,
                retry_after_seconds=retry_after,
            )
            return RateLimitResult(
                allowed=False,
                remaining=0,
                retry_after_seconds=retry_after,
                limit=rule.max_tokens,
                reason=GuardReason.RATE_LIMITED,
            )
        return RateLimitResult(
            allowed=True,
            remaining=int(tokens),
            retry_after_seconds=0,
            limit=rule.max_tokens,
        )

    def whitelist(self, key: str) -> None:
        self.lists.whitelist(key)

    def blacklist(self, key: str) -> None:
        self.lists.blacklist(key)

    def remove_whitelist(self, key: str) -> bool:
        return self.lists.remove_whitelist(key)

    def remove_blacklist(self, key: str) -> bool:
        return self.lists.remove_blacklist(key)

    def is_whitelisted(self, key: str) -> bool:
        return self.lists.is_whitelisted(key)

    def is_blacklisted(self, key: str) -> bool:
        return self.lists.is_blacklisted(key)

    def sweep(self) -> int:
        """Evict buckets that have not been checked within the idle horizon."""
        now = self._clock()
        removed = evict_where(
            self.store,
            self._locks,
            lambda bucket: now - bucket.last_refill_at > self.idle_eviction_ms,
            name="rate_limit",
        )
        if removed:
            logger.debug("rate_limit_sweep", removed=removed, remaining=len(self.store))
        return removed


def get_client_ip(
    headers: Mapping[str, str],
    peer: Optional[str],
    *,
    trust_forwarded_for: bool = True,
    header_name: str = "x-forwarded-for",
) -> str:
    """Best-effort client address, used only as a rate limiting hint.

    The left-most forwarded-for entry wins when trusted, then the transport
    peer, then ``"unknown"``.
    """
    if trust_forwarded_for:
        forwarded = headers.get(header_name) or headers.get(header_name.lower())
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return first
    if peer:
        return peer
    return UNKNOWN_CLIENT


class KeyExtractor(Protocol):
    """Derives the rate limiting key for a request."""

    def __call__(self, request: Request) -> str: ...


class ClientAddressKey:
    """Key requests by the proxy-aware client address.

    Proxy options left unset are read from the active runtime settings on each
    call, so an extractor built at import time follows ``TRUST_FORWARDED_FOR``.
    """

    def __init__(
        self,
        *,
        trust_forwarded_for: Optional[bool] = None,
        header_name: Optional[str] = None,
    ) -> None:
        self.trust_forwarded_for = trust_forwarded_for
        self.header_name = header_name

    @classmethod
    def from_settings(cls, settings: Settings) -> "ClientAddressKey":
        return cls(
            trust_forwarded_for=settings.trust_forwarded_for,
            header_name=settings.forwarded_for_header,
        )

    def __call__(self, request: Request) -> str:
        trust, header_name = self.trust_forwarded_for, self.header_name
        if trust is None or header_name is None:
            from carebridge.service.runtime import get_runtime

            settings = get_runtime().settings
            if trust is None:
                trust = settings.trust_forwarded_for
            if header_name is None:
                header_name = settings.forwarded_for_header
        peer = request.client.host if request.client else None
        return get_client_ip(request.headers, peer, trust_forwarded_for=trust, header_name=header_name)


def _state_subject(request: Request) -> Optional[str]:
    return getattr(request.state, "subject_id", None)


class SubjectKey:
    """Key by authenticated subject, falling back to the client address."""

    def __init__(self, route_class: str, *, subject=None, address: Optional[ClientAddressKey] = None) -> None:
        self.route_class = route_class
        self.subject = subject or _state_subject
        self.address = address or ClientAddressKey()

    def __call__(self, request: Request) -> str:
        subject_id = self.subject(request)
        if subject_id:
            return f"user:{subject_id}:{self.route_class}"
        return f"ip:{self.address(request)}:{self.route_class}"


class RouteClassKey:
    """Composite ``(route class, client address)`` key."""

    def __init__(self, route_class: str, *, address: Optional[ClientAddressKey] = None) -> None:
        self.route_class = route_class
        self.address = address or ClientAddressKey()

    def __call__(self, request: Request) -> str:
        return f"endpoint:{self.route_class}:{self.address(request)}"
