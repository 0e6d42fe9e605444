from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from carebridge.logging import get_logger

logger = get_logger(__name__)


# Route classes recognised by the rate limiter. Each maps to the settings fields
# ``rate_limit_<class>_max_tokens`` and ``rate_limit_<class>_window_ms``.
ROUTE_CLASSES: tuple[str, ...] = ("global", "auth", "chat", "search")


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Guard layer settings, overridable per deployment through the environment."""

    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (runtime reset allowed).",
    )
    cookie_secure: bool = env_field(
        True, "COOKIE_SECURE", description="Mark guard cookies Secure (disable for plain-HTTP dev)"
    )
    admin_api_token: str | None = env_field(
        None,
        "ADMIN_API_TOKEN",
        description="Shared secret for administrative allow/deny list routes",
    )

    # Brute-force lockout
    bruteforce_max_attempts: int = env_field(5, "BRUTEFORCE_MAX_ATTEMPTS")
    bruteforce_initial_delay_ms: int = env_field(1000, "BRUTEFORCE_INITIAL_DELAY_MS")
    bruteforce_max_delay_ms: int = env_field(15 * 60 * 1000, "BRUTEFORCE_MAX_DELAY_MS")
    bruteforce_reset_interval_ms: int = env_field(60 * 60 * 1000, "BRUTEFORCE_RESET_INTERVAL_MS")
    bruteforce_sweep_interval_seconds: int = env_field(
        10 * 60, "BRUTEFORCE_SWEEP_INTERVAL_SECONDS"
    )

    # Token-bucket rate limiting, one quota per route class
    rate_limit_global_max_tokens: int = env_field(100, "RATE_LIMIT_GLOBAL_MAX_TOKENS")
    rate_limit_global_window_ms: int = env_field(15 * 60 * 1000, "RATE_LIMIT_GLOBAL_WINDOW_MS")
    rate_limit_auth_max_tokens: int = env_field(10, "RATE_LIMIT_AUTH_MAX_TOKENS")
    rate_limit_auth_window_ms: int = env_field(5 * 60 * 1000, "RATE_LIMIT_AUTH_WINDOW_MS")
    rate_limit_chat_max_tokens: int = env_field(30, "RATE_LIMIT_CHAT_MAX_TOKENS")
    rate_limit_chat_window_ms: int = env_field(60 * 1000, "RATE_LIMIT_CHAT_WINDOW_MS")
    rate_limit_search_max_tokens: int = env_field(30, "RATE_LIMIT_SEARCH_MAX_TOKENS")
    rate_limit_search_window_ms: int = env_field(60 * 1000, "RATE_LIMIT_SEARCH_WINDOW_MS")
    rate_limit_idle_eviction_ms: int = env_field(60 * 60 * 1000, "RATE_LIMIT_IDLE_EVICTION_MS")
    rate_limit_sweep_interval_seconds: int = env_field(
        30 * 60, "RATE_LIMIT_SWEEP_INTERVAL_SECONDS"
    )
    rate_limit_whitelist: list[str] = env_field(
        [], "RATE_LIMIT_WHITELIST", description="Comma-separated addresses that bypass limits"
    )
    rate_limit_blacklist: list[str] = env_field(
        [], "RATE_LIMIT_BLACKLIST", description="Comma-separated addresses always rejected"
    )
    trust_forwarded_for: bool = env_field(
        True,
        "TRUST_FORWARDED_FOR",
        description="Use the left-most forwarded-for entry as the client address hint",
    )
    forwarded_for_header: str = env_field("x-forwarded-for", "FORWARDED_FOR_HEADER")

    # MFA challenges
    mfa_code_expiry_ms: int = env_field(5 * 60 * 1000, "MFA_CODE_EXPIRY_MS")
    mfa_session_expiry_ms: int = env_field(15 * 60 * 1000, "MFA_SESSION_EXPIRY_MS")
    mfa_max_attempts: int = env_field(3, "MFA_MAX_ATTEMPTS")
    mfa_backup_code_count: int = env_field(10, "MFA_BACKUP_CODE_COUNT")
    mfa_totp_issuer: str = env_field("CareBridge Companion", "MFA_TOTP_ISSUER")
    mfa_totp_drift_window: int = env_field(1, "MFA_TOTP_DRIFT_WINDOW")
    mfa_sweep_interval_seconds: int = env_field(5 * 60, "MFA_SWEEP_INTERVAL_SECONDS")

    # CSRF tokens
    csrf_token_expiry_ms: int = env_field(24 * 60 * 60 * 1000, "CSRF_TOKEN_EXPIRY_MS")
    csrf_single_use: bool = env_field(
        False, "CSRF_SINGLE_USE", description="Consume every token on first unsafe request"
    )
    csrf_single_use_paths: list[str] = env_field(
        [], "CSRF_SINGLE_USE_PATHS", description="Sensitive paths that always consume the token"
    )
    csrf_exempt_paths: list[str] = env_field(["/healthz"], "CSRF_EXEMPT_PATHS")
    csrf_cookie_name: str = env_field("__Host-csrf-token", "CSRF_COOKIE_NAME")
    csrf_header_name: str = env_field("x-csrf-token", "CSRF_HEADER_NAME")
    csrf_body_field: str = env_field("csrfToken", "CSRF_BODY_FIELD")
    csrf_sweep_interval_seconds: int = env_field(60 * 60, "CSRF_SWEEP_INTERVAL_SECONDS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator(
        "rate_limit_whitelist",
        "rate_limit_blacklist",
        "csrf_single_use_paths",
        "csrf_exempt_paths",
        mode="before",
    )
    @classmethod
    def _split_csv(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator(
        "bruteforce_max_attempts",
        "bruteforce_initial_delay_ms",
        "bruteforce_max_delay_ms",
        "bruteforce_reset_interval_ms",
        "rate_limit_global_max_tokens",
        "rate_limit_global_window_ms",
        "rate_limit_auth_max_tokens",
        "rate_limit_auth_window_ms",
        "rate_limit_chat_max_tokens",
        "rate_limit_chat_window_ms",
        "rate_limit_search_max_tokens",
        "rate_limit_search_window_ms",
        "rate_limit_idle_eviction_ms",
        "mfa_code_expiry_ms",
        "mfa_session_expiry_ms",
        "mfa_max_attempts",
        "csrf_token_expiry_ms",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("mfa_backup_code_count", "mfa_totp_drift_window")
    @classmethod
    def _require_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    def rate_limit_rule(self, route_class: str) -> tuple[int, int]:
        """Return ``(max_tokens, window_ms)`` configured for a route class."""
        if route_class not in ROUTE_CLASSES:
            raise KeyError(route_class)
        return (
            getattr(self, f"rate_limit_{route_class}_max_tokens"),
            getattr(self, f"rate_limit_{route_class}_window_ms"),
        )


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        logger.debug("settings_loaded", test_mode=_settings_cache.test_mode)
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
