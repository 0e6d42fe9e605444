"""Tests for settings defaults and environment overrides."""

import pydantic
import pytest

from carebridge.config import Settings, get_settings, reset_settings_cache
from carebridge.service.runtime import reset_runtime_for_tests


class TestDefaults:
    def test_guard_defaults(self):
        s = Settings()
        assert s.bruteforce_max_attempts == 5
        assert (s.bruteforce_initial_delay_ms, s.bruteforce_max_delay_ms) == (1000, 900000)
        assert s.bruteforce_reset_interval_ms == 3600000
        assert s.mfa_code_expiry_ms == 300000
        assert s.mfa_session_expiry_ms == 900000
        assert s.mfa_max_attempts == 3
        assert s.mfa_backup_code_count == 10
        assert s.csrf_token_expiry_ms == 86400000
        assert s.csrf_single_use is False

    @pytest.mark.parametrize("route_class, expected", [
        ("global", (100, 900000)),
        ("auth", (10, 300000)),
        ("chat", (30, 60000)),
        ("search", (30, 60000)),
    ])
    def test_route_class_rules(self, route_class, expected):
        assert Settings().rate_limit_rule(route_class) == expected

    def test_unknown_route_class(self):
        with pytest.raises(KeyError):
            Settings().rate_limit_rule("admin")


class TestValidation:
    def test_rejects_non_positive_limits(self):
        with pytest.raises(pydantic.ValidationError):
            Settings(rate_limit_auth_max_tokens=0)

    def test_rejects_negative_backup_count(self):
        with pytest.raises(pydantic.ValidationError):
            Settings(mfa_backup_code_count=-1)


class TestEnvironment:
    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("BRUTEFORCE_MAX_ATTEMPTS", "7")
        monkeypatch.setenv("RATE_LIMIT_BLACKLIST", "1.1.1.1,2.2.2.2")
        monkeypatch.setenv("CSRF_SINGLE_USE_PATHS", "/v1/auth/password")
        reset_settings_cache()
        s = get_settings()
        assert s.bruteforce_max_attempts == 7
        assert s.rate_limit_blacklist == ["1.1.1.1", "2.2.2.2"]
        assert s.csrf_single_use_paths == ["/v1/auth/password"]
        reset_settings_cache()

    def test_settings_are_cached(self):
        reset_settings_cache()
        assert get_settings() is get_settings()

    def test_runtime_reset_requires_test_mode(self):
        with pytest.raises(RuntimeError):
            reset_runtime_for_tests(Settings(test_mode=False))
