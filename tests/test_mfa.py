"""Tests for MFA codes and challenge sessions."""

import threading

import pyotp
import pytest

from carebridge.service.decisions import GuardReason
from carebridge.service.mfa import (
    MAX_ATTEMPTS_MESSAGE,
    MFAManager,
    MFAPolicy,
    format_phone_for_display,
    is_valid_email,
    is_valid_phone_number,
)
from carebridge.storage.models import BackupCode, MFAMethod


@pytest.fixture
def manager(clock):
    return MFAManager(MFAPolicy(), clock=clock)


def totp_at(secret, clock, offset_seconds=0):
    return pyotp.TOTP(secret).at(clock() / 1000 + offset_seconds)


class TestTOTP:
    def test_setup_returns_secret_uri_and_qr(self, manager):
        setup = manager.generate_totp_secret("patient@example.com")
        assert len(setup.secret) == 32
        assert setup.provisioning_uri.startswith("otpauth://totp/")
        assert "CareBridge" in setup.provisioning_uri
        assert setup.qr_image.startswith("data:image/png;base64,")

    def test_current_code_verifies(self, manager, clock):
        secret = pyotp.random_base32()
        assert manager.verify_totp_code(secret, totp_at(secret, clock)) is True

    def test_all_zero_code_rejected(self, manager):
        secret = manager.generate_totp_secret("user").secret
        assert manager.verify_totp_code(secret, "000000") is False

    def test_adjacent_step_accepted_within_drift(self, manager, clock):
        secret = pyotp.random_base32()
        assert manager.verify_totp_code(secret, totp_at(secret, clock, -30)) is True
        assert manager.verify_totp_code(secret, totp_at(secret, clock, 30)) is True

    def test_two_steps_away_rejected(self, manager, clock):
        secret = pyotp.random_base32()
        assert manager.verify_totp_code(secret, totp_at(secret, clock, -60)) is False

    def test_zero_drift_only_accepts_current_step(self, manager, clock):
        secret = pyotp.random_base32()
        assert manager.verify_totp_code(secret, totp_at(secret, clock, -30), drift_window=0) is False
        assert manager.verify_totp_code(secret, totp_at(secret, clock), drift_window=0) is True

    @pytest.mark.parametrize("code", ["", "12345", "1234567", "12a456"])
    def test_malformed_codes_rejected(self, manager, code):
        assert manager.verify_totp_code(pyotp.random_base32(), code) is False

    def test_padded_code_rejected(self, manager, clock):
        secret = pyotp.random_base32()
        code = totp_at(secret, clock)
        assert manager.verify_totp_code(secret, f" {code}") is False
        assert manager.verify_totp_code(secret, f"{code}\n") is False

    def test_malformed_secret_rejected(self, manager):
        assert manager.verify_totp_code("not base32 !!", "123456") is False


class TestOTP:
    def test_code_is_six_digits_with_five_minute_expiry(self, manager, clock):
        otp = manager.generate_otp_code()
        assert len(otp.code) == 6 and otp.code.isdigit()
        assert otp.expires_at == clock() + 5 * 60 * 1000
        assert otp.expires_in == 300

    def test_exact_match_before_expiry(self, manager, clock):
        otp = manager.generate_otp_code()
        assert manager.verify_otp_code(otp.code, otp.code, otp.expires_at) is True
        clock.advance(5 * 60 * 1000)
        assert manager.verify_otp_code(otp.code, otp.code, otp.expires_at) is True

    def test_no_match_after_expiry(self, manager, clock):
        otp = manager.generate_otp_code()
        clock.advance(5 * 60 * 1000 + 1)
        assert manager.verify_otp_code(otp.code, otp.code, otp.expires_at) is False

    def test_wrong_or_partial_code_rejected(self, manager):
        otp = manager.generate_otp_code()
        assert manager.verify_otp_code(otp.code[:5], otp.code, otp.expires_at) is False
        assert manager.verify_otp_code(None, otp.code, otp.expires_at) is False

    def test_comparison_is_exact(self, manager):
        otp = manager.generate_otp_code()
        assert manager.verify_otp_code(f" {otp.code}", otp.code, otp.expires_at) is False
        assert manager.verify_otp_code(f"{otp.code} ", otp.code, otp.expires_at) is False


class TestBackupCodes:
    def test_generates_unused_eight_character_codes(self, manager):
        codes = manager.generate_backup_codes()
        assert len(codes) == 10
        assert all(len(c.code) == 8 and not c.used for c in codes)
        assert len(manager.generate_backup_codes(3)) == 3

    def test_code_is_single_use_and_case_insensitive(self, manager):
        pool = [BackupCode(code="ABCD1234", created_at=0)]
        assert manager.verify_backup_code(pool, "abcd1234") is True
        assert pool[0].used is True
        assert manager.verify_backup_code(pool, "ABCD1234") is False

    def test_unknown_code_rejected(self, manager):
        pool = manager.generate_backup_codes(2)
        assert manager.verify_backup_code(pool, "ZZZZZZZZ") is False
        assert not any(c.used for c in pool)

    def test_concurrent_use_succeeds_once(self, manager):
        pool = [BackupCode(code="CAFEF00D", created_at=0)]
        wins = []

        def attempt():
            if manager.verify_backup_code(pool, "cafef00d"):
                wins.append(1)

        threads = [threading.Thread(target=attempt) for _ in range(16)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(wins) == 1


class TestSessions:
    def test_create_and_get(self, manager):
        challenge = manager.create_session("user-1", "totp")
        assert challenge.expires_in == 900
        session = manager.get_session(challenge.session_id)
        assert session.subject_id == "user-1"
        assert session.method is MFAMethod.TOTP
        assert session.attempts == 0 and session.verified is False

    def test_invalid_method_rejected(self, manager):
        with pytest.raises(ValueError):
            manager.create_session("user-1", "carrier-pigeon")

    def test_last_try_before_lockout_still_allowed(self, manager):
        sid = manager.create_session("u", MFAMethod.EMAIL).session_id
        first = manager.record_attempt(sid)
        second = manager.record_attempt(sid)
        assert (first.success, first.attempts_remaining, first.locked) == (True, 2, False)
        assert (second.success, second.attempts_remaining, second.locked) == (True, 1, False)
        assert manager.get_session(sid) is not None

    def test_locks_after_max_attempts(self, manager):
        sid = manager.create_session("u", MFAMethod.SMS).session_id
        results = [manager.record_attempt(sid) for _ in range(3)]
        assert results[-1].locked is True
        assert results[-1].attempts_remaining == 0

        fourth = manager.record_attempt(sid)
        assert fourth.locked is True
        assert "maximum" in fourth.message.lower()
        assert fourth.message == MAX_ATTEMPTS_MESSAGE
        assert manager.get_session(sid) is None

    def test_locked_session_cannot_be_verified(self, manager):
        sid = manager.create_session("u", "totp").session_id
        for _ in range(3):
            manager.record_attempt(sid)
        assert manager.mark_verified(sid) is False
        assert manager.complete_session(sid) is False

    def test_expired_session_is_dropped_on_access(self, manager, clock):
        sid = manager.create_session("u", "totp").session_id
        clock.advance(15 * 60 * 1000 + 1)
        assert manager.get_session(sid) is None
        assert len(manager.store) == 0
        result = manager.record_attempt(sid)
        assert result.success is False and result.locked is False

    def test_unknown_session_attempt(self, manager):
        result = manager.record_attempt("missing")
        assert result.success is False
        assert result.message == "Invalid or expired MFA session"

    def test_complete_requires_verification(self, manager):
        sid = manager.create_session("u", "totp").session_id
        assert manager.complete_session(sid) is False
        assert manager.get_session(sid) is not None
        assert manager.mark_verified(sid) is True
        assert manager.complete_session(sid) is True
        assert manager.get_session(sid) is None

    def test_clear_session(self, manager):
        sid = manager.create_session("u", "totp").session_id
        assert manager.clear_session(sid) is True
        assert manager.get_session(sid) is None
        assert manager.clear_session(sid) is False

    def test_sweep_removes_expired_sessions_and_tombstones(self, manager, clock):
        locked = manager.create_session("u", "totp").session_id
        for _ in range(3):
            manager.record_attempt(locked)
        clock.advance(10 * 60 * 1000)
        live = manager.create_session("v", "totp").session_id
        clock.advance(5 * 60 * 1000 + 1)
        assert manager.sweep() == 1
        assert manager.get_session(live) is not None
        assert locked not in manager.store

    def test_concurrent_attempts_respect_ceiling(self, clock):
        manager = MFAManager(MFAPolicy(max_attempts=50), clock=clock)
        sid = manager.create_session("u", "totp").session_id
        locked_reports = []

        def hammer():
            for _ in range(10):
                if manager.record_attempt(sid).locked:
                    locked_reports.append(1)

        threads = [threading.Thread(target=hammer) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        # 100 calls: the 50th locks, the remaining 50 see the tombstone
        assert len(locked_reports) == 51
        assert manager.store.get(sid).attempts == 50


class TestVerifyChallenge:
    def test_totp_success_marks_verified(self, manager, clock):
        secret = pyotp.random_base32()
        sid = manager.create_session("u", "totp").session_id
        decision = manager.verify_challenge(sid, totp_at(secret, clock), secret=secret)
        assert decision.allowed is True
        assert manager.get_session(sid).verified is True

    def test_otp_success(self, manager):
        otp = manager.generate_otp_code()
        sid = manager.create_session("u", "email").session_id
        assert manager.verify_challenge(sid, otp.code, otp=otp).allowed is True

    def test_backup_code_fallback(self, manager):
        pool = manager.generate_backup_codes(2)
        sid = manager.create_session("u", "totp").session_id
        decision = manager.verify_challenge(sid, pool[1].code.lower(), secret=pyotp.random_base32(), backup_codes=pool)
        assert decision.allowed is True
        assert pool[1].used is True

    def test_failures_count_down_then_lock(self, manager):
        secret = pyotp.random_base32()
        sid = manager.create_session("u", "totp").session_id
        first = manager.verify_challenge(sid, "abcdef", secret=secret)
        assert first.reason is GuardReason.INVALID_CODE
        assert first.http_status == 401
        assert first.attempts_remaining == 2
        manager.verify_challenge(sid, "abcdef", secret=secret)
        third = manager.verify_challenge(sid, "abcdef", secret=secret)
        assert third.reason is GuardReason.MAX_MFA_ATTEMPTS_EXCEEDED
        assert third.http_status == 429
        fourth = manager.verify_challenge(sid, "abcdef", secret=secret)
        assert fourth.reason is GuardReason.MAX_MFA_ATTEMPTS_EXCEEDED

    def test_expired_session(self, manager, clock):
        sid = manager.create_session("u", "totp").session_id
        clock.advance(16 * 60 * 1000)
        decision = manager.verify_challenge(sid, "123456", secret=pyotp.random_base32())
        assert decision.reason is GuardReason.SESSION_EXPIRED
        assert decision.http_status == 401


class TestDeliveryHelpers:
    @pytest.mark.parametrize("value, expected", [
        ("patient@example.com", True),
        ("no-at-sign.example.com", False),
        ("spaces in@example.com", False),
        ("", False),
    ])
    def test_email(self, value, expected):
        assert is_valid_email(value) is expected

    @pytest.mark.parametrize("value, expected", [
        ("+1 555 1234567", True),
        ("+15551234567", True),
        ("555-123-4567", True),
        ("phone", False),
    ])
    def test_phone(self, value, expected):
        assert is_valid_phone_number(value) is expected

    def test_format_ten_digit_phone(self):
        assert format_phone_for_display("555.123.4567") == "(555) 123-4567"

    def test_format_leaves_other_numbers(self):
        assert format_phone_for_display("+44 20 7946 0958") == "+44 20 7946 0958"
