"""MFA challenge sessions and code verification.

A challenge session moves ``created -> (failed attempt)* -> locked | verified ->
completed``. Expiry can happen from any non-terminal state and is applied
lazily on the next access or by :meth:`MFAManager.sweep`.

Locked sessions stay behind as tombstones until their original expiry so that
repeated attempts against them keep reporting the lockout; they are invisible
to :meth:`MFAManager.get_session`.
"""

from __future__ import annotations

import base64
import hmac
import io
import math
import re
import secrets
import threading
from dataclasses import dataclass
from typing import Optional, Sequence

import pyotp
import qrcode

from carebridge.config import Settings
from carebridge.logging import get_logger
from carebridge.service.decisions import GuardDecision, GuardReason
from carebridge.storage.keystore import KeyedLocks, KeyStore, MemoryKeyStore, evict_where
from carebridge.storage.models import BackupCode, Clock, MFAMethod, MFASession, OTPCode, now_ms

logger = get_logger(__name__)

OTP_LENGTH = 6
TOTP_INTERVAL_SECONDS = 30

MAX_ATTEMPTS_MESSAGE = "Maximum verification attempts exceeded. Please try again later."
INVALID_SESSION_MESSAGE = "Invalid or expired MFA session"

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_PHONE_RE = re.compile(r"^\+?\(?[0-9]{1,4}\)?[-\s.]?\(?[0-9]{1,4}\)?[-\s.]?[0-9]{1,9}$")


@dataclass(frozen=True)
class MFAPolicy:
    code_expiry_ms: int = 5 * 60 * 1000
    session_expiry_ms: int = 15 * 60 * 1000
    max_attempts: int = 3
    backup_code_count: int = 10
    totp_issuer: str = "CareBridge Companion"
    drift_window: int = 1

    @classmethod
    def from_settings(cls, settings: Settings) -> "MFAPolicy":
        return cls(
            code_expiry_ms=settings.mfa_code_expiry_ms,
            session_expiry_ms=settings.mfa_session_expiry_ms,
            max_attempts=settings.mfa_max_attempts,
            backup_code_count=settings.mfa_backup_code_count,
            totp_issuer=settings.mfa_totp_issuer,
            drift_window=settings.mfa_totp_drift_window,
        )


@dataclass(frozen=True)
class TOTPSetup:
    secret: str
    provisioning_uri: str
    qr_image: str


@dataclass(frozen=True)
class MFAChallenge:
    session_id: str
    expires_in: int


@dataclass(frozen=True)
class AttemptResult:
    success: bool
    attempts_remaining: int
    locked: bool
    message: str


def is_valid_email(value: str) -> bool:
    return bool(value) and bool(_EMAIL_RE.match(value))


def is_valid_phone_number(value: str) -> bool:
    return bool(value) and bool(_PHONE_RE.match(str(value).strip()))


def format_phone_for_display(value: str) -> str:
    """Render ten-digit numbers as ``(XXX) XXX-XXXX``; leave anything else alone."""
    digits = re.sub(r"\D", "", value)
    if len(digits) == 10:
        return f"({digits[:3]}) {digits[3:6]}-{digits[6:]}"
    return value


def _qr_data_url(uri: str) -> str:
    qr = qrcode.QRCode(version=1, box_size=10, border=4)
    qr.add_data(uri)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buf = io.BytesIO()
    img.save(buf)
    data = base64.b64encode(buf.getvalue()).decode()
    return f"data:image/png;base64,{data}"


class MFAManager:
    def __init__(
        self,
        policy: Optional[MFAPolicy] = None,
        *,
        store: Optional[KeyStore[MFASession]] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.policy = policy or MFAPolicy()
        self.store: KeyStore[MFASession] = store if store is not None else MemoryKeyStore("mfa_sessions")
        self._clock = clock or now_ms
        self._locks = KeyedLocks()
        self._backup_lock = threading.Lock()

    # -- codes ---------------------------------------------------------------

    def generate_totp_secret(self, subject_label: str) -> TOTPSetup:
        """Create a TOTP secret plus the URI and QR image an authenticator app scans."""
        secret = pyotp.random_base32()
        uri = pyotp.TOTP(secret).provisioning_uri(name=subject_label, issuer_name=self.policy.totp_issuer)
        return TOTPSetup(secret=secret, provisioning_uri=uri, qr_image=_qr_data_url(uri))

    def verify_totp_code(self, secret: str, code: str, drift_window: Optional[int] = None) -> bool:
        """Check ``code`` against the current 30 s step and ``drift_window`` steps either side."""
        if not secret or not code:
            return False
        if len(code) != OTP_LENGTH or not code.isdigit():
            return False
        window = self.policy.drift_window if drift_window is None else max(0, drift_window)
        try:
            totp = pyotp.TOTP(secret, digits=OTP_LENGTH, interval=TOTP_INTERVAL_SECONDS)
            return totp.verify(code, for_time=self._clock() / 1000.0, valid_window=window)
        except ValueError as exc:
            # binascii.Error for a malformed base32 secret is a ValueError
            logger.warning("mfa_totp_secret_invalid", error=str(exc))
            return False

    def generate_otp_code(self) -> OTPCode:
        """Six-digit code for email or SMS delivery."""
        code = str(secrets.randbelow(9 * 10 ** (OTP_LENGTH - 1)) + 10 ** (OTP_LENGTH - 1))
        expiry = self.policy.code_expiry_ms
        return OTPCode(
            code=code,
            expires_at=self._clock() + expiry,
            expires_in=math.ceil(expiry / 1000),
        )

    def verify_otp_code(self, provided: Optional[str], stored: Optional[str], expires_at: float) -> bool:
        if not provided or not stored:
            return False
        if self._clock() > expires_at:
            return False
        return hmac.compare_digest(provided.encode(), stored.encode())

    def generate_backup_codes(self, count: Optional[int] = None) -> list[BackupCode]:
        total = self.policy.backup_code_count if count is None else count
        now = self._clock()
        return [BackupCode(code=secrets.token_hex(4).upper(), created_at=now) for _ in range(total)]

    def verify_backup_code(self, pool: Sequence[BackupCode], provided: Optional[str]) -> bool:
        """Spend the matching unused code in ``pool``. Comparison ignores case."""
        if not provided:
            return False
        candidate = provided.upper().encode()
        with self._backup_lock:
            for backup in pool:
                if backup.used:
                    continue
                if hmac.compare_digest(backup.code.upper().encode(), candidate):
                    backup.used = True
                    logger.info("mfa_backup_code_used", remaining=sum(1 for b in pool if not b.used))
                    return True
        return False

    # -- sessions ------------------------------------------------------------

    def create_session(self, subject_id: str, method: MFAMethod | str, **meta) -> MFAChallenge:
        method = MFAMethod(method)
        now = self._clock()
        session = MFASession(
            session_id=secrets.token_hex(32),
            subject_id=subject_id,
            method=method,
            created_at=now,
            expires_at=now + self.policy.session_expiry_ms,
            max_attempts=self.policy.max_attempts,
            meta=dict(meta),
        )
        self.store.set(session.session_id, session)
        logger.info(
            "mfa_session_created",
            session=session.session_id,
            subject_id=subject_id,
            method=method.value,
        )
        return MFAChallenge(session_id=session.session_id, expires_in=math.ceil(self.policy.session_expiry_ms / 1000))

    def _load(self, session_id: str, now: float) -> Optional[MFASession]:
        """Fetch a session, dropping it if expired. Caller holds the key lock."""
        session = self.store.get(session_id)
        if session is not None and now > session.expires_at:
            self.store.delete(session_id)
            logger.debug("mfa_session_expired", session=session_id)
            return None
        return session

    def get_session(self, session_id: str) -> Optional[MFASession]:
        if not session_id:
            return None
        with self._locks.hold(session_id):
            session = self._load(session_id, self._clock())
        if session is None or session.locked:
            return None
        return session

    def record_attempt(self, session_id: str) -> AttemptResult:
        """Count a failed verification against the session."""
        with self._locks.hold(session_id):
            session = self._load(session_id, self._clock())
            if session is None:
                return AttemptResult(False, 0, False, INVALID_SESSION_MESSAGE)
            if session.locked:
                return AttemptResult(False, 0, True, MAX_ATTEMPTS_MESSAGE)
            session.attempts += 1
            self.store.set(session_id, session)
            locked = session.locked
            remaining = session.attempts_remaining

        if locked:
            logger.warning(
                "mfa_max_attempts_exceeded",
                session=session_id,
                subject_id=session.subject_id,
            )
            return AttemptResult(False, 0, True, MAX_ATTEMPTS_MESSAGE)
        return AttemptResult(True, remaining, False, f"{remaining} attempts remaining")

    def mark_verified(self, session_id: str) -> bool:
        with self._locks.hold(session_id):
            session = self._load(session_id, self._clock())
            if session is None or session.locked:
                return False
            session.verified = True
            self.store.set(session_id, session)
        logger.info("mfa_session_verified", session=session_id)
        return True

    def complete_session(self, session_id: str) -> bool:
        """Delete a verified session. Unverified sessions are left untouched."""
        with self._locks.hold(session_id):
            session = self._load(session_id, self._clock())
            if session is None or session.locked or not session.verified:
                return False
            self.store.delete(session_id)
        logger.info("mfa_session_completed", session=session_id, subject_id=session.subject_id)
        return True

    def clear_session(self, session_id: str) -> bool:
        with self._locks.hold(session_id):
            return self.store.delete(session_id)

    def sweep(self) -> int:
        """Remove expired sessions and tombstones."""
        now = self._clock()
        removed = evict_where(self.store, self._locks, lambda session: now > session.expires_at, name="mfa")
        if removed:
            logger.debug("mfa_sweep", removed=removed, remaining=len(self.store))
        return removed

    def verify_challenge(
        self,
        session_id: str,
        code: str,
        *,
        secret: Optional[str] = None,
        otp: Optional[OTPCode] = None,
        backup_codes: Optional[Sequence[BackupCode]] = None,
    ) -> GuardDecision:
        """Verify ``code`` for a challenge session and report the outcome.

        The code is checked by the session's method first (TOTP ``secret`` or
        the delivered ``otp``), then against ``backup_codes``. Success marks
        the session verified; failure counts an attempt.
        """
        session = self.get_session(session_id)
        if session is None:
            with self._locks.hold(session_id):
                tombstone = self._load(session_id, self._clock())
            if tombstone is not None and tombstone.locked:
                return GuardDecision.deny(
                    GuardReason.MAX_MFA_ATTEMPTS_EXCEEDED, MAX_ATTEMPTS_MESSAGE, attempts_remaining=0
                )
            return GuardDecision.deny(GuardReason.SESSION_EXPIRED, INVALID_SESSION_MESSAGE)

        verified = False
        if session.method is MFAMethod.TOTP and secret:
            verified = self.verify_totp_code(secret, code)
        elif session.method in (MFAMethod.SMS, MFAMethod.EMAIL) and otp is not None:
            verified = self.verify_otp_code(code, otp.code, otp.expires_at)
        if not verified and backup_codes:
            verified = self.verify_backup_code(backup_codes, code)

        if verified and self.mark_verified(session_id):
            return GuardDecision.allow(
                "MFA verification successful", attempts_remaining=session.attempts_remaining
            )

        result = self.record_attempt(session_id)
        if result.locked:
            return GuardDecision.deny(
                GuardReason.MAX_MFA_ATTEMPTS_EXCEEDED, result.message, attempts_remaining=0
            )
        if not result.success:
            return GuardDecision.deny(GuardReason.SESSION_EXPIRED, result.message)
        return GuardDecision.deny(
            GuardReason.INVALID_CODE,
            f"Invalid verification code. {result.attempts_remaining} attempts remaining.",
            attempts_remaining=result.attempts_remaining,
        )
