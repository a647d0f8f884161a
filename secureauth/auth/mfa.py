"""
Multi-Factor Authentication (MFA) for SecureAuth.

Implements:
- Email one-time codes (6 digits, 10 minute lifetime, single use)
- TOTP (RFC 6238) compatible with Google Authenticator, Authy, Aegis
- Backup codes for account recovery (bcrypt-hashed, single use)

Every verifier answers with a plain boolean. The reason for a failure is
logged, never returned.
"""
import base64
import hashlib
import io
import logging
import secrets
from typing import List, Optional, Tuple

import bcrypt
import pyotp
import qrcode

from .models import (
    Account,
    AttemptKind,
    AttemptRecord,
    AttemptResult,
    OneTimeCode,
    RecordKind,
    StoredRecord,
    normalize_account_key,
)
from .policy import AuthPolicy
from .ports import AccountStore, Clock, CodeStore, RandomSource, SecureRandom, SystemClock

logger = logging.getLogger(__name__)

OTP_MIN = 100_000
OTP_SPAN = 900_000


# ============================================
# TOTP enrolment helpers
# ============================================

def generate_totp_secret() -> str:
    """
    Generate a new TOTP secret for MFA enrollment.

    Returns:
        Base32-encoded secret (32 characters).
    """
    return pyotp.random_base32()


def get_totp_provisioning_uri(
    secret: str,
    email: str,
    issuer: str = "SecureAuth Portal",
    interval: int = 30,
) -> str:
    """
    Generate a provisioning URI for TOTP apps.

    This URI can be encoded as a QR code for easy scanning.

    Args:
        secret: Base32-encoded TOTP secret.
        email: User's email address (displayed in authenticator app).
        issuer: Application name (displayed in authenticator app).
        interval: Time step in seconds.

    Returns:
        otpauth:// URI string.
    """
    totp = pyotp.TOTP(secret, interval=interval)
    return totp.provisioning_uri(name=email, issuer_name=issuer)


def generate_qr_code(uri: str) -> bytes:
    """
    Generate a QR code image for the provisioning URI.

    Args:
        uri: otpauth:// provisioning URI.

    Returns:
        PNG image bytes.
    """
    qr = qrcode.QRCode(
        version=1,
        error_correction=qrcode.constants.ERROR_CORRECT_L,
        box_size=10,
        border=4,
    )
    qr.add_data(uri)
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white")

    buffer = io.BytesIO()
    img.save(buffer, format='PNG')
    buffer.seek(0)
    return buffer.read()


def generate_qr_code_base64(uri: str) -> str:
    """Base64 PNG QR code as a data URI, ready for an <img> tag."""
    png_bytes = generate_qr_code(uri)
    b64 = base64.b64encode(png_bytes).decode('utf-8')
    return f"data:image/png;base64,{b64}"


def setup_mfa(email: str, issuer: str = "SecureAuth Portal", interval: int = 30) -> Tuple[str, str, str]:
    """
    Complete MFA setup: generate secret, URI, and QR code.

    Returns:
        Tuple of (secret, provisioning_uri, qr_code_base64).
    """
    secret = generate_totp_secret()
    uri = get_totp_provisioning_uri(secret, email, issuer, interval)
    qr_base64 = generate_qr_code_base64(uri)

    return secret, uri, qr_base64


def normalize_totp_code(code: str) -> Optional[str]:
    """Strip spaces; return None unless exactly 6 digits remain."""
    cleaned = (code or "").replace(" ", "").strip()
    if len(cleaned) != 6 or not cleaned.isdigit():
        return None
    return cleaned


# ============================================
# Backup codes
# ============================================

def generate_backup_codes(count: int = 8, length: int = 8) -> List[str]:
    """
    Generate backup codes for account recovery.

    These should be stored securely by the user and each can only be used once.

    Args:
        count: Number of backup codes to generate.
        length: Length of each code (default 8 characters).

    Returns:
        List of backup codes formatted as XXXX-XXXX (uppercase hex).
    """
    codes = []
    for _ in range(count):
        code = secrets.token_hex(length // 2).upper()
        # Format as XXXX-XXXX for readability
        formatted = f"{code[:4]}-{code[4:]}"
        codes.append(formatted)

    return codes


def _normalize_backup_code(code: str) -> str:
    return (code or "").replace("-", "").replace(" ", "").upper()


def hash_backup_code(code: str) -> str:
    """
    Hash a backup code for secure storage.

    Args:
        code: Plain text backup code (e.g., "A1B2-C3D4").

    Returns:
        Bcrypt hash of the normalized code.
    """
    salt = bcrypt.gensalt(rounds=10)  # Slightly lower than password for performance
    return bcrypt.hashpw(_normalize_backup_code(code).encode('utf-8'), salt).decode('utf-8')


def hash_backup_codes(codes: List[str]) -> List[str]:
    return [hash_backup_code(code) for code in codes]


def verify_backup_code(code: str, hashed_code: str) -> bool:
    """
    Verify a backup code against its hash.

    Args:
        code: Plain text backup code entered by user.
        hashed_code: Stored bcrypt hash.

    Returns:
        True if code matches, False otherwise.
    """
    try:
        return bcrypt.checkpw(
            _normalize_backup_code(code).encode('utf-8'),
            hashed_code.encode('utf-8')
        )
    except ValueError:
        return False


def find_matching_backup_code(code: str, hashed_codes: List[str]) -> Optional[str]:
    """
    Find the stored hash matching a backup code.

    Args:
        code: Plain text backup code entered by user.
        hashed_codes: List of stored bcrypt hashes.

    Returns:
        The matching hash, or None if not found.
    """
    if not _normalize_backup_code(code):
        return None
    for hashed in hashed_codes:
        if verify_backup_code(code, hashed):
            return hashed
    return None


def email_otp_record_id(subject: str, code: str) -> str:
    """Store key for an email OTP; derived so verification is a keyed lookup."""
    digest = hashlib.sha256(f"{subject}:{code}".encode("utf-8")).hexdigest()
    return f"email_otp:{digest}"


# ============================================
# Engine
# ============================================

class MFAEngine:
    """
    Issues and verifies second-factor codes for accounts.

    Example usage:
        engine = MFAEngine(accounts, codes)
        otp = engine.issue_email_otp("user@example.com")
        engine.verify_email_otp("user@example.com", otp.code)  # True once
    """

    def __init__(
        self,
        accounts: AccountStore,
        codes: CodeStore,
        clock: Optional[Clock] = None,
        random: Optional[RandomSource] = None,
        policy: Optional[AuthPolicy] = None,
    ):
        self.accounts = accounts
        self.codes = codes
        self.clock = clock or SystemClock()
        self.random = random or SecureRandom()
        self.policy = policy or AuthPolicy()

    # ------------------------------------------
    # Email OTP
    # ------------------------------------------

    def issue_email_otp(self, account_key: str) -> OneTimeCode:
        """
        Issue a fresh email OTP for an account.

        Earlier unused codes stay valid until their own expiry or first use.
        """
        subject = normalize_account_key(account_key)
        code = str(OTP_MIN + self.random.randbelow(OTP_SPAN))
        expires_at = self.clock.now() + self.policy.otp_ttl

        self.codes.put(StoredRecord(
            record_id=email_otp_record_id(subject, code),
            kind=RecordKind.EMAIL_OTP,
            subject=subject,
            expires_at=expires_at,
            payload={"purpose": "email_otp"},
        ))
        logger.info(f"Issued email OTP for {subject}, expires {expires_at.isoformat()}")
        return OneTimeCode(code=code, subject=subject, expires_at=expires_at)

    def check_email_otp(self, account_key: str, code: str) -> AttemptResult:
        """Verify an email OTP and report the precise internal result."""
        subject = normalize_account_key(account_key)
        now = self.clock.now()
        cleaned = (code or "").strip()

        if not (len(cleaned) == 6 and cleaned.isdigit()):
            return self._record(AttemptKind.EMAIL_OTP, AttemptResult.FAILURE, subject, "malformed code")

        record_id = email_otp_record_id(subject, cleaned)
        record = self.codes.get(record_id)
        if record is None or record.kind != RecordKind.EMAIL_OTP or record.subject != subject:
            return self._record(AttemptKind.EMAIL_OTP, AttemptResult.FAILURE, subject, "no such code")
        if record.is_expired(now):
            return self._record(AttemptKind.EMAIL_OTP, AttemptResult.REJECTED_EXPIRED, subject, "expired")
        if not self.codes.mark_used(record_id, now):
            return self._record(AttemptKind.EMAIL_OTP, AttemptResult.FAILURE, subject, "already used")

        return self._record(AttemptKind.EMAIL_OTP, AttemptResult.SUCCESS, subject)

    def verify_email_otp(self, account_key: str, code: str) -> bool:
        return self.check_email_otp(account_key, code) == AttemptResult.SUCCESS

    # ------------------------------------------
    # TOTP
    # ------------------------------------------

    def verify_totp_secret(self, secret: Optional[str], code: str) -> bool:
        """
        Verify a TOTP code against a secret at the injected clock's time.

        Accepts the current step plus totp_skew_steps on either side.
        """
        cleaned = normalize_totp_code(code)
        if not secret or cleaned is None:
            return False
        try:
            totp = pyotp.TOTP(secret, interval=self.policy.totp_step_seconds)
            return totp.verify(cleaned, for_time=self.clock.now(), valid_window=self.policy.totp_skew_steps)
        except (ValueError, TypeError):
            logger.warning("TOTP secret could not be decoded")
            return False

    def verify_totp(self, account_key: str, code: str) -> bool:
        subject = normalize_account_key(account_key)
        account = self.accounts.get(subject)
        secret = account.mfa_secret if account and account.mfa_enabled else None

        ok = self.verify_totp_secret(secret, code)
        result = AttemptResult.SUCCESS if ok else AttemptResult.FAILURE
        self._record(AttemptKind.TOTP, result, subject, None if ok else "code mismatch")
        return ok

    # ------------------------------------------
    # Backup codes
    # ------------------------------------------

    def verify_backup_code(self, account_key: str, code: str) -> bool:
        """
        Consume a backup code.

        The matching hash is removed inside an atomic account update, so
        only one of several concurrent uses of the same code succeeds.
        """
        subject = normalize_account_key(account_key)
        account = self.accounts.get(subject)
        if account is None or not account.backup_codes:
            self._record(AttemptKind.BACKUP_CODE, AttemptResult.FAILURE, subject, "no backup codes")
            return False

        matched = find_matching_backup_code(code, account.backup_codes)
        if matched is None:
            self._record(AttemptKind.BACKUP_CODE, AttemptResult.FAILURE, subject, "no match")
            return False

        consumed = []

        def _remove(acc: Account) -> None:
            consumed.clear()
            if matched in acc.backup_codes:
                acc.backup_codes = [h for h in acc.backup_codes if h != matched]
                consumed.append(matched)

        updated = self.accounts.update(subject, _remove)
        if not consumed or updated is None:
            self._record(AttemptKind.BACKUP_CODE, AttemptResult.FAILURE, subject, "already used")
            return False

        self._record(AttemptKind.BACKUP_CODE, AttemptResult.SUCCESS, subject)
        logger.info(f"Backup code used for {subject}, {len(updated.backup_codes)} left")
        return True

    # ------------------------------------------

    def _record(
        self,
        kind: AttemptKind,
        result: AttemptResult,
        subject: str,
        reason: Optional[str] = None,
    ) -> AttemptResult:
        attempt = AttemptRecord(kind=kind, result=result, account=subject, at=self.clock.now())
        suffix = f" ({reason})" if reason else ""
        logger.info(f"{attempt.kind.value} attempt for {attempt.account}: {attempt.result.value}{suffix}")
        return result
