"""
Domain records for the verification core.

Accounts, one-time codes, challenges and passkey credentials are plain
dataclasses; stores persist them however they like and hand them back
in this shape.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


def normalize_account_key(key: str) -> str:
    """Account keys are emails: stripped and lower-cased."""
    return (key or "").strip().lower()


# ============================================
# Enums
# ============================================

class AttemptKind(str, Enum):
    PASSWORD = "password"
    EMAIL_OTP = "email_otp"
    TOTP = "totp"
    BACKUP_CODE = "backup_code"
    PASSKEY = "passkey"


class AttemptResult(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    REJECTED_LOCKED = "rejected_locked"
    REJECTED_EXPIRED = "rejected_expired"


class RecordKind(str, Enum):
    """Kinds of short-lived records kept in the code/challenge store."""
    EMAIL_OTP = "email_otp"
    REGISTRATION_CHALLENGE = "registration_challenge"
    AUTHENTICATION_CHALLENGE = "authentication_challenge"
    LOGIN_SESSION = "login_session"
    TOTP_ENROLLMENT = "totp_enrollment"


class LoginState(str, Enum):
    ANONYMOUS = "anonymous"
    PRIMARY_VERIFIED = "primary_verified"
    AWAITING_SECOND_FACTOR = "awaiting_second_factor"
    AUTHENTICATED = "authenticated"


class AuthOutcome(str, Enum):
    AUTHENTICATED = "authenticated"
    MFA_REQUIRED = "mfa_required"
    FAILED = "failed"
    RATE_LIMITED = "rate_limited"
    COUNTER_REGRESSION = "counter_regression"


class SecurityEventKind(str, Enum):
    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILED = "login_failed"
    ACCOUNT_LOCKED = "account_locked"
    NEW_DEVICE = "new_device"
    MFA_ENABLED = "mfa_enabled"
    MFA_DISABLED = "mfa_disabled"
    PASSKEY_ADDED = "passkey_added"
    PASSKEY_REVOKED = "passkey_revoked"
    COUNTER_REGRESSION = "counter_regression"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# ============================================
# Persistent records
# ============================================

@dataclass
class Account:
    """
    Account state read and written by the core.

    password_hash is opaque here; only the identity provider interprets it.
    backup_codes holds bcrypt hashes, never plaintext codes.
    """
    key: str
    password_hash: str
    failed_attempts: int = 0
    locked_until: Optional[datetime] = None
    # Second-factor failures; cleared only by a completed second factor
    mfa_failed_attempts: int = 0
    mfa_enabled: bool = False
    mfa_secret: Optional[str] = None
    backup_codes: List[str] = field(default_factory=list)
    last_login: Optional[datetime] = None
    created_at: Optional[datetime] = None
    security_events: List["SecurityEvent"] = field(default_factory=list)
    version: int = 0


@dataclass
class SecurityEvent:
    """One entry of the per-account security feed, newest last."""
    event_id: str
    kind: SecurityEventKind
    description: str
    risk_level: RiskLevel
    at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "kind": self.kind.value,
            "description": self.description,
            "risk_level": self.risk_level.value,
            "at": self.at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SecurityEvent":
        return cls(
            event_id=data["event_id"],
            kind=SecurityEventKind(data["kind"]),
            description=data.get("description", ""),
            risk_level=RiskLevel(data.get("risk_level", RiskLevel.LOW.value)),
            at=datetime.fromisoformat(data["at"]),
        )


@dataclass
class StoredRecord:
    """Generic single-use record with an expiry, keyed by an opaque id."""
    record_id: str
    kind: RecordKind
    subject: Optional[str]
    expires_at: datetime
    payload: Dict[str, Any] = field(default_factory=dict)
    used: bool = False

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass
class OneTimeCode:
    code: str
    subject: str
    expires_at: datetime
    purpose: str = "email_otp"
    used: bool = False


@dataclass
class Challenge:
    """WebAuthn challenge; value is the base64url string sent to the browser."""
    value: str
    ceremony: str
    expires_at: datetime
    account: Optional[str] = None


@dataclass
class PasskeyCredential:
    credential_id: bytes
    public_key: bytes
    account: str
    signature_counter: int = 0
    label: Optional[str] = None
    created_at: Optional[datetime] = None
    last_used: Optional[datetime] = None


@dataclass
class KnownDevice:
    account: str
    fingerprint_hash: str
    first_seen: datetime
    last_seen: datetime


# ============================================
# Results
# ============================================

@dataclass(frozen=True)
class AttemptRecord:
    kind: AttemptKind
    result: AttemptResult
    account: str
    at: datetime


@dataclass(frozen=True)
class RiskDecision:
    allowed: bool
    remaining_attempts: int
    locked_until: Optional[datetime] = None


@dataclass(frozen=True)
class PasswordStrength:
    score: int
    feedback: List[str]
    is_strong: bool


@dataclass(frozen=True)
class PasskeyAssertion:
    credential_id: bytes
    account: str
    signature_counter: int


@dataclass
class AuthDecision:
    """
    Result of one orchestrator step.

    account is set only once authenticated; login_token only while a second
    factor is outstanding.
    """
    outcome: AuthOutcome
    state: LoginState
    account: Optional[str] = None
    login_token: Optional[str] = None
    remaining_attempts: Optional[int] = None
    retry_after: Optional[int] = None
    mfa_methods: List[str] = field(default_factory=list)

    @property
    def authenticated(self) -> bool:
        return self.outcome == AuthOutcome.AUTHENTICATED
