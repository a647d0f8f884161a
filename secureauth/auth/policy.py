"""
Policy constants for lockout, code lifetimes and WebAuthn binding.

Defaults match the portal's published policy; every value can be
overridden through the environment.
"""
import os
from dataclasses import dataclass
from datetime import timedelta


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)) or default)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes")


@dataclass(frozen=True)
class AuthPolicy:
    max_attempts: int = 5
    lockout_duration: timedelta = timedelta(minutes=15)

    otp_ttl: timedelta = timedelta(minutes=10)
    totp_step_seconds: int = 30
    totp_skew_steps: int = 1
    backup_code_count: int = 8

    challenge_ttl: timedelta = timedelta(seconds=60)
    login_session_ttl: timedelta = timedelta(minutes=10)
    enrollment_ttl: timedelta = timedelta(minutes=10)
    # How long spent/expired records stay readable for diagnostics.
    record_retention: timedelta = timedelta(hours=1)

    mfa_failures_consume_budget: bool = True
    strong_password_threshold: int = 80

    rp_id: str = "localhost"
    rp_name: str = "SecureAuth Portal"
    origin: str = "http://localhost:3000"
    require_user_verification: bool = True
    revoke_on_counter_regression: bool = True

    session_ttl_hours: int = 24
    security_event_limit: int = 20

    @classmethod
    def from_env(cls) -> "AuthPolicy":
        """Build a policy from environment variables, falling back to defaults."""
        return cls(
            max_attempts=_env_int("AUTH_MAX_ATTEMPTS", 5),
            lockout_duration=timedelta(minutes=_env_int("AUTH_LOCKOUT_MINUTES", 15)),
            otp_ttl=timedelta(minutes=_env_int("OTP_TTL_MINUTES", 10)),
            totp_step_seconds=_env_int("TOTP_STEP_SECONDS", 30),
            totp_skew_steps=max(1, _env_int("TOTP_SKEW_STEPS", 1)),
            challenge_ttl=timedelta(seconds=_env_int("WEBAUTHN_CHALLENGE_TTL_SECONDS", 60)),
            login_session_ttl=timedelta(minutes=_env_int("LOGIN_SESSION_TTL_MINUTES", 10)),
            mfa_failures_consume_budget=_env_bool("MFA_FAILURES_CONSUME_BUDGET", True),
            strong_password_threshold=_env_int("PASSWORD_STRONG_THRESHOLD", 80),
            rp_id=os.getenv("WEBAUTHN_RP_ID", "localhost"),
            rp_name=os.getenv("WEBAUTHN_RP_NAME", "SecureAuth Portal"),
            origin=os.getenv("WEBAUTHN_ORIGIN", "http://localhost:3000"),
            require_user_verification=_env_bool("WEBAUTHN_REQUIRE_USER_VERIFICATION", True),
            revoke_on_counter_regression=_env_bool("REVOKE_ON_COUNTER_REGRESSION", True),
            session_ttl_hours=_env_int("SESSION_TTL_HOURS", 24),
            security_event_limit=max(1, _env_int("SECURITY_EVENT_LIMIT", 20)),
        )
