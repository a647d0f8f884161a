"""
Credential verification and account-risk core for SecureAuth.

This package provides:
- Password strength scoring
- Email OTP, TOTP and backup-code verification
- WebAuthn passkey ceremonies
- Per-account lockout
- The login orchestrator tying them together
"""
from .errors import (
    AccountExistsError,
    AuthError,
    CeremonyError,
    DuplicateCredentialError,
    ErrorKind,
    StoreUnavailableError,
    WeakPasswordError,
)
from .models import AuthDecision, AuthOutcome, LoginState
from .orchestrator import AuthOrchestrator
from .policy import AuthPolicy
from .risk_gate import RiskGate
from .mfa import MFAEngine
from .webauthn import AuthenticationResponse, RegistrationResponse, WebAuthnValidator

__all__ = [
    "AccountExistsError",
    "AuthDecision",
    "AuthError",
    "AuthOrchestrator",
    "AuthOutcome",
    "AuthPolicy",
    "AuthenticationResponse",
    "CeremonyError",
    "DuplicateCredentialError",
    "ErrorKind",
    "LoginState",
    "MFAEngine",
    "RegistrationResponse",
    "RiskGate",
    "StoreUnavailableError",
    "WeakPasswordError",
    "WebAuthnValidator",
]
