"""
Error taxonomy for the verification core.

Validators raise or record the precise ErrorKind; the orchestrator collapses
most of them into a uniform failure before anything reaches a caller.
"""
from enum import Enum
from typing import List, Optional


class ErrorKind(str, Enum):
    RATE_LIMITED = "rate_limited"
    INVALID_CREDENTIAL = "invalid_credential"
    EXPIRED = "expired"
    CEREMONY_MISMATCH = "ceremony_mismatch"
    COUNTER_REGRESSION = "counter_regression"
    ALREADY_USED = "already_used"


# Kinds that are reported to callers as a plain invalid credential.
_COLLAPSED_KINDS = {ErrorKind.EXPIRED, ErrorKind.ALREADY_USED}


class AuthError(RuntimeError):
    """Verification failure with a precise internal kind."""

    def __init__(self, kind: ErrorKind, message: Optional[str] = None):
        self.kind = kind
        super().__init__(message or kind.value)

    def external_kind(self) -> ErrorKind:
        if self.kind in _COLLAPSED_KINDS:
            return ErrorKind.INVALID_CREDENTIAL
        return self.kind


class CeremonyError(AuthError):
    """Raised by the WebAuthn validator."""


# ============================================
# Infrastructure
# ============================================

class StoreUnavailableError(RuntimeError):
    """A backing store could not be reached; the caller may retry."""


# ============================================
# Input / lifecycle errors
# ============================================

class AccountExistsError(ValueError):
    pass


class DuplicateCredentialError(ValueError):
    pass


class WeakPasswordError(ValueError):
    """Password rejected at registration; feedback lists what to fix."""

    def __init__(self, message: str, feedback: Optional[List[str]] = None):
        self.feedback = feedback or []
        super().__init__(message)
