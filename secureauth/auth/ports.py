"""
Interfaces the verification core consumes.

Adapters in secureauth.database implement the stores; the clock and
randomness sources are injected so tests can drive time explicitly.
"""
import secrets
from datetime import datetime, timezone
from typing import Callable, List, Optional, Protocol, Tuple

from .models import Account, KnownDevice, PasskeyCredential, StoredRecord


AccountMutation = Callable[[Account], None]


class AccountStore(Protocol):
    """Keyed account state with atomic per-key updates."""

    def get(self, key: str) -> Optional[Account]:
        ...

    def create(self, account: Account) -> Account:
        """Raises AccountExistsError if the key is taken."""
        ...

    def update(self, key: str, mutation: AccountMutation) -> Optional[Account]:
        """
        Apply mutation to the current account state atomically.

        The mutation may be invoked more than once if the store retries on
        a concurrent write, so it must only touch the account it is given.

        Returns:
            The updated account, or None if the key does not exist.
        """
        ...


class CodeStore(Protocol):
    """Short-lived single-use records (OTPs, challenges, pending logins)."""

    def put(self, record: StoredRecord) -> None:
        ...

    def get(self, record_id: str) -> Optional[StoredRecord]:
        """Return the record, expired or not, while the store retains it."""
        ...

    def mark_used(self, record_id: str, now: datetime) -> bool:
        """
        Atomically flip an unused, unexpired record to used.

        Returns True for exactly one caller per record.
        """
        ...


class CredentialStore(Protocol):
    """Passkey credentials keyed by credential id, indexed by account."""

    def put(self, credential: PasskeyCredential) -> None:
        """Raises DuplicateCredentialError if the id is already registered."""
        ...

    def get_by_credential_id(self, credential_id: bytes) -> Optional[PasskeyCredential]:
        ...

    def list_for_account(self, account: str) -> List[PasskeyCredential]:
        ...

    def update_counter(self, credential_id: bytes, expected: int, new: int, now: datetime) -> bool:
        """Compare-and-set the signature counter; False if it moved."""
        ...

    def delete(self, credential_id: bytes, account: str) -> bool:
        ...

    def touch_device(self, account: str, fingerprint_hash: str, now: datetime) -> Tuple[KnownDevice, bool]:
        """Record a sighting; the flag is True only when this call created the device."""
        ...


class SessionStore(Protocol):
    def create_session(self, account: str, expires_hours: int = 24) -> str:
        ...

    def validate_session(self, session_token: str) -> Optional[str]:
        ...

    def invalidate_session(self, session_token: str) -> None:
        ...

    def invalidate_all_sessions(self, account: str) -> int:
        ...


class IdentityProvider(Protocol):
    def hash_password(self, password: str) -> str:
        ...

    def verify_password(self, account: Optional[Account], password: str) -> bool:
        ...


class Clock(Protocol):
    def now(self) -> datetime:
        ...


class RandomSource(Protocol):
    def token_bytes(self, n: int) -> bytes:
        ...

    def randbelow(self, n: int) -> int:
        ...


# ============================================
# Default implementations
# ============================================

class SystemClock:
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class SecureRandom:
    """Randomness from the OS CSPRNG via the secrets module."""

    def token_bytes(self, n: int) -> bytes:
        return secrets.token_bytes(n)

    def randbelow(self, n: int) -> int:
        return secrets.randbelow(n)
