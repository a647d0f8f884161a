"""
Password hashing and the default identity provider.

Passwords are bcrypt-hashed. Verification against an unknown account still
burns one bcrypt comparison so response time does not reveal whether the
account exists.
"""
import logging
from typing import Optional

import bcrypt

from .models import Account

logger = logging.getLogger(__name__)

# Hash of a random throwaway password, compared against when no account exists.
_DUMMY_HASH = bcrypt.hashpw(b"secureauth-dummy-password", bcrypt.gensalt(rounds=12)).decode("utf-8")


def hash_password(password: str) -> str:
    """
    Hash a password using bcrypt.

    Args:
        password: Plain text password.

    Returns:
        Bcrypt hash string.
    """
    salt = bcrypt.gensalt(rounds=12)
    return bcrypt.hashpw(password.encode('utf-8'), salt).decode('utf-8')


def verify_password(password: str, password_hash: str) -> bool:
    """
    Verify a password against its hash.

    Args:
        password: Plain text password to verify.
        password_hash: Stored bcrypt hash.

    Returns:
        True if password matches, False otherwise (including malformed hashes).
    """
    try:
        return bcrypt.checkpw(
            password.encode('utf-8'),
            password_hash.encode('utf-8')
        )
    except ValueError:
        logger.warning("Stored password hash is not a valid bcrypt hash")
        return False


class BcryptIdentityProvider:
    """Checks the primary credential against the account's bcrypt hash."""

    def hash_password(self, password: str) -> str:
        return hash_password(password)

    def verify_password(self, account: Optional[Account], password: str) -> bool:
        if account is None:
            verify_password(password or "", _DUMMY_HASH)
            return False
        return verify_password(password or "", account.password_hash)
