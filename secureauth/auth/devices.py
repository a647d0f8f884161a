"""
Advisory device recognition.

A device is identified by a hash of its user agent and client IP. Both are
client-controlled, so recognition is a low-confidence signal: it can flag a
login from a new device but never grants or denies access.
"""
import hashlib
import logging
from typing import Optional

from .models import normalize_account_key
from .ports import Clock, CredentialStore, SystemClock

logger = logging.getLogger(__name__)


def fingerprint_hash(user_agent: Optional[str], ip: Optional[str]) -> str:
    src = f"{user_agent or ''}|{ip or ''}".encode("utf-8", errors="ignore")
    return hashlib.sha256(src).hexdigest()


class DeviceRegistry:
    """Remembers which devices an account has logged in from."""

    def __init__(self, credentials: CredentialStore, clock: Optional[Clock] = None):
        self.credentials = credentials
        self.clock = clock or SystemClock()

    def note(self, account_key: str, user_agent: Optional[str], ip: Optional[str]) -> bool:
        """
        Record a sighting of the device.

        Returns:
            True if this account has not been seen on this device before.
        """
        account = normalize_account_key(account_key)
        _, created = self.credentials.touch_device(
            account, fingerprint_hash(user_agent, ip), self.clock.now()
        )
        if created:
            logger.info(f"New device for {account} (advisory)")
        return created
