"""
Per-account security event feed.

Keeps the most recent security-relevant events on the account record
(logins, lockouts, MFA and passkey changes) so the portal can show them
back to the account holder. The feed is bounded; older events fall off.
"""
import logging
from typing import Dict, List, Optional, Tuple

from .models import Account, RiskLevel, SecurityEvent, SecurityEventKind, normalize_account_key
from .policy import AuthPolicy
from .ports import AccountStore, Clock, RandomSource, SecureRandom, SystemClock

logger = logging.getLogger(__name__)

# kind -> (default description, risk level)
EVENT_DEFAULTS: Dict[SecurityEventKind, Tuple[str, RiskLevel]] = {
    SecurityEventKind.LOGIN_SUCCESS: ("Successful login", RiskLevel.LOW),
    SecurityEventKind.LOGIN_FAILED: ("Failed sign-in attempt", RiskLevel.MEDIUM),
    SecurityEventKind.ACCOUNT_LOCKED: ("Account locked after repeated failed attempts", RiskLevel.HIGH),
    SecurityEventKind.NEW_DEVICE: ("Login from a new device", RiskLevel.MEDIUM),
    SecurityEventKind.MFA_ENABLED: ("Multi-factor authentication enabled", RiskLevel.LOW),
    SecurityEventKind.MFA_DISABLED: ("Multi-factor authentication disabled", RiskLevel.MEDIUM),
    SecurityEventKind.PASSKEY_ADDED: ("New passkey registered", RiskLevel.LOW),
    SecurityEventKind.PASSKEY_REVOKED: ("Passkey removed", RiskLevel.MEDIUM),
    SecurityEventKind.COUNTER_REGRESSION: (
        "Passkey signature counter went backwards; the authenticator may be cloned",
        RiskLevel.HIGH,
    ),
}


class SecurityEventLog:
    """
    Appends events to the account record through the account store.

    Events for unknown accounts are dropped, so the feed never reveals
    whether an email is registered.
    """

    def __init__(
        self,
        accounts: AccountStore,
        clock: Optional[Clock] = None,
        random: Optional[RandomSource] = None,
        policy: Optional[AuthPolicy] = None,
    ):
        self.accounts = accounts
        self.clock = clock or SystemClock()
        self.random = random or SecureRandom()
        self.policy = policy or AuthPolicy()

    def record(
        self,
        account_key: str,
        kind: SecurityEventKind,
        description: Optional[str] = None,
    ) -> Optional[SecurityEvent]:
        default_description, risk_level = EVENT_DEFAULTS[kind]
        event = SecurityEvent(
            event_id=self.random.token_bytes(8).hex(),
            kind=kind,
            description=description or default_description,
            risk_level=risk_level,
            at=self.clock.now(),
        )
        limit = self.policy.security_event_limit

        def _append(account: Account) -> None:
            account.security_events = (list(account.security_events) + [event])[-limit:]

        if self.accounts.update(normalize_account_key(account_key), _append) is None:
            return None
        return event

    def recent(self, account_key: str) -> List[SecurityEvent]:
        """Newest first."""
        account = self.accounts.get(normalize_account_key(account_key))
        if account is None:
            return []
        return list(reversed(account.security_events))
