"""
Account Risk Gate.

Tracks consecutive failed attempts per account and locks the account for a
fixed window once the budget is spent. Every authentication attempt passes
through check_allowed() before any credential is looked at.

Unknown accounts always report the full budget, so lockout signals never
reveal whether an email is registered.
"""
import logging
from datetime import datetime
from typing import Optional

from .models import Account, RiskDecision, normalize_account_key
from .policy import AuthPolicy
from .ports import AccountStore, Clock, SystemClock

logger = logging.getLogger(__name__)


class RiskGate:
    """
    Per-account failure counting and lockout.

    Example usage:
        gate = RiskGate(accounts)
        decision = gate.check_allowed("user@example.com")
        if decision.allowed:
            ...
            gate.record_failure("user@example.com")
    """

    def __init__(
        self,
        accounts: AccountStore,
        clock: Optional[Clock] = None,
        policy: Optional[AuthPolicy] = None,
    ):
        self.accounts = accounts
        self.clock = clock or SystemClock()
        self.policy = policy or AuthPolicy()

    @property
    def max_attempts(self) -> int:
        return self.policy.max_attempts

    def _lock_active(self, account: Account, now: datetime) -> bool:
        return account.locked_until is not None and account.locked_until > now

    def _lock_elapsed(self, account: Account, now: datetime) -> bool:
        return account.locked_until is not None and account.locked_until <= now

    def _spent(self, account: Account) -> int:
        return max(account.failed_attempts, account.mfa_failed_attempts)

    def _expire_lock(self, account: Account, now: datetime) -> None:
        """An elapsed lock hands out a fresh budget for both stages."""
        if self._lock_elapsed(account, now):
            account.failed_attempts = 0
            account.mfa_failed_attempts = 0
            account.locked_until = None

    def check_allowed(self, account_key: str) -> RiskDecision:
        """
        Decide whether the account may attempt authentication now.

        Fails closed while a lock is active. Once a lock has elapsed the
        account gets a fresh budget. The budget left is whatever the more
        exhausted of the primary and second-factor counters leaves.
        """
        key = normalize_account_key(account_key)
        account = self.accounts.get(key)
        if account is None:
            return RiskDecision(allowed=True, remaining_attempts=self.max_attempts)

        now = self.clock.now()
        if self._lock_active(account, now):
            return RiskDecision(allowed=False, remaining_attempts=0, locked_until=account.locked_until)

        spent = 0 if self._lock_elapsed(account, now) else self._spent(account)
        remaining = max(0, self.max_attempts - spent)
        return RiskDecision(allowed=remaining > 0, remaining_attempts=remaining)

    def record_failure(self, account_key: str, second_factor: bool = False) -> bool:
        """
        Count one failed attempt; lock the account when the budget is spent.

        Second-factor failures go to their own counter, which a correct
        password does not clear, and also to the primary counter when the
        policy says they consume the shared budget.

        Returns:
            True if this failure locked the account.
        """
        key = normalize_account_key(account_key)
        now = self.clock.now()
        lock_until = now + self.policy.lockout_duration
        locked = [False]

        def _fail(account: Account) -> None:
            locked[0] = False
            if self._lock_active(account, now):
                return
            self._expire_lock(account, now)
            if second_factor:
                account.mfa_failed_attempts += 1
                if self.policy.mfa_failures_consume_budget:
                    account.failed_attempts += 1
            else:
                account.failed_attempts += 1
            if self._spent(account) >= self.max_attempts:
                account.locked_until = lock_until
                locked[0] = True

        updated = self.accounts.update(key, _fail)
        if updated is None:
            return False

        if locked[0]:
            stage = "second-factor" if second_factor else "primary"
            logger.warning(
                f"Account {key} locked until {updated.locked_until.isoformat()} "
                f"after {self._spent(updated)} failed {stage} attempts"
            )
        else:
            logger.debug(f"Failed attempt {self._spent(updated)}/{self.max_attempts} for {key}")
        return locked[0]

    def record_success(self, account_key: str, second_factor: bool = False) -> bool:
        """
        Reset the failure count and stamp the login time, unless a lock is active.

        The lock check happens inside the atomic update, so a lock set by
        concurrent failures while the credential was being verified is
        never cleared. A primary success leaves the second-factor counter
        alone; only a completed second factor clears it.

        Returns:
            False if the account is locked (state untouched) or unknown.
        """
        key = normalize_account_key(account_key)
        now = self.clock.now()
        applied = [False]

        def _succeed(account: Account) -> None:
            applied[0] = False
            if self._lock_active(account, now):
                return
            self._expire_lock(account, now)
            account.failed_attempts = 0
            if second_factor:
                account.mfa_failed_attempts = 0
            account.last_login = now
            applied[0] = True

        if self.accounts.update(key, _succeed) is None:
            return False
        if not applied[0]:
            logger.warning(f"Successful credential for {key} ignored: account locked meanwhile")
            return False

        logger.debug(f"Cleared failed attempts for {key}")
        return True

    def retry_after_seconds(self, decision: RiskDecision) -> int:
        """Seconds until a locked account may try again (0 if not locked)."""
        if decision.locked_until is None:
            return 0
        delta = decision.locked_until - self.clock.now()
        return max(0, int(delta.total_seconds()) + 1)
