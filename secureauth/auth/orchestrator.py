"""
Authentication Orchestrator.

Composes the Risk Gate and the credential validators into the login state
machine:

    anonymous -> primary_verified -> awaiting_second_factor -> authenticated
    anonymous -> primary_verified -> authenticated        (no MFA)
    anonymous -> authenticated                            (passkey)

Every verification failure comes back as an AuthDecision. Only
RATE_LIMITED and COUNTER_REGRESSION are distinguishable from a plain
failure; store outages propagate as StoreUnavailableError.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Tuple, Union

from .devices import DeviceRegistry
from .events import SecurityEventLog
from .errors import AuthError, CeremonyError, ErrorKind, WeakPasswordError
from .identity import BcryptIdentityProvider
from .mfa import (
    MFAEngine,
    generate_backup_codes,
    hash_backup_codes,
    setup_mfa,
)
from .models import (
    Account,
    AttemptKind,
    AttemptRecord,
    AttemptResult,
    AuthDecision,
    AuthOutcome,
    Challenge,
    LoginState,
    OneTimeCode,
    PasskeyCredential,
    RecordKind,
    RiskDecision,
    SecurityEvent,
    SecurityEventKind,
    StoredRecord,
    normalize_account_key,
)
from .password_strength import is_common, score
from .policy import AuthPolicy
from .ports import (
    AccountStore,
    Clock,
    CodeStore,
    CredentialStore,
    IdentityProvider,
    RandomSource,
    SecureRandom,
    SystemClock,
)
from .risk_gate import RiskGate
from .webauthn import AuthenticationResponse, RegistrationResponse, WebAuthnValidator

logger = logging.getLogger(__name__)

SECOND_FACTORS = (AttemptKind.EMAIL_OTP, AttemptKind.TOTP, AttemptKind.BACKUP_CODE)


@dataclass
class TotpEnrollment:
    secret: str
    provisioning_uri: str
    qr_code_base64: str
    expires_at: datetime


@dataclass
class SecurityOverview:
    account: str
    mfa_enabled: bool
    passkey_count: int
    backup_codes_remaining: int
    last_login: Optional[datetime]
    score: int
    label: str
    recent_events: List[SecurityEvent] = field(default_factory=list)


def security_score(mfa_enabled: bool, passkey_count: int) -> int:
    """40 for the account, 30 for MFA, 30 for passkeys, 15 for a verified email; max 100."""
    total = 40
    if mfa_enabled:
        total += 30
    if passkey_count > 0:
        total += 30
    total += 15
    return min(total, 100)


def security_label(value: int) -> str:
    if value >= 80:
        return "Excellent"
    if value >= 60:
        return "Good"
    return "Needs Improvement"


def login_record_id(token: str) -> str:
    return f"login:{token}"


def enrollment_record_id(account_key: str) -> str:
    return f"totp_enroll:{account_key}"


class AuthOrchestrator:
    """
    Runs login flows and account security changes against injected stores.

    Example usage:
        orchestrator = AuthOrchestrator(accounts, codes, credentials)
        decision = orchestrator.login_with_password("user@example.com", "pw")
        if decision.outcome == AuthOutcome.MFA_REQUIRED:
            decision = orchestrator.verify_second_factor(decision.login_token, "totp", "123456")
    """

    def __init__(
        self,
        accounts: AccountStore,
        codes: CodeStore,
        credentials: CredentialStore,
        identity: Optional[IdentityProvider] = None,
        clock: Optional[Clock] = None,
        random: Optional[RandomSource] = None,
        policy: Optional[AuthPolicy] = None,
    ):
        self.accounts = accounts
        self.codes = codes
        self.credentials = credentials
        self.identity = identity or BcryptIdentityProvider()
        self.clock = clock or SystemClock()
        self.random = random or SecureRandom()
        self.policy = policy or AuthPolicy()

        self.risk = RiskGate(accounts, self.clock, self.policy)
        self.mfa = MFAEngine(accounts, codes, self.clock, self.random, self.policy)
        self.webauthn = WebAuthnValidator(codes, credentials, self.clock, self.random, self.policy)
        self.devices = DeviceRegistry(credentials, self.clock)
        self.events = SecurityEventLog(accounts, self.clock, self.random, self.policy)

    # ============================================
    # Decisions
    # ============================================

    def _log_attempt(self, kind: AttemptKind, result: AttemptResult, account: str) -> None:
        attempt = AttemptRecord(kind=kind, result=result, account=account, at=self.clock.now())
        logger.info(f"{attempt.kind.value} attempt for {attempt.account}: {attempt.result.value}")

    def _rate_limited(self, decision: RiskDecision) -> AuthDecision:
        return AuthDecision(
            outcome=AuthOutcome.RATE_LIMITED,
            state=LoginState.ANONYMOUS,
            remaining_attempts=0,
            retry_after=self.risk.retry_after_seconds(decision),
        )

    def _failed(
        self,
        key: str,
        before: RiskDecision,
        state: LoginState = LoginState.ANONYMOUS,
        login_token: Optional[str] = None,
        second_factor: bool = False,
    ) -> AuthDecision:
        """
        Count a failure and report what is left of the budget.

        Remaining attempts are derived from the pre-attempt budget so unknown
        accounts report the same number a fresh real account would.
        """
        locked = self.risk.record_failure(key, second_factor=second_factor)
        self.events.record(key, SecurityEventKind.LOGIN_FAILED)
        if locked:
            self.events.record(key, SecurityEventKind.ACCOUNT_LOCKED)

        after = self.risk.check_allowed(key)
        if not after.allowed:
            return self._rate_limited(after)

        remaining = max(0, min(after.remaining_attempts, before.remaining_attempts - 1))
        return AuthDecision(
            outcome=AuthOutcome.FAILED,
            state=state,
            login_token=login_token,
            remaining_attempts=remaining,
        )

    def _authenticated(self, key: str, kind: AttemptKind) -> AuthDecision:
        """Clear both failure counters, unless a lock landed while the credential was checked."""
        if not self.risk.record_success(key, second_factor=True):
            self._log_attempt(kind, AttemptResult.REJECTED_LOCKED, key)
            return self._rate_limited(self.risk.check_allowed(key))

        self.events.record(key, SecurityEventKind.LOGIN_SUCCESS)
        logger.info(f"User authenticated: {key}")
        return AuthDecision(outcome=AuthOutcome.AUTHENTICATED, state=LoginState.AUTHENTICATED, account=key)

    def _mfa_methods(self, account: Account) -> List[str]:
        methods = [AttemptKind.TOTP.value, AttemptKind.EMAIL_OTP.value]
        if account.backup_codes:
            methods.append(AttemptKind.BACKUP_CODE.value)
        if self.credentials.list_for_account(account.key):
            methods.append(AttemptKind.PASSKEY.value)
        return methods

    # ============================================
    # Login sessions (pending second factor)
    # ============================================

    def _open_login_session(self, key: str) -> str:
        token = self.random.token_bytes(32).hex()
        self.codes.put(StoredRecord(
            record_id=login_record_id(token),
            kind=RecordKind.LOGIN_SESSION,
            subject=key,
            expires_at=self.clock.now() + self.policy.login_session_ttl,
            payload={"state": LoginState.AWAITING_SECOND_FACTOR.value},
        ))
        return token

    def _pending_login(self, login_token: str) -> Optional[StoredRecord]:
        if not login_token:
            return None
        record = self.codes.get(login_record_id(login_token))
        if record is None or record.kind != RecordKind.LOGIN_SESSION:
            return None
        if record.used or record.is_expired(self.clock.now()) or not record.subject:
            return None
        return record

    def _close_login_session(self, login_token: str) -> bool:
        return self.codes.mark_used(login_record_id(login_token), self.clock.now())

    # ============================================
    # Login flows
    # ============================================

    def login_with_password(self, account_key: str, password: str) -> AuthDecision:
        """
        Check the primary credential.

        Returns:
            AUTHENTICATED, MFA_REQUIRED with a login token, FAILED with the
            remaining attempts, or RATE_LIMITED with retry_after.
        """
        key = normalize_account_key(account_key)
        gate = self.risk.check_allowed(key)
        if not gate.allowed:
            self._log_attempt(AttemptKind.PASSWORD, AttemptResult.REJECTED_LOCKED, key)
            return self._rate_limited(gate)

        account = self.accounts.get(key)
        if not self.identity.verify_password(account, password):
            self._log_attempt(AttemptKind.PASSWORD, AttemptResult.FAILURE, key)
            return self._failed(key, gate)

        if not account.mfa_enabled:
            self._log_attempt(AttemptKind.PASSWORD, AttemptResult.SUCCESS, key)
            return self._authenticated(key, AttemptKind.PASSWORD)

        # Failures landing while bcrypt ran may have locked the account
        if not self.risk.record_success(key):
            self._log_attempt(AttemptKind.PASSWORD, AttemptResult.REJECTED_LOCKED, key)
            return self._rate_limited(self.risk.check_allowed(key))
        self._log_attempt(AttemptKind.PASSWORD, AttemptResult.SUCCESS, key)

        token = self._open_login_session(key)
        logger.info(f"Second factor required for {key}")
        return AuthDecision(
            outcome=AuthOutcome.MFA_REQUIRED,
            state=LoginState.AWAITING_SECOND_FACTOR,
            login_token=token,
            remaining_attempts=self.risk.check_allowed(key).remaining_attempts,
            mfa_methods=self._mfa_methods(account),
        )

    def request_email_otp(self, login_token: str) -> OneTimeCode:
        """
        Issue an email OTP for a pending login.

        Raises:
            AuthError: INVALID_CREDENTIAL for an unknown or spent login token,
                RATE_LIMITED while the account is locked.
        """
        pending = self._pending_login(login_token)
        if pending is None:
            raise AuthError(ErrorKind.INVALID_CREDENTIAL, "login session not found")

        gate = self.risk.check_allowed(pending.subject)
        if not gate.allowed:
            raise AuthError(ErrorKind.RATE_LIMITED, "account locked")
        return self.mfa.issue_email_otp(pending.subject)

    def verify_second_factor(
        self,
        login_token: str,
        kind: Union[AttemptKind, str],
        code: str,
    ) -> AuthDecision:
        """Complete a pending login with an email OTP, TOTP or backup code."""
        pending = self._pending_login(login_token)
        if pending is None:
            return AuthDecision(outcome=AuthOutcome.FAILED, state=LoginState.ANONYMOUS)

        try:
            factor = AttemptKind(kind)
        except ValueError:
            factor = None
        if factor not in SECOND_FACTORS:
            raise ValueError(f"Unsupported second factor: {kind}")

        key = pending.subject
        gate = self.risk.check_allowed(key)
        if not gate.allowed:
            self._log_attempt(factor, AttemptResult.REJECTED_LOCKED, key)
            return self._rate_limited(gate)

        if factor == AttemptKind.EMAIL_OTP:
            ok = self.mfa.verify_email_otp(key, code)
        elif factor == AttemptKind.TOTP:
            ok = self.mfa.verify_totp(key, code)
        else:
            ok = self.mfa.verify_backup_code(key, code)

        if not ok:
            return self._second_factor_failed(key, gate, login_token)
        return self._finish_second_factor(key, login_token, factor)

    def _second_factor_failed(self, key: str, gate: RiskDecision, login_token: str) -> AuthDecision:
        return self._failed(key, gate, LoginState.AWAITING_SECOND_FACTOR, login_token, second_factor=True)

    def _finish_second_factor(self, key: str, login_token: str, kind: AttemptKind) -> AuthDecision:
        if not self._close_login_session(login_token):
            logger.info(f"Login session for {key} was already completed")
            return AuthDecision(outcome=AuthOutcome.FAILED, state=LoginState.ANONYMOUS)
        return self._authenticated(key, kind)

    def begin_passkey_login(self) -> Tuple[Challenge, dict]:
        """Start a passkey ceremony; returns the challenge and browser options."""
        challenge = self.webauthn.begin_authentication()
        return challenge, self.webauthn.authentication_options(challenge)

    def login_with_passkey(self, response: AuthenticationResponse) -> AuthDecision:
        """
        Log in with a passkey alone.

        Ceremony failures do not touch any account's budget: until the
        signature verifies, the account is not known.
        """
        try:
            assertion = self.webauthn.complete_authentication(response)
        except CeremonyError as exc:
            if exc.kind == ErrorKind.COUNTER_REGRESSION:
                return self._counter_regression(response.credential_id)
            logger.info(f"Passkey login rejected: {exc.kind.value} ({exc})")
            return AuthDecision(outcome=AuthOutcome.FAILED, state=LoginState.ANONYMOUS)

        key = assertion.account
        gate = self.risk.check_allowed(key)
        if not gate.allowed:
            self._log_attempt(AttemptKind.PASSKEY, AttemptResult.REJECTED_LOCKED, key)
            return self._rate_limited(gate)

        self._log_attempt(AttemptKind.PASSKEY, AttemptResult.SUCCESS, key)
        return self._authenticated(key, AttemptKind.PASSKEY)

    def verify_passkey_second_factor(
        self,
        login_token: str,
        response: AuthenticationResponse,
    ) -> AuthDecision:
        """Complete a pending login with a passkey owned by the same account."""
        pending = self._pending_login(login_token)
        if pending is None:
            return AuthDecision(outcome=AuthOutcome.FAILED, state=LoginState.ANONYMOUS)

        key = pending.subject
        gate = self.risk.check_allowed(key)
        if not gate.allowed:
            self._log_attempt(AttemptKind.PASSKEY, AttemptResult.REJECTED_LOCKED, key)
            return self._rate_limited(gate)

        try:
            assertion = self.webauthn.complete_authentication(response)
        except CeremonyError as exc:
            if exc.kind == ErrorKind.COUNTER_REGRESSION:
                return self._counter_regression(response.credential_id)
            logger.info(f"Passkey second factor rejected for {key}: {exc.kind.value} ({exc})")
            self._log_attempt(AttemptKind.PASSKEY, AttemptResult.FAILURE, key)
            return self._second_factor_failed(key, gate, login_token)

        if assertion.account != key:
            logger.warning(f"Passkey of {assertion.account} presented for pending login of {key}")
            self._log_attempt(AttemptKind.PASSKEY, AttemptResult.FAILURE, key)
            return self._second_factor_failed(key, gate, login_token)

        self._log_attempt(AttemptKind.PASSKEY, AttemptResult.SUCCESS, key)
        return self._finish_second_factor(key, login_token, AttemptKind.PASSKEY)

    def _counter_regression(self, credential_id: bytes) -> AuthDecision:
        """Escalate a possibly cloned credential: count a failure and, by policy, revoke it."""
        credential = self.credentials.get_by_credential_id(credential_id)
        if credential is None:
            return AuthDecision(outcome=AuthOutcome.COUNTER_REGRESSION, state=LoginState.ANONYMOUS)

        key = credential.account
        label = credential.label or "unnamed"
        self._log_attempt(AttemptKind.PASSKEY, AttemptResult.FAILURE, key)
        locked = self.risk.record_failure(key)
        self.events.record(key, SecurityEventKind.COUNTER_REGRESSION)
        if locked:
            self.events.record(key, SecurityEventKind.ACCOUNT_LOCKED)

        if self.policy.revoke_on_counter_regression:
            if self.credentials.delete(credential_id, key):
                self.events.record(
                    key,
                    SecurityEventKind.PASSKEY_REVOKED,
                    f"Passkey '{label}' revoked after a counter regression",
                )
            logger.warning(f"Passkey '{label}' of {key} revoked after counter regression")
        else:
            logger.warning(f"Passkey '{label}' of {key} reported a counter regression")

        return AuthDecision(outcome=AuthOutcome.COUNTER_REGRESSION, state=LoginState.ANONYMOUS)

    # ============================================
    # Account lifecycle
    # ============================================

    def register_account(self, account_key: str, password: str) -> Account:
        """
        Create an account after gating the password.

        Raises:
            ValueError: If the key is not an email address.
            WeakPasswordError: If the password is common or not strong.
            AccountExistsError: If the key is taken.
        """
        key = normalize_account_key(account_key)
        if "@" not in key:
            raise ValueError("A valid email address is required")

        if is_common(password):
            raise WeakPasswordError(
                "Password is too common",
                ["This password appears in breach lists; choose another"],
            )
        strength = score(password, self.policy.strong_password_threshold)
        if not strength.is_strong:
            raise WeakPasswordError("Password is too weak", strength.feedback)

        account = self.accounts.create(Account(
            key=key,
            password_hash=self.identity.hash_password(password),
            created_at=self.clock.now(),
        ))
        logger.info(f"New account registered: {key}")
        return account

    def note_device(self, account_key: str, user_agent: Optional[str], ip: Optional[str]) -> bool:
        """Advisory only: True when the account logs in from an unseen device."""
        created = self.devices.note(account_key, user_agent, ip)
        if created:
            self.events.record(account_key, SecurityEventKind.NEW_DEVICE)
        return created

    # ============================================
    # TOTP enrolment
    # ============================================

    def begin_totp_enrollment(self, account_key: str) -> TotpEnrollment:
        """
        Start TOTP setup. The secret stays pending until confirmed.

        Raises:
            ValueError: If the account is unknown or MFA is already enabled.
        """
        key = normalize_account_key(account_key)
        account = self.accounts.get(key)
        if account is None:
            raise ValueError("Unknown account")
        if account.mfa_enabled:
            raise ValueError("MFA is already enabled. Disable it first to set up a new authenticator.")

        secret, uri, qr_base64 = setup_mfa(key, issuer=self.policy.rp_name, interval=self.policy.totp_step_seconds)
        expires_at = self.clock.now() + self.policy.enrollment_ttl
        self.codes.put(StoredRecord(
            record_id=enrollment_record_id(key),
            kind=RecordKind.TOTP_ENROLLMENT,
            subject=key,
            expires_at=expires_at,
            payload={"secret": secret},
        ))

        logger.info(f"MFA setup initiated for {key}")
        return TotpEnrollment(secret=secret, provisioning_uri=uri, qr_code_base64=qr_base64, expires_at=expires_at)

    def confirm_totp_enrollment(self, account_key: str, code: str) -> List[str]:
        """
        Confirm TOTP setup with a code from the authenticator app.

        Returns:
            Plaintext backup codes, shown to the user exactly once.

        Raises:
            ValueError: If there is no pending setup or the code is wrong.
        """
        key = normalize_account_key(account_key)
        record_id = enrollment_record_id(key)
        pending = self.codes.get(record_id)
        now = self.clock.now()
        if (
            pending is None
            or pending.kind != RecordKind.TOTP_ENROLLMENT
            or pending.used
            or pending.is_expired(now)
        ):
            raise ValueError("No pending MFA setup found. Start setup first.")

        secret = pending.payload.get("secret")
        if not self.mfa.verify_totp_secret(secret, code):
            raise ValueError("Invalid verification code. Please try again.")
        if not self.codes.mark_used(record_id, now):
            raise ValueError("No pending MFA setup found. Start setup first.")

        backup_codes = generate_backup_codes(count=self.policy.backup_code_count)
        hashed_codes = hash_backup_codes(backup_codes)

        def _enable(account: Account) -> None:
            account.mfa_enabled = True
            account.mfa_secret = secret
            account.backup_codes = list(hashed_codes)

        if self.accounts.update(key, _enable) is None:
            raise ValueError("Unknown account")

        self.events.record(key, SecurityEventKind.MFA_ENABLED)
        logger.info(f"MFA enabled for {key}")
        return backup_codes

    def disable_mfa(self, account_key: str, code: str) -> None:
        """
        Turn MFA off; requires a current TOTP code.

        Raises:
            ValueError: If MFA is not enabled or the code is wrong.
        """
        key = normalize_account_key(account_key)
        account = self.accounts.get(key)
        if account is None or not account.mfa_enabled:
            raise ValueError("MFA is not enabled")
        if not self.mfa.verify_totp(key, code):
            raise ValueError("Invalid verification code")

        def _disable(acc: Account) -> None:
            acc.mfa_enabled = False
            acc.mfa_secret = None
            acc.backup_codes = []

        self.accounts.update(key, _disable)
        self.events.record(key, SecurityEventKind.MFA_DISABLED)
        logger.info(f"MFA disabled for {key}")

    # ============================================
    # Passkey management
    # ============================================

    def begin_passkey_registration(self, account_key: str) -> Tuple[Challenge, dict]:
        key = normalize_account_key(account_key)
        if self.accounts.get(key) is None:
            raise ValueError("Unknown account")
        challenge = self.webauthn.begin_registration(key)
        return challenge, self.webauthn.registration_options(challenge)

    def complete_passkey_registration(
        self,
        account_key: str,
        response: RegistrationResponse,
        label: Optional[str] = None,
    ) -> PasskeyCredential:
        """Raises CeremonyError if the registration ceremony does not verify."""
        credential = self.webauthn.complete_registration(account_key, response, label)
        self.events.record(credential.account, SecurityEventKind.PASSKEY_ADDED)
        return credential

    def list_passkeys(self, account_key: str) -> List[PasskeyCredential]:
        return self.credentials.list_for_account(normalize_account_key(account_key))

    def revoke_passkey(self, account_key: str, credential_id: bytes) -> bool:
        key = normalize_account_key(account_key)
        removed = self.credentials.delete(credential_id, key)
        if removed:
            self.events.record(key, SecurityEventKind.PASSKEY_REVOKED)
            logger.info(f"Passkey revoked for {key}")
        return removed

    # ============================================
    # Overview
    # ============================================

    def security_overview(self, account_key: str) -> SecurityOverview:
        key = normalize_account_key(account_key)
        account = self.accounts.get(key)
        if account is None:
            raise ValueError("Unknown account")

        passkey_count = len(self.credentials.list_for_account(key))
        value = security_score(account.mfa_enabled, passkey_count)
        return SecurityOverview(
            account=key,
            mfa_enabled=account.mfa_enabled,
            passkey_count=passkey_count,
            backup_codes_remaining=len(account.backup_codes),
            last_login=account.last_login,
            score=value,
            label=security_label(value),
            recent_events=list(reversed(account.security_events)),
        )
