"""
Authentication Endpoints.

Provides registration, password login with second factors, logout,
MFA management and the account security overview.
"""
import logging
import smtplib
from typing import Dict, Union

from fastapi import APIRouter, Depends, HTTPException, Request, status

from ..models import (
    UserRegister,
    UserLogin,
    TokenResponse,
    MFARequiredResponse,
    SecondFactorRequest,
    EmailOTPRequest,
    EmailOTPResponse,
    PasswordStrengthRequest,
    PasswordStrengthResponse,
    MFASetupResponse,
    MFAVerifyRequest,
    MFAVerifyResponse,
    SecurityOverviewResponse,
    SecurityEventResponse,
    ErrorResponse,
)
from ..deps import (
    get_orchestrator,
    get_session_store,
    get_mailer,
    get_current_user,
    check_register_rate_limit,
    check_login_rate_limit,
    client_ip,
)
from ...auth.errors import AccountExistsError, AuthError, ErrorKind, WeakPasswordError
from ...auth.models import AuthDecision, AuthOutcome
from ...auth.orchestrator import AuthOrchestrator
from ...auth.password_strength import is_common, score, strength_label
from ...auth.ports import SessionStore
from ...utils.mailer import Mailer, email_otp_message

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/auth", tags=["Authentication"])


# ============================================
# Decision handling (shared with passkey routes)
# ============================================

def raise_for_decision(decision: AuthDecision) -> None:
    """
    Turn a non-authenticated decision into an HTTP error.

    Lockout and counter regression get their own status codes; every other
    failure is the same 401 with the remaining attempt count.
    """
    if decision.outcome == AuthOutcome.RATE_LIMITED:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Account temporarily locked due to too many failed attempts. Try again later.",
            headers={"Retry-After": str(decision.retry_after or 0)},
        )
    if decision.outcome == AuthOutcome.COUNTER_REGRESSION:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="This passkey can no longer be used. Sign in another way and register it again.",
        )
    if decision.outcome == AuthOutcome.FAILED:
        headers = None
        if decision.remaining_attempts is not None:
            headers = {"X-Remaining-Attempts": str(decision.remaining_attempts)}
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication failed",
            headers=headers,
        )


def start_session(
    account: str,
    request: Request,
    orchestrator: AuthOrchestrator,
    sessions: SessionStore,
) -> TokenResponse:
    """Issue a bearer session for an authenticated account."""
    new_device = orchestrator.note_device(account, request.headers.get("user-agent"), client_ip(request))
    hours = orchestrator.policy.session_ttl_hours
    token = sessions.create_session(account, expires_hours=hours)
    full_account = orchestrator.accounts.get(account)

    return TokenResponse(
        access_token=token,
        token_type="bearer",
        expires_in=hours * 3600,
        email=account,
        mfa_enabled=bool(full_account and full_account.mfa_enabled),
        new_device=new_device,
    )


# ============================================
# Registration and login
# ============================================

@router.post(
    "/register",
    response_model=TokenResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        400: {"model": ErrorResponse, "description": "Password too weak or too common"},
        409: {"model": ErrorResponse, "description": "Email already exists"},
        429: {"model": ErrorResponse, "description": "Too many registration attempts"},
    },
    dependencies=[Depends(check_register_rate_limit)],
)
def register(
    user_data: UserRegister,
    request: Request,
    orchestrator: AuthOrchestrator = Depends(get_orchestrator),
    sessions: SessionStore = Depends(get_session_store),
):
    """
    Register a new account.

    Returns an access token for immediate use.
    """
    try:
        account = orchestrator.register_account(user_data.email, user_data.password)
    except WeakPasswordError as e:
        detail = str(e)
        if e.feedback:
            detail = f"{detail}: {'; '.join(e.feedback)}"
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)
    except AccountExistsError:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="An account with this email already exists")
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return start_session(account.key, request, orchestrator, sessions)


@router.post("/password/strength", response_model=PasswordStrengthResponse)
async def password_strength(body: PasswordStrengthRequest):
    """Score a candidate password for the registration form."""
    result = score(body.password)
    return PasswordStrengthResponse(
        score=result.score,
        label=strength_label(result.score),
        is_strong=result.is_strong,
        is_common=is_common(body.password),
        feedback=result.feedback,
    )


@router.post(
    "/login",
    response_model=Union[TokenResponse, MFARequiredResponse],
    responses={
        401: {"model": ErrorResponse, "description": "Invalid credentials"},
        429: {"model": ErrorResponse, "description": "Account locked or too many attempts from this IP"},
    },
    dependencies=[Depends(check_login_rate_limit)],
)
def login(
    credentials: UserLogin,
    request: Request,
    orchestrator: AuthOrchestrator = Depends(get_orchestrator),
    sessions: SessionStore = Depends(get_session_store),
):
    """
    Check email and password.

    Accounts with MFA get a login_token to finish with /auth/login/verify
    or /passkeys/login/verify. The account is locked for 15 minutes after
    5 failed attempts.
    """
    decision = orchestrator.login_with_password(credentials.email, credentials.password)

    if decision.outcome == AuthOutcome.MFA_REQUIRED:
        return MFARequiredResponse(
            login_token=decision.login_token,
            methods=decision.mfa_methods,
            expires_in=int(orchestrator.policy.login_session_ttl.total_seconds()),
        )

    raise_for_decision(decision)
    return start_session(decision.account, request, orchestrator, sessions)


@router.post(
    "/login/email-code",
    response_model=EmailOTPResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Unknown or expired login"},
        429: {"model": ErrorResponse, "description": "Account locked"},
        503: {"model": ErrorResponse, "description": "Mail server unavailable"},
    },
    dependencies=[Depends(check_login_rate_limit)],
)
def send_email_code(
    body: EmailOTPRequest,
    orchestrator: AuthOrchestrator = Depends(get_orchestrator),
    mailer: Mailer = Depends(get_mailer),
):
    """Email a 6-digit code for a pending login."""
    try:
        otp = orchestrator.request_email_otp(body.login_token)
    except AuthError as e:
        if e.kind == ErrorKind.RATE_LIMITED:
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Account temporarily locked due to too many failed attempts. Try again later.",
            )
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication failed")

    ttl_minutes = int(orchestrator.policy.otp_ttl.total_seconds() // 60)
    try:
        mailer.send(otp.subject, "Your SecureAuth verification code", email_otp_message(otp.code, ttl_minutes))
    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"Could not send login code to {otp.subject}: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Could not send the verification code. Please retry.",
            headers={"Retry-After": "5"},
        )
    return EmailOTPResponse(expires_at=otp.expires_at)


@router.post(
    "/login/verify",
    response_model=TokenResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Invalid code"},
        429: {"model": ErrorResponse, "description": "Account locked"},
    },
    dependencies=[Depends(check_login_rate_limit)],
)
def verify_login(
    body: SecondFactorRequest,
    request: Request,
    orchestrator: AuthOrchestrator = Depends(get_orchestrator),
    sessions: SessionStore = Depends(get_session_store),
):
    """
    Finish a pending login with a second factor.

    method is one of email_otp, totp or backup_code. Backup codes are
    consumed on use.
    """
    decision = orchestrator.verify_second_factor(body.login_token, body.method, body.code)
    raise_for_decision(decision)
    return start_session(decision.account, request, orchestrator, sessions)


@router.post("/logout", status_code=status.HTTP_204_NO_CONTENT)
def logout(
    user: Dict = Depends(get_current_user),
    sessions: SessionStore = Depends(get_session_store),
):
    """
    Logout current session.

    Invalidates the current access token.
    """
    token = user.get("_session_token")
    if token:
        sessions.invalidate_session(token)
    logger.info(f"User logged out: {user['email']}")

    return None


@router.post("/logout/all", status_code=status.HTTP_204_NO_CONTENT)
def logout_all(
    user: Dict = Depends(get_current_user),
    sessions: SessionStore = Depends(get_session_store),
):
    """Invalidate all sessions of the current user."""
    count = sessions.invalidate_all_sessions(user["email"])
    logger.info(f"User {user['email']} logged out from {count} sessions")

    return None


@router.get("/me", response_model=SecurityOverviewResponse)
def get_security_overview(
    user: Dict = Depends(get_current_user),
    orchestrator: AuthOrchestrator = Depends(get_orchestrator),
):
    """MFA status, passkeys, remaining backup codes, a security score and recent security events."""
    try:
        overview = orchestrator.security_overview(user["email"])
    except ValueError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Account not found")

    return SecurityOverviewResponse(
        email=overview.account,
        mfa_enabled=overview.mfa_enabled,
        passkey_count=overview.passkey_count,
        backup_codes_remaining=overview.backup_codes_remaining,
        last_login=overview.last_login,
        security_score=overview.score,
        security_label=overview.label,
        recent_events=[
            SecurityEventResponse(
                event_id=event.event_id,
                kind=event.kind.value,
                description=event.description,
                risk_level=event.risk_level.value,
                at=event.at,
            )
            for event in overview.recent_events
        ],
    )


# ============================================
# MFA Management
# ============================================

@router.post("/mfa/setup", response_model=MFASetupResponse)
def setup_mfa_endpoint(
    user: Dict = Depends(get_current_user),
    orchestrator: AuthOrchestrator = Depends(get_orchestrator),
):
    """
    Initialize MFA setup.

    Returns a QR code and secret for authenticator app setup.
    MFA is not active until verified with /mfa/verify.
    """
    try:
        enrollment = orchestrator.begin_totp_enrollment(user["email"])
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return MFASetupResponse(
        secret=enrollment.secret,
        qr_code_base64=enrollment.qr_code_base64,
        provisioning_uri=enrollment.provisioning_uri,
        expires_at=enrollment.expires_at,
    )


@router.post("/mfa/verify", response_model=MFAVerifyResponse)
def verify_mfa_setup(
    verification: MFAVerifyRequest,
    user: Dict = Depends(get_current_user),
    orchestrator: AuthOrchestrator = Depends(get_orchestrator),
):
    """
    Verify MFA setup and enable it.

    Returns backup codes for account recovery - store these securely!
    """
    try:
        backup_codes = orchestrator.confirm_totp_enrollment(user["email"], verification.totp_code)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return MFAVerifyResponse(
        message="MFA enabled successfully. Store your backup codes securely!",
        backup_codes=backup_codes,
    )


@router.delete("/mfa", status_code=status.HTTP_204_NO_CONTENT)
def disable_mfa(
    verification: MFAVerifyRequest,
    user: Dict = Depends(get_current_user),
    orchestrator: AuthOrchestrator = Depends(get_orchestrator),
):
    """
    Disable MFA for the current user.

    Requires current TOTP code for verification.
    """
    try:
        orchestrator.disable_mfa(user["email"], verification.totp_code)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return None
