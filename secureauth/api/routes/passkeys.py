"""
Passkey Endpoints.

Registration and management for signed-in users, plus passkey login,
either standalone or as the second factor of a pending password login.
"""
import logging
from typing import Dict, List

from fastapi import APIRouter, Depends, HTTPException, Request, status

from ..models import (
    PasskeyOptionsResponse,
    PasskeyRegistrationRequest,
    PasskeyAssertionRequest,
    PasskeySecondFactorRequest,
    PasskeyResponse,
    TokenResponse,
    ErrorResponse,
)
from ..deps import get_orchestrator, get_session_store, get_current_user, check_login_rate_limit
from .auth import raise_for_decision, start_session
from ...auth.errors import CeremonyError
from ...auth.models import PasskeyCredential
from ...auth.orchestrator import AuthOrchestrator
from ...auth.ports import SessionStore
from ...auth.webauthn import (
    AuthenticationResponse,
    RegistrationResponse,
    b64url_decode,
    b64url_encode,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/passkeys", tags=["Passkeys"])


def _decode_field(name: str, value: str) -> bytes:
    try:
        return b64url_decode(value)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"{name} is not valid base64url",
        )


def _assertion(body: PasskeyAssertionRequest) -> AuthenticationResponse:
    return AuthenticationResponse(
        credential_id=_decode_field("credential_id", body.credential_id),
        client_data_json=_decode_field("client_data_json", body.client_data_json),
        authenticator_data=_decode_field("authenticator_data", body.authenticator_data),
        signature=_decode_field("signature", body.signature),
        user_handle=_decode_field("user_handle", body.user_handle) if body.user_handle else None,
    )


def _to_response(credential: PasskeyCredential) -> PasskeyResponse:
    return PasskeyResponse(
        credential_id=b64url_encode(credential.credential_id),
        label=credential.label,
        created_at=credential.created_at,
        last_used=credential.last_used,
    )


# ============================================
# Registration and management
# ============================================

@router.post("/register/options", response_model=PasskeyOptionsResponse)
def registration_options(
    user: Dict = Depends(get_current_user),
    orchestrator: AuthOrchestrator = Depends(get_orchestrator),
):
    """Start registering a platform passkey for the current user."""
    try:
        challenge, options = orchestrator.begin_passkey_registration(user["email"])
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return PasskeyOptionsResponse(challenge=challenge.value, options=options)


@router.post(
    "/register",
    response_model=PasskeyResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse, "description": "Registration ceremony failed"}},
)
def register_passkey(
    body: PasskeyRegistrationRequest,
    user: Dict = Depends(get_current_user),
    orchestrator: AuthOrchestrator = Depends(get_orchestrator),
):
    """Finish registration with the browser's attestation response."""
    response = RegistrationResponse(
        credential_id=_decode_field("credential_id", body.credential_id),
        client_data_json=_decode_field("client_data_json", body.client_data_json),
        authenticator_data=_decode_field("authenticator_data", body.authenticator_data),
        public_key=_decode_field("public_key", body.public_key),
    )
    try:
        credential = orchestrator.complete_passkey_registration(user["email"], response, body.label)
    except CeremonyError as e:
        logger.info(f"Passkey registration rejected for {user['email']}: {e.kind.value} ({e})")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Passkey registration failed")

    return _to_response(credential)


@router.get("", response_model=List[PasskeyResponse])
def list_passkeys(
    user: Dict = Depends(get_current_user),
    orchestrator: AuthOrchestrator = Depends(get_orchestrator),
):
    return [_to_response(cred) for cred in orchestrator.list_passkeys(user["email"])]


@router.delete("/{credential_id}", status_code=status.HTTP_204_NO_CONTENT)
def revoke_passkey(
    credential_id: str,
    user: Dict = Depends(get_current_user),
    orchestrator: AuthOrchestrator = Depends(get_orchestrator),
):
    """Revoke one of the current user's passkeys."""
    if not orchestrator.revoke_passkey(user["email"], _decode_field("credential_id", credential_id)):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Passkey not found")
    return None


# ============================================
# Login
# ============================================

@router.post(
    "/login/options",
    response_model=PasskeyOptionsResponse,
    responses={429: {"model": ErrorResponse, "description": "Too many attempts from this IP"}},
    dependencies=[Depends(check_login_rate_limit)],
)
def login_options(orchestrator: AuthOrchestrator = Depends(get_orchestrator)):
    """Start a passkey sign-in. Counts against the login throttle."""
    challenge, options = orchestrator.begin_passkey_login()
    return PasskeyOptionsResponse(challenge=challenge.value, options=options)


@router.post(
    "/login",
    response_model=TokenResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Passkey not accepted"},
        403: {"model": ErrorResponse, "description": "Passkey revoked after counter regression"},
        429: {"model": ErrorResponse, "description": "Account locked"},
    },
    dependencies=[Depends(check_login_rate_limit)],
)
def login_with_passkey(
    body: PasskeyAssertionRequest,
    request: Request,
    orchestrator: AuthOrchestrator = Depends(get_orchestrator),
    sessions: SessionStore = Depends(get_session_store),
):
    """Sign in with a passkey alone."""
    decision = orchestrator.login_with_passkey(_assertion(body))
    raise_for_decision(decision)
    return start_session(decision.account, request, orchestrator, sessions)


@router.post(
    "/login/verify",
    response_model=TokenResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Passkey not accepted"},
        403: {"model": ErrorResponse, "description": "Passkey revoked after counter regression"},
        429: {"model": ErrorResponse, "description": "Account locked"},
    },
    dependencies=[Depends(check_login_rate_limit)],
)
def verify_login_with_passkey(
    body: PasskeySecondFactorRequest,
    request: Request,
    orchestrator: AuthOrchestrator = Depends(get_orchestrator),
    sessions: SessionStore = Depends(get_session_store),
):
    """Finish a pending password login with a passkey."""
    decision = orchestrator.verify_passkey_second_factor(body.login_token, _assertion(body))
    raise_for_decision(decision)
    return start_session(decision.account, request, orchestrator, sessions)
