"""
WebAuthn ceremony validation (registration and assertion).

The browser layer hands over already-decoded bytes: clientDataJSON, the
authenticator data, the signature and, at registration, the credential's
DER SubjectPublicKeyInfo (what AuthenticatorAttestationResponse.getPublicKey()
returns). This module checks challenge freshness, origin and RP binding,
signatures and counter monotonicity.

Supported algorithms: ES256 (-7), RS256 (-257), EdDSA/Ed25519 (-8).
"""
import base64
import binascii
import hashlib
import json
import logging
import struct
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, padding, rsa
from cryptography.hazmat.primitives.serialization import load_der_public_key

from .errors import CeremonyError, DuplicateCredentialError, ErrorKind
from .models import (
    Challenge,
    PasskeyAssertion,
    PasskeyCredential,
    RecordKind,
    StoredRecord,
    normalize_account_key,
)
from .policy import AuthPolicy
from .ports import Clock, CodeStore, CredentialStore, RandomSource, SecureRandom, SystemClock

logger = logging.getLogger(__name__)

CHALLENGE_BYTES = 32

FLAG_USER_PRESENT = 0x01
FLAG_USER_VERIFIED = 0x04

CEREMONY_REGISTRATION = "registration"
CEREMONY_AUTHENTICATION = "authentication"

_CLIENT_DATA_TYPES = {
    CEREMONY_REGISTRATION: "webauthn.create",
    CEREMONY_AUTHENTICATION: "webauthn.get",
}

_RECORD_KINDS = {
    CEREMONY_REGISTRATION: RecordKind.REGISTRATION_CHALLENGE,
    CEREMONY_AUTHENTICATION: RecordKind.AUTHENTICATION_CHALLENGE,
}

COSE_ALGORITHMS = [-7, -257, -8]


# ============================================
# Encoding helpers
# ============================================

def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(value: str) -> bytes:
    """Decode unpadded base64url; raises ValueError on garbage."""
    padded = value + "=" * (-len(value) % 4)
    try:
        return base64.urlsafe_b64decode(padded.encode("ascii"))
    except (binascii.Error, UnicodeEncodeError) as exc:
        raise ValueError("invalid base64url value") from exc


def user_handle_for(account_key: str) -> bytes:
    """Opaque, stable user handle; never the email itself."""
    return hashlib.sha256(normalize_account_key(account_key).encode("utf-8")).digest()


def challenge_record_id(value: str) -> str:
    return f"webauthn:{value.rstrip('=')}"


# ============================================
# Ceremony payloads
# ============================================

@dataclass
class RegistrationResponse:
    credential_id: bytes
    client_data_json: bytes
    authenticator_data: bytes
    public_key: bytes


@dataclass
class AuthenticationResponse:
    credential_id: bytes
    client_data_json: bytes
    authenticator_data: bytes
    signature: bytes
    user_handle: Optional[bytes] = None


@dataclass(frozen=True)
class AuthenticatorData:
    rp_id_hash: bytes
    flags: int
    sign_count: int

    @property
    def user_present(self) -> bool:
        return bool(self.flags & FLAG_USER_PRESENT)

    @property
    def user_verified(self) -> bool:
        return bool(self.flags & FLAG_USER_VERIFIED)


def parse_authenticator_data(data: bytes) -> AuthenticatorData:
    """Read rpIdHash (32 bytes), flags (1 byte) and the big-endian counter (4 bytes)."""
    if data is None or len(data) < 37:
        raise CeremonyError(ErrorKind.CEREMONY_MISMATCH, "authenticator data too short")
    (sign_count,) = struct.unpack(">I", data[33:37])
    return AuthenticatorData(rp_id_hash=bytes(data[:32]), flags=data[32], sign_count=sign_count)


def parse_client_data(client_data_json: bytes) -> Dict[str, Any]:
    try:
        client_data = json.loads(client_data_json.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError, AttributeError) as exc:
        raise CeremonyError(ErrorKind.CEREMONY_MISMATCH, "client data is not JSON") from exc
    if not isinstance(client_data, dict):
        raise CeremonyError(ErrorKind.CEREMONY_MISMATCH, "client data is not an object")
    for field_name in ("type", "challenge", "origin"):
        if not isinstance(client_data.get(field_name), str):
            raise CeremonyError(ErrorKind.CEREMONY_MISMATCH, f"client data missing {field_name}")
    return client_data


# ============================================
# Signature verification
# ============================================

def load_public_key(public_key_der: bytes):
    """
    Load and vet a credential public key.

    Raises:
        CeremonyError: If the key is malformed or not an accepted algorithm.
    """
    try:
        key = load_der_public_key(public_key_der)
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise CeremonyError(ErrorKind.CEREMONY_MISMATCH, "unreadable public key") from exc

    if isinstance(key, ec.EllipticCurvePublicKey):
        if not isinstance(key.curve, ec.SECP256R1):
            raise CeremonyError(ErrorKind.CEREMONY_MISMATCH, "unsupported curve")
    elif isinstance(key, rsa.RSAPublicKey):
        if key.key_size < 2048:
            raise CeremonyError(ErrorKind.CEREMONY_MISMATCH, "RSA key too small")
    elif not isinstance(key, ed25519.Ed25519PublicKey):
        raise CeremonyError(ErrorKind.CEREMONY_MISMATCH, "unsupported key type")
    return key


def verify_signature(public_key_der: bytes, signature: bytes, signed_data: bytes) -> bool:
    try:
        key = load_public_key(public_key_der)
    except CeremonyError:
        return False

    try:
        if isinstance(key, ec.EllipticCurvePublicKey):
            key.verify(signature, signed_data, ec.ECDSA(hashes.SHA256()))
        elif isinstance(key, rsa.RSAPublicKey):
            key.verify(signature, signed_data, padding.PKCS1v15(), hashes.SHA256())
        else:
            key.verify(signature, signed_data)
    except InvalidSignature:
        return False
    return True


# ============================================
# Validator
# ============================================

class WebAuthnValidator:
    """
    Runs passkey registration and authentication ceremonies.

    Challenges are single use: they are consumed before any other check,
    so both failed and successful ceremonies burn them.
    """

    def __init__(
        self,
        codes: CodeStore,
        credentials: CredentialStore,
        clock: Optional[Clock] = None,
        random: Optional[RandomSource] = None,
        policy: Optional[AuthPolicy] = None,
    ):
        self.codes = codes
        self.credentials = credentials
        self.clock = clock or SystemClock()
        self.random = random or SecureRandom()
        self.policy = policy or AuthPolicy()

    @property
    def rp_id_hash(self) -> bytes:
        return hashlib.sha256(self.policy.rp_id.encode("utf-8")).digest()

    # ------------------------------------------
    # Challenges
    # ------------------------------------------

    def _issue_challenge(self, ceremony: str, account: Optional[str]) -> Challenge:
        value = b64url_encode(self.random.token_bytes(CHALLENGE_BYTES))
        expires_at = self.clock.now() + self.policy.challenge_ttl
        self.codes.put(StoredRecord(
            record_id=challenge_record_id(value),
            kind=_RECORD_KINDS[ceremony],
            subject=account,
            expires_at=expires_at,
            payload={"ceremony": ceremony},
        ))
        return Challenge(value=value, ceremony=ceremony, expires_at=expires_at, account=account)

    def _consume_challenge(self, client_data: Dict[str, Any], ceremony: str) -> StoredRecord:
        record_id = challenge_record_id(client_data["challenge"])
        record = self.codes.get(record_id)
        if record is None:
            raise CeremonyError(ErrorKind.CEREMONY_MISMATCH, "unknown challenge")

        now = self.clock.now()
        if not self.codes.mark_used(record_id, now):
            if record.is_expired(now):
                raise CeremonyError(ErrorKind.EXPIRED, "challenge expired")
            raise CeremonyError(ErrorKind.ALREADY_USED, "challenge already used")

        if record.kind != _RECORD_KINDS[ceremony]:
            raise CeremonyError(ErrorKind.CEREMONY_MISMATCH, "challenge issued for another ceremony")
        return record

    def _check_binding(self, client_data: Dict[str, Any], ceremony: str) -> None:
        if client_data["type"] != _CLIENT_DATA_TYPES[ceremony]:
            raise CeremonyError(ErrorKind.CEREMONY_MISMATCH, "wrong client data type")
        if client_data["origin"] != self.policy.origin:
            raise CeremonyError(ErrorKind.CEREMONY_MISMATCH, "origin mismatch")

    def _check_authenticator(self, auth_data: AuthenticatorData) -> None:
        if auth_data.rp_id_hash != self.rp_id_hash:
            raise CeremonyError(ErrorKind.CEREMONY_MISMATCH, "relying party mismatch")
        if not auth_data.user_present:
            raise CeremonyError(ErrorKind.CEREMONY_MISMATCH, "user not present")
        if self.policy.require_user_verification and not auth_data.user_verified:
            raise CeremonyError(ErrorKind.CEREMONY_MISMATCH, "user not verified")

    # ------------------------------------------
    # Registration
    # ------------------------------------------

    def begin_registration(self, account_key: str) -> Challenge:
        return self._issue_challenge(CEREMONY_REGISTRATION, normalize_account_key(account_key))

    def registration_options(self, challenge: Challenge) -> Dict[str, Any]:
        """PublicKeyCredentialCreationOptions for navigator.credentials.create()."""
        account = challenge.account or ""
        existing = self.credentials.list_for_account(account) if account else []
        return {
            "challenge": challenge.value,
            "rp": {"name": self.policy.rp_name, "id": self.policy.rp_id},
            "user": {
                "id": b64url_encode(user_handle_for(account)),
                "name": account,
                "displayName": account,
            },
            "pubKeyCredParams": [{"type": "public-key", "alg": alg} for alg in COSE_ALGORITHMS],
            "authenticatorSelection": {
                "authenticatorAttachment": "platform",
                "userVerification": "required" if self.policy.require_user_verification else "preferred",
                "residentKey": "preferred",
            },
            "excludeCredentials": [
                {"type": "public-key", "id": b64url_encode(cred.credential_id)} for cred in existing
            ],
            "timeout": int(self.policy.challenge_ttl.total_seconds() * 1000),
            "attestation": "none",
        }

    def complete_registration(
        self,
        account_key: str,
        response: RegistrationResponse,
        label: Optional[str] = None,
    ) -> PasskeyCredential:
        """
        Verify a registration ceremony and store the new credential.

        Raises:
            CeremonyError: On any binding, freshness or key failure.
        """
        account = normalize_account_key(account_key)
        client_data = parse_client_data(response.client_data_json)
        record = self._consume_challenge(client_data, CEREMONY_REGISTRATION)

        if record.subject != account:
            raise CeremonyError(ErrorKind.CEREMONY_MISMATCH, "challenge issued for another account")
        self._check_binding(client_data, CEREMONY_REGISTRATION)

        auth_data = parse_authenticator_data(response.authenticator_data)
        self._check_authenticator(auth_data)

        if not response.credential_id:
            raise CeremonyError(ErrorKind.CEREMONY_MISMATCH, "missing credential id")
        if self.credentials.get_by_credential_id(response.credential_id) is not None:
            raise CeremonyError(ErrorKind.CEREMONY_MISMATCH, "credential already registered")
        load_public_key(response.public_key)

        credential = PasskeyCredential(
            credential_id=response.credential_id,
            public_key=response.public_key,
            account=account,
            signature_counter=auth_data.sign_count,
            label=(label or "").strip() or "My Device",
            created_at=self.clock.now(),
        )
        try:
            self.credentials.put(credential)
        except DuplicateCredentialError as exc:
            raise CeremonyError(ErrorKind.CEREMONY_MISMATCH, "credential already registered") from exc

        logger.info(f"Passkey registered for {account} ({credential.label})")
        return credential

    # ------------------------------------------
    # Authentication
    # ------------------------------------------

    def begin_authentication(self) -> Challenge:
        return self._issue_challenge(CEREMONY_AUTHENTICATION, None)

    def authentication_options(
        self,
        challenge: Challenge,
        allow: Optional[List[PasskeyCredential]] = None,
    ) -> Dict[str, Any]:
        """PublicKeyCredentialRequestOptions for navigator.credentials.get()."""
        return {
            "challenge": challenge.value,
            "rpId": self.policy.rp_id,
            "timeout": int(self.policy.challenge_ttl.total_seconds() * 1000),
            "userVerification": "required" if self.policy.require_user_verification else "preferred",
            "allowCredentials": [
                {"type": "public-key", "id": b64url_encode(cred.credential_id)} for cred in (allow or [])
            ],
        }

    def complete_authentication(self, response: AuthenticationResponse) -> PasskeyAssertion:
        """
        Verify an assertion and advance the stored signature counter.

        A counter that fails to increase raises COUNTER_REGRESSION, distinct
        from a plain invalid credential, so callers can treat the credential
        as possibly cloned.
        """
        client_data = parse_client_data(response.client_data_json)
        self._consume_challenge(client_data, CEREMONY_AUTHENTICATION)
        self._check_binding(client_data, CEREMONY_AUTHENTICATION)

        credential = self.credentials.get_by_credential_id(response.credential_id)
        if credential is None:
            raise CeremonyError(ErrorKind.INVALID_CREDENTIAL, "unknown credential")
        if response.user_handle and response.user_handle != user_handle_for(credential.account):
            raise CeremonyError(ErrorKind.CEREMONY_MISMATCH, "user handle mismatch")

        auth_data = parse_authenticator_data(response.authenticator_data)
        self._check_authenticator(auth_data)

        signed_data = response.authenticator_data + hashlib.sha256(response.client_data_json).digest()
        if not verify_signature(credential.public_key, response.signature, signed_data):
            raise CeremonyError(ErrorKind.INVALID_CREDENTIAL, "bad signature")

        stored = credential.signature_counter
        asserted = auth_data.sign_count
        if not (asserted > stored or (asserted == 0 and stored == 0)):
            logger.warning(
                f"Signature counter regression for {credential.account}: "
                f"stored={stored} asserted={asserted}"
            )
            raise CeremonyError(ErrorKind.COUNTER_REGRESSION, "signature counter did not increase")

        if not self.credentials.update_counter(credential.credential_id, stored, asserted, self.clock.now()):
            logger.warning(f"Signature counter moved concurrently for {credential.account}")
            raise CeremonyError(ErrorKind.COUNTER_REGRESSION, "signature counter changed concurrently")

        return PasskeyAssertion(
            credential_id=credential.credential_id,
            account=credential.account,
            signature_counter=asserted,
        )
