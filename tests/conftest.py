"""
Pytest configuration and shared fixtures for SecureAuth tests.

This module provides common test fixtures for:
- A frozen, manually advanced clock
- In-memory stores and a wired orchestrator
- A mock Redis client
- A software passkey authenticator
"""
import hashlib
import json
import os
import time
from datetime import datetime, timedelta, timezone

import pytest
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec

# HTTP tests run against in-process stores
os.environ.setdefault("AUTH_STORE_BACKEND", "memory")

from secureauth.auth.models import Account
from secureauth.auth.orchestrator import AuthOrchestrator
from secureauth.auth.policy import AuthPolicy
from secureauth.auth.webauthn import AuthenticationResponse, RegistrationResponse, b64url_encode
from secureauth.database.memory_store import (
    InMemoryAccountStore,
    InMemoryCodeStore,
    InMemoryCredentialStore,
)

STRONG_PASSWORD = "Corr3ct-Horse!Battery"
ORIGIN = "http://localhost:3000"
RP_ID = "localhost"


# ============================================
# Time and identity
# ============================================

class FrozenClock:
    """Clock that only moves when a test says so."""

    def __init__(self, start=None):
        self.current = start or datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

    def now(self):
        return self.current

    def advance(self, **kwargs):
        self.current = self.current + timedelta(**kwargs)
        return self.current


class PlainIdentity:
    """Cheap stand-in for bcrypt so lockout tests stay fast."""

    def hash_password(self, password):
        return "plain:" + hashlib.sha256(password.encode("utf-8")).hexdigest()

    def verify_password(self, account, password):
        if account is None:
            return False
        return account.password_hash == self.hash_password(password or "")


class RecordingMailer:
    """Keeps sent mail so tests can read the codes back."""

    def __init__(self):
        self.sent = []

    def send(self, to, subject, body):
        self.sent.append((to, subject, body))


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def policy():
    return AuthPolicy()


# ============================================
# Stores and orchestrator
# ============================================

@pytest.fixture
def accounts():
    return InMemoryAccountStore()


@pytest.fixture
def codes(clock):
    return InMemoryCodeStore(clock=clock)


@pytest.fixture
def credentials():
    return InMemoryCredentialStore()


@pytest.fixture
def identity():
    return PlainIdentity()


@pytest.fixture
def orchestrator(accounts, codes, credentials, identity, clock, policy):
    return AuthOrchestrator(accounts, codes, credentials, identity=identity, clock=clock, policy=policy)


@pytest.fixture
def make_account(accounts, identity, clock):
    """Create an account directly in the store, bypassing the strength gate."""
    def _make(key="user@example.com", password=STRONG_PASSWORD, **fields):
        return accounts.create(Account(
            key=key,
            password_hash=identity.hash_password(password),
            created_at=clock.now(),
            **fields
        ))
    return _make


# ============================================
# Redis
# ============================================

class MockRedisClient:
    """
    Mock Redis client for testing the record store and rate limiting.
    Implements get/set(nx, px, ex)/delete/exists/incr/expire and pipelines.
    """

    def __init__(self):
        self.store = {}
        self.expiry = {}

    def _expired(self, key):
        deadline = self.expiry.get(key)
        if deadline is not None and time.time() >= deadline:
            self.store.pop(key, None)
            self.expiry.pop(key, None)
            return True
        return False

    def ping(self):
        return True

    def get(self, key):
        self._expired(key)
        return self.store.get(key)

    def set(self, key, value, ex=None, px=None, nx=False):
        self._expired(key)
        if nx and key in self.store:
            return None
        self.store[key] = value
        self.expiry.pop(key, None)
        if ex:
            self.expiry[key] = time.time() + ex
        if px:
            self.expiry[key] = time.time() + px / 1000.0
        return True

    def delete(self, key):
        existed = key in self.store
        self.store.pop(key, None)
        self.expiry.pop(key, None)
        return int(existed)

    def exists(self, key):
        self._expired(key)
        return int(key in self.store)

    def incr(self, key):
        self._expired(key)
        self.store[key] = int(self.store.get(key, 0)) + 1
        return self.store[key]

    def expire(self, key, seconds):
        self.expiry[key] = time.time() + seconds
        return True

    def pipeline(self):
        return MockPipeline(self)


class MockPipeline:
    def __init__(self, client):
        self.client = client
        self.calls = []

    def __getattr__(self, name):
        def _queue(*args, **kwargs):
            self.calls.append((name, args, kwargs))
            return self
        return _queue

    def execute(self):
        results = [getattr(self.client, name)(*args, **kwargs) for name, args, kwargs in self.calls]
        self.calls = []
        return results


@pytest.fixture
def mock_redis_client():
    return MockRedisClient()


# ============================================
# Passkeys
# ============================================

class SoftwareAuthenticator:
    """
    A platform authenticator in software: one P-256 key, a counter, and
    the byte layouts a browser would hand over.
    """

    def __init__(self, credential_id=b"cred-0001", rp_id=RP_ID, origin=ORIGIN):
        self.credential_id = credential_id
        self.rp_id = rp_id
        self.origin = origin
        self.private_key = ec.generate_private_key(ec.SECP256R1())
        self.counter = 0

    @property
    def public_key_der(self):
        return self.private_key.public_key().public_bytes(
            serialization.Encoding.DER,
            serialization.PublicFormat.SubjectPublicKeyInfo,
        )

    def authenticator_data(self, counter=None, flags=0x05, rp_id=None):
        rp_hash = hashlib.sha256((rp_id or self.rp_id).encode("utf-8")).digest()
        count = self.counter if counter is None else counter
        return rp_hash + bytes([flags]) + count.to_bytes(4, "big")

    def client_data(self, challenge, ceremony_type, origin=None):
        return json.dumps({
            "type": ceremony_type,
            "challenge": challenge,
            "origin": origin or self.origin,
            "crossOrigin": False,
        }).encode("utf-8")

    def register(self, challenge, **kwargs):
        return RegistrationResponse(
            credential_id=self.credential_id,
            client_data_json=self.client_data(challenge, "webauthn.create", kwargs.get("origin")),
            authenticator_data=self.authenticator_data(counter=0, flags=kwargs.get("flags", 0x45)),
            public_key=self.public_key_der,
        )

    def assert_(self, challenge, counter=None, user_handle=None, **kwargs):
        """Sign an assertion; bumps the counter unless one is given."""
        if counter is None:
            self.counter += 1
            counter = self.counter
        auth_data = self.authenticator_data(counter=counter, flags=kwargs.get("flags", 0x05), rp_id=kwargs.get("rp_id"))
        client_data = self.client_data(challenge, kwargs.get("ceremony_type", "webauthn.get"), kwargs.get("origin"))
        signed = auth_data + hashlib.sha256(client_data).digest()
        signature = self.private_key.sign(signed, ec.ECDSA(hashes.SHA256()))
        return AuthenticationResponse(
            credential_id=self.credential_id,
            client_data_json=client_data,
            authenticator_data=auth_data,
            signature=signature,
            user_handle=user_handle,
        )

    def as_json(self, response):
        """Browser-style JSON body with base64url fields."""
        body = {
            "credential_id": b64url_encode(response.credential_id),
            "client_data_json": b64url_encode(response.client_data_json),
            "authenticator_data": b64url_encode(response.authenticator_data),
        }
        if isinstance(response, RegistrationResponse):
            body["public_key"] = b64url_encode(response.public_key)
        else:
            body["signature"] = b64url_encode(response.signature)
        return body


@pytest.fixture
def authenticator():
    return SoftwareAuthenticator()


@pytest.fixture
def registered_passkey(orchestrator, make_account, authenticator):
    """An account with one registered passkey; returns (account_key, authenticator)."""
    account = make_account("passkey@example.com")
    challenge, _ = orchestrator.begin_passkey_registration(account.key)
    orchestrator.complete_passkey_registration(account.key, authenticator.register(challenge.value), "Laptop")
    return account.key, authenticator
