"""
Tests for the HTTP surface.

Covers:
- Security headers middleware
- Registration and password login
- Account lockout responses
- Second factors and passkeys over HTTP
- Logout session invalidation
- Auth rate limiting
"""
import logging
import re
import smtplib
from unittest.mock import MagicMock

import pyotp
import pytest
from fastapi.testclient import TestClient

from secureauth.api.main import app
from secureauth.api.deps import (
    AuthRateLimiter,
    check_login_rate_limit,
    check_register_rate_limit,
    get_mailer,
    get_orchestrator,
    get_session_store,
)
from secureauth.auth.errors import StoreUnavailableError
from secureauth.auth.mfa import hash_backup_code
from secureauth.database.memory_store import InMemorySessionStore
from secureauth.utils.mailer import LogMailer

from conftest import STRONG_PASSWORD, RecordingMailer


# No-op rate limit dependency for tests
async def no_rate_limit():
    """No-op rate limit check for tests."""
    pass


# ============================================
# Test Fixtures
# ============================================

@pytest.fixture
def sessions(clock):
    return InMemorySessionStore(clock)


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def client(orchestrator, sessions, mailer):
    """Test client wired to in-memory stores."""
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_session_store] = lambda: sessions
    app.dependency_overrides[get_mailer] = lambda: mailer
    app.dependency_overrides[check_login_rate_limit] = no_rate_limit
    app.dependency_overrides[check_register_rate_limit] = no_rate_limit

    yield TestClient(app)

    # Clean up overrides
    app.dependency_overrides.clear()


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


def _login(client, email="user@example.com", password=STRONG_PASSWORD):
    return client.post("/auth/login", json={"email": email, "password": password})


# ============================================
# Security Headers Tests
# ============================================

class TestSecurityHeaders:
    """Test security headers middleware."""

    def test_security_headers_present(self, client):
        """Test that all security headers are present in response."""
        response = client.get("/health/live")

        assert response.headers.get("X-Frame-Options") == "DENY"
        assert response.headers.get("X-Content-Type-Options") == "nosniff"
        assert response.headers.get("Referrer-Policy") == "strict-origin-when-cross-origin"
        assert response.headers.get("Cache-Control") == "no-store"
        assert "geolocation=()" in response.headers.get("Permissions-Policy", "")
        assert "default-src 'none'" in response.headers.get("Content-Security-Policy", "")

    def test_request_id_echoed(self, client):
        response = client.get("/health/live", headers={"X-Request-ID": "abc123"})
        assert response.headers["X-Request-ID"] == "abc123"
        assert float(response.headers["X-Process-Time-Ms"]) >= 0

    def test_validation_error_format(self, client):
        response = client.post("/auth/login", json={"email": "not-an-email", "password": "x"})
        assert response.status_code == 422
        assert response.json()["code"] == "VALIDATION_ERROR"


# ============================================
# Registration and Login Tests
# ============================================

class TestRegistration:
    """Test account registration endpoint."""

    def test_register_returns_session(self, client, sessions):
        response = client.post("/auth/register", json={"email": "new@example.com", "password": STRONG_PASSWORD})

        assert response.status_code == 201
        body = response.json()
        assert body["email"] == "new@example.com"
        assert body["mfa_enabled"] is False
        assert body["expires_in"] == 24 * 3600
        assert sessions.validate_session(body["access_token"]) == "new@example.com"

    def test_weak_password(self, client):
        response = client.post("/auth/register", json={"email": "new@example.com", "password": "abcdefghij"})
        assert response.status_code == 400
        assert "Add uppercase letters" in response.json()["detail"]

    def test_common_password(self, client):
        response = client.post("/auth/register", json={"email": "new@example.com", "password": "password123"})
        assert response.status_code == 400
        assert "common" in response.json()["detail"]

    def test_duplicate(self, client, make_account):
        make_account("new@example.com")
        response = client.post("/auth/register", json={"email": "new@example.com", "password": STRONG_PASSWORD})
        assert response.status_code == 409

    def test_password_strength_endpoint(self, client):
        response = client.post("/auth/password/strength", json={"password": "password"})
        body = response.json()
        assert response.status_code == 200
        assert body["score"] < 40
        assert body["is_common"] is True
        assert body["is_strong"] is False
        assert body["label"] == "Weak"


class TestLogin:
    """Test password login endpoint."""

    def test_login_success(self, client, make_account, clock):
        make_account()
        response = _login(client)

        assert response.status_code == 200
        body = response.json()
        assert body["token_type"] == "bearer"
        assert body["new_device"] is True

        clock.advance(minutes=1)
        again = _login(client)
        assert again.json()["new_device"] is False

    def test_wrong_password(self, client, make_account):
        make_account()
        response = _login(client, password="wrong")

        assert response.status_code == 401
        assert response.json()["detail"] == "Authentication failed"
        assert response.headers["X-Remaining-Attempts"] == "4"

    def test_unknown_email_same_response(self, client, make_account):
        make_account()
        known = _login(client, password="wrong")
        unknown = _login(client, email="nobody@example.com", password="wrong")

        assert unknown.status_code == known.status_code
        assert unknown.json() == known.json()
        assert unknown.headers["X-Remaining-Attempts"] == known.headers["X-Remaining-Attempts"]


# ============================================
# Account Lockout Tests
# ============================================

class TestAccountLockout:
    """Test account lockout after failed logins."""

    def test_lockout_after_max_attempts(self, client, make_account):
        """Test account is locked after the fifth failure, even for the right password."""
        make_account()
        for _ in range(4):
            assert _login(client, password="wrong").status_code == 401

        locked = _login(client, password="wrong")
        assert locked.status_code == 429
        assert "locked" in locked.json()["detail"].lower()

        response = _login(client)
        assert response.status_code == 429
        assert int(response.headers["Retry-After"]) == 901

    def test_lock_expires(self, client, make_account, clock):
        make_account()
        for _ in range(5):
            _login(client, password="wrong")

        clock.advance(minutes=15)
        assert _login(client).status_code == 200


# ============================================
# Second Factor Tests
# ============================================

class TestSecondFactor:
    """Test MFA login over HTTP."""

    @pytest.fixture
    def secret(self, make_account):
        secret = pyotp.random_base32()
        make_account(mfa_enabled=True, mfa_secret=secret, backup_codes=[hash_backup_code("AAAA-1111")])
        return secret

    def test_mfa_required(self, client, secret):
        response = _login(client)

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "mfa_required"
        assert body["methods"] == ["totp", "email_otp", "backup_code"]
        assert body["expires_in"] == 600
        assert "access_token" not in body

    def test_totp(self, client, secret, clock):
        token = _login(client).json()["login_token"]
        response = client.post("/auth/login/verify", json={
            "login_token": token,
            "method": "totp",
            "code": pyotp.TOTP(secret).at(clock.now()),
        })

        assert response.status_code == 200
        assert response.json()["mfa_enabled"] is True

    def test_email_code(self, client, secret, mailer):
        token = _login(client).json()["login_token"]

        sent = client.post("/auth/login/email-code", json={"login_token": token})
        assert sent.status_code == 200
        to, subject, body = mailer.sent[-1]
        assert to == "user@example.com"
        code = re.search(r"\b(\d{6})\b", body).group(1)

        response = client.post("/auth/login/verify", json={"login_token": token, "method": "email_otp", "code": code})
        assert response.status_code == 200

    def test_email_code_unknown_login(self, client):
        response = client.post("/auth/login/email-code", json={"login_token": "f" * 64})
        assert response.status_code == 401

    @pytest.mark.parametrize("error", [
        smtplib.SMTPServerDisconnected("connection closed"),
        ConnectionRefusedError("refused"),
    ])
    def test_email_code_mail_server_down(self, client, secret, error):
        failing = MagicMock()
        failing.send.side_effect = error
        app.dependency_overrides[get_mailer] = lambda: failing

        token = _login(client).json()["login_token"]
        response = client.post("/auth/login/email-code", json={"login_token": token})

        assert response.status_code == 503
        assert response.headers["Retry-After"] == "5"
        assert failing.send.call_count == 1

    def test_log_mailer_keeps_nothing(self, caplog):
        mailer = LogMailer()
        with caplog.at_level(logging.INFO, logger="secureauth.utils.mailer"):
            for _ in range(3):
                mailer.send("user@example.com", "Your code", "Your code is: 493817")

        assert "493817" not in caplog.text
        assert "user@example.com" in caplog.text
        assert vars(mailer) == {}

    def test_backup_code(self, client, secret):
        token = _login(client).json()["login_token"]
        response = client.post("/auth/login/verify", json={"login_token": token, "method": "backup_code", "code": "AAAA-1111"})
        assert response.status_code == 200

    def test_wrong_code(self, client, secret):
        token = _login(client).json()["login_token"]
        response = client.post("/auth/login/verify", json={"login_token": token, "method": "totp", "code": "000000"})

        assert response.status_code == 401
        assert response.headers["X-Remaining-Attempts"] == "4"

    def test_unknown_method_rejected(self, client, secret):
        token = _login(client).json()["login_token"]
        response = client.post("/auth/login/verify", json={"login_token": token, "method": "sms", "code": "123456"})
        assert response.status_code == 422


# ============================================
# Session Tests
# ============================================

class TestSessions:
    """Test logout and the security overview."""

    def test_logout_invalidates_session(self, client, make_account, sessions):
        make_account()
        token = _login(client).json()["access_token"]

        response = client.post("/auth/logout", headers=_bearer(token))
        assert response.status_code == 204
        assert sessions.validate_session(token) is None
        assert client.get("/auth/me", headers=_bearer(token)).status_code == 401

    def test_logout_all(self, client, make_account, sessions):
        make_account()
        tokens = [_login(client).json()["access_token"] for _ in range(3)]

        assert client.post("/auth/logout/all", headers=_bearer(tokens[0])).status_code == 204
        assert all(sessions.validate_session(t) is None for t in tokens)

    def test_me(self, client, make_account):
        make_account()
        token = _login(client).json()["access_token"]

        body = client.get("/auth/me", headers=_bearer(token)).json()
        assert body["email"] == "user@example.com"
        assert body["security_score"] == 55
        assert body["security_label"] == "Needs Improvement"
        assert body["last_login"] is not None

    def test_me_lists_security_events(self, client, make_account):
        make_account()
        _login(client, password="wrong")
        token = _login(client).json()["access_token"]

        events = client.get("/auth/me", headers=_bearer(token)).json()["recent_events"]
        assert [e["kind"] for e in events] == ["new_device", "login_success", "login_failed"]
        assert events[2]["risk_level"] == "medium"
        assert events[2]["description"] == "Failed sign-in attempt"
        assert set(events[0]) == {"event_id", "kind", "description", "risk_level", "at"}

    def test_missing_token(self, client):
        response = client.get("/auth/me")
        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"

    def test_mfa_setup_and_verify(self, client, make_account, clock):
        make_account()
        token = _login(client).json()["access_token"]

        setup = client.post("/auth/mfa/setup", headers=_bearer(token)).json()
        code = pyotp.TOTP(setup["secret"]).at(clock.now())

        verified = client.post("/auth/mfa/verify", headers=_bearer(token), json={"totp_code": code})
        assert verified.status_code == 200
        assert len(verified.json()["backup_codes"]) == 8

        assert _login(client).json()["status"] == "mfa_required"


# ============================================
# Passkey Tests
# ============================================

class TestPasskeys:
    """Test passkey registration and login over HTTP."""

    def _register(self, client, authenticator, token):
        options = client.post("/passkeys/register/options", headers=_bearer(token)).json()
        response = authenticator.register(options["challenge"])
        body = authenticator.as_json(response)
        body["label"] = "Laptop"
        return client.post("/passkeys/register", headers=_bearer(token), json=body)

    def test_register_list_login(self, client, make_account, authenticator):
        make_account()
        token = _login(client).json()["access_token"]

        registered = self._register(client, authenticator, token)
        assert registered.status_code == 201
        assert registered.json()["label"] == "Laptop"

        listed = client.get("/passkeys", headers=_bearer(token)).json()
        assert len(listed) == 1

        options = client.post("/passkeys/login/options").json()
        assertion = authenticator.assert_(options["challenge"])
        response = client.post("/passkeys/login", json=authenticator.as_json(assertion))

        assert response.status_code == 200
        assert response.json()["email"] == "user@example.com"

    def test_bad_registration(self, client, make_account, authenticator):
        make_account()
        token = _login(client).json()["access_token"]

        options = client.post("/passkeys/register/options", headers=_bearer(token)).json()
        response = authenticator.register(options["challenge"], origin="https://evil.example")
        result = client.post("/passkeys/register", headers=_bearer(token), json=authenticator.as_json(response))
        assert result.status_code == 400

    def test_counter_regression_is_403(self, client, make_account, authenticator):
        make_account()
        token = _login(client).json()["access_token"]
        self._register(client, authenticator, token)

        options = client.post("/passkeys/login/options").json()
        client.post("/passkeys/login", json=authenticator.as_json(authenticator.assert_(options["challenge"], counter=5)))

        options = client.post("/passkeys/login/options").json()
        response = client.post(
            "/passkeys/login",
            json=authenticator.as_json(authenticator.assert_(options["challenge"], counter=5)),
        )
        assert response.status_code == 403
        assert client.get("/passkeys", headers=_bearer(token)).json() == []

    def test_invalid_base64(self, client):
        response = client.post("/passkeys/login", json={
            "credential_id": "é",
            "client_data_json": "e30",
            "authenticator_data": "AA",
            "signature": "AA",
        })
        assert response.status_code == 400

    def test_revoke(self, client, make_account, authenticator):
        make_account()
        token = _login(client).json()["access_token"]
        credential_id = self._register(client, authenticator, token).json()["credential_id"]

        assert client.delete(f"/passkeys/{credential_id}", headers=_bearer(token)).status_code == 204
        assert client.delete(f"/passkeys/{credential_id}", headers=_bearer(token)).status_code == 404


# ============================================
# Infrastructure Failure Tests
# ============================================

class TestStoreUnavailable:
    def test_store_outage_is_503(self):
        broken = MagicMock()
        broken.login_with_password.side_effect = StoreUnavailableError("down")
        app.dependency_overrides[get_orchestrator] = lambda: broken
        app.dependency_overrides[get_session_store] = lambda: InMemorySessionStore()
        app.dependency_overrides[check_login_rate_limit] = no_rate_limit

        try:
            client = TestClient(app)
            response = _login(client)
            assert response.status_code == 503
            assert response.json()["code"] == "STORE_UNAVAILABLE"
        finally:
            app.dependency_overrides.clear()


# ============================================
# Auth Rate Limiting Tests
# ============================================

class TestAuthRateLimiting:
    """Test IP-based rate limiting for auth endpoints."""

    def test_rate_limiter_initialization(self):
        """Test AuthRateLimiter initializes correctly."""
        limiter = AuthRateLimiter(redis_client=None)
        assert limiter.register_limit == 5
        assert limiter.login_limit == 10

    def test_register_limit_check(self):
        """Test register rate limit checking."""
        limiter = AuthRateLimiter(redis_client=None)

        # First 5 requests should be allowed
        for i in range(5):
            allowed, remaining = limiter.check_register_limit("192.168.1.1")
            if allowed:
                limiter.record_register("192.168.1.1")

        # 6th request should be denied
        allowed, remaining = limiter.check_register_limit("192.168.1.1")
        assert not allowed
        assert remaining == 0

    def test_login_limit_check(self):
        """Test login rate limit checking."""
        limiter = AuthRateLimiter(redis_client=None)

        # First 10 requests should be allowed
        for i in range(10):
            allowed, remaining = limiter.check_login_limit("192.168.1.1")
            if allowed:
                limiter.record_login("192.168.1.1")

        # 11th request should be denied
        allowed, remaining = limiter.check_login_limit("192.168.1.1")
        assert not allowed

    def test_different_ips_have_separate_limits(self):
        """Test that different IPs have separate rate limits."""
        limiter = AuthRateLimiter(redis_client=None)

        # Exhaust limit for IP 1
        for _ in range(5):
            limiter.record_register("192.168.1.1")

        # IP 1 should be blocked
        allowed1, _ = limiter.check_register_limit("192.168.1.1")
        assert not allowed1

        # IP 2 should still be allowed
        allowed2, _ = limiter.check_register_limit("192.168.1.2")
        assert allowed2

    def test_redis_backed_counts(self, mock_redis_client):
        limiter = AuthRateLimiter(redis_client=mock_redis_client)
        for _ in range(3):
            limiter.record_login("10.0.0.1")

        allowed, remaining = limiter.check_login_limit("10.0.0.1")
        assert allowed
        assert remaining == 7
        assert mock_redis_client.get("secureauth:auth_ratelimit:login:10.0.0.1") == 3

    def test_passkey_login_options_throttled(self, orchestrator, monkeypatch):
        """Anonymous challenge requests count against the login window."""
        from secureauth.api import deps

        monkeypatch.setattr(deps, "_auth_rate_limiter", AuthRateLimiter(redis_client=None))
        app.dependency_overrides[get_orchestrator] = lambda: orchestrator
        try:
            client = TestClient(app)
            statuses = [client.post("/passkeys/login/options").status_code for _ in range(11)]
        finally:
            app.dependency_overrides.clear()

        assert statuses[:10] == [200] * 10
        assert statuses[10] == 429
        assert len(orchestrator.codes) == 10
