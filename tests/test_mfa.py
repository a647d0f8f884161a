"""
Tests for email OTPs, TOTP and backup codes.
"""
import threading

import pyotp
import pytest

from secureauth.auth.mfa import (
    MFAEngine,
    email_otp_record_id,
    find_matching_backup_code,
    generate_backup_codes,
    generate_qr_code_base64,
    hash_backup_code,
    normalize_totp_code,
    setup_mfa,
    verify_backup_code,
)
from secureauth.auth.models import AttemptResult, RecordKind


class FixedRandom:
    """Deterministic randomness for OTP issuance."""

    def __init__(self, value=123456):
        self.value = value

    def randbelow(self, n):
        return (self.value - 100_000) % n

    def token_bytes(self, n):
        return bytes(n)


@pytest.fixture
def engine(accounts, codes, clock):
    return MFAEngine(accounts, codes, clock)


# ============================================
# Email OTP
# ============================================

class TestEmailOTP:
    """Test issue and single-use verification."""

    def test_code_is_six_digits(self, engine):
        otp = engine.issue_email_otp("user@example.com")
        assert len(otp.code) == 6
        assert otp.code.isdigit()
        assert 100000 <= int(otp.code) <= 999999

    def test_expiry_is_ten_minutes(self, engine, clock):
        otp = engine.issue_email_otp("user@example.com")
        assert (otp.expires_at - clock.now()).total_seconds() == 600

    def test_verify_once(self, engine):
        otp = engine.issue_email_otp("user@example.com")
        assert engine.verify_email_otp("user@example.com", otp.code) is True
        assert engine.verify_email_otp("user@example.com", otp.code) is False

    def test_wrong_code(self, accounts, codes, clock):
        engine = MFAEngine(accounts, codes, clock, random=FixedRandom(123456))
        engine.issue_email_otp("user@example.com")
        assert engine.verify_email_otp("user@example.com", "654321") is False
        assert engine.verify_email_otp("user@example.com", "123456") is True

    def test_code_bound_to_subject(self, engine):
        otp = engine.issue_email_otp("user@example.com")
        assert engine.verify_email_otp("other@example.com", otp.code) is False

    def test_subject_normalized(self, engine):
        otp = engine.issue_email_otp("User@Example.com")
        assert engine.verify_email_otp("user@example.com ", otp.code) is True

    @pytest.mark.parametrize("code", ["", "12345", "1234567", "abcdef", None])
    def test_malformed_codes_fail(self, engine, code):
        engine.issue_email_otp("user@example.com")
        assert engine.verify_email_otp("user@example.com", code) is False

    def test_expired_after_eleven_minutes(self, engine, clock):
        otp = engine.issue_email_otp("user@example.com")
        clock.advance(minutes=11)

        assert engine.check_email_otp("user@example.com", otp.code) == AttemptResult.REJECTED_EXPIRED
        assert engine.verify_email_otp("user@example.com", otp.code) is False

    def test_valid_just_before_expiry(self, engine, clock):
        otp = engine.issue_email_otp("user@example.com")
        clock.advance(minutes=9, seconds=59)
        assert engine.verify_email_otp("user@example.com", otp.code) is True

    def test_new_code_does_not_invalidate_old(self, engine):
        first = engine.issue_email_otp("user@example.com")
        second = engine.issue_email_otp("user@example.com")
        if first.code == second.code:
            pytest.skip("random collision")
        assert engine.verify_email_otp("user@example.com", first.code) is True
        assert engine.verify_email_otp("user@example.com", second.code) is True

    def test_record_stored_under_hashed_id(self, engine, codes):
        otp = engine.issue_email_otp("user@example.com")
        record = codes.get(email_otp_record_id("user@example.com", otp.code))
        assert record is not None
        assert record.kind == RecordKind.EMAIL_OTP
        assert otp.code not in record.record_id

    def test_concurrent_verification_single_winner(self, engine):
        otp = engine.issue_email_otp("user@example.com")
        barrier = threading.Barrier(8)
        results = []

        def attempt():
            barrier.wait()
            results.append(engine.verify_email_otp("user@example.com", otp.code))

        threads = [threading.Thread(target=attempt) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1
        assert results.count(False) == 7


# ============================================
# TOTP
# ============================================

class TestTOTP:
    """Test RFC 6238 verification against the injected clock."""

    def test_current_code(self, engine, clock):
        secret = pyotp.random_base32()
        code = pyotp.TOTP(secret).at(clock.now())
        assert engine.verify_totp_secret(secret, code) is True

    def test_adjacent_steps_accepted(self, engine, clock):
        secret = pyotp.random_base32()
        totp = pyotp.TOTP(secret)
        assert engine.verify_totp_secret(secret, totp.at(clock.now(), -1)) is True
        assert engine.verify_totp_secret(secret, totp.at(clock.now(), 1)) is True

    def test_distant_step_rejected(self, engine, clock):
        secret = pyotp.random_base32()
        code = pyotp.TOTP(secret).at(clock.now())
        clock.advance(minutes=5)
        assert engine.verify_totp_secret(secret, code) is False

    def test_spaces_stripped(self, engine, clock):
        secret = pyotp.random_base32()
        code = pyotp.TOTP(secret).at(clock.now())
        assert engine.verify_totp_secret(secret, f"{code[:3]} {code[3:]}") is True

    def test_no_secret(self, engine):
        assert engine.verify_totp_secret(None, "123456") is False

    def test_arbitrary_six_digits_rejected(self, engine, clock):
        secret = pyotp.random_base32()
        valid = {pyotp.TOTP(secret).at(clock.now(), offset) for offset in (-1, 0, 1)}
        guess = next(c for c in ("000000", "111111", "222222", "333333") if c not in valid)
        assert engine.verify_totp_secret(secret, guess) is False

    def test_verify_totp_requires_enabled_mfa(self, engine, make_account, clock):
        secret = pyotp.random_base32()
        make_account(mfa_enabled=False, mfa_secret=secret)
        assert engine.verify_totp("user@example.com", pyotp.TOTP(secret).at(clock.now())) is False

    def test_verify_totp_for_account(self, engine, make_account, clock):
        secret = pyotp.random_base32()
        make_account(mfa_enabled=True, mfa_secret=secret)
        assert engine.verify_totp("user@example.com", pyotp.TOTP(secret).at(clock.now())) is True

    @pytest.mark.parametrize("raw,expected", [("123456", "123456"), (" 123 456 ", "123456"), ("12345", None), ("12a456", None)])
    def test_normalize(self, raw, expected):
        assert normalize_totp_code(raw) == expected


class TestSetup:
    def test_setup_returns_secret_uri_qr(self):
        secret, uri, qr = setup_mfa("user@example.com", issuer="SecureAuth Portal")
        assert len(secret) == 32
        assert uri.startswith("otpauth://totp/")
        assert "SecureAuth" in uri
        assert qr.startswith("data:image/png;base64,")

    def test_qr_code(self):
        assert generate_qr_code_base64("otpauth://totp/x?secret=ABC").startswith("data:image/png;base64,")


# ============================================
# Backup codes
# ============================================

class TestBackupCodes:
    """Test generation, hashing and single-use consumption."""

    def test_format(self):
        codes = generate_backup_codes(8)
        assert len(codes) == 8
        assert len(set(codes)) == 8
        for code in codes:
            assert len(code) == 9
            assert code[4] == "-"

    def test_hash_and_verify(self):
        hashed = hash_backup_code("ABCD-1234")
        assert verify_backup_code("ABCD-1234", hashed) is True
        assert verify_backup_code("abcd1234", hashed) is True
        assert verify_backup_code("ABCD-1235", hashed) is False

    def test_find_matching(self):
        hashes = [hash_backup_code(c) for c in ("AAAA-1111", "BBBB-2222")]
        assert find_matching_backup_code("BBBB-2222", hashes) == hashes[1]
        assert find_matching_backup_code("CCCC-3333", hashes) is None
        assert find_matching_backup_code("", hashes) is None

    def test_consumed_once(self, engine, make_account, accounts):
        make_account(backup_codes=[hash_backup_code("AAAA-1111"), hash_backup_code("BBBB-2222")])

        assert engine.verify_backup_code("user@example.com", "AAAA-1111") is True
        assert engine.verify_backup_code("user@example.com", "AAAA-1111") is False
        assert len(accounts.get("user@example.com").backup_codes) == 1

    def test_no_codes(self, engine, make_account):
        make_account()
        assert engine.verify_backup_code("user@example.com", "AAAA-1111") is False

    def test_unknown_account(self, engine):
        assert engine.verify_backup_code("nobody@example.com", "AAAA-1111") is False

    def test_concurrent_use_single_winner(self, engine, make_account):
        make_account(backup_codes=[hash_backup_code("AAAA-1111")])
        barrier = threading.Barrier(4)
        results = []

        def attempt():
            barrier.wait()
            results.append(engine.verify_backup_code("user@example.com", "AAAA-1111"))

        threads = [threading.Thread(target=attempt) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1
