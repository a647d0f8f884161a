"""
Tests for the Redis-backed single-use record store.
"""
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
import redis

from secureauth.auth.errors import StoreUnavailableError
from secureauth.auth.mfa import MFAEngine
from secureauth.auth.models import RecordKind, StoredRecord
from secureauth.database.redis_store import RedisCodeStore


@pytest.fixture
def store(mock_redis_client, clock):
    return RedisCodeStore(mock_redis_client, clock=clock)


def _record(clock, record_id="otp:1", minutes=10):
    return StoredRecord(
        record_id=record_id,
        kind=RecordKind.LOGIN_SESSION,
        subject="user@example.com",
        expires_at=clock.now() + timedelta(minutes=minutes),
        payload={"state": "awaiting_second_factor"},
    )


class TestRedisCodeStore:
    """Test record round trips and single-use consumption."""

    def test_put_get(self, store, clock):
        store.put(_record(clock))
        record = store.get("otp:1")

        assert record.kind == RecordKind.LOGIN_SESSION
        assert record.subject == "user@example.com"
        assert record.expires_at == clock.now() + timedelta(minutes=10)
        assert record.payload == {"state": "awaiting_second_factor"}
        assert record.used is False

    def test_keys_are_prefixed_with_ttl(self, store, mock_redis_client, clock):
        store.put(_record(clock))
        assert "secureauth:record:otp:1" in mock_redis_client.store
        assert "secureauth:record:otp:1" in mock_redis_client.expiry

    def test_missing(self, store):
        assert store.get("missing") is None
        assert store.mark_used("missing", None) is False

    def test_mark_used_once(self, store, clock):
        store.put(_record(clock))
        assert store.mark_used("otp:1", clock.now()) is True
        assert store.mark_used("otp:1", clock.now()) is False
        assert store.get("otp:1").used is True

    def test_mark_used_expired(self, store, clock):
        store.put(_record(clock))
        assert store.mark_used("otp:1", clock.now() + timedelta(minutes=10)) is False

    def test_put_resets_used_marker(self, store, clock):
        store.put(_record(clock))
        store.mark_used("otp:1", clock.now())
        store.put(_record(clock))
        assert store.get("otp:1").used is False

    def test_put_used_record(self, store, clock):
        record = _record(clock)
        record.used = True
        store.put(record)
        assert store.get("otp:1").used is True

    def test_email_otp_through_engine(self, store, accounts, clock):
        engine = MFAEngine(accounts, store, clock)
        otp = engine.issue_email_otp("user@example.com")
        assert engine.verify_email_otp("user@example.com", otp.code) is True
        assert engine.verify_email_otp("user@example.com", otp.code) is False


class TestRedisFailures:
    """Test that Redis outages surface as StoreUnavailableError."""

    def test_get_failure(self, clock):
        client = MagicMock()
        client.get.side_effect = redis.ConnectionError("down")
        with pytest.raises(StoreUnavailableError):
            RedisCodeStore(client, clock=clock).get("otp:1")

    def test_put_failure(self, clock):
        client = MagicMock()
        client.pipeline.return_value.execute.side_effect = redis.ConnectionError("down")
        with pytest.raises(StoreUnavailableError):
            RedisCodeStore(client, clock=clock).put(_record(clock))
