"""
Redis-backed store for single-use records.

Records are JSON blobs that Redis expires on its own once they are past
their validity plus a retention window. Consumption is a separate marker
key written with SET NX, so exactly one caller wins.
"""
import json
import logging
from datetime import datetime, timedelta
from typing import Optional

import redis

from ..auth.errors import StoreUnavailableError
from ..auth.models import RecordKind, StoredRecord
from ..auth.ports import Clock, SystemClock

logger = logging.getLogger(__name__)

KEY_PREFIX = "secureauth:record:"


def _decode(raw) -> str:
    return raw.decode("utf-8") if isinstance(raw, bytes) else raw


class RedisCodeStore:
    """
    Example usage:
        store = RedisCodeStore(get_redis_client())
        store.put(record)
        store.mark_used(record.record_id, clock.now())  # True once
    """

    def __init__(
        self,
        client: redis.Redis,
        retention: timedelta = timedelta(hours=1),
        clock: Optional[Clock] = None,
        prefix: str = KEY_PREFIX,
    ):
        self.redis = client
        self.retention = retention
        self.clock = clock or SystemClock()
        self.prefix = prefix

    def _key(self, record_id: str) -> str:
        return f"{self.prefix}{record_id}"

    def _used_key(self, record_id: str) -> str:
        return f"{self.prefix}{record_id}:used"

    def _ttl_ms(self, expires_at: datetime) -> int:
        remaining = (expires_at + self.retention) - self.clock.now()
        return max(1, int(remaining.total_seconds() * 1000))

    def put(self, record: StoredRecord) -> None:
        blob = json.dumps({
            "kind": record.kind.value,
            "subject": record.subject,
            "expires_at": record.expires_at.isoformat(),
            "payload": record.payload,
        })
        ttl = self._ttl_ms(record.expires_at)
        try:
            pipe = self.redis.pipeline()
            pipe.set(self._key(record.record_id), blob, px=ttl)
            pipe.delete(self._used_key(record.record_id))
            if record.used:
                pipe.set(self._used_key(record.record_id), "1", px=ttl)
            pipe.execute()
        except redis.RedisError as e:
            logger.error(f"Redis error storing record: {e}")
            raise StoreUnavailableError("Record store unavailable") from e

    def get(self, record_id: str) -> Optional[StoredRecord]:
        try:
            raw = self.redis.get(self._key(record_id))
            if raw is None:
                return None
            used = self.redis.get(self._used_key(record_id)) is not None
        except redis.RedisError as e:
            logger.error(f"Redis error reading record: {e}")
            raise StoreUnavailableError("Record store unavailable") from e

        data = json.loads(_decode(raw))
        return StoredRecord(
            record_id=record_id,
            kind=RecordKind(data["kind"]),
            subject=data.get("subject"),
            expires_at=datetime.fromisoformat(data["expires_at"]),
            payload=data.get("payload") or {},
            used=used,
        )

    def mark_used(self, record_id: str, now: datetime) -> bool:
        record = self.get(record_id)
        if record is None or record.used or record.is_expired(now):
            return False
        try:
            won = self.redis.set(
                self._used_key(record_id),
                now.isoformat(),
                nx=True,
                px=self._ttl_ms(record.expires_at),
            )
        except redis.RedisError as e:
            logger.error(f"Redis error consuming record: {e}")
            raise StoreUnavailableError("Record store unavailable") from e
        return bool(won)
