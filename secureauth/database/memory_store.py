"""
In-memory store adapters.

Used for tests and single-process development. Every store hands out deep
copies so callers can never mutate stored state behind the store's back.
Atomicity comes from per-key threading locks.
"""
import copy
import logging
import secrets
import threading
from datetime import timedelta
from typing import Dict, List, Optional, Tuple

from ..auth.errors import AccountExistsError, DuplicateCredentialError
from ..auth.models import Account, KnownDevice, PasskeyCredential, StoredRecord, normalize_account_key
from ..auth.ports import AccountMutation, Clock, SystemClock

logger = logging.getLogger(__name__)


class _KeyedLocks:
    """One lock per key, created on first use."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[object, threading.Lock] = {}

    def __call__(self, key) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def discard(self, key) -> None:
        with self._guard:
            self._locks.pop(key, None)


class InMemoryAccountStore:
    def __init__(self):
        self._accounts: Dict[str, Account] = {}
        self._lock_for = _KeyedLocks()
        self._create_lock = threading.Lock()

    def get(self, key: str) -> Optional[Account]:
        account = self._accounts.get(normalize_account_key(key))
        return copy.deepcopy(account) if account is not None else None

    def create(self, account: Account) -> Account:
        key = normalize_account_key(account.key)
        with self._create_lock:
            if key in self._accounts:
                raise AccountExistsError(f"Account '{key}' already exists")
            stored = copy.deepcopy(account)
            stored.key = key
            self._accounts[key] = stored
        return copy.deepcopy(stored)

    def update(self, key: str, mutation: AccountMutation) -> Optional[Account]:
        key = normalize_account_key(key)
        with self._lock_for(key):
            current = self._accounts.get(key)
            if current is None:
                return None
            working = copy.deepcopy(current)
            mutation(working)
            working.key = key
            working.version = current.version + 1
            self._accounts[key] = working
            return copy.deepcopy(working)


class InMemoryCodeStore:
    """
    Single-use records in a dict.

    Every purge_every-th put sweeps out records that expired more than
    retention ago, so anonymous traffic cannot grow the store without bound.
    """

    def __init__(
        self,
        clock: Optional[Clock] = None,
        retention: timedelta = timedelta(hours=1),
        purge_every: int = 128,
    ):
        self.clock = clock or SystemClock()
        self.retention = retention
        self.purge_every = max(1, purge_every)
        self._records: Dict[str, StoredRecord] = {}
        self._lock_for = _KeyedLocks()
        self._puts = 0
        self._puts_lock = threading.Lock()

    def put(self, record: StoredRecord) -> None:
        with self._lock_for(record.record_id):
            self._records[record.record_id] = copy.deepcopy(record)

        with self._puts_lock:
            self._puts += 1
            sweep = self._puts % self.purge_every == 0
        if sweep:
            removed = self.purge_expired(self.clock.now() - self.retention)
            if removed:
                logger.debug(f"Purged {removed} expired records")

    def get(self, record_id: str) -> Optional[StoredRecord]:
        record = self._records.get(record_id)
        return copy.deepcopy(record) if record is not None else None

    def mark_used(self, record_id: str, now) -> bool:
        with self._lock_for(record_id):
            record = self._records.get(record_id)
            if record is None or record.used or record.is_expired(now):
                return False
            record.used = True
            return True

    def purge_expired(self, before) -> int:
        """Drop records that expired before the given time."""
        stale = [rid for rid, rec in list(self._records.items()) if rec.expires_at < before]
        removed = 0
        for record_id in stale:
            with self._lock_for(record_id):
                record = self._records.get(record_id)
                dropped = record is not None and record.expires_at < before
                if dropped:
                    del self._records[record_id]
                    removed += 1
            if dropped:
                self._lock_for.discard(record_id)
        return removed

    def __len__(self) -> int:
        return len(self._records)


class InMemoryCredentialStore:
    def __init__(self):
        self._credentials: Dict[bytes, PasskeyCredential] = {}
        self._devices: Dict[Tuple[str, str], KnownDevice] = {}
        self._lock = threading.Lock()

    def put(self, credential: PasskeyCredential) -> None:
        with self._lock:
            if credential.credential_id in self._credentials:
                raise DuplicateCredentialError("Credential already registered")
            self._credentials[credential.credential_id] = copy.deepcopy(credential)

    def get_by_credential_id(self, credential_id: bytes) -> Optional[PasskeyCredential]:
        credential = self._credentials.get(credential_id)
        return copy.deepcopy(credential) if credential is not None else None

    def list_for_account(self, account: str) -> List[PasskeyCredential]:
        account = normalize_account_key(account)
        return [
            copy.deepcopy(cred)
            for cred in self._credentials.values()
            if cred.account == account
        ]

    def update_counter(self, credential_id: bytes, expected: int, new: int, now) -> bool:
        with self._lock:
            credential = self._credentials.get(credential_id)
            if credential is None or credential.signature_counter != expected:
                return False
            credential.signature_counter = new
            credential.last_used = now
            return True

    def delete(self, credential_id: bytes, account: str) -> bool:
        with self._lock:
            credential = self._credentials.get(credential_id)
            if credential is None or credential.account != normalize_account_key(account):
                return False
            del self._credentials[credential_id]
            return True

    def touch_device(self, account: str, fingerprint_hash: str, now) -> Tuple[KnownDevice, bool]:
        key = (normalize_account_key(account), fingerprint_hash)
        with self._lock:
            device = self._devices.get(key)
            created = device is None
            if created:
                device = KnownDevice(account=key[0], fingerprint_hash=fingerprint_hash, first_seen=now, last_seen=now)
                self._devices[key] = device
            else:
                device.last_seen = now
            return copy.deepcopy(device), created


class InMemorySessionStore:
    """Bearer sessions issued after a completed login."""

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or SystemClock()
        self._sessions: Dict[str, Dict] = {}
        self._lock = threading.Lock()

    def create_session(self, account: str, expires_hours: int = 24) -> str:
        session_token = secrets.token_hex(32)
        expires_at = self.clock.now() + timedelta(hours=expires_hours)
        with self._lock:
            self._sessions[session_token] = {
                "account": normalize_account_key(account),
                "expires_at": expires_at,
                "is_active": True,
            }
        logger.debug(f"Created session for {account}, expires {expires_at}")
        return session_token

    def validate_session(self, session_token: str) -> Optional[str]:
        session = self._sessions.get(session_token or "")
        if session is None or not session["is_active"]:
            return None
        if session["expires_at"] <= self.clock.now():
            return None
        return session["account"]

    def invalidate_session(self, session_token: str) -> None:
        with self._lock:
            session = self._sessions.get(session_token or "")
            if session is not None:
                session["is_active"] = False

    def invalidate_all_sessions(self, account: str) -> int:
        account = normalize_account_key(account)
        count = 0
        with self._lock:
            for session in self._sessions.values():
                if session["account"] == account and session["is_active"]:
                    session["is_active"] = False
                    count += 1
        return count
