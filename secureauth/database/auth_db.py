"""
SQL Database Manager for authentication state.

This module provides connection management and store adapters for:
- Accounts (password hash, lockout counters, MFA settings)
- Single-use records (email OTPs, WebAuthn challenges, pending logins)
- Passkey credentials and known devices
- Bearer sessions

PostgreSQL in production; SQLite works for development and tests.
Every SQLAlchemyError leaves this module as StoreUnavailableError.
"""
import os
import json
import time
import base64
import secrets
import logging
from typing import Optional, Dict, List, Tuple
from datetime import datetime, timedelta, timezone
from contextlib import contextmanager

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Integer,
    LargeBinary,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    delete,
    insert,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.types import TypeDecorator

from ..auth.errors import (
    AccountExistsError,
    DuplicateCredentialError,
    StoreUnavailableError,
)
from ..auth.models import (
    Account,
    KnownDevice,
    PasskeyCredential,
    RecordKind,
    SecurityEvent,
    StoredRecord,
    normalize_account_key,
)
from ..auth.ports import AccountMutation
from ..utils.secrets import get_secret

logger = logging.getLogger(__name__)

# Backoff between optimistic retries on a version conflict (seconds)
CONFLICT_BACKOFF = 0.005
CONFLICT_BACKOFF_CAP = 0.05
CONFLICT_WARN_EVERY = 20


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on every backend (SQLite returns naive values)."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


# ==========================================
# Schema
# ==========================================

metadata = MetaData()

accounts_table = Table(
    "accounts",
    metadata,
    Column("account_key", String(255), primary_key=True),
    Column("password_hash", String(255), nullable=False),
    Column("failed_attempts", Integer, nullable=False, default=0),
    Column("locked_until", UTCDateTime),
    Column("mfa_failed_attempts", Integer, nullable=False, default=0),
    Column("mfa_enabled", Boolean, nullable=False, default=False),
    Column("mfa_secret", String(64)),
    Column("backup_codes", Text),
    Column("last_login", UTCDateTime),
    Column("created_at", UTCDateTime),
    Column("security_events", Text),
    Column("version", Integer, nullable=False, default=0),
)

records_table = Table(
    "auth_records",
    metadata,
    Column("record_id", String(320), primary_key=True),
    Column("kind", String(32), nullable=False),
    Column("subject", String(255), index=True),
    Column("payload", Text),
    Column("expires_at", UTCDateTime, nullable=False, index=True),
    Column("used", Boolean, nullable=False, default=False),
    Column("used_at", UTCDateTime),
)

passkeys_table = Table(
    "passkeys",
    metadata,
    Column("credential_id", String(1400), primary_key=True),
    Column("account_key", String(255), nullable=False, index=True),
    Column("public_key", LargeBinary, nullable=False),
    Column("signature_counter", BigInteger, nullable=False, default=0),
    Column("label", String(100)),
    Column("created_at", UTCDateTime),
    Column("last_used", UTCDateTime),
)

devices_table = Table(
    "known_devices",
    metadata,
    Column("account_key", String(255), primary_key=True),
    Column("fingerprint_hash", String(64), primary_key=True),
    Column("first_seen", UTCDateTime, nullable=False),
    Column("last_seen", UTCDateTime, nullable=False),
)

sessions_table = Table(
    "sessions",
    metadata,
    Column("session_token", String(64), primary_key=True),
    Column("account_key", String(255), nullable=False, index=True),
    Column("device_fingerprint", String(64)),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("created_at", UTCDateTime, nullable=False),
    Column("expires_at", UTCDateTime, nullable=False, index=True),
)


def _credential_key(credential_id: bytes) -> str:
    return base64.urlsafe_b64encode(credential_id).rstrip(b"=").decode("ascii")


def _credential_bytes(value: str) -> bytes:
    return base64.urlsafe_b64decode(value + "=" * (-len(value) % 4))


def _postgres_url_from_env() -> str:
    host = os.getenv("POSTGRES_HOST", "localhost")
    port = os.getenv("POSTGRES_PORT", "5432")
    db = os.getenv("POSTGRES_DB", "secureauth")
    user = os.getenv("POSTGRES_USER", "secureauth_user")
    password = get_secret("POSTGRES_PASSWORD", "")
    return f"postgresql://{user}:{password}@{host}:{port}/{db}"


class AuthDB:
    """
    SQL connection manager for authentication state.

    Example usage:
        auth_db = AuthDB("sqlite://")
        auth_db.init_schema()

        orchestrator = AuthOrchestrator(auth_db.accounts, auth_db.codes, auth_db.credentials)
        token = auth_db.create_session("user@example.com")
    """

    def __init__(self, connection_string: Optional[str] = None):
        """
        Initialize database connection.

        Args:
            connection_string: SQLAlchemy URL. Uses DATABASE_URL, then the
                POSTGRES_* variables, if not provided.
        """
        if connection_string is None:
            connection_string = os.getenv("DATABASE_URL") or _postgres_url_from_env()

        if connection_string.startswith("sqlite"):
            engine_kwargs = {"connect_args": {"check_same_thread": False}}
            if connection_string in ("sqlite://", "sqlite:///:memory:"):
                # One shared connection, otherwise each checkout sees an empty database
                engine_kwargs["poolclass"] = StaticPool
            self.engine = create_engine(connection_string, **engine_kwargs)
        else:
            self.engine = create_engine(
                connection_string,
                poolclass=QueuePool,
                pool_size=10,
                max_overflow=20,
                pool_timeout=30,
                pool_pre_ping=True,  # Test connections before use (detect stale)
                pool_recycle=300,    # Recycle connections every 5 minutes
            )
        self.Session = sessionmaker(bind=self.engine)

        self.accounts = SqlAccountStore(self)
        self.codes = SqlCodeStore(self)
        self.credentials = SqlCredentialStore(self)

    @contextmanager
    def get_session(self):
        """
        Get a database session with automatic cleanup.

        Usage:
            with auth_db.get_session() as session:
                result = session.execute(query)
        """
        session = self.Session()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Database error: {e.__class__.__name__}: {e}")
            raise StoreUnavailableError("Authentication database unavailable") from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def init_schema(self) -> None:
        """
        Initialize database schema (create tables if not exist).

        Call this once during application setup.
        """
        try:
            metadata.create_all(self.engine)
        except SQLAlchemyError as e:
            raise StoreUnavailableError("Could not initialize schema") from e
        logger.info("Database schema initialized")

    def ping(self) -> bool:
        """True if the database answers a trivial query."""
        try:
            with self.get_session() as session:
                session.execute(select(1))
            return True
        except StoreUnavailableError:
            return False

    # ==========================================
    # Session Management
    # ==========================================

    def create_session(
        self,
        account: str,
        expires_hours: int = 24,
        device_fingerprint: Optional[str] = None,
    ) -> str:
        """
        Create a new bearer session for an account.

        Args:
            account: Account key.
            expires_hours: Session lifetime in hours (default 24).
            device_fingerprint: Optional advisory device hash.

        Returns:
            Session token (secure random 64-char hex string).
        """
        session_token = secrets.token_hex(32)  # 64 char hex string
        now = datetime.now(timezone.utc)
        expires_at = now + timedelta(hours=expires_hours)

        with self.get_session() as session:
            session.execute(insert(sessions_table).values(
                session_token=session_token,
                account_key=normalize_account_key(account),
                device_fingerprint=device_fingerprint,
                is_active=True,
                created_at=now,
                expires_at=expires_at,
            ))

        logger.debug(f"Created session for {account}, expires {expires_at}")
        return session_token

    def validate_session(self, session_token: str) -> Optional[str]:
        """
        Validate a session token.

        Returns:
            The account key if the session is active and unexpired, else None.
        """
        now = datetime.now(timezone.utc)
        with self.get_session() as session:
            row = session.execute(
                select(sessions_table.c.account_key).where(
                    sessions_table.c.session_token == session_token,
                    sessions_table.c.is_active.is_(True),
                    sessions_table.c.expires_at > now,
                )
            ).fetchone()
        return row[0] if row else None

    def invalidate_session(self, session_token: str) -> None:
        """Invalidate (logout) a session."""
        with self.get_session() as session:
            session.execute(
                update(sessions_table)
                .where(sessions_table.c.session_token == session_token)
                .values(is_active=False)
            )
        logger.debug("Invalidated session")

    def invalidate_all_sessions(self, account: str) -> int:
        """
        Invalidate every active session of an account.

        Returns:
            Number of sessions invalidated.
        """
        with self.get_session() as session:
            result = session.execute(
                update(sessions_table)
                .where(
                    sessions_table.c.account_key == normalize_account_key(account),
                    sessions_table.c.is_active.is_(True),
                )
                .values(is_active=False)
            )
            return result.rowcount

    def purge_expired_records(self, before: datetime) -> int:
        """Delete single-use records and sessions that expired before the given time."""
        with self.get_session() as session:
            records = session.execute(
                delete(records_table).where(records_table.c.expires_at < before)
            ).rowcount
            sessions = session.execute(
                delete(sessions_table).where(sessions_table.c.expires_at < before)
            ).rowcount
        logger.info(f"Purged {records} expired records and {sessions} expired sessions")
        return records + sessions


# ==========================================
# Accounts
# ==========================================

def _row_to_account(row) -> Account:
    return Account(
        key=row.account_key,
        password_hash=row.password_hash,
        failed_attempts=row.failed_attempts or 0,
        locked_until=row.locked_until,
        mfa_failed_attempts=row.mfa_failed_attempts or 0,
        mfa_enabled=bool(row.mfa_enabled),
        mfa_secret=row.mfa_secret,
        backup_codes=json.loads(row.backup_codes) if row.backup_codes else [],
        last_login=row.last_login,
        created_at=row.created_at,
        security_events=[SecurityEvent.from_dict(e) for e in json.loads(row.security_events)] if row.security_events else [],
        version=row.version or 0,
    )


def _account_values(account: Account) -> Dict:
    return {
        "password_hash": account.password_hash,
        "failed_attempts": account.failed_attempts,
        "locked_until": account.locked_until,
        "mfa_failed_attempts": account.mfa_failed_attempts,
        "mfa_enabled": account.mfa_enabled,
        "mfa_secret": account.mfa_secret,
        "backup_codes": json.dumps(list(account.backup_codes)),
        "last_login": account.last_login,
        "created_at": account.created_at,
        "security_events": json.dumps([e.to_dict() for e in account.security_events]),
    }


class SqlAccountStore:
    """Account rows; updates lock the row and re-check the version column."""

    def __init__(self, db: AuthDB):
        self.db = db

    def get(self, key: str) -> Optional[Account]:
        with self.db.get_session() as session:
            row = session.execute(
                select(accounts_table).where(accounts_table.c.account_key == normalize_account_key(key))
            ).fetchone()
        return _row_to_account(row) if row else None

    def create(self, account: Account) -> Account:
        """
        Insert a new account.

        Raises:
            AccountExistsError: If the key already exists.
        """
        key = normalize_account_key(account.key)
        created_at = account.created_at or datetime.now(timezone.utc)
        values = _account_values(account)
        values.update(account_key=key, created_at=created_at, version=0)

        with self.db.get_session() as session:
            existing = session.execute(
                select(accounts_table.c.account_key).where(accounts_table.c.account_key == key)
            ).fetchone()
            if existing:
                raise AccountExistsError(f"Account '{key}' already exists")
            try:
                session.execute(insert(accounts_table).values(**values))
            except IntegrityError as e:
                raise AccountExistsError(f"Account '{key}' already exists") from e

        logger.info(f"Created account: {key}")
        return self.get(key)

    def update(self, key: str, mutation: AccountMutation) -> Optional[Account]:
        """
        Read, mutate and write back one account atomically.

        The row is read FOR UPDATE, so on PostgreSQL concurrent writers queue
        on the row lock. The version check covers backends without row locks
        (SQLite): a lost race is retried until it wins. Each lost round means
        another writer committed, so retries always make progress, and a
        failure count is never dropped under contention.
        """
        key = normalize_account_key(key)
        attempt = 0
        while True:
            with self.db.get_session() as session:
                row = session.execute(
                    select(accounts_table)
                    .where(accounts_table.c.account_key == key)
                    .with_for_update()
                ).fetchone()
                if row is None:
                    return None

                account = _row_to_account(row)
                expected_version = account.version
                mutation(account)
                account.key = key
                account.version = expected_version + 1

                result = session.execute(
                    update(accounts_table)
                    .where(
                        accounts_table.c.account_key == key,
                        accounts_table.c.version == expected_version,
                    )
                    .values(version=account.version, **_account_values(account))
                )
                if result.rowcount == 1:
                    return account

            attempt += 1
            if attempt % CONFLICT_WARN_EVERY == 0:
                logger.warning(f"Account {key} still contended after {attempt} version conflicts")
            time.sleep(min(CONFLICT_BACKOFF_CAP, CONFLICT_BACKOFF * attempt))


# ==========================================
# Single-use records
# ==========================================

def _row_to_record(row) -> StoredRecord:
    return StoredRecord(
        record_id=row.record_id,
        kind=RecordKind(row.kind),
        subject=row.subject,
        expires_at=row.expires_at,
        payload=json.loads(row.payload) if row.payload else {},
        used=bool(row.used),
    )


class SqlCodeStore:
    """OTPs, challenges and pending logins; mark_used is a conditional UPDATE."""

    def __init__(self, db: AuthDB):
        self.db = db

    def put(self, record: StoredRecord) -> None:
        """Insert a record, replacing any earlier record with the same id."""
        with self.db.get_session() as session:
            session.execute(delete(records_table).where(records_table.c.record_id == record.record_id))
            session.execute(insert(records_table).values(
                record_id=record.record_id,
                kind=record.kind.value,
                subject=record.subject,
                payload=json.dumps(record.payload),
                expires_at=record.expires_at,
                used=record.used,
            ))

    def get(self, record_id: str) -> Optional[StoredRecord]:
        with self.db.get_session() as session:
            row = session.execute(
                select(records_table).where(records_table.c.record_id == record_id)
            ).fetchone()
        return _row_to_record(row) if row else None

    def mark_used(self, record_id: str, now: datetime) -> bool:
        with self.db.get_session() as session:
            result = session.execute(
                update(records_table)
                .where(
                    records_table.c.record_id == record_id,
                    records_table.c.used.is_(False),
                    records_table.c.expires_at > now,
                )
                .values(used=True, used_at=now)
            )
            return result.rowcount == 1


# ==========================================
# Passkeys and devices
# ==========================================

def _row_to_credential(row) -> PasskeyCredential:
    return PasskeyCredential(
        credential_id=_credential_bytes(row.credential_id),
        public_key=bytes(row.public_key),
        account=row.account_key,
        signature_counter=row.signature_counter or 0,
        label=row.label,
        created_at=row.created_at,
        last_used=row.last_used,
    )


class SqlCredentialStore:
    def __init__(self, db: AuthDB):
        self.db = db

    def put(self, credential: PasskeyCredential) -> None:
        """
        Store a new passkey.

        Raises:
            DuplicateCredentialError: If the credential id is already registered.
        """
        cred_key = _credential_key(credential.credential_id)
        with self.db.get_session() as session:
            existing = session.execute(
                select(passkeys_table.c.credential_id).where(passkeys_table.c.credential_id == cred_key)
            ).fetchone()
            if existing:
                raise DuplicateCredentialError("Credential already registered")
            try:
                session.execute(insert(passkeys_table).values(
                    credential_id=cred_key,
                    account_key=normalize_account_key(credential.account),
                    public_key=credential.public_key,
                    signature_counter=credential.signature_counter,
                    label=credential.label,
                    created_at=credential.created_at or datetime.now(timezone.utc),
                    last_used=credential.last_used,
                ))
            except IntegrityError as e:
                raise DuplicateCredentialError("Credential already registered") from e

    def get_by_credential_id(self, credential_id: bytes) -> Optional[PasskeyCredential]:
        with self.db.get_session() as session:
            row = session.execute(
                select(passkeys_table).where(passkeys_table.c.credential_id == _credential_key(credential_id))
            ).fetchone()
        return _row_to_credential(row) if row else None

    def list_for_account(self, account: str) -> List[PasskeyCredential]:
        with self.db.get_session() as session:
            rows = session.execute(
                select(passkeys_table)
                .where(passkeys_table.c.account_key == normalize_account_key(account))
                .order_by(passkeys_table.c.created_at)
            ).fetchall()
        return [_row_to_credential(row) for row in rows]

    def update_counter(self, credential_id: bytes, expected: int, new: int, now: datetime) -> bool:
        with self.db.get_session() as session:
            result = session.execute(
                update(passkeys_table)
                .where(
                    passkeys_table.c.credential_id == _credential_key(credential_id),
                    passkeys_table.c.signature_counter == expected,
                )
                .values(signature_counter=new, last_used=now)
            )
            return result.rowcount == 1

    def delete(self, credential_id: bytes, account: str) -> bool:
        with self.db.get_session() as session:
            result = session.execute(
                delete(passkeys_table).where(
                    passkeys_table.c.credential_id == _credential_key(credential_id),
                    passkeys_table.c.account_key == normalize_account_key(account),
                )
            )
            return result.rowcount == 1

    def touch_device(self, account: str, fingerprint_hash: str, now: datetime) -> Tuple[KnownDevice, bool]:
        account = normalize_account_key(account)
        match = (
            devices_table.c.account_key == account,
            devices_table.c.fingerprint_hash == fingerprint_hash,
        )
        with self.db.get_session() as session:
            row = session.execute(select(devices_table).where(*match)).fetchone()
            if row is None:
                session.execute(insert(devices_table).values(
                    account_key=account,
                    fingerprint_hash=fingerprint_hash,
                    first_seen=now,
                    last_seen=now,
                ))
                return KnownDevice(account=account, fingerprint_hash=fingerprint_hash, first_seen=now, last_seen=now), True

            session.execute(update(devices_table).where(*match).values(last_seen=now))
            device = KnownDevice(
                account=account,
                fingerprint_hash=fingerprint_hash,
                first_seen=row.first_seen,
                last_seen=now,
            )
            return device, False


# Singleton instance
_auth_db_instance: Optional[AuthDB] = None


def get_auth_db() -> AuthDB:
    """
    Get singleton AuthDB instance.

    Returns:
        AuthDB instance.
    """
    global _auth_db_instance
    if _auth_db_instance is None:
        _auth_db_instance = AuthDB()
    return _auth_db_instance
