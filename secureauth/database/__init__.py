"""
Store adapters for SecureAuth.

This package provides:
- auth_db: SQL (PostgreSQL/SQLite) accounts, records, passkeys and sessions
- redis_store: Redis single-use record store
- memory_store: in-process stores for tests and development
"""
from .auth_db import AuthDB, get_auth_db
from .memory_store import (
    InMemoryAccountStore,
    InMemoryCodeStore,
    InMemoryCredentialStore,
    InMemorySessionStore,
)
from .redis_store import RedisCodeStore

__all__ = [
    "AuthDB",
    "get_auth_db",
    "InMemoryAccountStore",
    "InMemoryCodeStore",
    "InMemoryCredentialStore",
    "InMemorySessionStore",
    "RedisCodeStore",
]
