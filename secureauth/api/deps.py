"""
FastAPI Dependencies for the SecureAuth API.

Provides:
- The orchestrator and its stores (SQL, Redis or in-memory)
- Bearer-session authentication
- IP rate limiting for unauthenticated endpoints (Redis-backed)
- Redis client
"""
import os
import time
import logging
import threading
from collections import deque
from typing import Deque, Dict, Optional, Tuple

import redis
from fastapi import Depends, HTTPException, status, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from ..auth.orchestrator import AuthOrchestrator
from ..auth.policy import AuthPolicy
from ..auth.ports import SessionStore
from ..database.auth_db import get_auth_db
from ..database.memory_store import (
    InMemoryAccountStore,
    InMemoryCodeStore,
    InMemoryCredentialStore,
    InMemorySessionStore,
)
from ..database.redis_store import RedisCodeStore
from ..utils.mailer import Mailer, get_mailer as build_mailer
from ..utils.secrets import get_secret

logger = logging.getLogger(__name__)


# ============================================
# Redis Client
# ============================================

_redis_client: Optional[redis.Redis] = None


def get_redis_client() -> Optional[redis.Redis]:
    """
    Get Redis client singleton.

    Returns None if Redis is not configured or unavailable.
    """
    global _redis_client

    if _redis_client is not None:
        return _redis_client

    host = os.getenv("REDIS_HOST", "localhost")
    port = int(os.getenv("REDIS_PORT", "6379"))
    password = get_secret("REDIS_PASSWORD", "") or None
    db = int(os.getenv("REDIS_DB", "0"))

    try:
        client = redis.Redis(
            host=host,
            port=port,
            password=password,
            db=db,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
        )
        # Test connection
        client.ping()
        logger.info(f"Redis connected: {host}:{port}")
        _redis_client = client
        return _redis_client
    except redis.RedisError as e:
        logger.warning(f"Redis connection failed: {e}. Falling back to in-process storage.")
        _redis_client = None
        return None


# Security scheme
security = HTTPBearer(auto_error=False)


# ============================================
# Core Dependencies
# ============================================

_orchestrator: Optional[AuthOrchestrator] = None
_session_store: Optional[SessionStore] = None
_mailer: Optional[Mailer] = None


def _build() -> None:
    """
    Wire stores according to AUTH_STORE_BACKEND.

    "sql" (default): accounts, passkeys and sessions in SQL; single-use
    records in Redis when reachable, otherwise in SQL.
    "memory": everything in-process, for development only.
    """
    global _orchestrator, _session_store

    policy = AuthPolicy.from_env()
    backend = os.getenv("AUTH_STORE_BACKEND", "sql").strip().lower()

    if backend == "memory":
        logger.warning("Using in-memory stores; state is lost on restart")
        accounts, credentials = InMemoryAccountStore(), InMemoryCredentialStore()
        codes = InMemoryCodeStore(retention=policy.record_retention)
        _session_store = InMemorySessionStore()
    else:
        db = get_auth_db()
        accounts, codes, credentials = db.accounts, db.codes, db.credentials
        _session_store = db
        redis_client = get_redis_client()
        if redis_client is not None:
            codes = RedisCodeStore(redis_client, retention=policy.record_retention)

    _orchestrator = AuthOrchestrator(accounts, codes, credentials, policy=policy)


def get_orchestrator() -> AuthOrchestrator:
    """Get the shared orchestrator."""
    if _orchestrator is None:
        _build()
    return _orchestrator


def get_session_store() -> SessionStore:
    """Get the store that issues bearer sessions."""
    if _session_store is None:
        _build()
    return _session_store


def get_mailer() -> Mailer:
    global _mailer
    if _mailer is None:
        _mailer = build_mailer()
    return _mailer


# ============================================
# Authentication Dependencies
# ============================================

def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    sessions: SessionStore = Depends(get_session_store),
) -> Dict:
    """
    Validate bearer token and return current user.

    Raises:
        HTTPException: If token is missing, invalid, or expired.
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    token = credentials.credentials
    account = sessions.validate_session(token)

    if account is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    # Keep the token for logout
    return {"email": account, "_session_token": token}


def client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


# ============================================
# Auth Rate Limiting (IP-based for unauthenticated endpoints)
# ============================================

class AuthRateLimiter:
    """
    Sliding-window IP throttle for the unauthenticated endpoints.

    Complements the per-account lockout: this one slows a single client
    spraying many accounts. Counts live in Redis when available, otherwise
    in process memory.
    """

    KEY_PREFIX = "secureauth:auth_ratelimit"

    def __init__(self, redis_client: Optional[redis.Redis] = None):
        self.redis = redis_client
        self.register_limit = int(os.getenv("RATE_LIMIT_REGISTER_HOURLY", "5"))
        self.login_limit = int(os.getenv("RATE_LIMIT_LOGIN_15MIN", "10"))
        # action -> (limit, window seconds)
        self._windows: Dict[str, Tuple[int, int]] = {
            "register": (self.register_limit, 3600),
            "login": (self.login_limit, 900),
        }
        self._hits: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()

    def _prune(self, key: str, window: int, now: float) -> Deque[float]:
        hits = self._hits.setdefault(key, deque())
        while hits and now - hits[0] >= window:
            hits.popleft()
        return hits

    def _count(self, key: str, window: int) -> int:
        if self.redis is not None:
            try:
                value = self.redis.get(f"{self.KEY_PREFIX}:{key}")
                return int(value) if value else 0
            except redis.RedisError as e:
                logger.warning(f"Rate limit lookup fell back to memory: {e}")

        with self._lock:
            return len(self._prune(key, window, time.time()))

    def _hit(self, key: str, window: int) -> int:
        if self.redis is not None:
            full_key = f"{self.KEY_PREFIX}:{key}"
            try:
                pipe = self.redis.pipeline()
                pipe.incr(full_key)
                pipe.expire(full_key, window)
                return pipe.execute()[0]
            except redis.RedisError as e:
                logger.warning(f"Rate limit increment fell back to memory: {e}")

        now = time.time()
        with self._lock:
            hits = self._prune(key, window, now)
            hits.append(now)
            return len(hits)

    def check(self, action: str, ip: str) -> Tuple[bool, int]:
        """
        Check whether an IP may perform an action.

        Returns:
            Tuple of (allowed, remaining_requests)
        """
        limit, window = self._windows[action]
        remaining = limit - self._count(f"{action}:{ip}", window)
        return remaining > 0, max(0, remaining)

    def record(self, action: str, ip: str) -> None:
        _, window = self._windows[action]
        self._hit(f"{action}:{ip}", window)

    def window_seconds(self, action: str) -> int:
        return self._windows[action][1]

    def check_register_limit(self, ip: str) -> Tuple[bool, int]:
        return self.check("register", ip)

    def check_login_limit(self, ip: str) -> Tuple[bool, int]:
        return self.check("login", ip)

    def record_register(self, ip: str) -> None:
        self.record("register", ip)

    def record_login(self, ip: str) -> None:
        self.record("login", ip)


_auth_rate_limiter: Optional[AuthRateLimiter] = None


def get_auth_rate_limiter() -> AuthRateLimiter:
    """Get singleton auth rate limiter."""
    global _auth_rate_limiter
    if _auth_rate_limiter is None:
        _auth_rate_limiter = AuthRateLimiter(get_redis_client())
    return _auth_rate_limiter


def _ip_throttle(action: str, message: str):
    """Build a dependency that rejects an IP over its window with 429."""

    def dependency(request: Request) -> None:
        ip = client_ip(request)
        limiter = get_auth_rate_limiter()

        allowed, _ = limiter.check(action, ip)
        if not allowed:
            logger.warning(f"IP throttle hit for {action} from {ip}")
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail=message,
                headers={
                    "Retry-After": str(limiter.window_seconds(action)),
                    "X-RateLimit-Remaining": "0",
                },
            )
        limiter.record(action, ip)

    dependency.__name__ = f"check_{action}_rate_limit"
    return dependency


check_register_rate_limit = _ip_throttle("register", "Too many registration attempts. Try again later.")
check_login_rate_limit = _ip_throttle("login", "Too many login attempts from this IP. Try again later.")
