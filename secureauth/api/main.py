"""
SecureAuth REST API - Main Application.

FastAPI-based HTTP surface for the authentication portal.

Usage:
    # Development
    uvicorn secureauth.api.main:app --reload --port 8000

    # Production
    uvicorn secureauth.api.main:app --host 0.0.0.0 --port 8000 --workers 4
"""
import os
import re
import asyncio
import time
import uuid
import logging
from contextlib import asynccontextmanager, suppress
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError

from .routes import auth_router, passkeys_router, health_router
from ..auth.errors import StoreUnavailableError
from ..auth.policy import AuthPolicy

API_TITLE = "SecureAuth API"
API_VERSION = os.getenv("APP_VERSION", "0.1.0")
API_DESCRIPTION = """
**Authentication portal**

- **Password login** with per-account lockout after repeated failures
- **Second factors** - email codes, authenticator apps (TOTP) and backup codes
- **Passkeys** - WebAuthn platform authenticators, standalone or as a second factor

## Authentication

1. Register: `POST /auth/register`
2. Login: `POST /auth/login` (then `POST /auth/login/verify` if MFA is enabled)
3. Use token: `Authorization: Bearer <token>`

Locked accounts answer `429` with a `Retry-After` header.
"""

# Applied to every response; the API serves JSON only
SECURITY_HEADERS: Dict[str, str] = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "geolocation=(), microphone=(), camera=()",
    "Cache-Control": "no-store",
    "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none'",
}

_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._-]{1,64}$")


# ============================================
# Logging
# ============================================

class RequestIdFilter(logging.Filter):
    """Default request_id on records logged outside a request."""

    def filter(self, record):
        if not hasattr(record, "request_id"):
            record.request_id = "-"
        return True


def configure_logging() -> None:
    """Configure the root logger from LOG_LEVEL / LOG_FORMAT."""
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    fmt = os.getenv(
        "LOG_FORMAT",
        "%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] %(message)s",
    )
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=fmt)
    # Handler-level so records from every module logger get the field
    for handler in logging.getLogger().handlers:
        if not any(isinstance(f, RequestIdFilter) for f in handler.filters):
            handler.addFilter(RequestIdFilter())


configure_logging()
logger = logging.getLogger(__name__)


def _request_id(request: Request) -> str:
    """Reuse a well-formed inbound X-Request-ID, otherwise mint one."""
    inbound = request.headers.get("X-Request-ID", "")
    if _REQUEST_ID_RE.match(inbound):
        return inbound
    return uuid.uuid4().hex[:8]


def _error(status_code: int, error: str, code: str, detail: Optional[str] = None,
           headers: Optional[Dict[str, str]] = None, **extra) -> JSONResponse:
    content = {"error": error, "detail": detail, "code": code}
    content.update(extra)
    return JSONResponse(status_code=status_code, content=content, headers=headers)


async def _purge_expired_records(db, interval_seconds: int, retention: timedelta) -> None:
    """Sweep spent codes, challenges and sessions out of the SQL store."""
    while True:
        await asyncio.sleep(interval_seconds)
        cutoff = datetime.now(timezone.utc) - retention
        try:
            await asyncio.to_thread(db.purge_expired_records, cutoff)
        except StoreUnavailableError as e:
            logger.warning(f"Expired record purge skipped: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting SecureAuth API v{API_VERSION}")

    purge_task = None
    if os.getenv("AUTH_STORE_BACKEND", "sql").strip().lower() != "memory":
        from ..database.auth_db import get_auth_db
        db = get_auth_db()
        try:
            db.init_schema()
        except StoreUnavailableError as e:
            # Requests will answer 503 until the database comes back
            logger.warning(f"Auth schema not initialized: {e}")
        interval = int(os.getenv("RECORD_PURGE_INTERVAL_SECONDS", "300"))
        purge_task = asyncio.create_task(
            _purge_expired_records(db, interval, AuthPolicy.from_env().record_retention)
        )

    yield

    if purge_task is not None:
        purge_task.cancel()
        with suppress(asyncio.CancelledError):
            await purge_task
    logger.info("Shutting down SecureAuth API")


def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        Configured FastAPI instance.
    """
    app = FastAPI(
        title=API_TITLE,
        description=API_DESCRIPTION,
        version=API_VERSION,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")],
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
        expose_headers=["Retry-After", "X-Remaining-Attempts", "X-Request-ID"],
    )

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        request_id = _request_id(request)
        request.state.request_id = request_id
        started = time.perf_counter()

        response = await call_next(request)

        elapsed_ms = (time.perf_counter() - started) * 1000
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time-Ms"] = f"{elapsed_ms:.2f}"
        for name, value in SECURITY_HEADERS.items():
            response.headers[name] = value

        # Probes are polled constantly
        if not request.url.path.startswith("/health"):
            logger.info(
                f"{request.method} {request.url.path} -> {response.status_code} ({elapsed_ms:.1f}ms)",
                extra={"request_id": request_id},
            )
        return response

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        problems = [
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
            for err in exc.errors()
        ]
        return _error(
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            "Validation Error",
            "VALIDATION_ERROR",
            "; ".join(problems),
        )

    @app.exception_handler(StoreUnavailableError)
    async def store_unavailable_handler(request: Request, exc: StoreUnavailableError):
        request_id = getattr(request.state, "request_id", "-")
        logger.error(f"Store unavailable: {exc}", extra={"request_id": request_id})
        return _error(
            status.HTTP_503_SERVICE_UNAVAILABLE,
            "Service Unavailable",
            "STORE_UNAVAILABLE",
            "Authentication is temporarily unavailable. Please retry.",
            headers={"Retry-After": "5"},
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        request_id = getattr(request.state, "request_id", "-")
        logger.error(f"Unhandled exception: {exc}", exc_info=True, extra={"request_id": request_id})
        return _error(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "Internal Server Error",
            "INTERNAL_ERROR",
            str(exc) if os.getenv("APP_ENV") == "development" else None,
            request_id=request_id,
        )

    app.include_router(health_router)
    app.include_router(auth_router)
    app.include_router(passkeys_router)

    @app.get("/", include_in_schema=False)
    async def root():
        return {"name": API_TITLE, "version": API_VERSION, "docs": "/docs"}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("secureauth.api.main:app", host="0.0.0.0", port=8000, reload=True)
