"""
API Routes for SecureAuth.
"""
from .auth import router as auth_router
from .passkeys import router as passkeys_router
from .health import router as health_router

__all__ = [
    "auth_router",
    "passkeys_router",
    "health_router",
]
