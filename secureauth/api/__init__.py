"""
SecureAuth REST API.

FastAPI-based HTTP surface for the authentication portal.
"""
from .main import app, create_app

__all__ = ["app", "create_app"]
