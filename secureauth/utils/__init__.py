"""
Shared utilities for SecureAuth.

This package provides:
- Secrets resolution
- Outgoing mail for one-time codes
"""
from .secrets import get_secret, get_required_secret, mask_secret
from .mailer import LogMailer, SmtpMailer, get_mailer

__all__ = [
    "get_secret",
    "get_required_secret",
    "mask_secret",
    "LogMailer",
    "SmtpMailer",
    "get_mailer",
]
