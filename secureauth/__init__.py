"""
SecureAuth Portal - credential verification and account-risk core.

This package provides password, multi-factor (email OTP / TOTP / backup code)
and WebAuthn passkey verification, gated by per-account lockout, plus the
storage adapters and HTTP surface that wrap it.
"""

__version__ = "0.1.0"
__author__ = "SecureAuth Team"
