"""
Pydantic Models for the SecureAuth API.

Request and response models for all API endpoints. WebAuthn binary fields
travel as unpadded base64url strings, as the browser produces them.
"""
from datetime import datetime
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, EmailStr, Field, ConfigDict


# ============================================
# Authentication Models
# ============================================

class UserRegister(BaseModel):
    """
    User registration request.

    The password must score as strong and must not be a commonly
    breached password.
    """
    email: EmailStr = Field(..., description="Valid email address")
    password: str = Field(..., min_length=8, max_length=128, description="Password (minimum 8 characters)")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "email": "user@example.com",
                "password": "Corr3ct-Horse!Battery"
            }
        }
    )


class UserLogin(BaseModel):
    """Password login request (first step)."""
    email: EmailStr = Field(..., description="Registered email address")
    password: str = Field(..., max_length=128, description="Account password")


class TokenResponse(BaseModel):
    """Bearer session issued after registration or a completed login."""
    access_token: str
    token_type: str = "bearer"
    expires_in: int = Field(..., description="Token expiration in seconds")
    email: str
    mfa_enabled: bool
    new_device: bool = Field(False, description="Advisory: first login seen from this device")


class MFARequiredResponse(BaseModel):
    """Password accepted; a second factor is still required."""
    status: str = "mfa_required"
    login_token: str = Field(..., description="Opaque token for the pending login")
    methods: List[str] = Field(..., description="Second factors available to this account")
    expires_in: int


class SecondFactorRequest(BaseModel):
    """Complete a pending login with a one-time code."""
    login_token: str = Field(..., min_length=16, max_length=128)
    method: str = Field(..., pattern="^(email_otp|totp|backup_code)$")
    code: str = Field(..., min_length=6, max_length=16)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "login_token": "9f2c...",
                "method": "totp",
                "code": "123456"
            }
        }
    )


class EmailOTPRequest(BaseModel):
    login_token: str = Field(..., min_length=16, max_length=128)


class EmailOTPResponse(BaseModel):
    message: str = "Verification code sent"
    expires_at: datetime


# ============================================
# Password Strength
# ============================================

class PasswordStrengthRequest(BaseModel):
    password: str = Field(..., max_length=128)


class PasswordStrengthResponse(BaseModel):
    score: int = Field(..., ge=0, le=100)
    label: str
    is_strong: bool
    is_common: bool
    feedback: List[str]


# ============================================
# MFA Management
# ============================================

class MFASetupResponse(BaseModel):
    """MFA setup response with QR code."""
    secret: str
    qr_code_base64: str
    provisioning_uri: str
    expires_at: datetime


class MFAVerifyRequest(BaseModel):
    """MFA verification request."""
    totp_code: str = Field(..., min_length=6, max_length=6)


class MFAVerifyResponse(BaseModel):
    """
    MFA verification success response.

    Contains backup codes that should be stored securely.
    Each backup code can only be used once.
    """
    message: str = "MFA enabled successfully"
    backup_codes: List[str] = Field(..., description="One-time backup codes for account recovery (store securely!)")


class SecurityEventResponse(BaseModel):
    event_id: str
    kind: str
    description: str
    risk_level: str = Field(..., description="low, medium or high")
    at: datetime


class SecurityOverviewResponse(BaseModel):
    email: str
    mfa_enabled: bool
    passkey_count: int
    backup_codes_remaining: int
    last_login: Optional[datetime]
    security_score: int
    security_label: str
    recent_events: List[SecurityEventResponse] = Field(default_factory=list, description="Newest first")


# ============================================
# Passkeys
# ============================================

class PasskeyOptionsResponse(BaseModel):
    """Options to pass to navigator.credentials.create() / get()."""
    challenge: str
    options: Dict[str, Any]


class PasskeyRegistrationRequest(BaseModel):
    credential_id: str = Field(..., min_length=1, max_length=1400)
    client_data_json: str = Field(..., min_length=1)
    authenticator_data: str = Field(..., min_length=1)
    public_key: str = Field(..., min_length=1, description="DER SubjectPublicKeyInfo from getPublicKey()")
    label: Optional[str] = Field(None, max_length=100)


class PasskeyAssertionRequest(BaseModel):
    credential_id: str = Field(..., min_length=1, max_length=1400)
    client_data_json: str = Field(..., min_length=1)
    authenticator_data: str = Field(..., min_length=1)
    signature: str = Field(..., min_length=1)
    user_handle: Optional[str] = None


class PasskeySecondFactorRequest(PasskeyAssertionRequest):
    login_token: str = Field(..., min_length=16, max_length=128)


class PasskeyResponse(BaseModel):
    credential_id: str
    label: Optional[str]
    created_at: Optional[datetime]
    last_used: Optional[datetime]


# ============================================
# Health Models
# ============================================

class HealthStatus(BaseModel):
    """Health check response."""
    status: str = Field(..., description="healthy or unhealthy")
    version: str
    services: Dict[str, str]
    timestamp: datetime


# ============================================
# Error Models
# ============================================

class ErrorResponse(BaseModel):
    """
    Standard error response.

    All API errors return this format with an error message,
    optional detail, and error code for programmatic handling.
    """
    error: str = Field(..., description="Error type/summary")
    detail: Optional[str] = Field(None, description="Detailed error message")
    code: Optional[str] = Field(None, description="Error code for programmatic handling")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "error": "Unauthorized",
                "detail": "Authentication failed",
                "code": "AUTH_FAILED"
            }
        }
    )
