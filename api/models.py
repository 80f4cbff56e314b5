"""
API request and response models for Latchkey REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# bcrypt only reads the first 72 bytes; the cap keeps request bodies sane.
MAX_PASSWORD_LENGTH = 255


def _check_email(value: str) -> str:
    """Minimal shape check. Deliverability is proven by the verify-email link."""
    local, sep, domain = value.rpartition("@")
    if not sep or not local or "." not in domain:
        raise ValueError("Invalid email address.")
    return value


def _strip(value):
    return value.strip() if isinstance(value, str) else value


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register."""

    email: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=1, max_length=MAX_PASSWORD_LENGTH)
    name: Optional[str] = Field(default=None, max_length=255)
    ignore_pwned: bool = False

    @field_validator("email", "name", mode="before")
    @classmethod
    def strip_text(cls, value):
        return _strip(value)

    @field_validator("email")
    @classmethod
    def check_email(cls, value: str) -> str:
        return _check_email(value)


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login.

    code is optional: omit it and an MFA-enrolled identity gets a 401
    mfa_required with an mfa_token to exchange at /auth/login/totp.

    Passwords are taken byte for byte: surrounding whitespace is part of the
    secret, so only email and code are stripped.
    """

    email: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=MAX_PASSWORD_LENGTH)
    code: Optional[str] = Field(default=None, max_length=32)

    @field_validator("email", "code", mode="before")
    @classmethod
    def strip_text(cls, value):
        return _strip(value)


class TotpLoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login/totp."""

    model_config = ConfigDict(str_strip_whitespace=True)

    token: str = Field(min_length=1, max_length=2048)
    code: str = Field(min_length=1, max_length=32)


class EmailRequest(BaseModel):
    """Request body for endpoints that only take an address (login link, forgot password, resend)."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=255)

    @field_validator("email")
    @classmethod
    def check_email(cls, value: str) -> str:
        return _check_email(value)


class TokenRequest(BaseModel):
    """Request body carrying one opaque value: an email-link token or a refresh token."""

    model_config = ConfigDict(str_strip_whitespace=True)

    token: str = Field(min_length=1, max_length=512)


class ResetPasswordRequest(BaseModel):
    """Request body for POST /api/v1/auth/reset-password."""

    token: str = Field(min_length=1, max_length=512)
    password: str = Field(min_length=1, max_length=MAX_PASSWORD_LENGTH)
    ignore_pwned: bool = False

    @field_validator("token", mode="before")
    @classmethod
    def strip_token(cls, value):
        return _strip(value)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class TokenResponse(BaseModel):
    """Returned by every flow that ends in a usable session."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    user_id: int
    session_id: int


class IdentityResponse(BaseModel):
    """Sanitized identity. Never carries the password hash or MFA secret."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    name: Optional[str]
    email_verified: bool
    mfa_enabled: bool
    is_active: bool
    created_at: Optional[str]


class SessionResponse(BaseModel):
    """One active refresh session, as listed under /users/{userId}/sessions."""

    model_config = ConfigDict(frozen=True)

    id: int
    ip_address: Optional[str]
    user_agent: Optional[str]
    created_at: Optional[str]


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class OAuthProviderInfo(BaseModel):
    """One configured OAuth provider (GET /api/v1/auth/oauth/providers)."""

    model_config = ConfigDict(frozen=True)

    name: str
    label: str


# ---------------------------------------------------------------------------
# Shared
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload.

    mfa_token is set only on mfa_required errors.
    """

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None
    mfa_token: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
