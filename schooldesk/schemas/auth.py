"""Pydantic schemas for authentication API."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class RegisterRequest(BaseModel):
    """Request for account registration."""

    email: EmailStr
    username: str = Field(
        ...,
        min_length=3,
        max_length=50,
        pattern=r"^[a-zA-Z][a-zA-Z0-9_.]*$",
        description="Username (3-50 chars, letters, digits, dot and underscore, must start with letter)",
    )
    password: str = Field(
        ...,
        min_length=8,
        max_length=128,
        description="Password (minimum 8 characters)",
    )
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)


class LoginRequest(BaseModel):
    """Request for login. ``login`` is an email address or a username."""

    login: str = Field(..., min_length=1, description="Email or username")
    password: str = Field(..., min_length=1)


class TokenResponse(BaseModel):
    """Response with JWT tokens."""

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int = Field(description="Access token expiry in seconds")


class RefreshRequest(BaseModel):
    """Request for token refresh."""

    refresh_token: str


class LogoutRequest(BaseModel):
    """Request for logout with optional refresh token revocation."""

    refresh_token: str | None = Field(
        None,
        description="Refresh token to revoke. If provided, the refresh token cannot be used again.",
    )


class PasswordResetRequest(BaseModel):
    """Request a password reset email."""

    email: EmailStr


class PasswordResetConfirm(BaseModel):
    """Set a new password with a reset token."""

    token: str
    new_password: str = Field(
        ...,
        min_length=8,
        max_length=128,
        description="New password (minimum 8 characters)",
    )


class VerifyEmailRequest(BaseModel):
    token: str


class MessageResponse(BaseModel):
    """Generic message response."""

    message: str


class TokenIssuedResponse(MessageResponse):
    """Message response that carries the issued one-time token in debug mode."""

    token: str | None = Field(
        None,
        description="One-time token, only returned when DEBUG is enabled",
    )


class UserResponse(BaseModel):
    """Response with user information."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    email: str
    username: str
    first_name: str
    last_name: str
    is_active: bool
    email_verified: bool
    last_login_at: datetime | None
    created_at: datetime


class AuthResponse(BaseModel):
    """User plus a fresh token pair (register and login)."""

    user: UserResponse
    tokens: TokenResponse
    verification_token: str | None = Field(
        None,
        description="Email verification token, only returned on register when DEBUG is enabled",
    )


class MeResponse(UserResponse):
    """The current user with roles and effective permissions."""

    roles: list[str] = Field(default_factory=list)
    permissions: list[str] = Field(
        default_factory=list, description='Effective grants as "resource:action"'
    )
