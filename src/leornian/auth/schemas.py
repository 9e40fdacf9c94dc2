"""Request/response schemas for authentication endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """Public view of a user. Never carries the password hash."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    username: str
    name: str
    bio: str | None = None
    email: str
    email_verified: datetime | None = None
    image: str | None = None
    role: str
    is_two_factor_enabled: bool = False
    created_at: datetime
    updated_at: datetime


class PublicUserResponse(BaseModel):
    """Profile fields visible to a coach or admin."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    username: str
    name: str
    bio: str | None = None
    image: str | None = None
    role: str
    created_at: datetime


class UpdateProfileRequest(BaseModel):
    name: str | None = Field(None, max_length=100)
    bio: str | None = Field(None, max_length=2000)
    image: str | None = Field(None, max_length=2048)


class UpdateRoleRequest(BaseModel):
    role: Literal["admin", "coach", "user", "client"]


class ClientListResponse(BaseModel):
    clients: list[PublicUserResponse]


# ---------------------------------------------------------------------------
# Registration and login
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Password registration. ``admin`` cannot be requested."""

    username: str = Field(..., min_length=3, max_length=50, pattern=r"^[a-zA-Z0-9_.-]+$")
    email: EmailStr
    password: str = Field(..., min_length=1, max_length=256)
    name: str = Field("", max_length=100)
    role: Literal["user", "coach", "client"] | None = None

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        """Normalize email to lowercase."""
        return v.lower().strip()


class RegisterResponse(BaseModel):
    id: str
    username: str
    email: str
    name: str
    message: str = "User registered successfully"


class LoginRequest(BaseModel):
    """Login with e-mail or username plus password."""

    identifier: str = Field(..., min_length=1, max_length=320)
    password: str = Field(..., min_length=1, max_length=256)


class TokenResponse(BaseModel):
    """Token pair plus the signed-in user."""

    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int
    user: UserResponse


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1)


class RefreshResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int


class ValidateTokenRequest(BaseModel):
    token: str


class ValidateTokenResponse(BaseModel):
    valid: bool
    user: UserResponse | None = None
    claims: dict[str, Any] | None = None
    message: str


# ---------------------------------------------------------------------------
# Passwords
# ---------------------------------------------------------------------------


class ForgotPasswordRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(BaseModel):
    token: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=1, max_length=256)


class ChangePasswordRequest(BaseModel):
    old_password: str = Field(..., min_length=1, max_length=256)
    new_password: str = Field(..., min_length=1, max_length=256)


class MessageResponse(BaseModel):
    """Generic acknowledgement."""

    message: str


# ---------------------------------------------------------------------------
# E-mail verification
# ---------------------------------------------------------------------------


class VerifyEmailRequest(BaseModel):
    token: str = Field(..., min_length=1)


class ResendVerificationRequest(BaseModel):
    email: EmailStr


# ---------------------------------------------------------------------------
# Federated sign-in
# ---------------------------------------------------------------------------


class OAuthAuthorizeRequest(BaseModel):
    redirect_uri: str = Field("", max_length=2048)


class OAuthAuthorizeResponse(BaseModel):
    redirect_url: str


class OAuthMobileCallbackRequest(BaseModel):
    code: str = Field(..., min_length=1)
    code_verifier: str = Field(..., min_length=1)
    redirect_uri: str | None = None


class LinkAccountRequest(BaseModel):
    code: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)


class LinkAccountResponse(BaseModel):
    message: str
    provider: str
    email: str | None = None


class LinkedAccount(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    provider: str
    provider_account_id: str
    type: str


class LinkedAccountsResponse(BaseModel):
    linked_accounts: list[LinkedAccount]
