from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then apply NFKC."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_PATTERN = re.compile(r"^[\w.+-]+@[\w-]+(\.[\w-]+)*\.[a-zA-Z]{2,}$")
_NAME_PATTERN = re.compile(r"^[a-zA-Z\s\-']+$")
_OTP_PATTERN = re.compile(r"^[0-9]{6}$")
_DATA_URI_IMAGE = re.compile(r"^data:image/(png|jpe?g|gif|webp|svg\+xml);base64,[A-Za-z0-9+/=\s]+$")
_HTTP_IMAGE_URL = re.compile(r"^https?://\S+\.(png|jpe?g|gif|webp|svg)(\?\S*)?$", re.IGNORECASE)
_PASSWORD_SPECIALS = "@$!%*?&"


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if not _EMAIL_PATTERN.match(normalized):
        raise ValueError("please provide a valid email address")
    return normalized


def _validate_password_strength(value: str) -> str:
    """Require 8-128 chars mixing upper, lower, digit and a special character."""
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    if not re.search(r"[a-z]", value):
        raise ValueError("password must contain a lowercase letter")
    if not re.search(r"[A-Z]", value):
        raise ValueError("password must contain an uppercase letter")
    if not re.search(r"\d", value):
        raise ValueError("password must contain a number")
    if not any(c in _PASSWORD_SPECIALS for c in value):
        raise ValueError(f"password must contain a special character ({_PASSWORD_SPECIALS})")
    return value


def _validate_name(value: str, field_name: str) -> str:
    collapsed = re.sub(r"\s+", " ", _normalize_unicode(value)).strip()
    if len(collapsed) < 2:
        raise ValueError(f"{field_name} must be at least 2 characters")
    if len(collapsed) > 50:
        raise ValueError(f"{field_name} must be at most 50 characters")
    if not _NAME_PATTERN.match(collapsed):
        raise ValueError(
            f"{field_name} can only contain letters, spaces, hyphens, and apostrophes"
        )
    return collapsed


def _validate_profile_image(value: Optional[str]) -> Optional[str]:
    if value is None or value == "":
        return value
    value = value.strip()
    if _DATA_URI_IMAGE.match(value) or _HTTP_IMAGE_URL.match(value):
        return value
    raise ValueError("profile image must be a base64 data URI or an http(s) image URL")


class RegisterRequest(BaseModel):
    email: str
    password: str
    first_name: str
    last_name: str

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("first_name")
    @classmethod
    def _validate_first_name(cls, value: str) -> str:
        return _validate_name(value, "first name")

    @field_validator("last_name")
    @classmethod
    def _validate_last_name(cls, value: str) -> str:
        return _validate_name(value, "last name")


class LoginRequest(BaseModel):
    email: str
    # Strength rules are not re-applied at login
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=2048)


class LogoutRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=2048)


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @model_validator(mode="after")
    def _require_different_password(self):
        if self.current_password == self.new_password:
            raise ValueError("new password must be different from current password")
        return self


class ForgotPasswordRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_forgot_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., min_length=1, max_length=2048)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class EmailVerificationRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=2048)


class EmailOTPRequest(BaseModel):
    email: str
    code: str

    @field_validator("email")
    @classmethod
    def _validate_otp_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("code")
    @classmethod
    def _validate_code(cls, value: str) -> str:
        value = value.strip()
        if not _OTP_PATTERN.match(value):
            raise ValueError("verification code must be exactly 6 digits")
        return value


class ResendVerificationRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_resend_email(cls, value: str) -> str:
        return _validate_email(value)


class ProfileUpdateRequest(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    profile_image: Optional[str] = Field(default=None, max_length=2_000_000)

    @field_validator("first_name")
    @classmethod
    def _validate_first_name(cls, value: Optional[str]) -> Optional[str]:
        return None if value is None else _validate_name(value, "first name")

    @field_validator("last_name")
    @classmethod
    def _validate_last_name(cls, value: Optional[str]) -> Optional[str]:
        return None if value is None else _validate_name(value, "last name")

    @field_validator("profile_image")
    @classmethod
    def _validate_image(cls, value: Optional[str]) -> Optional[str]:
        return _validate_profile_image(value)


class DeleteAccountRequest(BaseModel):
    current_password: Optional[str] = Field(default=None, max_length=128)


class RoleUpdateRequest(BaseModel):
    role: str = Field(..., pattern="^(user|admin)$")


class OAuthStartResponse(BaseModel):
    authorization_url: str
    state: str
    provider: str


class OAuthIdentityResponse(BaseModel):
    provider: str
    provider_id: str
    email: Optional[str] = None
    linked_at: datetime


class AccountResponse(BaseModel):
    id: str
    email: str
    first_name: str
    last_name: str
    full_name: str
    role: str
    is_active: bool
    is_email_verified: bool
    auth_provider: str
    profile_image: Optional[str] = None
    oauth_profiles: List[OAuthIdentityResponse] = Field(default_factory=list)
    last_login: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    access_expires_at: datetime
    refresh_expires_at: datetime


class AuthResponse(BaseModel):
    account: AccountResponse
    tokens: TokenResponse


class RegisterResponse(BaseModel):
    account: AccountResponse
    verification_required: bool = True


class MessageResponse(BaseModel):
    message: str
    count: Optional[int] = None


class AccountListResponse(BaseModel):
    items: List[AccountResponse]
