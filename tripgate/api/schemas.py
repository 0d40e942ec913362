from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

MAX_TOKEN_LENGTH = 256


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "validation_error",
    "duplicate_key",
    "invalid_credentials",
    "invalid_or_expired_token",
    "not_found",
    "already_verified",
    "invalid_field",
    "unauthorized",
    "rate_limited",
    "auth_provider_error",
    "internal_error",
})


class ErrorBody(BaseModel):
    code: str
    message: str
    details: Optional[Any] = None
    stack: Optional[List[str]] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(f"unknown error code: {value}")
        return value


class UserResponse(BaseModel):
    """Public view of an account; never carries the hash or tokens."""

    id: str
    username: str
    email: str
    is_verified: bool
    created_at: datetime
    providers: List[str] = Field(default_factory=list)


class Envelope(BaseModel):
    success: bool
    message: Optional[str] = None
    user: Optional[UserResponse] = None
    error: Optional[ErrorBody] = None


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_INVALID_EMAIL = "Must be a valid email address"


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError(_INVALID_EMAIL)
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) < 3 or len(normalized) > 254:
        raise ValueError(_INVALID_EMAIL)
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain or len(local) > 64:
        raise ValueError(_INVALID_EMAIL)
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError(_INVALID_EMAIL)
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError(_INVALID_EMAIL)
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError(_INVALID_EMAIL)
    return normalized


_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_]+$")


def _validate_username(value: str) -> str:
    value = value.strip()
    if len(value) < 3 or len(value) > 30:
        raise ValueError("Username must be between 3 and 30 characters")
    if not _USERNAME_PATTERN.match(value):
        raise ValueError("Username can only contain letters, numbers and underscores")
    return value


_PASSWORD_PATTERN = re.compile(r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)(?=.*[@$!%*?&])[A-Za-z\d@$!%*?&]")


def _validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("Password must be at least 8 characters long")
    if len(value) > 128:
        raise ValueError("Password must be at most 128 characters long")
    if not _PASSWORD_PATTERN.match(value):
        raise ValueError(
            "Password must contain at least one uppercase letter, one lowercase letter, "
            "one number and one special character"
        )
    return value


class RegisterRequest(BaseModel):
    username: str
    email: str
    password: str

    @field_validator("username")
    @classmethod
    def _check_username(cls, value: str) -> str:
        return _validate_username(value)

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=128)

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        if not value:
            raise ValueError("Password is required")
        return value


class EmailRequest(BaseModel):
    """Body of resend-verification and forgot-password."""

    email: str

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)


class ResetPasswordRequest(BaseModel):
    token: str = Field(..., max_length=MAX_TOKEN_LENGTH)
    password: str

    @field_validator("token")
    @classmethod
    def _check_token(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Reset token is required")
        return value

    @field_validator("password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class ProfileUpdateRequest(BaseModel):
    # Unknown keys are kept so the service can reject the whole update
    model_config = ConfigDict(extra="allow")

    username: Optional[str] = None
    email: Optional[str] = None

    @field_validator("username")
    @classmethod
    def _check_username(cls, value: Optional[str]) -> Optional[str]:
        return _validate_username(value) if value is not None else None

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value is not None else None
