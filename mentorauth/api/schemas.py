from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from mentorauth.config import get_settings
from mentorauth.logging import get_correlation_id
from mentorauth.storage.models import Gender

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "bad_credentials",
    "invalid_token",
    "token_expired",
    "device_mismatch",
    "account_locked",
    "otp_cooldown",
    "otp_locked",
    "already_streaming",
})


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class ErrorBody(BaseModel):
    """Error payload carried by failed responses, with a stable ``code``."""

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
    """Uniform response wrapper; the HTTP status mirrors ``success``."""

    success: bool
    message: str = ""
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


_PASSWORD_PATTERN = re.compile(
    r"^(?=.*[0-9])(?=.*[a-z])(?=.*[A-Z])(?=.*[@#$%^&+=!])(?=\S+$).{8,}$"
)
_PHONE_PATTERN = re.compile(r"^\+?[0-9]{10,15}$")


def _validate_password_strength(value: str) -> str:
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    if not _PASSWORD_PATTERN.match(value):
        raise ValueError(
            "password must be at least 8 characters and contain a digit, a lowercase "
            "letter, an uppercase letter and one of @#$%^&+=! with no whitespace"
        )
    return value


def _validate_phone(value: str) -> str:
    cleaned = value.strip()
    if not _PHONE_PATTERN.match(cleaned):
        raise ValueError("phone number must be 10 to 15 digits, optionally prefixed by +")
    return cleaned


def _validate_otp(value: str) -> str:
    cleaned = value.strip()
    length = get_settings().otp_length
    if not re.fullmatch(rf"[0-9]{{{length}}}", cleaned):
        raise ValueError(f"otp must be {length} digits")
    return cleaned


def _validate_name(value: str) -> str:
    cleaned = _normalize_unicode(value).strip()
    if not 2 <= len(cleaned) <= 100:
        raise ValueError("must be between 2 and 100 characters")
    return cleaned


class SignupRequest(BaseModel):
    first_name: str
    last_name: str
    email: str
    password: str
    phone_number: str
    gender: Optional[Gender] = None
    city: Optional[str] = Field(default=None, max_length=100)
    state: Optional[str] = Field(default=None, max_length=100)
    country: Optional[str] = Field(default=None, max_length=100)
    postal_code: Optional[str] = Field(default=None, max_length=20)

    @field_validator("first_name", "last_name")
    @classmethod
    def _validate_names(cls, value: str) -> str:
        return _validate_name(value)

    @field_validator("email")
    @classmethod
    def _validate_signup_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("phone_number")
    @classmethod
    def _validate_phone_number(cls, value: str) -> str:
        return _validate_phone(value)


class VerifyEmailOtpRequest(BaseModel):
    email: str
    otp: str

    @field_validator("email")
    @classmethod
    def _validate_verify_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("otp")
    @classmethod
    def _validate_code(cls, value: str) -> str:
        return _validate_otp(value)


class SendMobileOtpRequest(BaseModel):
    email: str
    phone_number: str

    @field_validator("email")
    @classmethod
    def _validate_mobile_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("phone_number")
    @classmethod
    def _validate_phone_number(cls, value: str) -> str:
        return _validate_phone(value)


class VerifyMobileOtpRequest(SignupRequest):
    otp: str

    @field_validator("otp")
    @classmethod
    def _validate_code(cls, value: str) -> str:
        return _validate_otp(value)


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class VerifyLoginOtpRequest(BaseModel):
    email: str
    otp: str

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("otp")
    @classmethod
    def _validate_code(cls, value: str) -> str:
        return _validate_otp(value)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=2048)


class DeviceActionRequest(BaseModel):
    device_id: str = Field(..., min_length=1, max_length=64)


class TokenPairResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int
    device_id: Optional[str] = None


class UserResponse(BaseModel):
    id: str
    email: str
    first_name: str
    last_name: str
    full_name: str
    phone_number: Optional[str] = None
    gender: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None
    postal_code: Optional[str] = None
    role: str
    email_verified: bool
    phone_verified: bool
    last_login_at: Optional[datetime] = None
    created_at: datetime

    @classmethod
    def from_user(cls, user: Any) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            full_name=user.full_name,
            phone_number=user.phone_number,
            gender=user.gender,
            city=user.city,
            state=user.state,
            country=user.country,
            postal_code=user.postal_code,
            role=user.role,
            email_verified=user.email_verified,
            phone_verified=user.phone_verified,
            last_login_at=user.last_login_at,
            created_at=user.created_at,
        )


class AuthResponse(BaseModel):
    user: UserResponse
    tokens: TokenPairResponse


class OtpDispatchResponse(BaseModel):
    email: Optional[str] = None
    phone_number: Optional[str] = None
    expires_in_minutes: int


class DeviceResponse(BaseModel):
    device_id: str
    device_name: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    first_seen_at: datetime
    last_active_at: datetime
    is_streaming: bool = False
    is_current_device: bool = False


class DeviceLimitResponse(BaseModel):
    within_limit: bool
    active_devices: int
    max_allowed: int
    message: str
    candidates: List[DeviceResponse] = Field(default_factory=list)


class TokenValidationResponse(BaseModel):
    valid: bool = True
    user_id: str
    email: str
    role: str
    device_id: Optional[str] = None
    expires_at: datetime
    expires_in: int
