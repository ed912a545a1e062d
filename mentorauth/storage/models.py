from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    STUDENT = "STUDENT"
    MENTOR = "MENTOR"
    ADMIN = "ADMIN"


class Gender(str, Enum):
    MALE = "MALE"
    FEMALE = "FEMALE"
    OTHER = "OTHER"


class OtpType(str, Enum):
    EMAIL_VERIFICATION = "EMAIL_VERIFICATION"
    MOBILE_VERIFICATION = "MOBILE_VERIFICATION"
    LOGIN = "LOGIN"


@dataclass
class User:
    id: str
    email: str
    first_name: str
    last_name: str
    phone_number: Optional[str] = None
    gender: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None
    postal_code: Optional[str] = None
    role: str = Role.STUDENT.value
    is_active: bool = True
    email_verified: bool = False
    phone_verified: bool = False
    email_verified_at: Optional[datetime] = None
    phone_verified_at: Optional[datetime] = None
    failed_login_attempts: int = 0
    account_locked_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    last_login_ip: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def is_locked(self, now: datetime) -> bool:
        return self.account_locked_until is not None and self.account_locked_until > now


@dataclass
class OtpRecord:
    """A single issued one-time password and its verification state."""

    id: str
    identifier: str
    code: str
    otp_type: OtpType
    expires_at: datetime
    created_at: datetime = field(default_factory=_utcnow)
    attempts: int = 0
    verified: bool = False
    verified_at: Optional[datetime] = None
    locked_until: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        identifier: str,
        code: str,
        otp_type: OtpType,
        *,
        expiry_minutes: int,
        now: Optional[datetime] = None,
    ) -> "OtpRecord":
        created = now or _utcnow()
        return cls(
            id=str(uuid.uuid4()),
            identifier=identifier,
            code=code,
            otp_type=OtpType(otp_type),
            created_at=created,
            expires_at=created + timedelta(minutes=expiry_minutes),
        )

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now


@dataclass
class Device:
    id: str
    user_id: str
    fingerprint: str
    name: str
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    is_active: bool = True
    is_streaming: bool = False
    created_at: datetime = field(default_factory=_utcnow)
    last_active_at: datetime = field(default_factory=_utcnow)


@dataclass
class RefreshToken:
    id: str
    token: str
    user_id: str
    device_id: str
    expires_at: datetime
    created_at: datetime = field(default_factory=_utcnow)
    revoked: bool = False
    revoked_at: Optional[datetime] = None
    revoked_reason: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        device_id: str,
        *,
        ttl_minutes: int,
        now: Optional[datetime] = None,
    ) -> "RefreshToken":
        created = now or _utcnow()
        return cls(
            id=str(uuid.uuid4()),
            token=str(uuid.uuid4()),
            user_id=user_id,
            device_id=device_id,
            created_at=created,
            expires_at=created + timedelta(minutes=ttl_minutes),
        )

    def is_usable(self, now: datetime) -> bool:
        return not self.revoked and self.expires_at > now
