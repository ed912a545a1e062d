from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from mentorauth.config import Settings
from mentorauth.logging import get_logger, mask_identifier
from mentorauth.service.devices import DeviceService, RequestMeta
from mentorauth.service.errors import (
    AccountLockedError,
    BadCredentialsError,
    ConflictError,
    NotFoundError,
    TooManyAttemptsError,
    ValidationError,
)
from mentorauth.service.notifications import ChannelKind, Notifier
from mentorauth.service.otp import OtpService
from mentorauth.service.tokens import TokenService
from mentorauth.storage.models import OtpType, Role, User

logger = get_logger(__name__)

_INVALID_OTP = "Invalid or expired OTP"


class AuthStore(Protocol):
    def create_user(self, email: str, first_name: str, last_name: str, **profile: Any) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def exists_by_email(self, email: str) -> bool: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def increment_failed_attempts(self, email: str, at: datetime) -> int: ...

    def reset_failed_attempts(self, email: str) -> None: ...

    def lock_account(self, email: str, until: datetime) -> None: ...

    def record_login(self, email: str, ip: Optional[str], at: datetime) -> None: ...


@dataclass
class SignupProfile:
    first_name: str
    last_name: str
    email: str
    password: str
    phone_number: str
    gender: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None
    postal_code: Optional[str] = None


@dataclass
class AuthContext:
    """Caller identity taken from a validated access token."""

    user_id: str
    email: str
    role: str
    device_id: Optional[str] = None
    device_fingerprint: Optional[str] = None

    @classmethod
    def from_claims(cls, claims: dict[str, Any]) -> "AuthContext":
        return cls(
            user_id=str(claims["user_id"]),
            email=str(claims["sub"]),
            role=str(claims.get("role", Role.STUDENT.value)),
            device_id=claims.get("device_id"),
            device_fingerprint=claims.get("device_fingerprint"),
        )


class PasswordVerifier:
    """argon2id hashing plus credential checks against the user store."""

    algorithm = "argon2id"

    def __init__(self, store: AuthStore) -> None:
        self.store = store
        self._pwd_hasher = PasswordHasher(type=Type.ID)

    def hash(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), self.algorithm

    def verify_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != self.algorithm:
            logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def authenticate(self, email: str, password: str) -> User:
        user = self.store.get_user_by_email(email)
        if user is None or not self.verify_password(user.id, password):
            raise BadCredentialsError("Invalid email or password")
        return user


class AuthService:
    """Orchestrates the two-step signup and the password-then-OTP login."""

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        otp: OtpService,
        devices: DeviceService,
        tokens: TokenService,
        notifier: Notifier,
    ) -> None:
        self.store = store
        self.settings = settings
        self.otp = otp
        self.devices = devices
        self.tokens = tokens
        self.notifier = notifier
        self.passwords = PasswordVerifier(store)
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    @staticmethod
    def _normalize_email(email: str) -> str:
        return email.strip().lower()

    def _ensure_email_available(self, email: str) -> None:
        if self.store.exists_by_email(email):
            raise ConflictError("Email already registered", detail={"field": "email"})

    def _ensure_email_verified(self, email: str) -> None:
        if not self.otp.verified_since(
            email,
            OtpType.EMAIL_VERIFICATION,
            self.settings.signup_verification_window_minutes,
        ):
            raise ValidationError(
                "Email not verified. Please verify your email first.",
                detail={"field": "email"},
            )

    # signup
    async def send_email_otp(self, email: str) -> dict[str, Any]:
        email = self._normalize_email(email)
        self._ensure_email_available(email)
        code = self.otp.generate(email, OtpType.EMAIL_VERIFICATION)
        self.notifier.send_otp(
            ChannelKind.EMAIL, email, code, self.settings.otp_expiry_minutes
        )
        return {
            "email": mask_identifier(email),
            "expires_in_minutes": self.settings.otp_expiry_minutes,
        }

    async def verify_email_otp(self, email: str, code: str) -> dict[str, Any]:
        email = self._normalize_email(email)
        if not self.otp.verify(email, OtpType.EMAIL_VERIFICATION, code):
            raise ValidationError(_INVALID_OTP)
        self.logger.info("signup_email_verified", email=mask_identifier(email))
        return {"email": email, "email_verified": True}

    async def send_mobile_otp(self, email: str, phone_number: str) -> dict[str, Any]:
        email = self._normalize_email(email)
        self._ensure_email_verified(email)
        code = self.otp.generate(phone_number, OtpType.MOBILE_VERIFICATION)
        self.notifier.send_otp(
            ChannelKind.SMS, phone_number, code, self.settings.otp_expiry_minutes
        )
        return {
            "phone_number": mask_identifier(phone_number),
            "expires_in_minutes": self.settings.otp_expiry_minutes,
        }

    async def complete_signup(
        self, profile: SignupProfile, code: str, meta: RequestMeta
    ) -> dict[str, Any]:
        """Verify the mobile code and create the account; returns the user and a token pair."""
        email = self._normalize_email(profile.email)
        self._ensure_email_available(email)
        self._ensure_email_verified(email)
        if not self.otp.verify(profile.phone_number, OtpType.MOBILE_VERIFICATION, code):
            raise ValidationError(_INVALID_OTP)

        now = self._now()
        credential = self.passwords.hash(profile.password)
        user = self.store.create_user(
            email,
            profile.first_name,
            profile.last_name,
            phone_number=profile.phone_number,
            gender=profile.gender,
            city=profile.city,
            state=profile.state,
            country=profile.country,
            postal_code=profile.postal_code,
            role=Role.STUDENT.value,
            email_verified=True,
            phone_verified=True,
            verified_at=now,
            credential=credential,
        )
        self.notifier.send_welcome(user.email, user.first_name, user.role)
        device = self.devices.register_device(user, meta)
        tokens = self.tokens.issue_token_pair(user, device)
        self.logger.info(
            "user_registered", user_id=user.id, email=mask_identifier(user.email)
        )
        return {"user": user, "tokens": tokens}

    # login
    async def login(self, email: str, password: str) -> dict[str, Any]:
        """Check the password and send login codes to the user's email and phone."""
        email = self._normalize_email(email)
        now = self._now()
        user = self.store.get_user_by_email(email)
        if user is None or not user.is_active:
            raise BadCredentialsError("Invalid email or password")
        if user.is_locked(now):
            raise AccountLockedError(
                "Account is locked. Please try again later.",
                detail={"locked_until": user.account_locked_until.isoformat()},
            )

        if not self.passwords.verify_password(user.id, password):
            failures = self.store.increment_failed_attempts(email, now)
            if failures >= self.settings.max_failed_login_attempts:
                locked_until = now + timedelta(minutes=self.settings.account_lock_minutes)
                self.store.lock_account(email, locked_until)
                self.logger.warning(
                    "account_locked", user_id=user.id, failed_attempts=failures
                )
                raise AccountLockedError(
                    "Too many failed attempts. Account locked for "
                    f"{self.settings.account_lock_minutes} minutes.",
                    detail={"locked_until": locked_until.isoformat()},
                )
            self.logger.info("login_password_rejected", user_id=user.id, failed_attempts=failures)
            raise BadCredentialsError("Invalid email or password")

        expiry = self.settings.otp_expiry_minutes
        email_code = self.otp.generate(user.email, OtpType.LOGIN)
        self.notifier.send_otp(ChannelKind.EMAIL, user.email, email_code, expiry)
        phone_mask = None
        if user.phone_number:
            phone_code = self.otp.generate(user.phone_number, OtpType.LOGIN)
            self.notifier.send_otp(ChannelKind.SMS, user.phone_number, phone_code, expiry)
            phone_mask = mask_identifier(user.phone_number)
        self.logger.info("login_otp_sent", user_id=user.id)
        return {
            "email": mask_identifier(user.email),
            "phone_number": phone_mask,
            "expires_in_minutes": expiry,
        }

    async def verify_login_otp(
        self, email: str, code: str, meta: RequestMeta
    ) -> dict[str, Any]:
        """Accept the code sent to either channel; returns the user and a token pair."""
        email = self._normalize_email(email)
        user = self.store.get_user_by_email(email)
        if user is None or not user.is_active:
            raise BadCredentialsError(_INVALID_OTP)
        if user.is_locked(self._now()):
            raise AccountLockedError("Account is locked. Please try again later.")

        # A lock on one channel must not hide a correct code for the other
        verified = False
        lock_error: Optional[TooManyAttemptsError] = None
        for identifier in (user.email, user.phone_number):
            if not identifier:
                continue
            try:
                verified = self.otp.verify(identifier, OtpType.LOGIN, code)
            except TooManyAttemptsError as exc:
                lock_error = lock_error or exc
            if verified:
                break
        if not verified:
            if lock_error is not None:
                raise lock_error
            raise BadCredentialsError(_INVALID_OTP)

        now = self._now()
        self.store.reset_failed_attempts(user.email)
        self.store.record_login(user.email, meta.client_ip, now)
        device = self.devices.register_device(user, meta)
        tokens = self.tokens.issue_token_pair(user, device)
        self.logger.info("login_completed", user_id=user.id, device_id=device.id)
        return {"user": self.store.get_user(user.id) or user, "tokens": tokens}

    # sessions
    def authenticate(self, access_token: str) -> AuthContext:
        return AuthContext.from_claims(self.tokens.validate(access_token))

    async def logout(self, principal: AuthContext, meta: RequestMeta) -> int:
        """Revoke refresh tokens of the calling device only."""
        device = self.devices.current_device(principal.user_id, meta)
        if device is None:
            self.logger.info("logout_device_unknown", user_id=principal.user_id)
            return 0
        revoked = self.tokens.revoke_device_tokens(device.id, reason="logout")
        self.logger.info(
            "logout", user_id=principal.user_id, device_id=device.id, revoked=revoked
        )
        return revoked

    async def logout_all(self, principal: AuthContext) -> int:
        return self.tokens.revoke_all_user_tokens(principal.user_id)

    def current_user(self, principal: AuthContext) -> User:
        user = self.store.get_user(principal.user_id)
        if user is None or not user.is_active:
            raise NotFoundError("User not found")
        return user
