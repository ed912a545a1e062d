from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

from mentorauth.config import Settings
from mentorauth.logging import get_logger
from mentorauth.service.devices import RequestMeta, compute_fingerprint
from mentorauth.service.errors import (
    DeviceMismatchError,
    InvalidTokenError,
    NotFoundError,
    TokenExpiredError,
)
from mentorauth.storage.models import Device, RefreshToken, User

logger = get_logger(__name__)

TOKEN_TYPE = "Bearer"


class TokenService:
    """Signed access tokens plus opaque, device-bound refresh tokens."""

    def __init__(self, store, settings: Settings) -> None:
        self.store = store
        self.settings = settings

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    @property
    def access_ttl_seconds(self) -> int:
        return self.settings.access_token_ttl_minutes * 60

    # JWT encoding
    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def create_access_token(self, user: User, device: Device) -> str:
        now = self._now()
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user.email,
            "user_id": user.id,
            "role": user.role,
            "device_id": device.id,
            "device_fingerprint": device.fingerprint,
            "token_type": "access",
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(seconds=self.access_ttl_seconds)).timestamp()),
        }
        return self._encode_jwt(payload)

    def validate(self, token: str) -> dict[str, Any]:
        """Check signature, issuer, audience and expiry; returns the claims.

        Raises:
            TokenExpiredError: the token is well formed but past ``exp``.
            InvalidTokenError: anything else is wrong with it.
        """
        try:
            header_b64, payload_b64, sig_b64 = (token or "").split(".")
        except ValueError:
            raise InvalidTokenError("Invalid token")

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise InvalidTokenError("Invalid token")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidTokenError("Invalid token")

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            raise InvalidTokenError("Invalid token signature")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidTokenError("Invalid token")
        if not isinstance(payload, dict):
            raise InvalidTokenError("Invalid token")

        if payload.get("iss") != self.settings.jwt_issuer:
            raise InvalidTokenError("Invalid token issuer")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            raise InvalidTokenError("Invalid token audience")
        if payload.get("token_type") != "access":
            raise InvalidTokenError("Invalid token type")
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise InvalidTokenError("Invalid token expiry")
        if exp_ts <= self._now().timestamp():
            raise TokenExpiredError("Token expired")
        return payload

    # refresh tokens
    def _token_pair(self, access_token: str, refresh: RefreshToken) -> dict[str, Any]:
        return {
            "access_token": access_token,
            "refresh_token": refresh.token,
            "token_type": TOKEN_TYPE,
            "expires_in": self.access_ttl_seconds,
            "device_id": refresh.device_id,
        }

    def issue_token_pair(self, user: User, device: Device) -> dict[str, Any]:
        """Mint an access token and make a fresh refresh token the device's only live one."""
        refresh = RefreshToken.new(
            user.id,
            device.id,
            ttl_minutes=self.settings.refresh_token_ttl_minutes,
            now=self._now(),
        )
        self.store.replace_device_refresh_token(refresh)
        logger.info("token_pair_issued", user_id=user.id, device_id=device.id)
        return self._token_pair(self.create_access_token(user, device), refresh)

    def _load_usable(self, value: str, meta: RequestMeta) -> tuple[RefreshToken, User, Device]:
        token = self.store.get_refresh_token(value) if value else None
        if token is None:
            raise InvalidTokenError("Invalid refresh token")
        if not token.is_usable(self._now()):
            raise InvalidTokenError("Refresh token expired or revoked")
        device = self.store.get_device(token.device_id)
        if device is None or device.fingerprint != compute_fingerprint(meta):
            logger.warning(
                "refresh_device_mismatch", user_id=token.user_id, device_id=token.device_id
            )
            raise DeviceMismatchError("Invalid device for refresh token")
        user = self.store.get_user(token.user_id)
        if user is None or not user.is_active:
            raise InvalidTokenError("Invalid refresh token")
        return token, user, device

    def refresh(self, value: str, meta: RequestMeta) -> dict[str, Any]:
        """New access token for a live refresh token; the refresh token itself is kept."""
        token, user, device = self._load_usable(value, meta)
        self.store.touch_device(device.id, self._now())
        logger.info("access_token_refreshed", user_id=user.id, device_id=device.id)
        return self._token_pair(self.create_access_token(user, device), token)

    def rotate(self, value: str, meta: RequestMeta) -> dict[str, Any]:
        """Spend ``value`` and issue a brand new pair; a refresh token rotates at most once."""
        token, user, device = self._load_usable(value, meta)
        if not self.store.revoke_refresh_token_if_active(token.token, "rotated", self._now()):
            logger.warning("refresh_rotation_race", user_id=user.id, device_id=device.id)
            raise InvalidTokenError("Refresh token expired or revoked")
        self.store.touch_device(device.id, self._now())
        return self.issue_token_pair(user, device)

    def revoke_device_tokens(self, device_id: str, *, reason: str = "logout") -> int:
        return self.store.revoke_device_refresh_tokens(device_id, reason, self._now())

    def revoke_all_user_tokens(self, user_id: str, *, reason: str = "revoke_all") -> int:
        revoked = self.store.revoke_user_refresh_tokens(user_id, reason, self._now())
        logger.info("user_tokens_revoked", user_id=user_id, count=revoked)
        return revoked

    def remaining_validity(self, value: str) -> int:
        """Seconds until the refresh token expires; 0 when revoked or already expired."""
        token = self.store.get_refresh_token(value)
        if token is None:
            raise NotFoundError("Refresh token not found")
        now = self._now()
        if not token.is_usable(now):
            return 0
        return int((token.expires_at - now).total_seconds())

    def cleanup_expired_tokens(self) -> int:
        removed = self.store.delete_expired_or_revoked_refresh_tokens(self._now())
        logger.info("refresh_tokens_cleaned", removed=removed)
        return removed
