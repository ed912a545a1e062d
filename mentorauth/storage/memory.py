from __future__ import annotations

import dataclasses
import json
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from mentorauth.logging import get_logger
from mentorauth.storage.errors import DuplicateRecord
from mentorauth.storage.models import (
    Device,
    OtpRecord,
    OtpType,
    RefreshToken,
    User,
)

_USER_DATETIMES = (
    "email_verified_at",
    "phone_verified_at",
    "account_locked_until",
    "last_login_at",
    "created_at",
    "updated_at",
)
_OTP_DATETIMES = ("expires_at", "created_at", "verified_at", "locked_until")
_DEVICE_DATETIMES = ("created_at", "last_active_at")
_TOKEN_DATETIMES = ("expires_at", "created_at", "revoked_at")


class MemoryStore:
    """In-memory backing store with a JSON snapshot for local runs and tests."""

    def __init__(self, fs_root: str = "/tmp/mentorauth") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.otps: Dict[str, OtpRecord] = {}
        self.devices: Dict[str, Device] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        # RLock so nested store calls from the same thread do not deadlock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def verify_connection(self) -> bool:
        return True

    # users
    def create_user(
        self,
        email: str,
        first_name: str,
        last_name: str,
        *,
        phone_number: Optional[str] = None,
        gender: Optional[str] = None,
        city: Optional[str] = None,
        state: Optional[str] = None,
        country: Optional[str] = None,
        postal_code: Optional[str] = None,
        role: str = "STUDENT",
        email_verified: bool = False,
        phone_verified: bool = False,
        verified_at: Optional[datetime] = None,
        credential: Optional[tuple[str, str]] = None,
    ) -> User:
        """Create a user, together with its ``(hash, algo)`` credential when given."""
        with self._data_lock:
            normalized = email.strip().lower()
            if any(existing.email == normalized for existing in self.users.values()):
                raise DuplicateRecord("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=normalized,
                first_name=first_name,
                last_name=last_name,
                phone_number=phone_number,
                gender=gender,
                city=city,
                state=state,
                country=country,
                postal_code=postal_code,
                role=role,
                email_verified=email_verified,
                phone_verified=phone_verified,
                email_verified_at=verified_at if email_verified else None,
                phone_verified_at=verified_at if phone_verified else None,
            )
            self.users[user.id] = user
            if credential is not None:
                self.credentials[user.id] = credential
            try:
                self._persist_state()
            except RuntimeError:
                self.users.pop(user.id, None)
                self.credentials.pop(user.id, None)
                raise
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == normalized), None)

    def exists_by_email(self, email: str) -> bool:
        return self.get_user_by_email(email) is not None

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = role
            self._persist_state()
            return user

    def mark_user_verified(self, user_id: str, at: datetime) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.email_verified = user.phone_verified = True
            user.email_verified_at = user.email_verified_at or at
            user.phone_verified_at = user.phone_verified_at or at
            user.updated_at = at
            self._persist_state()
            return user

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    def increment_failed_attempts(self, email: str, at: datetime) -> int:
        with self._data_lock:
            user = self.get_user_by_email(email)
            if not user:
                return 0
            user.failed_login_attempts += 1
            user.updated_at = at
            self._persist_state()
            return user.failed_login_attempts

    def reset_failed_attempts(self, email: str) -> None:
        with self._data_lock:
            user = self.get_user_by_email(email)
            if not user:
                return
            user.failed_login_attempts = 0
            user.account_locked_until = None
            self._persist_state()

    def lock_account(self, email: str, until: datetime) -> None:
        with self._data_lock:
            user = self.get_user_by_email(email)
            if not user:
                return
            user.account_locked_until = until
            self._persist_state()

    def record_login(self, email: str, ip: Optional[str], at: datetime) -> None:
        with self._data_lock:
            user = self.get_user_by_email(email)
            if not user:
                return
            user.last_login_at = at
            user.last_login_ip = ip
            user.updated_at = at
            self._persist_state()

    # one-time passwords
    def _otps_for(self, identifier: str, otp_type: OtpType) -> List[OtpRecord]:
        return sorted(
            (
                r
                for r in self.otps.values()
                if r.identifier == identifier and r.otp_type == otp_type
            ),
            key=lambda r: r.created_at,
            reverse=True,
        )

    def insert_otp_unless_recent(self, record: OtpRecord, since: datetime) -> bool:
        """Insert ``record`` unless a code for the same identifier/type was created after ``since``."""
        with self._data_lock:
            for existing in self._otps_for(record.identifier, record.otp_type):
                if existing.created_at > since:
                    return False
            self.otps[record.id] = record
            self._persist_state()
            return True

    def get_latest_unverified_otp(
        self, identifier: str, otp_type: OtpType
    ) -> Optional[OtpRecord]:
        with self._data_lock:
            return next(
                (r for r in self._otps_for(identifier, otp_type) if not r.verified), None
            )

    def get_latest_verified_otp(
        self, identifier: str, otp_type: OtpType, since: datetime
    ) -> Optional[OtpRecord]:
        with self._data_lock:
            return next(
                (
                    r
                    for r in self._otps_for(identifier, otp_type)
                    if r.verified and r.verified_at and r.verified_at >= since
                ),
                None,
            )

    @contextmanager
    def lock_latest_otp(
        self, identifier: str, otp_type: OtpType
    ) -> Iterator[Optional[OtpRecord]]:
        """Hold the store lock around the latest unverified code.

        Yields a working copy; changes are written back when the block exits
        normally and discarded when it raises.
        """
        with self._data_lock:
            current = self.get_latest_unverified_otp(identifier, otp_type)
            working = dataclasses.replace(current) if current else None
            yield working
            if working is not None:
                self.otps[working.id] = working
                self._persist_state()

    def delete_expired_otps(
        self, now: datetime, keep_verified_since: Optional[datetime] = None
    ) -> int:
        """Drop expired codes, except locked ones and those verified since ``keep_verified_since``."""
        with self._data_lock:
            doomed = [
                r.id
                for r in self.otps.values()
                if r.expires_at < now
                and not r.is_locked(now)
                and not (
                    keep_verified_since is not None
                    and r.verified
                    and r.verified_at is not None
                    and r.verified_at >= keep_verified_since
                )
            ]
            for otp_id in doomed:
                self.otps.pop(otp_id, None)
            if doomed:
                self._persist_state()
            return len(doomed)

    # devices
    def upsert_device(
        self,
        user_id: str,
        fingerprint: str,
        *,
        name: str,
        user_agent: Optional[str],
        ip_address: Optional[str],
        at: datetime,
    ) -> Device:
        with self._data_lock:
            device = self.get_device_by_fingerprint(user_id, fingerprint)
            if device is None:
                device = Device(
                    id=str(uuid.uuid4()),
                    user_id=user_id,
                    fingerprint=fingerprint,
                    name=name,
                    user_agent=user_agent,
                    ip_address=ip_address,
                    created_at=at,
                    last_active_at=at,
                )
                self.devices[device.id] = device
            else:
                device.is_active = True
                device.ip_address = ip_address
                device.user_agent = user_agent
                device.last_active_at = at
            self._persist_state()
            return device

    def get_device(self, device_id: str) -> Optional[Device]:
        with self._data_lock:
            return self.devices.get(device_id)

    def get_device_by_fingerprint(
        self, user_id: str, fingerprint: str
    ) -> Optional[Device]:
        with self._data_lock:
            return next(
                (
                    d
                    for d in self.devices.values()
                    if d.user_id == user_id and d.fingerprint == fingerprint
                ),
                None,
            )

    def list_active_devices(self, user_id: str) -> List[Device]:
        with self._data_lock:
            return sorted(
                (d for d in self.devices.values() if d.user_id == user_id and d.is_active),
                key=lambda d: d.last_active_at,
            )

    def count_active_devices(self, user_id: str) -> int:
        return len(self.list_active_devices(user_id))

    def set_device_active(self, device_id: str, active: bool) -> Optional[Device]:
        with self._data_lock:
            device = self.devices.get(device_id)
            if not device:
                return None
            device.is_active = active
            if not active:
                device.is_streaming = False
            self._persist_state()
            return device

    def touch_device(self, device_id: str, at: datetime) -> None:
        with self._data_lock:
            device = self.devices.get(device_id)
            if device:
                device.last_active_at = at
                self._persist_state()

    def start_streaming(
        self, user_id: str, device_id: str, max_streams: int
    ) -> List[Device]:
        """Claim a streaming slot; returns the devices blocking the claim (empty on success)."""
        with self._data_lock:
            blocking = [
                d
                for d in self.devices.values()
                if d.user_id == user_id
                and d.is_active
                and d.is_streaming
                and d.id != device_id
            ]
            if len(blocking) >= max_streams:
                return blocking
            device = self.devices.get(device_id)
            if device and not device.is_streaming:
                device.is_streaming = True
                self._persist_state()
            return []

    def stop_streaming(self, user_id: str, device_id: str) -> bool:
        with self._data_lock:
            device = self.devices.get(device_id)
            if not device or device.user_id != user_id or not device.is_streaming:
                return False
            device.is_streaming = False
            self._persist_state()
            return True

    def deactivate_devices_inactive_since(self, cutoff: datetime) -> List[str]:
        with self._data_lock:
            stale = [
                d for d in self.devices.values() if d.is_active and d.last_active_at < cutoff
            ]
            for device in stale:
                device.is_active = False
                device.is_streaming = False
            if stale:
                self._persist_state()
            return [d.id for d in stale]

    # refresh tokens
    def _revoke(self, token: RefreshToken, reason: str, at: datetime) -> None:
        token.revoked = True
        token.revoked_at = at
        token.revoked_reason = reason

    def replace_device_refresh_token(self, token: RefreshToken) -> RefreshToken:
        """Revoke whatever is active for the device and store ``token`` as its only live token."""
        with self._data_lock:
            for existing in self.refresh_tokens.values():
                if existing.device_id == token.device_id and not existing.revoked:
                    self._revoke(existing, "replaced", token.created_at)
            self.refresh_tokens[token.token] = token
            self._persist_state()
            return token

    def get_refresh_token(self, value: str) -> Optional[RefreshToken]:
        with self._data_lock:
            return self.refresh_tokens.get(value)

    def revoke_refresh_token_if_active(
        self, value: str, reason: str, at: datetime
    ) -> bool:
        with self._data_lock:
            token = self.refresh_tokens.get(value)
            if not token or token.revoked:
                return False
            self._revoke(token, reason, at)
            self._persist_state()
            return True

    def revoke_device_refresh_tokens(
        self, device_id: str, reason: str, at: datetime
    ) -> int:
        with self._data_lock:
            targets = [
                t
                for t in self.refresh_tokens.values()
                if t.device_id == device_id and not t.revoked
            ]
            for token in targets:
                self._revoke(token, reason, at)
            if targets:
                self._persist_state()
            return len(targets)

    def revoke_user_refresh_tokens(
        self, user_id: str, reason: str, at: datetime
    ) -> int:
        with self._data_lock:
            targets = [
                t
                for t in self.refresh_tokens.values()
                if t.user_id == user_id and not t.revoked
            ]
            for token in targets:
                self._revoke(token, reason, at)
            if targets:
                self._persist_state()
            return len(targets)

    def delete_expired_or_revoked_refresh_tokens(self, now: datetime) -> int:
        with self._data_lock:
            doomed = [
                value
                for value, t in self.refresh_tokens.items()
                if t.revoked or t.expires_at < now
            ]
            for value in doomed:
                self.refresh_tokens.pop(value, None)
            if doomed:
                self._persist_state()
            return len(doomed)

    # persistence
    def _dump(self, obj: Any, datetime_fields: tuple[str, ...]) -> dict:
        data = dataclasses.asdict(obj)
        for name in datetime_fields:
            data[name] = self._serialize_datetime(data[name])
        return data

    def _restore(self, cls: type, data: dict, datetime_fields: tuple[str, ...]) -> Any:
        values = dict(data)
        for name in datetime_fields:
            values[name] = self._deserialize_datetime(values.get(name))
        return cls(**values)

    def _persist_state(self) -> None:
        state = {
            "users": [self._dump(u, _USER_DATETIMES) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "otps": [
                {**self._dump(r, _OTP_DATETIMES), "otp_type": r.otp_type.value}
                for r in self.otps.values()
            ],
            "devices": [self._dump(d, _DEVICE_DATETIMES) for d in self.devices.values()],
            "refresh_tokens": [
                self._dump(t, _TOKEN_DATETIMES) for t in self.refresh_tokens.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {
            u["id"]: self._restore(User, u, _USER_DATETIMES) for u in data.get("users", [])
        }
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.otps = {}
        for raw in data.get("otps", []):
            record = self._restore(OtpRecord, raw, _OTP_DATETIMES)
            record.otp_type = OtpType(record.otp_type)
            self.otps[record.id] = record
        self.devices = {
            d["id"]: self._restore(Device, d, _DEVICE_DATETIMES)
            for d in data.get("devices", [])
        }
        self.refresh_tokens = {
            t["token"]: self._restore(RefreshToken, t, _TOKEN_DATETIMES)
            for t in data.get("refresh_tokens", [])
        }
        self.logger.info(
            "memory_store_state_loaded",
            users=len(self.users),
            devices=len(self.devices),
            path=str(path),
        )
        return True
