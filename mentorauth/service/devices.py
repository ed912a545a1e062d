from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional

from mentorauth.config import Settings
from mentorauth.logging import get_logger, mask_ip
from mentorauth.service.errors import AlreadyStreamingError, NotFoundError
from mentorauth.storage.models import Device, User

logger = get_logger(__name__)

_USER_AGENT_DISPLAY_LIMIT = 50


@dataclass(frozen=True)
class RequestMeta:
    """Client details taken from an incoming request."""

    user_agent: Optional[str] = None
    client_ip: Optional[str] = None
    device_hint: Optional[str] = None

    @classmethod
    def from_headers(
        cls,
        headers: Any,
        remote_addr: Optional[str],
    ) -> "RequestMeta":
        forwarded = headers.get("x-forwarded-for")
        client_ip = forwarded.split(",")[0].strip() if forwarded else remote_addr
        return cls(
            user_agent=headers.get("user-agent"),
            client_ip=client_ip or None,
            device_hint=headers.get("x-device-id") or None,
        )


@dataclass
class DeviceLimitResult:
    within_limit: bool
    active_devices: int
    max_allowed: int
    message: str
    candidates: List[Device] = field(default_factory=list)


def compute_fingerprint(meta: RequestMeta) -> str:
    """Stable hash of (user agent, client ip), plus the client device id when sent."""
    material = f"{meta.user_agent or 'unknown'}|{meta.client_ip}"
    if meta.device_hint:
        material = f"{material}|{meta.device_hint}"
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


def describe_user_agent(user_agent: Optional[str]) -> str:
    if not user_agent:
        return "Unknown Device"

    # Edge and Opera also advertise Chrome, and Chrome advertises Safari
    browser = "Unknown Browser"
    if "Edg" in user_agent:
        browser = "Edge"
    elif "Opera" in user_agent or "OPR" in user_agent:
        browser = "Opera"
    elif "Chrome" in user_agent:
        browser = "Chrome"
    elif "Firefox" in user_agent:
        browser = "Firefox"
    elif "Safari" in user_agent:
        browser = "Safari"

    os_name = "Unknown OS"
    if "Windows NT 10.0" in user_agent:
        os_name = "Windows 10"
    elif "Android" in user_agent:
        os_name = "Android"
    elif "iPhone" in user_agent or "iPad" in user_agent:
        os_name = "iOS"
    elif "Mac OS X" in user_agent:
        os_name = "macOS"
    elif "Linux" in user_agent:
        os_name = "Linux"

    return f"{browser} on {os_name}"


def truncate_user_agent(user_agent: Optional[str]) -> Optional[str]:
    if user_agent and len(user_agent) > _USER_AGENT_DISPLAY_LIMIT:
        return user_agent[: _USER_AGENT_DISPLAY_LIMIT - 3] + "..."
    return user_agent


class DeviceService:
    """Tracks the devices a user signs in from and enforces session/streaming caps."""

    def __init__(self, store, settings: Settings) -> None:
        self.store = store
        self.settings = settings

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def register_device(self, user: User, meta: RequestMeta) -> Device:
        fingerprint = compute_fingerprint(meta)
        device = self.store.upsert_device(
            user.id,
            fingerprint,
            name=describe_user_agent(meta.user_agent),
            user_agent=meta.user_agent,
            ip_address=meta.client_ip,
            at=self._now(),
        )
        active = self.store.count_active_devices(user.id)
        if active > self.settings.max_sessions_per_user:
            logger.warning(
                "device_limit_exceeded",
                user_id=user.id,
                active_devices=active,
                max_allowed=self.settings.max_sessions_per_user,
            )
        logger.info(
            "device_registered",
            user_id=user.id,
            device_id=device.id,
            device_name=device.name,
            ip=mask_ip(device.ip_address),
        )
        return device

    def current_device(self, user_id: str, meta: RequestMeta) -> Optional[Device]:
        return self.store.get_device_by_fingerprint(user_id, compute_fingerprint(meta))

    def _owned_device(self, user_id: str, device_id: str) -> Device:
        device = self.store.get_device(device_id)
        if device is None or device.user_id != user_id:
            if device is not None:
                logger.warning(
                    "device_access_denied", user_id=user_id, device_id=device_id
                )
            raise NotFoundError("Device not found", detail={"device_id": device_id})
        return device

    def list_devices(self, user_id: str, meta: RequestMeta) -> List[dict]:
        fingerprint = compute_fingerprint(meta)
        return [
            {
                "device_id": device.id,
                "device_name": device.name,
                "ip_address": mask_ip(device.ip_address),
                "last_active_at": device.last_active_at,
                "first_seen_at": device.created_at,
                "is_streaming": device.is_streaming,
                "user_agent": truncate_user_agent(device.user_agent),
                "is_current_device": device.fingerprint == fingerprint,
            }
            for device in self.store.list_active_devices(user_id)
        ]

    def revoke_device(self, user_id: str, device_id: str) -> Device:
        device = self._owned_device(user_id, device_id)
        self.store.set_device_active(device.id, False)
        revoked = self.store.revoke_device_refresh_tokens(
            device.id, "device_revoked", self._now()
        )
        logger.info(
            "device_revoked", user_id=user_id, device_id=device.id, tokens_revoked=revoked
        )
        return device

    def handle_device_limit(
        self, user_id: str, current_device_id: Optional[str] = None
    ) -> DeviceLimitResult:
        limit = self.settings.max_sessions_per_user
        devices = self.store.list_active_devices(user_id)
        active = len(devices)
        if active <= limit:
            return DeviceLimitResult(
                within_limit=True,
                active_devices=active,
                max_allowed=limit,
                message="Within device limit",
            )
        devices.sort(key=lambda d: d.last_active_at)
        candidates = [d for d in devices if d.id != current_device_id][
            : active - limit + 1
        ]
        return DeviceLimitResult(
            within_limit=False,
            active_devices=active,
            max_allowed=limit,
            message=f"You have {active} active devices. Maximum allowed is {limit}.",
            candidates=candidates,
        )

    def disconnect_device(self, user_id: str, device_id: str) -> DeviceLimitResult:
        self.revoke_device(user_id, device_id)
        limit = self.settings.max_sessions_per_user
        active = self.store.count_active_devices(user_id)
        if active <= limit:
            message = f"Device disconnected. You now have {active} active device(s)."
        else:
            message = (
                f"Device disconnected. However, you still have {active} active devices. "
                f"Maximum allowed is {limit}. Please disconnect another device."
            )
        return DeviceLimitResult(
            within_limit=active <= limit,
            active_devices=active,
            max_allowed=limit,
            message=message,
        )

    def start_streaming(self, user_id: str, device_id: str) -> Device:
        device = self._owned_device(user_id, device_id)
        if not device.is_active:
            raise NotFoundError("Device not found", detail={"device_id": device_id})
        blocking = self.store.start_streaming(
            user_id, device.id, self.settings.max_streaming_sessions
        )
        if blocking:
            streaming_on = ", ".join(
                f"{d.name} ({mask_ip(d.ip_address)})" for d in blocking
            )
            logger.info(
                "streaming_blocked",
                user_id=user_id,
                device_id=device.id,
                blocking=[d.id for d in blocking],
            )
            raise AlreadyStreamingError(
                f"Streaming already active on: {streaming_on}. Stop streaming there first.",
                detail={"device_ids": [d.id for d in blocking]},
            )
        logger.info("streaming_started", user_id=user_id, device_id=device.id)
        return self.store.get_device(device.id)

    def stop_streaming(self, user_id: str, device_id: str) -> bool:
        self._owned_device(user_id, device_id)
        stopped = self.store.stop_streaming(user_id, device_id)
        logger.info(
            "streaming_stopped", user_id=user_id, device_id=device_id, changed=stopped
        )
        return stopped

    def cleanup_inactive_devices(self) -> int:
        cutoff = self._now() - timedelta(days=self.settings.device_inactivity_days)
        stale = self.store.deactivate_devices_inactive_since(cutoff)
        now = self._now()
        for device_id in stale:
            self.store.revoke_device_refresh_tokens(device_id, "device_inactive", now)
        logger.info("inactive_devices_cleaned", count=len(stale))
        return len(stale)
