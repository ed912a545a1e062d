from __future__ import annotations

import concurrent.futures
import re
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Protocol

import httpx

from mentorauth.logging import get_logger, mask_identifier, mask_secret
from mentorauth.service.email import EmailService

logger = get_logger(__name__)

_PHONE_PATTERN = re.compile(r"^\+?[0-9]{10,15}$")


class ChannelKind(str, Enum):
    EMAIL = "EMAIL"
    SMS = "SMS"


@dataclass(frozen=True)
class Notification:
    template: str
    data: Dict[str, Any] = field(default_factory=dict)


class Channel(Protocol):
    def deliver(self, destination: str, notification: Notification) -> bool: ...


class SmsService:
    """Sends text messages through a Twilio-compatible REST endpoint."""

    def __init__(
        self,
        *,
        api_url: Optional[str] = None,
        account_sid: Optional[str] = None,
        auth_token: Optional[str] = None,
        from_number: Optional[str] = None,
        timeout: float = 10.0,
        reveal_codes: bool = False,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.api_url = (api_url or "").rstrip("/")
        self.account_sid = account_sid
        self.from_number = from_number
        self.reveal_codes = reveal_codes
        self._client = httpx.Client(
            timeout=timeout,
            auth=(account_sid, auth_token) if account_sid and auth_token else None,
            transport=transport,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.api_url and self.account_sid and self._client.auth and self.from_number)

    @staticmethod
    def normalize_number(phone: str) -> Optional[str]:
        """Return ``+<digits>`` for a plausible number, else None."""
        compact = re.sub(r"[\s\-()]", "", phone or "")
        if not _PHONE_PATTERN.match(compact):
            return None
        return "+" + compact.lstrip("+")

    def _messages_url(self) -> str:
        return f"{self.api_url}/2010-04-01/Accounts/{self.account_sid}/Messages.json"

    def send(self, to_number: str, body: str) -> bool:
        normalized = self.normalize_number(to_number)
        if normalized is None:
            logger.warning("sms_invalid_number", to=mask_identifier(to_number))
            return False
        if not self.is_configured:
            logger.info("sms_dev_mode", to=mask_identifier(normalized), length=len(body))
            return True
        try:
            response = self._client.post(
                self._messages_url(),
                data={"To": normalized, "From": self.from_number, "Body": body},
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "sms_gateway_rejected",
                to=mask_identifier(normalized),
                status_code=exc.response.status_code,
                error=exc.response.text[:200],
            )
            return False
        except httpx.HTTPError as exc:
            logger.error(
                "sms_send_failed",
                to=mask_identifier(normalized),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        try:
            sid = response.json().get("sid")
        except ValueError:
            sid = None
        logger.info("sms_sent", to=mask_identifier(normalized), sid=sid)
        return True

    def send_otp(self, to_number: str, code: str, expiry_minutes: int) -> bool:
        body = (
            f"Your verification code is: {code}. Valid for {expiry_minutes} minutes. "
            "Do not share this code with anyone."
        )
        logger.debug(
            "sms_otp_prepared",
            to=mask_identifier(to_number),
            preview=mask_secret(code, reveal=self.reveal_codes),
        )
        return self.send(to_number, body)

    def close(self) -> None:
        self._client.close()


class EmailChannel:
    def __init__(self, email: EmailService) -> None:
        self.email = email

    def deliver(self, destination: str, notification: Notification) -> bool:
        data = notification.data
        if notification.template == "otp":
            return self.email.send_otp(destination, data["code"], data["expiry_minutes"])
        if notification.template == "welcome":
            return self.email.send_welcome(destination, data["name"], data["role"])
        raise ValueError(f"unknown email template: {notification.template}")


class SmsChannel:
    def __init__(self, sms: SmsService) -> None:
        self.sms = sms

    def deliver(self, destination: str, notification: Notification) -> bool:
        data = notification.data
        if notification.template == "otp":
            return self.sms.send_otp(destination, data["code"], data["expiry_minutes"])
        if notification.template == "welcome":
            return self.sms.send(destination, f"Welcome, {data['name']}! Your account is ready.")
        raise ValueError(f"unknown sms template: {notification.template}")


class Notifier:
    """Fire-and-forget delivery of notifications on a small worker pool.

    Callers never wait on delivery and never see its failures; those are
    logged from the worker. ``flush`` exists for tests and graceful shutdown.
    """

    def __init__(self, channels: Dict[ChannelKind, Channel], *, max_workers: int = 4) -> None:
        self._channels: Dict[ChannelKind, Channel] = dict(channels)
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=max(1, max_workers), thread_name_prefix="notify"
        )
        self._executor_shutdown = False
        self._pending: set[concurrent.futures.Future] = set()
        self._pending_lock = threading.Lock()

    def register_channel(self, kind: ChannelKind, channel: Channel) -> None:
        self._channels[ChannelKind(kind)] = channel

    def channel(self, kind: ChannelKind) -> Channel:
        return self._channels[ChannelKind(kind)]

    def _on_done(
        self,
        kind: ChannelKind,
        destination: str,
        notification: Notification,
        future: concurrent.futures.Future,
    ) -> None:
        with self._pending_lock:
            self._pending.discard(future)
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.error(
                "notification_failed",
                channel=kind.value,
                template=notification.template,
                to=mask_identifier(destination),
                error_type=type(exc).__name__,
                error=str(exc),
            )
        elif not future.result():
            logger.warning(
                "notification_not_delivered",
                channel=kind.value,
                template=notification.template,
                to=mask_identifier(destination),
            )

    def dispatch(
        self, kind: ChannelKind, destination: str, notification: Notification
    ) -> Optional[concurrent.futures.Future]:
        kind = ChannelKind(kind)
        channel = self._channels.get(kind)
        if channel is None:
            logger.warning("notification_channel_missing", channel=kind.value)
            return None
        if self._executor_shutdown:
            logger.warning(
                "notification_dropped",
                channel=kind.value,
                template=notification.template,
                reason="executor_shutdown",
            )
            return None
        future = self._executor.submit(channel.deliver, destination, notification)
        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(
            lambda f: self._on_done(kind, destination, notification, f)
        )
        return future

    def send_otp(
        self, kind: ChannelKind, destination: str, code: str, expiry_minutes: int
    ) -> Optional[concurrent.futures.Future]:
        return self.dispatch(
            kind,
            destination,
            Notification("otp", {"code": code, "expiry_minutes": expiry_minutes}),
        )

    def send_welcome(
        self, destination: str, name: str, role: str
    ) -> Optional[concurrent.futures.Future]:
        return self.dispatch(
            ChannelKind.EMAIL,
            destination,
            Notification("welcome", {"name": name, "role": role}),
        )

    def flush(self, timeout: Optional[float] = 5.0) -> bool:
        """Wait for in-flight deliveries; True when none are left."""
        with self._pending_lock:
            pending = list(self._pending)
        if not pending:
            return True
        _, not_done = concurrent.futures.wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self, wait: bool = True) -> None:
        """Stop the worker pool. Call during app shutdown."""
        if self._executor_shutdown:
            return
        self._executor_shutdown = True
        self._executor.shutdown(wait=wait, cancel_futures=not wait)
        for channel in self._channels.values():
            sms = getattr(channel, "sms", None)
            if isinstance(sms, SmsService):
                sms.close()
        logger.info("notifier_shutdown", wait=wait)
