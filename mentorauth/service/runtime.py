from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from mentorauth.config import get_settings, reset_settings_cache
from mentorauth.logging import get_logger
from mentorauth.service.auth import AuthService
from mentorauth.service.devices import DeviceService
from mentorauth.service.email import EmailService
from mentorauth.service.notifications import (
    ChannelKind,
    EmailChannel,
    Notifier,
    SmsChannel,
    SmsService,
)
from mentorauth.service.otp import OtpService
from mentorauth.service.tokens import TokenService
from mentorauth.storage.memory import MemoryStore
from mentorauth.storage.postgres import PostgresStore
from mentorauth.storage.redis_cache import RedisCache, SyncRedisCache, describe_cache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        if parsed.username:
            netloc = f"{parsed.username}:***@{netloc}"
        else:
            netloc = f":***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            environment=self.settings.environment.value,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url, fs_root=self.settings.shared_fs_root
                )
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[Union[RedisCache, SyncRedisCache]] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client under tests avoids binding to a throwaway event loop
                cache = (
                    SyncRedisCache(self.settings.redis_url)
                    if self.settings.test_mode
                    else RedisCache(self.settings.redis_url)
                )
                cache.verify_connection()
                self.cache = cache
            except (RedisError, OSError) as exc:
                redis_error = exc

        if self.cache is None:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for rate limits; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=f"Running without Redis under {fallback_mode}; rate limits are in-process only.",
                mode=fallback_mode,
            )

        reveal_codes = self.settings.is_development or self.settings.test_mode
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
        )
        self.sms = SmsService(
            api_url=self.settings.sms_api_url,
            account_sid=self.settings.sms_account_sid,
            auth_token=self.settings.sms_auth_token,
            from_number=self.settings.sms_from_number,
            timeout=self.settings.sms_timeout_seconds,
            reveal_codes=reveal_codes,
        )
        self.notifier = Notifier(
            {
                ChannelKind.EMAIL: EmailChannel(self.email),
                ChannelKind.SMS: SmsChannel(self.sms),
            },
            max_workers=self.settings.notification_workers,
        )

        self.otp = OtpService(self.store, self.settings)
        self.devices = DeviceService(self.store, self.settings)
        self.tokens = TokenService(self.store, self.settings)
        self.auth = AuthService(
            self.store,
            self.settings,
            otp=self.otp,
            devices=self.devices,
            tokens=self.tokens,
            notifier=self.notifier,
        )

        self._local_rate_limits: Dict[str, Tuple[float, datetime]] = {}
        self._local_rate_limit_lock = asyncio.Lock()

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            rate_limit_backend=describe_cache(self.cache),
            email_configured=self.email.is_configured,
            sms_configured=self.sms.is_configured,
        )

    def close(self) -> None:
        self.notifier.shutdown(wait=True)
        close_store = getattr(self.store, "close", None)
        if callable(close_store):
            close_store()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the unlocked read is the fast path once the
    runtime exists.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def _close_cache(cache: Union[RedisCache, SyncRedisCache]) -> None:
    if isinstance(cache, SyncRedisCache):
        cache.client.close()
        return
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        asyncio.run(cache.close())
    else:
        loop.create_task(cache.close())


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.notifier.shutdown(wait=True)
            if runtime.cache is not None:
                try:
                    _close_cache(runtime.cache)
                except (RedisError, OSError) as exc:
                    logger.warning("runtime_cache_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Token-bucket rate limit backed by Redis, or in-process when Redis is absent.

    Returns ``allowed``, or ``(allowed, remaining, reset_seconds)`` when
    ``return_remaining`` is set.
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )
    now = datetime.now(timezone.utc)
    refill_rate = float(limit) / float(window_seconds)
    async with runtime._local_rate_limit_lock:
        tokens, last_ts = runtime._local_rate_limits.get(key, (float(limit), now))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        runtime._local_rate_limits[key] = (tokens, now)
        reset_seconds = int((cost - tokens) / refill_rate) + 1 if not allowed else 0
        remaining = int(tokens)
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed
