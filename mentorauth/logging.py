from __future__ import annotations

import ipaddress
import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Per-request correlation id, set by the HTTP middleware
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh uuid4) to the current context and return it."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def mask_identifier(value: Optional[str]) -> str:
    """Mask an email address or phone number for logs and API responses.

    ``jane.doe@example.com`` becomes ``ja***@example.com`` and
    ``+15551234567`` becomes ``+1******4567``. Masking an already
    masked value returns it unchanged.
    """
    if not value:
        return ""
    if "@" in value:
        local, _, domain = value.partition("@")
        if len(local) <= 2:
            return f"{local[:1]}***@{domain}"
        return f"{local[:2]}***@{domain}"
    if len(value) <= 6:
        return "***"
    return value[:2] + "*" * (len(value) - 6) + value[-4:]


def mask_ip(ip: Optional[str]) -> str:
    """Hide the last octet of an IPv4 address; other formats are hidden fully."""
    if ip:
        try:
            parsed = ipaddress.ip_address(ip)
        except ValueError:
            parsed = None
        if isinstance(parsed, ipaddress.IPv4Address):
            a, b, c, _ = ip.split(".")
            return f"{a}.{b}.{c}.***"
    return "***.***.***.***"


def mask_secret(value: Optional[str], *, reveal: bool = False) -> str:
    """Return ``value`` only when ``reveal`` is set (development), else ``***``."""
    if reveal and value:
        return value
    return "***"


_CREDENTIAL_MARKERS = ("password", "secret", "token", "authorization", "api_key")
_ONE_TIME_CODE_KEYS = frozenset({"otp", "code"})
_CONTACT_KEYS = frozenset({"email", "phone", "phone_number", "identifier", "to"})


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def _redact(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Scrub string values whose key names a credential, a one-time code or a contact."""
    for key, value in list(event_dict.items()):
        if key == "event" or not isinstance(value, str):
            continue
        lowered = key.lower()
        if lowered in _ONE_TIME_CODE_KEYS:
            event_dict[key] = "***"
        elif lowered in _CONTACT_KEYS:
            event_dict[key] = mask_identifier(value)
        elif any(marker in lowered for marker in _CREDENTIAL_MARKERS):
            if len(value) > 4 and value != "***":
                # first/last 2 chars stay for correlating tokens across entries
                event_dict[key] = value[:2] + "***" + value[-2:]
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def configure_logging(
    level: str = "INFO", *, json_output: bool = True, console: bool = False
) -> None:
    """Install the structlog pipeline: JSON lines by default, coloured console when asked."""
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if console or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    console=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
