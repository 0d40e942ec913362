from __future__ import annotations

import logging
import os
import re
import uuid
from typing import Any, Dict, Optional

import structlog

_TRUTHY = {"1", "true", "yes", "on"}

# Single-use tokens travel in verification and reset links
_TOKEN_PARAM = re.compile(r"(?i)\b(token=)[^&\s\"'<>]+")

_EMAIL_KEYS = ("email", "to")
_SECRET_KEYS = ("password", "secret", "authorization", "cookie")


def bind_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Start a fresh request context carrying ``correlation_id``.

    A new id is generated when the caller supplies none. Every event logged
    from the same context afterwards carries it.
    """
    cid = correlation_id or str(uuid.uuid4())
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(correlation_id=cid)
    return cid


def get_correlation_id() -> Optional[str]:
    return structlog.contextvars.get_contextvars().get("correlation_id")


def redact_email(email: Optional[str]) -> str:
    """Shorten an address to its first two characters and domain."""
    if not email or "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


def scrub_tokens(text: str) -> str:
    return _TOKEN_PARAM.sub(r"\1***", text)


def _redact_value(key: str, value: str) -> str:
    lower_key = key.lower()
    if any(part in lower_key for part in _SECRET_KEYS):
        return "***"
    if lower_key in _EMAIL_KEYS or "email" in lower_key:
        # Callers usually pass redact_email() output already
        return value if "***@" in value else redact_email(value)
    if "token" in lower_key:
        return value[:2] + "***" if len(value) > 4 else "***"
    return scrub_tokens(value)


def _redact_pii(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Mask credential material and addresses before anything is rendered."""
    for key, value in list(event_dict.items()):
        if key == "event" or not isinstance(value, str):
            continue
        event_dict[key] = _redact_value(key, value)
    return event_dict


def configure_logging(level: str = "INFO", json_output: bool = True) -> None:
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

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
    level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=os.getenv("LOG_JSON", "true").lower() in _TRUTHY
    and os.getenv("LOG_DEV_MODE", "false").lower() not in _TRUTHY,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
