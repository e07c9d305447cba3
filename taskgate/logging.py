from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

SERVICE_NAME = "taskgate"

# Set by the HTTP middleware from X-Request-ID, or generated
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Never logged in any form
_SECRET_KEYS = ("password", "secret", "token", "authorization")
# Reduced to first character and domain
_EMAIL_KEYS = ("email",)

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh uuid4) to the current context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_request_context(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    event_dict.setdefault("service", SERVICE_NAME)
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def mask_email(value: str) -> str:
    local, sep, domain = value.partition("@")
    if not sep:
        return "***"
    return f"{local[:1]}***@{domain}"


def _redact_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Drop secrets outright and mask email addresses.

    ``login_failed`` and ``account_locked`` carry the email; tokens and
    passwords must not appear even partially.
    """
    for key in list(event_dict.keys()):
        lower_key = key.lower()
        value = event_dict[key]
        if any(secret in lower_key for secret in _SECRET_KEYS):
            if value is not None:
                event_dict[key] = "[redacted]"
        elif any(pii in lower_key for pii in _EMAIL_KEYS) and isinstance(value, str):
            event_dict[key] = mask_email(value)
    return event_dict


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def configure_logging(level: str = "INFO", *, json_output: bool = True) -> None:
    """(Re)configure structlog; JSON lines by default, console output for local runs."""
    if json_output:
        tail = [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        tail = [structlog.dev.ConsoleRenderer(colors=True)]
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            _add_request_context,
            _redact_credentials,
            *tail,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            _LEVELS.get(level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=not _env_flag("LOG_DEV_MODE", False) and _env_flag("LOG_JSON", True),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
