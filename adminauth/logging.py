"""Structured logging for the admin auth core.

Modules obtain loggers through :func:`get_logger` and log snake_case event
names with keyword context. Output is JSON lines unless ``LOG_DEV_MODE`` is
set or ``LOG_JSON`` is turned off.
"""

from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, List, Optional

import structlog

EventDict = Dict[str, Any]

# Per-request identifier, distinct from the token correlation id
request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

_TRUTHY = {"1", "true", "yes", "on"}

# substrings of keys whose values never reach the log verbatim
_PII_KEYS = (
    "password",
    "secret",
    "token",
    "totp_code",
    "backup_code",
    "authorization",
    "email",
    "login_key",
    "recipient",
)


def get_request_id() -> Optional[str]:
    return request_id_var.get()


def set_request_id(request_id: Optional[str] = None) -> str:
    """Bind ``request_id`` (or a fresh uuid4) to the current context and return it."""
    rid = request_id or str(uuid.uuid4())
    request_id_var.set(rid)
    return rid


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in _TRUTHY


def _add_request_id(_logger: Any, _method: str, event_dict: EventDict) -> EventDict:
    rid = request_id_var.get()
    if rid:
        event_dict.setdefault("request_id", rid)
    return event_dict


def _mask(value: str) -> str:
    if len(value) <= 4:
        return "***"
    # ends stay visible so operators can still correlate entries
    return f"{value[:2]}***{value[-2:]}"


def _redact_pii(_logger: Any, _method: str, event_dict: EventDict) -> EventDict:
    for key, value in event_dict.items():
        if key == "event" or not isinstance(value, str):
            continue
        if any(marker in key.lower() for marker in _PII_KEYS):
            event_dict[key] = _mask(value)
    return event_dict


def _render_chain(console: bool) -> List[Any]:
    if console:
        return [structlog.dev.ConsoleRenderer(colors=True)]
    return [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]


def configure_logging(level: Optional[str] = None, *, console: Optional[bool] = None) -> None:
    """(Re)configure structlog.

    Args:
        level: Minimum level name; defaults to ``LOG_LEVEL`` or INFO
        console: Human-readable output; defaults to ``LOG_DEV_MODE`` or a
            disabled ``LOG_JSON``
    """
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if console is None:
        console = _env_flag("LOG_DEV_MODE", False) or not _env_flag("LOG_JSON", True)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            _add_request_id,
            _redact_pii,
            structlog.processors.StackInfoRenderer(),
            *_render_chain(console),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level_name, logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
