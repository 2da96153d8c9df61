from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, List, Optional

import structlog

# Request id of the HTTP exchange currently being served; bound by middleware
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_TRUTHY = {"1", "true", "yes", "on"}

# Matched as a key suffix so counters such as ``tokens_used_today`` stay readable
_SECRET_KEYS = ("password", "secret", "api_key", "authorization", "access_token")


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh UUID) to the current context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def _mask(value: str) -> str:
    return f"{value[:2]}***{value[-2:]}"


def _redact_secrets(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    for key, value in list(event_dict.items()):
        if not isinstance(value, str) or len(value) <= 4:
            continue
        if key.lower().endswith(_SECRET_KEYS):
            event_dict[key] = _mask(value)
    return event_dict


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in _TRUTHY


def configure_logging(
    level: Optional[str] = None,
    *,
    json_output: Optional[bool] = None,
    dev_mode: Optional[bool] = None,
) -> None:
    """Install the structlog processor chain.

    Unset arguments come from ``LOG_LEVEL``, ``LOG_JSON`` and
    ``LOG_DEV_MODE``. Dev mode or ``LOG_JSON=false`` selects the console
    renderer; otherwise one JSON object is printed per event.
    """
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if json_output is None:
        json_output = _env_flag("LOG_JSON", True)
    if dev_mode is None:
        dev_mode = _env_flag("LOG_DEV_MODE", False)

    processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if dev_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.extend([structlog.processors.format_exc_info, structlog.processors.JSONRenderer()])

    structlog.configure(
        processors=processors,
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


# Host paths, credentials and tracebacks must not reach a peer through an
# error frame or error body
_SENSITIVE_ERROR_PATTERNS = [
    re.compile(pattern)
    for pattern in (
        r"(?i)/(?:home|var|etc|usr|opt|tmp|srv)/[^\s]+",
        r"(?i)[a-z]:\\[^\s]+",
        r"(?i)(password|secret|token|key|credential|api.?key)\s*[:=]\s*[^\s]+",
        r"(?i)\bsk-[a-z0-9_-]{8,}",
        r"(?i)traceback\s*\(most recent call last\)",
        r"(?i)https?://[^\s]*@[^\s]+",
    )
]

MAX_ERROR_MESSAGE_LENGTH = 500


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Return ``error`` with sensitive fragments replaced, capped in length."""
    if not error or not isinstance(error, str):
        return "An error occurred"
    for pattern in _SENSITIVE_ERROR_PATTERNS:
        error = pattern.sub(replacement, error)
    if len(error) > MAX_ERROR_MESSAGE_LENGTH:
        error = error[: MAX_ERROR_MESSAGE_LENGTH - 3] + "..."
    return error
