from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

SERVICE_NAME = "ciamflow"

# Bound per request by the HTTP middleware and echoed as X-Request-ID
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh uuid4) to the current context and return it."""
    value = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(value)
    return value


def _bind_request_fields(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    event_dict.setdefault("service", SERVICE_NAME)
    correlation_id = correlation_id_var.get()
    if correlation_id:
        event_dict.setdefault("correlation_id", correlation_id)
    return event_dict


# Substrings marking credential material in event keys
_CREDENTIAL_MARKERS = (
    "password",
    "secret",
    "token",
    "code",
    "fingerprint",
    "authorization",
    "cookie",
)
# Contain a marker but carry no credential; any *_id key is an identifier too
_SAFE_KEYS = frozenset({"token_id", "token_type", "error_code", "status_code"})


def _mask(value: str) -> str:
    if len(value) <= 4:
        return "***"
    return f"{value[:2]}***{value[-2:]}"


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credential-bearing string values before any renderer sees them."""
    for key, value in list(event_dict.items()):
        if not isinstance(value, str):
            continue
        name = key.lower()
        if name in _SAFE_KEYS or name.endswith("_id"):
            continue
        if any(marker in name for marker in _CREDENTIAL_MARKERS):
            event_dict[key] = _mask(value)
    return event_dict


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def configure_logging(
    level: str = "INFO",
    *,
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """(Re)configure structlog for the process.

    JSON lines in production; coloured console output when
    ``development_mode`` is set or JSON is disabled.
    """
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _bind_request_fields,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.extend(
            [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        )

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
    json_output=_env_flag("LOG_JSON", True),
    development_mode=_env_flag("LOG_DEV_MODE", False),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


# Fragments that must never reach an API caller
_INTERNAL_DETAIL = tuple(
    re.compile(pattern)
    for pattern in (
        r"(?i)\b(select|insert|update|delete)\b.{0,60}",
        r"(?i)\b(from|where|join)\s+\w+",
        r"(?i)(psycopg|sqlstate|database)\s*(error)?[:\s]\S*",
        r"(?i)connection\s+.*\s+(failed|refused|timeout)",
        r"(?i)/(?:home|var|etc|usr|opt|tmp|srv)/\S+",
        r"(?i)(password|secret|token|key|code)\s*[:=]\s*\S+",
        r"(?i)traceback\s*\(most recent call last\)",
    )
)
_MAX_MESSAGE_LENGTH = 300


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Strip SQL, filesystem paths, credentials and tracebacks from ``error``."""
    if not error or not isinstance(error, str):
        return "An error occurred"
    for pattern in _INTERNAL_DETAIL:
        error = pattern.sub(replacement, error)
    if len(error) > _MAX_MESSAGE_LENGTH:
        error = error[: _MAX_MESSAGE_LENGTH - 3] + "..."
    return error


__all__ = [
    "configure_logging",
    "get_correlation_id",
    "get_logger",
    "sanitize_error_message",
    "set_correlation_id",
]
