from __future__ import annotations

import hashlib
import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Per-request correlation ID, bound by the API middleware
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID for request tracing."""
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set or generate a correlation ID for the current request context."""
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


# Fields that carry bearer material are replaced by a fingerprint; the
# fingerprint matches the ``session_ref`` the session layer logs.
_CREDENTIAL_KEYS = frozenset(
    {
        "password",
        "secret",
        "jwt_secret",
        "authorization",
        "access_token",
        "refresh_token",
        "token",
        "session_id",
    }
)
_EMAIL_KEYS = frozenset({"email", "user_email"})

_JWT_RE = re.compile(r"\beyJ[\w-]+\.[\w-]+\.[\w-]*")
_BEARER_RE = re.compile(r"(?i)\bbearer\s+\S+")


def credential_ref(value: str) -> str:
    """Short, non-reversible reference for a bearer secret."""
    return hashlib.sha256(value.encode()).hexdigest()[:12]


def _mask_email(value: str) -> str:
    local, sep, domain = value.partition("@")
    if not sep:
        return "***"
    return f"{local[:2]}***@{domain}"


def _scrub_text(value: str) -> str:
    value = _BEARER_RE.sub("Bearer [redacted]", value)
    return _JWT_RE.sub("[jwt]", value)


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Keep tokens, session ids and addresses out of log lines.

    Credentials become ``ref:<sha256 prefix>`` so two lines about the same
    session can still be joined; emails keep only their domain.
    """
    for key, value in list(event_dict.items()):
        if not isinstance(value, str):
            continue
        lower_key = key.lower()
        if lower_key in _CREDENTIAL_KEYS:
            event_dict[key] = f"ref:{credential_ref(value)}" if value else value
        elif lower_key in _EMAIL_KEYS:
            event_dict[key] = _mask_email(value)
        else:
            event_dict[key] = _scrub_text(value)
    return event_dict


def _configure_structlog(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Configure structlog processors.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: If True, output JSON; if False, output human-readable
        development_mode: If True, use pretty console output
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if development_mode or not json_output:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=True),
        ]
    else:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


_log_level = os.getenv("LOG_LEVEL", "INFO").upper()
_json_output = os.getenv("LOG_JSON", "true").lower() in {"1", "true", "yes", "on"}
_dev_mode = os.getenv("LOG_DEV_MODE", "false").lower() in {"1", "true", "yes", "on"}

_configure_structlog(
    log_level=_log_level,
    json_output=_json_output,
    development_mode=_dev_mode,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a configured logger with correlation ID support."""
    return structlog.get_logger(name)


_SENSITIVE_ERROR_PATTERNS = [
    r'(?i)connection\s+.*\s+(failed|refused|timeout)',
    r'(?i)(redis|rediss)://[^\s]+',
    r'(?i)(password|secret|token|key|credential)\s*[:=]\s*[^\s]+',
    r'(?i)bearer\s+[^\s]+',
    r'\beyJ[\w-]+\.[\w-]+\.[\w-]*',
    r'(?i)traceback\s*\(most recent call last\)',
]

_SENSITIVE_PATTERNS_COMPILED = [re.compile(p) for p in _SENSITIVE_ERROR_PATTERNS]


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Strip connection strings and credentials from a message bound for a client."""
    if not error or not isinstance(error, str):
        return "An error occurred"

    result = error
    for pattern in _SENSITIVE_PATTERNS_COMPILED:
        result = pattern.sub(replacement, result)

    if len(result) > 500:
        result = result[:497] + "..."

    return result
