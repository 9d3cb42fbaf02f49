from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Per-request correlation ID, propagated into every log entry
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_PII_KEYS = frozenset(
    {"password", "secret", "token", "authorization", "cookie", "email", "backup_code"}
)


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


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credential and identity values before they reach the renderer.

    Identifiers such as ``account:alice@example.com`` are partially masked too,
    keeping the prefix so lockout events stay readable.
    """
    for key in list(event_dict.keys()):
        lower_key = key.lower()
        value = event_dict[key]
        if not isinstance(value, str) or len(value) <= 4:
            continue
        if any(pii in lower_key for pii in _PII_KEYS):
            event_dict[key] = value[:2] + "***" + value[-2:]
        elif lower_key == "identifier" and value.startswith("account:"):
            event_dict[key] = "account:" + value[8:10] + "***"
    return event_dict


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Configure structlog processors and renderer.

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
        cache_logger_on_first_use=False,
    )


# Initialize logging on module import; Settings may reconfigure at startup
configure_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    json_output=os.getenv("LOG_JSON", "true").lower() in {"1", "true", "yes", "on"},
    development_mode=os.getenv("LOG_DEV_MODE", "false").lower() in {"1", "true", "yes", "on"},
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a configured logger with correlation ID support."""
    return structlog.get_logger(name)
