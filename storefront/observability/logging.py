"""
Structured Logging with Structlog.

Provides JSON-formatted logs with correlation IDs and context. Card data,
gateway secrets and signed payloads are masked before rendering.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from storefront.config import settings

REDACTED = "***REDACTED***"

# Matched case-insensitively as substrings of the field name
SENSITIVE_FIELDS = (
    "cardno",
    "cardcvc",
    "hash_key",
    "hashkey",
    "hash_iv",
    "hashiv",
    "encryptinfo",
    "hashinfo",
    "password",
    "secret",
    "token",
)

# structlog's own keys are never masked
_RESERVED_KEYS = frozenset({"event", "level", "logger", "timestamp"})


def _is_sensitive(name: Any) -> bool:
    lowered = str(name).lower()
    return any(field in lowered for field in SENSITIVE_FIELDS)


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: REDACTED if _is_sensitive(k) else _redact(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_redact(item) for item in value]
    return value


def redact_sensitive_fields(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Mask sensitive fields at any depth, including gateway field dicts."""
    for key in list(event_dict):
        if key in _RESERVED_KEYS:
            continue
        if _is_sensitive(key):
            event_dict[key] = REDACTED
        else:
            event_dict[key] = _redact(event_dict[key])
    return event_dict


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Add application-level context to all log entries."""
    event_dict["service"] = settings.service_name
    event_dict["version"] = settings.api_version
    event_dict["environment"] = settings.environment
    return event_dict


def setup_logging() -> None:
    """
    Configure structured logging with structlog.

    Logs are formatted as JSON for machine parsing with the following structure:
    {
        "event": "webhook_applied",
        "level": "info",
        "timestamp": "2026-01-08T12:00:00.123456Z",
        "logger": "storefront.services.webhook_reconciler",
        "service": "storefront-payments",
        "version": "0.1.0",
        "request_id": "req-123",
        "trade_number": "20260108120000a1b2c3d4e5",
        ...additional context
    }
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.log_level.upper()),
    )

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_app_context,
        redact_sensitive_fields,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    if settings.log_level.upper() == "DEBUG":
        processors.append(structlog.processors.ExceptionRenderer())
    else:
        processors.append(structlog.processors.format_exc_info)

    if settings.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


class log_context:
    """
    Context manager for adding structured logging context.

    Usage:
        with log_context(request_id="req-123", trade_number="2026..."):
            logger.info("processing_notification")
            # All logs within this context will include request_id and trade_number
    """

    def __init__(self, **kwargs: Any) -> None:
        self.context = kwargs

    def __enter__(self) -> None:
        structlog.contextvars.bind_contextvars(**self.context)

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        structlog.contextvars.unbind_contextvars(*self.context.keys())
