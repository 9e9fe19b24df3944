"""Structured logging configuration with secret redaction."""

import logging
import sys
from typing import Any, Dict

import structlog

REDACTED = "REDACTED"

# Matched anywhere in the lower-cased key
SENSITIVE_FRAGMENTS = ("password", "secret", "authorization", "api_key")


def _is_sensitive(key: str) -> bool:
    key_lower = key.lower()
    if any(fragment in key_lower for fragment in SENSITIVE_FRAGMENTS):
        return True
    # access_token, refresh_token, reset_token, token; not token_id
    return key_lower.endswith("token")


def redact_sensitive(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Redact credentials from log entries.

    Redacts:
    - any field containing 'password', 'secret', 'authorization' or 'api_key'
    - any field ending in 'token' (access, refresh and reset tokens)
    """
    for key in list(event_dict.keys()):
        if _is_sensitive(key):
            event_dict[key] = REDACTED

    return event_dict


def configure_logging(log_level: str = "INFO") -> None:
    """Configure structlog for JSON output with correlation ID support.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        redact_sensitive,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer(),
    ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a logger, optionally bound to a component name."""
    logger = structlog.get_logger()
    if name:
        logger = logger.bind(logger_name=name)
    return logger
