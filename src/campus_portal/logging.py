"""Structured logging configuration using structlog.

Provides JSON output for production and human-readable console output for
development. Every module logs through get_logger() instead of print().
Credentials must never reach a log line; redact_credentials masks them if a
caller binds them by accident.
"""

import logging
import sys
from typing import Any

import structlog

REDACTED = "***"

_SENSITIVE_KEYS: frozenset[str] = frozenset(
    {"password", "passwd", "username", "user", "credentials", "form_data"}
)


def redact_credentials(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """structlog processor replacing credential-bearing values with a mask."""
    for key in event_dict.keys() & _SENSITIVE_KEYS:
        event_dict[key] = REDACTED
    return event_dict


def setup_logging(json_output: bool = False, log_level: str = "INFO") -> None:
    """Configure structlog with appropriate processors and output format.

    Args:
        json_output: If True, output JSON (production). If False, console format (dev).
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    processors = [
        structlog.contextvars.merge_contextvars,
        redact_credentials,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]

    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # stdlib records (requests, urllib3) get exactly one stdout handler
    root = logging.getLogger()
    for existing in root.handlers[:]:
        root.removeHandler(existing)
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(levelname)s %(name)s %(message)s"))
    root.addHandler(handler)
    root.setLevel(numeric_level)


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a logger instance bound with the module name.

    Args:
        name: Logger name (typically __name__ from calling module).

    Returns:
        Configured structlog logger with module name context.
    """
    return structlog.get_logger(name)
