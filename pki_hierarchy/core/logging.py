"""
Structured logging setup.
"""

import logging
import sys
from typing import Any, Dict

import structlog

_SENSITIVE_MARKERS = ("passphrase", "secret", "password")


def redact_secrets(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Replace the value of any key that looks like it holds a secret."""
    for key in list(event_dict):
        if any(marker in key.lower() for marker in _SENSITIVE_MARKERS):
            event_dict[key] = "***"
    return event_dict


def configure_logging(level: str = "INFO", log_format: str = "console") -> None:
    """
    Configure structlog for the process.

    Args:
        level: Minimum log level name (DEBUG, INFO, WARNING, ...)
        log_format: "console" for human-readable output, "json" for machine output
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    processors = [
        structlog.contextvars.merge_contextvars,
        redact_secrets,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]
    if log_format == "json":
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        context_class=dict,
        cache_logger_on_first_use=False,
    )
