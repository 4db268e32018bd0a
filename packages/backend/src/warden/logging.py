"""Structured logging setup.

Learn: structlog with contextvars — RequestIdMiddleware binds request_id
once per request and every log line emitted while handling it carries the
ID. Credentials must never reach a log sink, so a redaction processor
masks any field whose name looks like a secret.
"""

import logging
from typing import Any

import structlog

_SECRET_KEYS = ("password", "secret", "token", "authorization", "cookie")


def _redact_secrets(logger: Any, method_name: str, event_dict: dict) -> dict:
    """Mask credential-looking fields, keeping a short prefix for debugging."""
    for key, value in event_dict.items():
        if key == "event":
            continue
        if any(s in key.lower() for s in _SECRET_KEYS) and isinstance(value, str):
            event_dict[key] = value[:2] + "***" if len(value) > 4 else "***"
    return event_dict


def configure_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """Configure structlog for the process. Safe to call more than once."""
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _redact_secrets,
        structlog.processors.StackInfoRenderer(),
    ]
    if json_output:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )
