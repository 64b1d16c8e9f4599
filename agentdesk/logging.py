"""Structured logging configuration for agentdesk.

Uses structlog for JSON-formatted logs in production and
human-readable logs in development. Credential material never
reaches a renderer: the redaction processor masks it first.
"""

import logging
import sys
from typing import Any

import structlog

# Event keys whose values are secrets (provider credentials, auth headers)
SECRET_KEYS = frozenset({"credential", "api_key", "authorization", "x-api-key", "token"})

_REDACTED = "***"


def redact_secrets(
    logger: Any,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """structlog processor that masks secret-bearing keys."""
    for key in list(event_dict):
        if key.lower() in SECRET_KEYS and event_dict[key]:
            event_dict[key] = _REDACTED
    return event_dict


def configure_logging(
    json_format: bool = True,
    level: str = "INFO",
    add_timestamp: bool = True,
) -> None:
    """Configure structured logging for the application.

    Args:
        json_format: If True, output JSON logs; otherwise use console format.
        level: Log level (DEBUG, INFO, WARNING, ERROR).
        add_timestamp: Whether to add timestamps to log entries.
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level.upper()),
    )
    # httpx logs every request line at INFO, including query strings that may carry keys
    logging.getLogger("httpx").setLevel(logging.WARNING)

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        redact_secrets,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if add_timestamp:
        processors.insert(0, structlog.processors.TimeStamper(fmt="iso", utc=True))

    if json_format:
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(
            structlog.dev.ConsoleRenderer(
                colors=True,
                exception_formatter=structlog.dev.plain_traceback,
            )
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    """Bind context variables included in all subsequent logs of this context.

    The request middleware binds request_id/correlation_id/user_id; the
    task runner binds task_id inside its own asyncio task, so provider logs carry it.
    """
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context() -> None:
    """Clear all bound context variables."""
    structlog.contextvars.clear_contextvars()

