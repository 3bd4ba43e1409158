"""
Structured logging for skein.

All modules log through structlog with an event name first and context as
keyword arguments:

    logger = get_logger(__name__)
    logger.info("tool_execution_completed", tool_name="read", duration=0.2)

configure_logging() is idempotent and safe to call from any entry point.
"""

import logging
import sys
from typing import Any

import structlog

# Keys whose values never reach a log sink
SENSITIVE_KEYS = ("api_key", "password", "secret", "authorization", "token")

# Token *counts* are metrics, not credentials
TOKEN_COUNT_KEYS = frozenset(
    {
        "tokens",
        "total_tokens",
        "input_tokens",
        "output_tokens",
        "prompt_tokens",
        "completion_tokens",
        "cache_read_tokens",
        "cache_write_tokens",
        "tokens_before",
        "tokens_after",
        "estimated_tokens",
        "budget_tokens",
        "keep_recent_tokens",
    }
)

REDACTED = "***REDACTED***"

_configured = False


def _is_sensitive(key: str) -> bool:
    lowered = key.lower()
    if lowered in TOKEN_COUNT_KEYS:
        return False
    return any(marker in lowered for marker in SENSITIVE_KEYS)


def filter_sensitive_data(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """
    structlog processor that redacts credential-like fields.

    Args:
        logger: Wrapped logger (unused)
        method_name: Log method name (unused)
        event_dict: Event dictionary being processed

    Returns:
        The event dictionary with sensitive values replaced
    """
    for key in list(event_dict.keys()):
        if key == "event":
            continue
        if _is_sensitive(key):
            event_dict[key] = REDACTED
    return event_dict


def configure_logging(level: str = "INFO", json_logs: bool = False) -> None:
    """
    Configure structlog and the stdlib root handler.

    Args:
        level: Log level name; unknown names fall back to INFO
        json_logs: Render JSON lines instead of the console format
    """
    global _configured

    log_level = getattr(logging, str(level).upper(), logging.INFO)
    if not isinstance(log_level, int):
        log_level = logging.INFO

    renderer: Any
    if json_logs:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=False)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            filter_sensitive_data,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )
    _configured = True


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger bound to the module name."""
    if not _configured:
        from skein.config.settings import settings

        configure_logging(settings.log_level, settings.log_json)
    return structlog.get_logger(name)


__all__ = ["configure_logging", "get_logger", "filter_sensitive_data", "REDACTED"]
