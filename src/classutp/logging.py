"""structlog setup for the service, the CLI and the tests.

Console rendering while developing, one JSON object per line in production.
Modules log through get_logger(); credentials never reach a log line because
redact_secrets runs before any renderer.
"""

import logging
import sys
from typing import Any

import structlog

_SECRET_KEYS = frozenset({"password", "secret", "credentials", "token"})


def redact_secrets(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Replace the value of any secret-looking key with a fixed mask."""
    for key in event_dict:
        if key.lower() in _SECRET_KEYS:
            event_dict[key] = "***"
    return event_dict


def mask_username(username: str | None) -> str | None:
    """Mask a username for logs and diagnostics, e.g. ``U20***45``."""
    if not username:
        return None
    if len(username) <= 4:
        return username[0] + "*" * (len(username) - 1)
    return f"{username[:3]}***{username[-2:]}"


def _renderers(json_output: bool) -> list[Any]:
    if json_output:
        return [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    return [structlog.dev.ConsoleRenderer()]


def setup_logging(json_output: bool = False, log_level: str = "INFO") -> None:
    """Configure structlog once per process.

    Args:
        json_output: Emit JSON lines instead of colored console output.
        log_level: Minimum level name (DEBUG, INFO, WARNING, ...).
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            redact_secrets,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            *_renderers(json_output),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # uvicorn and playwright log through stdlib; send them to the same stream
    root = logging.getLogger()
    root.handlers = [logging.StreamHandler(sys.stdout)]
    root.setLevel(level)


def get_logger(name: str) -> structlog.BoundLogger:
    return structlog.get_logger(name)
