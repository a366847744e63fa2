"""
Structured logging for the KSI client using structlog.

Events carry the context bound with ``structlog.contextvars``: the client's
login id (bound by :func:`configure_logging`) and the facade operation in
progress (bound by :class:`ksi.client.KSI` for the length of each call).
Credential material is stripped from every event before rendering.
"""

import logging
import sys
from collections.abc import MutableMapping
from typing import Any, cast

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

from ksi.core.config import Settings, get_settings

# Event keys that may hold HMAC keys or computed MACs
SECRET_KEYS = frozenset({"login_key", "extender_login_key", "hmac_key", "mac"})
REDACTED = "**********"


def redact_secrets(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Replace credential values in ``event_dict``; nested mappings included."""
    _redact(event_dict)
    return event_dict


def _redact(values: MutableMapping[str, Any]) -> None:
    for key, value in values.items():
        if key in SECRET_KEYS:
            values[key] = REDACTED
        elif isinstance(value, MutableMapping):
            _redact(value)


def configure_logging(settings: Settings | None = None) -> None:
    """
    Configure structured logging for applications embedding the client.

    Development renders events for reading on a console; every other
    environment renders one JSON object per event. The library itself never
    calls this; the command line front-end does.
    """
    settings = settings or get_settings()

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
        redact_secrets,
    ]

    if settings.environment == "development":
        processors = shared_processors + [structlog.dev.ConsoleRenderer(colors=False)]
    else:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.clear_contextvars()
    if settings.login_id:
        structlog.contextvars.bind_contextvars(ksi_login_id=settings.login_id)

    # Diagnostics go to stderr so command output on stdout stays parseable
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, settings.log_level),
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance with the given name."""
    return cast(structlog.stdlib.BoundLogger, structlog.get_logger(name))
