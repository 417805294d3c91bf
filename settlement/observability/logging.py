"""
Structured Logging with Structlog.

Every entry is one JSON object tagged with the service, version and
deployment environment, plus whatever request context is bound. Gateway
credentials and webhook signatures are masked before rendering.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from settlement.config import settings

# Event keys whose values must never reach the log sink
_MASKED_KEYS = frozenset(
    {"authorization", "signature", "toss_signature", "secret_key", "api_secret", "jwt"}
)
_VISIBLE_CHARS = 4


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict["service"] = settings.service_name
    event_dict["version"] = settings.api_version
    event_dict["environment"] = settings.environment
    return event_dict


def mask_credentials(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Keep the first few characters of credential-like values, star the rest."""
    for key in _MASKED_KEYS.intersection(event_dict):
        value = str(event_dict[key])
        if len(value) <= _VISIBLE_CHARS:
            event_dict[key] = "*" * len(value)
        else:
            event_dict[key] = value[:_VISIBLE_CHARS] + "*" * (len(value) - _VISIBLE_CHARS)
    return event_dict


def setup_logging() -> None:
    """
    Configure structlog on top of stdlib logging.

    JSON output in deployed environments; `LOG_FORMAT=console` gives
    colored key/value output for local runs.
    """
    level = getattr(logging, settings.log_level.upper())
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_app_context,
        mask_credentials,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.format_exc_info,
    ]

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


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)  # type: ignore[no-any-return]


@contextmanager
def log_context(**values: Any) -> Iterator[None]:
    """Bind request-scoped values (request_id) to every entry logged inside."""
    with structlog.contextvars.bound_contextvars(**values):
        yield
