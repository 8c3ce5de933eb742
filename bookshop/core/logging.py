"""
Structured logging for the bookshop services, built on structlog.

Every service role logs through the same processor pipeline so that one
order can be followed across the order, payment and catalog services:

- Context variables carry request- and message-scoped fields (trace.id,
  order_id, queue) into every log line without passing them around.
- Each entry is stamped with the service name, role, environment and version.
- Development gets a colourised console renderer, production gets one JSON
  object per line.
"""

import logging
import sys
from typing import Any

import orjson
import structlog
from structlog.types import EventDict, Processor

from bookshop.core.config import settings


def add_service_context(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Processor: stamp service identity on every entry."""
    event_dict["service_name"] = settings.SERVICE_NAME
    event_dict["service_role"] = settings.SERVICE_ROLE.value
    event_dict["environment"] = settings.ENVIRONMENT
    event_dict["version"] = settings.SERVICE_VERSION
    return event_dict


def add_log_level(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Processor: uppercase level name (ERROR, not error)."""
    if method_name:
        event_dict["level"] = method_name.upper()
    return event_dict


def rename_event_key(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """
    Processor: rename 'event' to 'message'.

    Log shippers expect the human-readable part under 'message'.
    """
    if "event" in event_dict:
        event_dict["message"] = event_dict.pop("event")
    return event_dict


def drop_color_message_key(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    event_dict.pop("color_message", None)
    return event_dict


def orjson_dumps(obj: Any, **kwargs: Any) -> str:
    # default=str covers Decimal and UUID fields bound by the consumers
    return orjson.dumps(obj, default=str).decode("utf-8")


def configure_logging() -> None:
    """
    Configure stdlib logging and structlog.

    Call this once at process startup, before any get_logger() call is used.
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.LOG_LEVEL.upper()),
    )

    # The HTTP access log is written by LoggingMiddleware as structured data
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

    # aiokafka logs every rebalance and heartbeat in plain text
    logging.getLogger("aiokafka").setLevel(logging.WARNING)
    logging.getLogger("aiokafka.consumer.group_coordinator").setLevel(logging.WARNING)

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_service_context,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        add_log_level,
        structlog.processors.format_exc_info,
        rename_event_key,
        drop_color_message_key,
    ]

    if settings.LOG_FORMAT == "console":
        renderer: Processor = structlog.dev.ConsoleRenderer(
            colors=True,
            exception_formatter=structlog.dev.plain_traceback,
        )
    else:
        renderer = structlog.processors.JSONRenderer(serializer=orjson_dumps)

    structlog.configure(
        processors=shared_processors + [renderer],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
        wrapper_class=structlog.stdlib.BoundLogger,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """
    Get a structlog logger.

    Usage:
        logger = get_logger(__name__)
        logger.info("payment_recorded", order_id=order_id, amount=str(amount))
    """
    return structlog.get_logger(name)
