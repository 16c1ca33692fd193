"""
Structured logging configuration using structlog.

Development gets human-readable console output, every other environment gets
JSON. IP addresses attached to log events are masked before rendering so raw
client addresses never reach log storage.
"""

import logging
import sys
from typing import Any, Dict, MutableMapping

import structlog
from structlog.types import Processor

from app.core.config import settings

IP_FIELDS = ("ip", "ip_address", "client_ip")


def mask_ip_fields(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """structlog processor that masks IP-carrying keys."""
    from app.security.request_info import mask_ip

    for key in IP_FIELDS:
        value = event_dict.get(key)
        if isinstance(value, str):
            event_dict[key] = mask_ip(value)
    return event_dict


def configure_logging() -> None:
    """
    Configure structured logging for the entire application.

    This function sets up:
    - Development: Human-readable logs with colors
    - Production: JSON structured logs for machine processing
    """
    is_development = settings.APP_ENV.lower() in ("development", "dev", "local")
    level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )

    processors: list[Processor] = [
        structlog.processors.TimeStamper(fmt="ISO"),
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        mask_ip_fields,
        structlog.processors.CallsiteParameterAdder(
            parameters=[
                structlog.processors.CallsiteParameter.FILENAME,
                structlog.processors.CallsiteParameter.LINENO,
            ]
        ),
    ]

    if is_development:
        processors.extend(
            [
                structlog.dev.set_exc_info,
                structlog.dev.ConsoleRenderer(colors=True),
            ]
        )
    else:
        processors.extend(
            [
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer(),
            ]
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured structlog logger
    """
    return structlog.get_logger(name)


def short_id(value: str | None) -> str | None:
    """Truncate a session id for log output."""
    if not value:
        return None
    return value[:8] + "..."


def add_request_context(request: Any) -> Dict[str, Any]:
    """Add HTTP request context to logs."""
    try:
        return {
            "request_id": getattr(request.state, "request_id", None),
            "method": request.method,
            "path": request.url.path,
        }
    except AttributeError:
        return {}
